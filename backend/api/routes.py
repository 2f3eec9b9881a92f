# api/routes.py
# ============================================================================
# VIRTUAL GIFTS BACKEND: HTTP ROUTES
# ============================================================================
# Orders, payments (incl. processor webhooks) and carts.
#
# Handlers stay thin: CommerceError subclasses raised by the services are
# translated to status codes by the exception handlers in api/server.py.
# ============================================================================

from typing import Optional

import structlog
from fastapi import APIRouter, Depends, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from api.container import AppServices
from schemas.checkout import (
    AddToCartRequest,
    ConfirmPaymentRequest,
    CreateCartRequest,
    CreateOrderRequest,
    PaymentConfirmation,
    PaymentStatusView,
    PurchaseResult,
    RefundRequest,
    RefundResult,
    UpdateCartItemRequest,
    UpdateOrderRequest,
)
from schemas.commerce import Cart, CartTotals, CartValidation, Order, OrderPage, OrderStatus
from schemas.payment import ConfirmFromClient

logger = structlog.get_logger().bind(component="routes")

# Header each processor signs its webhook with
WEBHOOK_SIGNATURE_HEADERS = {
    "stripe": "stripe-signature",
    "paypal": "paypal-transmission-sig",
    "coinbase": "x-cc-webhook-signature",
    "bitpay": "x-signature",
    "nowpayments": "x-nowpayments-sig",
    "binance_pay": "binancepay-signature",
}


def get_services(request: Request) -> AppServices:
    return request.app.state.services


def _confirmation_response(result: PaymentConfirmation):
    if result.success:
        return result
    return JSONResponse(status_code=400, content=jsonable_encoder(result))


orders_router = APIRouter(prefix="/orders", tags=["orders"])
payment_router = APIRouter(prefix="/payment", tags=["payment"])
cart_router = APIRouter(prefix="/cart", tags=["cart"])


# =============================================================================
# ORDERS
# =============================================================================

@orders_router.post("/purchase", response_model=PurchaseResult)
async def purchase(body: CreateOrderRequest, services: AppServices = Depends(get_services)):
    return await services.orders.process_purchase(body)


@orders_router.get("", response_model=OrderPage)
async def list_orders(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    status: Optional[OrderStatus] = None,
    services: AppServices = Depends(get_services),
):
    return await services.orders.find_all(page=page, limit=limit, status=status)


@orders_router.get("/{order_id}", response_model=Order)
async def get_order(order_id: str, services: AppServices = Depends(get_services)):
    return await services.orders.find_one(order_id)


@orders_router.patch("/{order_id}", response_model=Order)
async def update_order(
    order_id: str,
    body: UpdateOrderRequest,
    services: AppServices = Depends(get_services),
):
    return await services.orders.update(order_id, body)


@orders_router.delete("/{order_id}", response_model=Order)
async def cancel_order(order_id: str, services: AppServices = Depends(get_services)):
    return await services.orders.remove(order_id)


@orders_router.post("/{order_id}/confirm-payment", response_model=PaymentConfirmation)
async def confirm_payment(
    order_id: str,
    body: Optional[ConfirmPaymentRequest] = None,
    services: AppServices = Depends(get_services),
):
    method_data = body.method_data if body else {}
    result = await services.orders.confirm_payment(order_id, ConfirmFromClient(method_data=method_data))
    return _confirmation_response(result)


@orders_router.post("/{order_id}/retry-payment", response_model=PaymentConfirmation)
async def retry_payment(
    order_id: str,
    body: Optional[ConfirmPaymentRequest] = None,
    services: AppServices = Depends(get_services),
):
    result = await services.orders.retry_payment(order_id, body.method_data if body else None)
    return _confirmation_response(result)


@orders_router.get("/{order_id}/payment-status", response_model=PaymentStatusView)
async def payment_status(order_id: str, services: AppServices = Depends(get_services)):
    return await services.orders.get_payment_status(order_id)


@orders_router.get("/{order_id}/events")
async def order_events(order_id: str, services: AppServices = Depends(get_services)):
    await services.orders.find_one(order_id)
    events = await services.orders.get_order_events(order_id)
    return {"orderId": order_id, "events": [e.model_dump(mode="json") for e in events]}


# =============================================================================
# PAYMENT
# =============================================================================

@payment_router.get("/methods")
async def payment_methods(services: AppServices = Depends(get_services)):
    return {"methods": services.payments.get_supported_payment_methods()}


@payment_router.post("/retry/{order_id}", response_model=PaymentConfirmation)
async def retry_payment_alias(
    order_id: str,
    body: Optional[ConfirmPaymentRequest] = None,
    services: AppServices = Depends(get_services),
):
    result = await services.orders.retry_payment(order_id, body.method_data if body else None)
    return _confirmation_response(result)


@payment_router.post("/webhook/{gateway}")
async def payment_webhook(gateway: str, request: Request, services: AppServices = Depends(get_services)):
    """
    Processor callback. The raw body is verified as received; re-serializing
    it would break every signature scheme.
    """
    payload = await request.body()
    signature = request.headers.get(WEBHOOK_SIGNATURE_HEADERS.get(gateway, "x-signature"))

    outcome = await services.payments.handle_webhook(gateway, payload, signature, dict(request.headers))
    if not outcome.success:
        logger.warning("webhook_rejected", gateway=gateway, error=outcome.error)
        return JSONResponse(status_code=400, content={"success": False, "error": outcome.error})

    await services.orders.apply_webhook(outcome)
    return {"success": True}


@payment_router.post("/refund/{order_id}", response_model=RefundResult)
async def refund(
    order_id: str,
    body: Optional[RefundRequest] = None,
    services: AppServices = Depends(get_services),
):
    body = body or RefundRequest()
    result = await services.orders.refund_order(order_id, amount=body.amount, reason=body.reason)
    if not result.success:
        return JSONResponse(status_code=400, content=jsonable_encoder(result))
    return result


# =============================================================================
# CART
# =============================================================================

@cart_router.post("", response_model=Cart)
async def create_cart(body: CreateCartRequest, services: AppServices = Depends(get_services)):
    return await services.carts.create(body.user_id)


@cart_router.post("/add", response_model=Cart)
async def add_to_cart(body: AddToCartRequest, services: AppServices = Depends(get_services)):
    return await services.carts.add_to_cart(body.user_id, body.product_id, body.quantity)


@cart_router.get("/user/{user_id}", response_model=Optional[Cart])
async def get_cart_by_user(user_id: str, services: AppServices = Depends(get_services)):
    return await services.carts.get_cart_by_user_id(user_id)


@cart_router.get("/{cart_id}", response_model=Cart)
async def get_cart(cart_id: str, services: AppServices = Depends(get_services)):
    return await services.carts.get_cart_by_id(cart_id)


@cart_router.get("/{cart_id}/totals", response_model=CartTotals)
async def cart_totals(cart_id: str, services: AppServices = Depends(get_services)):
    cart = await services.carts.get_cart_by_id(cart_id)
    return services.carts.calculate_cart_totals(cart)


@cart_router.get("/{cart_id}/validate", response_model=CartValidation)
async def validate_cart(cart_id: str, services: AppServices = Depends(get_services)):
    return await services.carts.validate_cart_for_checkout(cart_id)


@cart_router.patch("/item/{item_id}", response_model=Cart)
async def update_cart_item(
    item_id: str,
    body: UpdateCartItemRequest,
    services: AppServices = Depends(get_services),
):
    return await services.carts.update_cart_item(item_id, body.quantity)


@cart_router.delete("/item/{item_id}", response_model=Cart)
async def remove_cart_item(item_id: str, services: AppServices = Depends(get_services)):
    return await services.carts.remove_from_cart(item_id)


@cart_router.delete("/{cart_id}/clear", response_model=Cart)
async def clear_cart(cart_id: str, services: AppServices = Depends(get_services)):
    return await services.carts.clear_cart(cart_id)
