# schemas/checkout.py
# ============================================================================
# VIRTUAL GIFTS BACKEND: CHECKOUT REQUESTS + RESULTS
# ============================================================================

from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import Field, field_validator

from schemas.base import CamelModel, Money
from schemas.commerce import Order, OrderStatus, ShippingDetails
from schemas.payment import PaymentIntent, PaymentMethod, PaymentResult, PaymentStatus


class OrderItemInput(CamelModel):
    product_id: str
    quantity: int = Field(ge=1)
    # Informational only; the catalog price is authoritative
    price: Optional[Money] = None


class CreateOrderRequest(CamelModel):
    customer_email: str
    user_id: Optional[str] = None
    cart_id: Optional[str] = None
    items: Optional[List[OrderItemInput]] = None
    payment_method: PaymentMethod
    shipping: ShippingDetails
    notes: Optional[str] = None

    @field_validator("customer_email")
    @classmethod
    def _normalize_email(cls, v: str) -> str:
        return v.strip().lower()


class PurchaseResult(CamelModel):
    success: bool
    order: Optional[Order] = None
    payment_intent: Optional[PaymentIntent] = None
    error: Optional[str] = None
    requires_action: bool = False


class PaymentStatusView(CamelModel):
    order_id: str
    order_number: str
    payment_status: PaymentStatus
    order_status: OrderStatus
    transaction_id: Optional[str] = None
    payment_method: Optional[str] = None
    total: Money
    can_retry: bool
    requires_action: bool


class UpdateOrderRequest(CamelModel):
    status: Optional[OrderStatus] = None
    payment_status: Optional[PaymentStatus] = None


class RefundRequest(CamelModel):
    amount: Optional[Decimal] = Field(default=None, gt=0)
    reason: Optional[str] = None


class CreateCartRequest(CamelModel):
    user_id: str


class AddToCartRequest(CamelModel):
    user_id: str
    product_id: str
    quantity: int = Field(ge=1)


class UpdateCartItemRequest(CamelModel):
    quantity: int = Field(ge=1)


class PaymentConfirmation(CamelModel):
    success: bool
    order: Optional[Order] = None
    error: Optional[str] = None
    already_confirmed: bool = False


class ConfirmPaymentRequest(CamelModel):
    method_data: Dict[str, Any] = Field(default_factory=dict)


class RefundResult(CamelModel):
    success: bool
    order: Order
    refund: Optional[PaymentResult] = None
    error: Optional[str] = None
