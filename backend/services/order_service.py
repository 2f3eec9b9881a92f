"""
Order Service - Checkout Orchestration
======================================
Drives an order from purchase to settlement:

    PENDING/PENDING --confirm--> PROCESSING/COMPLETED --refund--> REFUNDED/REFUNDED
           |
           +--failure--> CANCELLED/FAILED (stock released)

Features:
- Stock is decremented exactly once, at reservation, and released on failure
  or cancellation; `Order.stock_reserved` keeps release idempotent
- Per-order asyncio locks serialize confirm, webhook, cancel and refund
- Confirmation is idempotent: an already COMPLETED order short-circuits
  without touching the gateway, stock or mail
- Webhook confirmations are a typed command (ConfirmFromWebhook) and are
  trusted; client confirmations always re-query the gateway
- Every transition is written to the event log (the black box)
- The confirmation email is sent after the lock is released and can never
  fail the confirmation
"""

import asyncio
import os
import uuid
from contextlib import asynccontextmanager
from decimal import Decimal, ROUND_HALF_UP
from math import ceil
from typing import Any, Dict, Iterable, List, Optional, Tuple

import structlog

from errors import (
    ClientError,
    CommerceError,
    ConflictError,
    DuplicateOrderNumber,
    IntegrityError,
    NotFoundError,
    OrderLockTimeout,
)
from payment.service import PaymentService
from schemas.base import new_id, utcnow
from schemas.checkout import (
    CreateOrderRequest,
    PaymentConfirmation,
    PaymentStatusView,
    PurchaseResult,
    RefundResult,
    UpdateOrderRequest,
)
from schemas.commerce import (
    Order,
    OrderItem,
    OrderPage,
    OrderStatus,
    OrderTotals,
    StockLine,
    User,
)
from schemas.payment import (
    TERMINAL_PAYMENT_STATUSES,
    ConfirmCommand,
    ConfirmFromClient,
    ConfirmFromWebhook,
    PaymentStatus,
    WebhookOutcome,
)
from services.cart_service import CartService
from services.mail_service import (
    IMailSender,
    LoggingMailSender,
    order_confirmation_subject,
    render_order_confirmation_email,
)
from services.order_number import generate_order_number
from services.stock_validation import StockValidationService, merge_lines
from services.user_identification import UserIdentificationService
from storage.repositories import (
    ICartRepository,
    IEventLog,
    IOrderRepository,
    IProductRepository,
    IUserRepository,
    InMemoryCartRepository,
    InMemoryEventLog,
    InMemoryOrderRepository,
    InMemoryProductRepository,
    InMemoryUserRepository,
    SystemEvent,
)

CENT = Decimal("0.01")


class OrderConfig:
    TAX_RATE = Decimal(os.getenv("TAX_RATE", "0.08"))
    ORDER_LOCK_TIMEOUT_SECONDS = float(os.getenv("ORDER_LOCK_TIMEOUT_SECONDS", "30"))
    ORDER_NUMBER_MAX_ATTEMPTS = int(os.getenv("ORDER_NUMBER_MAX_ATTEMPTS", "5"))
    DEFAULT_CURRENCY = os.getenv("DEFAULT_CURRENCY", "USD")
    # Public base URL of this API, used for processor callbacks (NOWPayments IPN)
    WEBHOOK_BASE_URL = os.getenv("WEBHOOK_BASE_URL", "")


config = OrderConfig()


def _round(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


class OrderService:
    """
    Order orchestrator over pluggable repositories and gateways.

    Example:
        service = OrderService(payments=PaymentService({"stripe": StripeGateway()}))
        result = await service.process_purchase(request)
        if result.requires_action:
            ...  # redirect the customer with result.payment_intent.client_secret
    """

    def __init__(
        self,
        payments: Optional[PaymentService] = None,
        products: Optional[IProductRepository] = None,
        users: Optional[IUserRepository] = None,
        carts: Optional[ICartRepository] = None,
        orders: Optional[IOrderRepository] = None,
        events: Optional[IEventLog] = None,
        mail: Optional[IMailSender] = None,
        order_config: OrderConfig = config,
    ):
        # Dependency injection with defaults
        self.payments = payments or PaymentService()
        self.products = products or InMemoryProductRepository()
        self.users = users or InMemoryUserRepository()
        self.carts = carts or InMemoryCartRepository()
        self.orders = orders or InMemoryOrderRepository()
        self.events = events or InMemoryEventLog()
        self.mail = mail or LoggingMailSender()
        self.config = order_config

        self.stock = StockValidationService(self.products)
        self.identity = UserIdentificationService(self.users, self.orders)
        self.cart_service = CartService(self.carts, self.products)

        # In-process only; a multi-worker deployment needs row locks instead
        self._order_locks: Dict[str, asyncio.Lock] = {}
        # Holders plus waiters per lock; the entry goes when this reaches zero
        self._order_lock_users: Dict[str, int] = {}

        self._base_logger = structlog.get_logger()

    def _get_logger(self, correlation_id: Optional[str] = None):
        return self._base_logger.bind(
            component="order_service",
            correlation_id=correlation_id or str(uuid.uuid4()),
        )

    def _checkout_order_lock(self, order_id: str) -> asyncio.Lock:
        lock = self._order_locks.setdefault(order_id, asyncio.Lock())
        self._order_lock_users[order_id] = self._order_lock_users.get(order_id, 0) + 1
        return lock

    def _return_order_lock(self, order_id: str):
        remaining = self._order_lock_users[order_id] - 1
        if remaining:
            self._order_lock_users[order_id] = remaining
        else:
            del self._order_lock_users[order_id]
            del self._order_locks[order_id]

    @asynccontextmanager
    async def _locked(self, order_id: str):
        """Hold the order's lock; waiting longer than the configured timeout fails"""
        lock = self._checkout_order_lock(order_id)
        try:
            try:
                async with asyncio.timeout(self.config.ORDER_LOCK_TIMEOUT_SECONDS):
                    await lock.acquire()
            except asyncio.TimeoutError:
                self._base_logger.error("order_lock_timeout", order_id=order_id)
                raise OrderLockTimeout(f"Order {order_id} is busy, please retry")
            try:
                yield
            finally:
                lock.release()
        finally:
            self._return_order_lock(order_id)

    async def _emit(
        self,
        event_type: str,
        order: Optional[Order],
        payload: Optional[Dict[str, Any]] = None,
        severity: str = "INFO",
    ):
        event = SystemEvent(
            event_type=event_type,
            order_id=order.id if order else None,
            component="order_service",
            payload={
                "order_number": order.order_number if order else None,
                **(payload or {}),
            },
            severity=severity,
        )
        await self.events.append(event)

    async def _require_order(self, order_id: str) -> Order:
        order = await self.orders.get(order_id)
        if order is None:
            raise NotFoundError(f"Order with ID {order_id} not found")
        return order

    # =========================================================================
    # TOTALS
    # =========================================================================

    def calculate_order_totals(self, lines: Iterable[Tuple[Decimal, int]]) -> OrderTotals:
        """
        Totals from (unit price, quantity) pairs.

        Rounds once at the end: [(25.99, 2)] -> 51.98 / 4.16 / 56.14
        """
        subtotal = sum((Decimal(price) * quantity for price, quantity in lines), Decimal("0"))
        tax = subtotal * self.config.TAX_RATE
        shipping = Decimal("0")
        discount = Decimal("0")
        total = subtotal + tax + shipping - discount
        return OrderTotals(
            subtotal=_round(subtotal),
            tax=_round(tax),
            shipping=_round(shipping),
            discount=_round(discount),
            total=_round(total),
        )

    # =========================================================================
    # PURCHASE
    # =========================================================================

    async def _resolve_items(self, request: CreateOrderRequest) -> List[StockLine]:
        # Exactly one source of items
        if bool(request.cart_id) == bool(request.items):
            raise ClientError("Either cartId or items must be provided")

        if request.cart_id:
            cart = await self.carts.get(request.cart_id)
            if cart is None:
                raise NotFoundError("Cart not found")
            if not cart.items:
                raise ClientError("Cart is empty")
            lines = [StockLine(product_id=i.product_id, quantity=i.quantity) for i in cart.items]
        else:
            lines = [StockLine(product_id=i.product_id, quantity=i.quantity) for i in request.items]

        return merge_lines(lines)

    async def _resolve_user(self, request: CreateOrderRequest) -> User:
        if request.user_id:
            user = await self.identity.find_by_id(request.user_id)
            if user is not None:
                return user
        guest = self.identity.create_guest_user_from_shipping(request.shipping)
        guest = guest.model_copy(update={"email": request.customer_email})
        return await self.identity.find_or_create_guest_user(guest)

    async def _next_order_number(self) -> str:
        for _ in range(self.config.ORDER_NUMBER_MAX_ATTEMPTS):
            candidate = generate_order_number()
            if not await self.orders.order_number_exists(candidate):
                return candidate
        raise ConflictError("Could not allocate a unique order number")

    async def _persist_order(self, order: Order, log) -> Order:
        """Create order + items as one unit, re-numbering on a unique conflict"""
        for attempt in range(1, self.config.ORDER_NUMBER_MAX_ATTEMPTS + 1):
            try:
                return await self.orders.create(order)
            except DuplicateOrderNumber:
                log.warning("order_number_conflict", order_number=order.order_number, attempt=attempt)
                order = order.model_copy(update={"order_number": await self._next_order_number()})
        raise ConflictError("Could not allocate a unique order number")

    def _intent_metadata(self, request: CreateOrderRequest, order_number: str) -> Dict[str, Any]:
        metadata: Dict[str, Any] = {
            "orderNumber": order_number,
            "customerEmail": request.customer_email,
            "description": f"Order {order_number}",
            **request.payment_method.intent_metadata(),
        }
        if self.config.WEBHOOK_BASE_URL:
            gateway = request.payment_method.resolve_gateway()
            metadata["ipnCallbackUrl"] = f"{self.config.WEBHOOK_BASE_URL.rstrip('/')}/payment/webhook/{gateway}"
        return metadata

    async def process_purchase(self, request: CreateOrderRequest) -> PurchaseResult:
        """
        Full checkout: validate, identify, price, open an intent, persist,
        reserve, and auto-confirm when the method allows it.

        Raises:
            ClientError: bad input or stock validation failure (nothing persisted)
            GatewayError: intent creation failed (nothing persisted)
            InsufficientStock: reservation lost a race (order is cancelled)
        """
        correlation_id = new_id()
        log = self._get_logger(correlation_id)
        method = request.payment_method

        # 1. Items
        lines = await self._resolve_items(request)

        # 2. Stock validation
        validation = await self.stock.validate_stock(lines)
        if not validation.valid:
            log.warning("purchase_stock_invalid", errors=validation.errors)
            raise ClientError(f"Stock validation failed: {', '.join(validation.errors)}")
        products = {p.id: p for p in validation.validated_products}

        gateway = method.resolve_gateway()
        if not self.payments.validate_payment_method(method.type, gateway):
            raise ClientError(f"Payment gateway {gateway} is not available for {method.type.value}")

        # 3. Customer
        user = await self._resolve_user(request)

        # 4. Totals, from catalog prices only
        totals = self.calculate_order_totals(
            (products[line.product_id].effective_price, line.quantity) for line in lines
        )

        # 5. Order number + payment intent
        order_number = await self._next_order_number()
        currency = method.intent_currency(self.config.DEFAULT_CURRENCY)
        intent = await self.payments.create_payment_intent(
            method.type,
            gateway,
            totals.total,
            currency,
            self._intent_metadata(request, order_number),
        )

        # 6. Persist order + items
        order_id = new_id()
        items = []
        for line in lines:
            product = products[line.product_id]
            price = product.effective_price
            items.append(OrderItem(
                order_id=order_id,
                product_id=product.id,
                product_name=product.name,
                quantity=line.quantity,
                price=price,
                total=_round(price * line.quantity),
            ))

        order = Order(
            id=order_id,
            order_number=order_number,
            user_id=user.id,
            status=OrderStatus.PENDING,
            payment_status=PaymentStatus.PENDING,
            subtotal=totals.subtotal,
            tax=totals.tax,
            shipping=totals.shipping,
            discount=totals.discount,
            total=totals.total,
            currency=currency,
            shipping_details=request.shipping,
            payment_method=method.type.value,
            transaction_id=intent.id,
            payment_details={"gateway": gateway, "intent_status": intent.status.value},
            notes=request.notes,
            items=items,
        )
        order = await self._persist_order(order, log)
        log.info(
            "order_created",
            order_id=order.id,
            order_number=order.order_number,
            total=str(order.total),
            gateway=gateway,
        )
        await self._emit("ORDER_CREATED", order, {
            "total": str(order.total),
            "currency": order.currency,
            "gateway": gateway,
            "transaction_id": intent.id,
            "items": len(order.items),
        })

        # 7. Reserve stock; a lost race cancels the order it belonged to
        try:
            await self.stock.reserve_stock(order.reservation_lines())
        except CommerceError as e:
            order = await self.orders.update(order.transition(
                status=OrderStatus.CANCELLED,
                payment_status=PaymentStatus.FAILED,
                payment_details={**order.payment_details, "failure_reason": e.message},
            ))
            log.warning("stock_reservation_failed", order_id=order.id, error=e.message)
            await self._emit("STOCK_RESERVATION_FAILED", order, {"error": e.message}, severity="WARN")
            raise

        order = await self.orders.update(order.transition(stock_reserved=True))
        await self._emit("STOCK_RESERVED", order, {
            "lines": [line.model_dump() for line in order.reservation_lines()],
        })

        # 8. Cart
        if request.cart_id:
            try:
                await self.carts.clear(request.cart_id)
            except Exception as e:
                log.warning("cart_clear_failed", cart_id=request.cart_id, error=str(e))

        # 9. Auto-confirm
        error = None
        if method.can_auto_confirm():
            try:
                confirmation = await self.confirm_payment(
                    order.id, ConfirmFromClient(method_data=method.confirmation_data())
                )
                order = confirmation.order or order
                error = confirmation.error
            except Exception as e:
                log.warning("auto_confirm_failed", order_id=order.id, error=str(e))

        # 10. Result
        return PurchaseResult(
            success=True,
            order=order,
            payment_intent=intent,
            error=error,
            requires_action=order.payment_status != PaymentStatus.COMPLETED,
        )

    # =========================================================================
    # CONFIRMATION
    # =========================================================================

    async def confirm_payment(self, order_id: str, command: ConfirmCommand) -> PaymentConfirmation:
        """
        Settle an order's payment.

        ConfirmFromWebhook is trusted as-is. ConfirmFromClient asks the
        gateway; a failed or cancelled answer routes to failure handling,
        anything still in flight leaves the order untouched.
        """
        log = self._get_logger()
        confirmed = None

        async with self._locked(order_id):
            order = await self._require_order(order_id)

            if order.payment_status == PaymentStatus.COMPLETED:
                log.info("payment_already_confirmed", order_id=order_id)
                return PaymentConfirmation(success=True, order=order, already_confirmed=True)

            if order.payment_status == PaymentStatus.REFUNDED:
                return PaymentConfirmation(success=False, order=order, error="Order payment was refunded")

            if isinstance(command, ConfirmFromWebhook):
                details = {
                    "confirmed_via": "webhook",
                    "webhook_event_type": command.event_type,
                }
            else:
                result = await self.payments.process_payment(
                    order.gateway, order.transaction_id, command.method_data
                )
                if not result.success or result.status != PaymentStatus.COMPLETED:
                    if result.status in (PaymentStatus.FAILED, PaymentStatus.CANCELLED):
                        reason = result.error or "Payment failed"
                        order = await self._fail_locked(order, reason, log, result.status)
                        return PaymentConfirmation(success=False, order=order, error=reason)
                    log.info("payment_still_pending", order_id=order_id, status=result.status.value)
                    return PaymentConfirmation(
                        success=False,
                        order=order,
                        error=f"Payment is still pending (status: {result.status.value})",
                    )
                details = {"confirmed_via": "client"}
                if result.transaction_id and result.transaction_id != order.transaction_id:
                    details["gateway_transaction_id"] = result.transaction_id

            confirmed = await self._complete_locked(order, details, log)

        await self._send_confirmation_email(confirmed, log)
        return PaymentConfirmation(success=True, order=confirmed)

    async def _complete_locked(self, order: Order, details: Dict[str, Any], log) -> Order:
        reserved = order.stock_reserved
        if not reserved:
            # Paid after a cancellation released the stock: take it back
            try:
                await self.stock.reserve_stock(order.reservation_lines())
                reserved = True
                await self._emit("STOCK_RESERVED", order, {"reason": "late_confirmation"})
            except CommerceError as e:
                log.error("paid_order_without_stock", order_id=order.id, error=e.message)
                await self._emit(
                    "MANUAL_INTERVENTION_REQUIRED",
                    order,
                    {"reason": "paid_without_stock", "error": e.message},
                    severity="CRITICAL",
                )

        order = await self.orders.update(order.transition(
            status=OrderStatus.PROCESSING,
            payment_status=PaymentStatus.COMPLETED,
            stock_reserved=reserved,
            payment_details={
                **order.payment_details,
                **details,
                "confirmed_at": utcnow().isoformat(),
            },
        ))
        log.info("payment_confirmed", order_id=order.id, order_number=order.order_number, via=details.get("confirmed_via"))
        await self._emit("PAYMENT_CONFIRMED", order, details)
        return order

    async def _send_confirmation_email(self, order: Order, log):
        try:
            user = await self.users.get(order.user_id)
            shipping = order.shipping_details
            if shipping is not None:
                to = shipping.email
                name = f"{shipping.first_name} {shipping.last_name}".strip()
            elif user is not None:
                to, name = user.email, user.full_name
            else:
                log.warning("email_skipped_no_recipient", order_id=order.id)
                return
            html = render_order_confirmation_email(order, name)
            await self.mail.send_email(to, order_confirmation_subject(order), html)
        except Exception as e:
            log.error("confirmation_email_failed", order_id=order.id, error=str(e))
            await self._emit("EMAIL_FAILED", order, {"error": str(e)}, severity="WARN")

    # =========================================================================
    # FAILURE
    # =========================================================================

    async def handle_payment_failure(self, order_id: str, reason: str) -> Optional[Order]:
        """Cancel and release stock. Never raises."""
        log = self._get_logger()
        try:
            async with self._locked(order_id):
                order = await self.orders.get(order_id)
                if order is None:
                    log.warning("payment_failure_unknown_order", order_id=order_id)
                    return None
                return await self._fail_locked(order, reason, log)
        except Exception as e:
            log.exception("payment_failure_handling_failed", order_id=order_id, error=str(e))
            return None

    async def _fail_locked(
        self,
        order: Order,
        reason: str,
        log,
        payment_status: PaymentStatus = PaymentStatus.FAILED,
    ) -> Order:
        if order.payment_status in TERMINAL_PAYMENT_STATUSES:
            log.info("payment_failure_ignored", order_id=order.id, payment_status=order.payment_status.value)
            return order
        if order.status == OrderStatus.CANCELLED and not order.stock_reserved:
            log.info("payment_failure_already_applied", order_id=order.id)
            return order

        if order.stock_reserved:
            await self.stock.release_stock(order.reservation_lines())
            await self._emit("STOCK_RELEASED", order, {"reason": reason})

        order = await self.orders.update(order.transition(
            status=OrderStatus.CANCELLED,
            payment_status=payment_status,
            stock_reserved=False,
            payment_details={
                **order.payment_details,
                "failure_reason": reason,
                "failed_at": utcnow().isoformat(),
            },
        ))
        log.warning("payment_failed", order_id=order.id, order_number=order.order_number, reason=reason)
        await self._emit("PAYMENT_FAILED", order, {"reason": reason, "status": payment_status.value}, severity="WARN")
        return order

    # =========================================================================
    # WEBHOOKS
    # =========================================================================

    async def apply_webhook(self, outcome: WebhookOutcome) -> Optional[Order]:
        """Apply a verified webhook; unknown transactions are logged and dropped"""
        log = self._get_logger()
        await self._emit("WEBHOOK_RECEIVED", None, {
            "gateway": outcome.gateway,
            "event_type": outcome.event_type,
            "payment_id": outcome.payment_id,
            "status": outcome.status.value if outcome.status else None,
        })
        if not outcome.payment_id or outcome.status is None:
            log.info("webhook_without_payment", gateway=outcome.gateway, event_type=outcome.event_type)
            return None
        try:
            return await self.update_payment_status_from_webhook(
                outcome.payment_id, outcome.status, outcome.event_type, outcome.gateway
            )
        except IntegrityError as e:
            log.warning("webhook_dropped", gateway=outcome.gateway, payment_id=outcome.payment_id, error=e.message)
            await self._emit("WEBHOOK_IGNORED", None, {
                "gateway": outcome.gateway,
                "payment_id": outcome.payment_id,
                "reason": e.message,
            }, severity="WARN")
            return None

    async def update_payment_status_from_webhook(
        self,
        transaction_id: str,
        status: PaymentStatus,
        event_type: Optional[str] = None,
        gateway: Optional[str] = None,
    ) -> Order:
        """
        Raises:
            IntegrityError: no order carries this transaction id
        """
        log = self._get_logger()
        order = await self.orders.get_by_transaction_id(transaction_id)
        if order is None:
            raise IntegrityError(f"No order found for transaction {transaction_id}")

        if status == PaymentStatus.COMPLETED:
            confirmation = await self.confirm_payment(
                order.id,
                ConfirmFromWebhook(
                    transaction_id=transaction_id,
                    status=status,
                    event_type=event_type,
                    gateway=gateway,
                ),
            )
            return confirmation.order

        async with self._locked(order.id):
            order = await self._require_order(order.id)
            current = order.payment_status

            if current == PaymentStatus.REFUNDED or (
                current == PaymentStatus.COMPLETED and status != PaymentStatus.REFUNDED
            ):
                log.info("webhook_ignored_terminal", order_id=order.id, current=current.value, incoming=status.value)
                return order

            if status == PaymentStatus.REFUNDED:
                if order.stock_reserved and current != PaymentStatus.COMPLETED:
                    await self.stock.release_stock(order.reservation_lines())
                    order = order.model_copy(update={"stock_reserved": False})
                order = await self.orders.update(order.transition(
                    status=OrderStatus.REFUNDED,
                    payment_status=PaymentStatus.REFUNDED,
                    payment_details={
                        **order.payment_details,
                        "refunded_via": "webhook",
                        "refunded_at": utcnow().isoformat(),
                    },
                ))
                await self._emit("PAYMENT_REFUNDED", order, {"via": "webhook", "event_type": event_type})
            elif status in (PaymentStatus.FAILED, PaymentStatus.CANCELLED):
                reason = f"Payment {status.value.lower()} ({event_type or 'webhook'})"
                order = await self._fail_locked(order, reason, log, status)
            elif (
                status == PaymentStatus.PROCESSING
                and current == PaymentStatus.PENDING
                and order.status != OrderStatus.CANCELLED
            ):
                order = await self.orders.update(order.transition(payment_status=PaymentStatus.PROCESSING))
            else:
                return order

            log.info("webhook_applied", order_id=order.id, status=status.value, event_type=event_type)
            await self._emit("WEBHOOK_APPLIED", order, {"status": status.value, "event_type": event_type})
            return order

    # =========================================================================
    # RETRY + REFUND
    # =========================================================================

    async def retry_payment(
        self,
        order_id: str,
        method_data: Optional[Dict[str, Any]] = None,
    ) -> PaymentConfirmation:
        order = await self._require_order(order_id)
        self._check_retry_eligible(order)

        if order.status == OrderStatus.CANCELLED or order.payment_status in (
            PaymentStatus.FAILED,
            PaymentStatus.CANCELLED,
        ):
            async with self._locked(order_id):
                order = await self._require_order(order_id)
                self._check_retry_eligible(order)
                if not order.stock_reserved:
                    await self.stock.reserve_stock(order.reservation_lines())
                order = await self.orders.update(order.transition(
                    status=OrderStatus.PENDING,
                    payment_status=PaymentStatus.PENDING,
                    stock_reserved=True,
                ))
                await self._emit("ORDER_UPDATED", order, {"reason": "payment_retry_reopened"})

        return await self.confirm_payment(order_id, ConfirmFromClient(method_data=method_data or {}))

    def _check_retry_eligible(self, order: Order):
        if order.payment_status == PaymentStatus.COMPLETED:
            raise ClientError("Order payment is already completed")
        if order.status in (OrderStatus.DELIVERED, OrderStatus.REFUNDED) or (
            order.payment_status == PaymentStatus.REFUNDED
        ):
            raise ClientError("Order is not eligible for payment retry")

    async def refund_order(
        self,
        order_id: str,
        amount: Optional[Decimal] = None,
        reason: Optional[str] = None,
    ) -> RefundResult:
        """Full refund (amount omitted) or partial refund of a COMPLETED payment"""
        log = self._get_logger()
        async with self._locked(order_id):
            order = await self._require_order(order_id)
            if order.payment_status != PaymentStatus.COMPLETED:
                raise ClientError("Only completed payments can be refunded")

            already = Decimal(str(order.payment_details.get("refunded_amount", "0")))
            remaining = order.total - already
            if amount is not None and amount > remaining:
                raise ClientError(f"Refund amount exceeds refundable balance ({remaining})")

            payment_id = order.payment_details.get("gateway_transaction_id") or order.transaction_id
            result = await self.payments.refund_payment(order.gateway, payment_id, amount)
            if not result.success:
                log.warning("refund_rejected", order_id=order.id, error=result.error)
                return RefundResult(success=False, order=order, refund=result, error=result.error)

            refunded = already + (amount if amount is not None else remaining)
            details = {
                **order.payment_details,
                "refunded_amount": str(_round(refunded)),
                "refund_id": result.transaction_id or result.payment_id,
                "refund_reason": reason,
                "refunded_at": utcnow().isoformat(),
            }
            if refunded >= order.total:
                order = await self.orders.update(order.transition(
                    status=OrderStatus.REFUNDED,
                    payment_status=PaymentStatus.REFUNDED,
                    payment_details=details,
                ))
            else:
                order = await self.orders.update(order.transition(payment_details=details))

            log.info("order_refunded", order_id=order.id, amount=str(refunded), full=order.payment_status == PaymentStatus.REFUNDED)
            await self._emit("PAYMENT_REFUNDED", order, {
                "amount": str(amount if amount is not None else remaining),
                "reason": reason,
                "via": "api",
            })
            return RefundResult(success=True, order=order, refund=result)

    # =========================================================================
    # QUERIES + ADMIN
    # =========================================================================

    async def find_one(self, order_id: str) -> Order:
        return await self._require_order(order_id)

    async def find_all(
        self,
        page: int = 1,
        limit: int = 10,
        status: Optional[OrderStatus] = None,
    ) -> OrderPage:
        page = max(page, 1)
        limit = max(limit, 1)
        orders, total = await self.orders.list(page=page, limit=limit, status=status)
        return OrderPage(orders=orders, total=total, page=page, total_pages=ceil(total / limit))

    async def find_by_transaction_id(self, transaction_id: str) -> Optional[Order]:
        return await self.orders.get_by_transaction_id(transaction_id)

    async def update(self, order_id: str, request: UpdateOrderRequest) -> Order:
        async with self._locked(order_id):
            order = await self._require_order(order_id)
            changes: Dict[str, Any] = {}
            if request.status is not None:
                changes["status"] = request.status
            if request.payment_status is not None and request.payment_status != order.payment_status:
                if order.payment_status in TERMINAL_PAYMENT_STATUSES:
                    raise ClientError(
                        f"Cannot change payment status of a {order.payment_status.value} order"
                    )
                changes["payment_status"] = request.payment_status
            if not changes:
                return order
            order = await self.orders.update(order.transition(**changes))
            await self._emit("ORDER_UPDATED", order, {k: v.value for k, v in changes.items()})
            return order

    async def remove(self, order_id: str) -> Order:
        """Cancel an order, returning reserved stock unless it was paid for"""
        async with self._locked(order_id):
            order = await self._require_order(order_id)
            if order.status == OrderStatus.DELIVERED:
                raise ClientError("Cannot cancel delivered order")
            if order.status == OrderStatus.CANCELLED:
                return order

            reserved = order.stock_reserved
            if order.payment_status != PaymentStatus.COMPLETED and reserved:
                await self.stock.release_stock(order.reservation_lines())
                await self._emit("STOCK_RELEASED", order, {"reason": "order_cancelled"})
                reserved = False

            order = await self.orders.update(order.transition(status=OrderStatus.CANCELLED, stock_reserved=reserved))
            self._base_logger.info("order_cancelled", order_id=order.id, order_number=order.order_number)
            await self._emit("ORDER_CANCELLED", order)
            return order

    async def get_payment_status(self, order_id: str) -> PaymentStatusView:
        order = await self._require_order(order_id)
        return PaymentStatusView(
            order_id=order.id,
            order_number=order.order_number,
            payment_status=order.payment_status,
            order_status=order.status,
            transaction_id=order.transaction_id,
            payment_method=order.payment_method,
            total=order.total,
            can_retry=order.payment_status in (PaymentStatus.FAILED, PaymentStatus.PENDING),
            requires_action=(
                order.payment_status == PaymentStatus.PENDING and order.status == OrderStatus.PENDING
            ),
        )

    async def get_order_events(self, order_id: str) -> List[SystemEvent]:
        return await self.events.get_for_order(order_id)
