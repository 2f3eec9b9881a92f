"""
Webhook Interpretation
======================
Second mapping layer: turns a verified WebhookEvent into the payment id the
order is keyed by (Order.transaction_id) and a normalized PaymentStatus.

One event table per processor. Unknown event types read as PENDING, which
the order state machine treats as "no change".
"""

from typing import Callable, Dict, Optional, Tuple

import structlog

from schemas.payment import PaymentStatus, WebhookEvent

logger = structlog.get_logger().bind(component="webhook_router")


# =============================================================================
# EVENT TABLES
# =============================================================================

STRIPE_WEBHOOK_EVENTS = {
    "payment_intent.succeeded": PaymentStatus.COMPLETED,
    "payment_intent.processing": PaymentStatus.PROCESSING,
    "payment_intent.payment_failed": PaymentStatus.FAILED,
    "payment_intent.canceled": PaymentStatus.CANCELLED,
    "charge.dispute.created": PaymentStatus.REFUNDED,
}

PAYPAL_WEBHOOK_EVENTS = {
    "PAYMENT.CAPTURE.COMPLETED": PaymentStatus.COMPLETED,
    "PAYMENT.CAPTURE.DENIED": PaymentStatus.FAILED,
    "PAYMENT.CAPTURE.REFUNDED": PaymentStatus.REFUNDED,
}

COINBASE_WEBHOOK_EVENTS = {
    "charge:pending": PaymentStatus.PROCESSING,
    "charge:confirmed": PaymentStatus.COMPLETED,
    "charge:failed": PaymentStatus.FAILED,
    "payment.completed": PaymentStatus.COMPLETED,
    "payment.failed": PaymentStatus.FAILED,
}

BITPAY_WEBHOOK_EVENTS = {
    **COINBASE_WEBHOOK_EVENTS,
    "invoice_paid": PaymentStatus.PROCESSING,
    "invoice_confirmed": PaymentStatus.COMPLETED,
    "invoice_complete": PaymentStatus.COMPLETED,
    "invoice_invalid": PaymentStatus.FAILED,
    "invoice_declined": PaymentStatus.FAILED,
    "invoice_expired": PaymentStatus.CANCELLED,
}

# NOWPayments IPNs carry no event name; the payment_status field is the event
NOWPAYMENTS_WEBHOOK_STATUSES = {
    "waiting": PaymentStatus.PENDING,
    "confirming": PaymentStatus.PENDING,
    "partially_paid": PaymentStatus.PENDING,
    "confirmed": PaymentStatus.PROCESSING,
    "sending": PaymentStatus.PROCESSING,
    "finished": PaymentStatus.COMPLETED,
    "failed": PaymentStatus.FAILED,
    "expired": PaymentStatus.CANCELLED,
    "refunded": PaymentStatus.REFUNDED,
}

BINANCE_WEBHOOK_EVENTS = {
    "PAY_SUCCESS": PaymentStatus.COMPLETED,
    "PAY_CLOSE": PaymentStatus.CANCELLED,
    "PAY_CLOSED": PaymentStatus.CANCELLED,
    "PAY_REFUND": PaymentStatus.REFUNDED,
    "PAY_FAILED": PaymentStatus.FAILED,
}


# =============================================================================
# INTERPRETER REGISTRY
# =============================================================================

Interpretation = Tuple[Optional[str], PaymentStatus]
Interpreter = Callable[[WebhookEvent], Interpretation]


class WebhookInterpreters:
    """Per-gateway (payment id, status) extraction"""

    def __init__(self):
        self._interpreters: Dict[str, Interpreter] = {}

    def register(self, gateway: str):
        """Decorator to register the interpreter for a gateway"""
        def decorator(fn: Interpreter):
            self._interpreters[gateway] = fn
            return fn
        return decorator

    def interpret(self, gateway: str, event: WebhookEvent) -> Interpretation:
        fn = self._interpreters.get(gateway)
        if fn is None:
            logger.warning("no_interpreter", gateway=gateway, event_type=event.type)
            return None, PaymentStatus.PENDING
        return fn(event)

    @property
    def supported_gateways(self) -> list:
        return list(self._interpreters.keys())


interpreters = WebhookInterpreters()


def _str_or_none(value) -> Optional[str]:
    return str(value) if value not in (None, "") else None


@interpreters.register("stripe")
def _stripe(event: WebhookEvent) -> Interpretation:
    obj = event.data.get("object") or {}
    # Disputes and charges point back at their payment intent
    payment_id = obj.get("payment_intent") if obj.get("object") != "payment_intent" else None
    return _str_or_none(payment_id or obj.get("id")), STRIPE_WEBHOOK_EVENTS.get(event.type, PaymentStatus.PENDING)


@interpreters.register("paypal")
def _paypal(event: WebhookEvent) -> Interpretation:
    resource = event.data
    related = (resource.get("supplementary_data") or {}).get("related_ids") or {}
    payment_id = related.get("order_id") or resource.get("id")
    return _str_or_none(payment_id), PAYPAL_WEBHOOK_EVENTS.get(event.type, PaymentStatus.PENDING)


@interpreters.register("coinbase")
def _coinbase(event: WebhookEvent) -> Interpretation:
    payment_id = event.data.get("id") or event.data.get("payment_id")
    return _str_or_none(payment_id), COINBASE_WEBHOOK_EVENTS.get(event.type, PaymentStatus.PENDING)


@interpreters.register("bitpay")
def _bitpay(event: WebhookEvent) -> Interpretation:
    payment_id = event.data.get("id") or event.data.get("payment_id")
    return _str_or_none(payment_id), BITPAY_WEBHOOK_EVENTS.get(event.type, PaymentStatus.PENDING)


@interpreters.register("nowpayments")
def _nowpayments(event: WebhookEvent) -> Interpretation:
    status = str(event.data.get("payment_status") or "").lower()
    return (
        _str_or_none(event.data.get("payment_id")),
        NOWPAYMENTS_WEBHOOK_STATUSES.get(status, PaymentStatus.PENDING),
    )


@interpreters.register("binance_pay")
def _binance_pay(event: WebhookEvent) -> Interpretation:
    payment_id = event.data.get("prepayId") or event.data.get("merchantTradeNo")
    return _str_or_none(payment_id), BINANCE_WEBHOOK_EVENTS.get(event.type, PaymentStatus.PENDING)


def interpret_webhook(gateway: str, event: WebhookEvent) -> Interpretation:
    return interpreters.interpret(gateway, event)
