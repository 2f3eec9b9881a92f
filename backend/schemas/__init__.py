# schemas/__init__.py
# ============================================================================
# VIRTUAL GIFTS BACKEND: SCHEMAS MODULE
# ============================================================================
# Pydantic entities, payment vocabulary and request/response bodies
# ============================================================================

from schemas.payment import (
    PaymentStatus,
    PaymentMethodType,
    GatewayName,
    PaymentIntent,
    PaymentResult,
    WebhookEvent,
    WebhookOutcome,
    ConfirmFromWebhook,
    ConfirmFromClient,
    PaymentMethod,
)

from schemas.commerce import (
    Product,
    ProductStatus,
    User,
    Cart,
    CartItem,
    Order,
    OrderItem,
    OrderStatus,
    OrderTotals,
    StockLine,
)

from schemas.checkout import (
    CreateOrderRequest,
    PurchaseResult,
    PaymentConfirmation,
    RefundResult,
)

__all__ = [
    # Payment vocabulary
    "PaymentStatus",
    "PaymentMethodType",
    "GatewayName",
    "PaymentIntent",
    "PaymentResult",
    "WebhookEvent",
    "WebhookOutcome",
    "ConfirmFromWebhook",
    "ConfirmFromClient",
    "PaymentMethod",
    # Commerce entities
    "Product",
    "ProductStatus",
    "User",
    "Cart",
    "CartItem",
    "Order",
    "OrderItem",
    "OrderStatus",
    "OrderTotals",
    "StockLine",
    # Checkout
    "CreateOrderRequest",
    "PurchaseResult",
    "PaymentConfirmation",
    "RefundResult",
]
