# services/__init__.py
# ============================================================================
# VIRTUAL GIFTS BACKEND: SERVICES MODULE
# ============================================================================
# Checkout orchestration, stock, carts, customers and mail
# ============================================================================

from services.order_service import OrderService, OrderConfig
from services.stock_validation import StockValidationService, StockValidationResult
from services.cart_service import CartService
from services.user_identification import UserIdentificationService
from services.mail_service import (
    IMailSender,
    LoggingMailSender,
    SendGridMailSender,
    build_mail_sender,
)
from services.order_number import (
    generate_order_number,
    generate_transaction_id,
    validate_order_number,
)

__all__ = [
    # Orchestration
    "OrderService",
    "OrderConfig",
    # Collaborators
    "StockValidationService",
    "StockValidationResult",
    "CartService",
    "UserIdentificationService",
    # Mail
    "IMailSender",
    "LoggingMailSender",
    "SendGridMailSender",
    "build_mail_sender",
    # Order numbers
    "generate_order_number",
    "generate_transaction_id",
    "validate_order_number",
]
