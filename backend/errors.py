"""
Error Taxonomy
==============
Structured exceptions raised by the checkout core.

Every error carries a human-safe ``message`` and a stable ``code``. The
HTTP layer maps each family to a status code; nothing here knows about HTTP.

- ClientError    -> 400 (bad input, never retried)
- ConflictError  -> 409 (caller must resubmit with corrected data)
- NotFoundError  -> 404
- GatewayError   -> 502 (processor timeout, decline, bad signature)
- IntegrityError -> logged and dropped (webhook for unknown transaction)
"""

from typing import Optional


class CommerceError(Exception):
    """Base class for all expected failures"""

    code = "commerce_error"

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code


class ClientError(CommerceError):
    code = "client_error"


class ConflictError(CommerceError):
    code = "conflict"


class NotFoundError(CommerceError):
    code = "not_found"


class GatewayError(CommerceError):
    code = "gateway_error"

    def __init__(self, message: str, gateway: Optional[str] = None, code: Optional[str] = None):
        super().__init__(message, code)
        self.gateway = gateway


class IntegrityError(CommerceError):
    code = "integrity_error"


# =============================================================================
# SPECIALISED ERRORS
# =============================================================================

class UnsupportedGateway(ClientError):
    code = "unsupported_gateway"

    def __init__(self, gateway: str):
        super().__init__(f"Unsupported payment gateway: {gateway}")
        self.gateway = gateway


class UnsupportedCurrency(ClientError):
    code = "unsupported_currency"

    def __init__(self, currency: str, supported: Optional[list] = None):
        message = f"Unsupported currency: {currency}"
        if supported:
            message += f". Supported currencies: {', '.join(supported)}"
        super().__init__(message)
        self.currency = currency


class InvalidSignature(GatewayError):
    code = "invalid_signature"

    def __init__(self, gateway: str, reason: str = "Invalid webhook signature"):
        super().__init__(reason, gateway=gateway)


class InsufficientStock(ConflictError):
    code = "insufficient_stock"


class DuplicateOrderNumber(ConflictError):
    code = "duplicate_order_number"


class OrderLockTimeout(ConflictError):
    code = "order_locked"


__all__ = [
    "CommerceError",
    "ClientError",
    "ConflictError",
    "NotFoundError",
    "GatewayError",
    "IntegrityError",
    "UnsupportedGateway",
    "UnsupportedCurrency",
    "InvalidSignature",
    "InsufficientStock",
    "DuplicateOrderNumber",
    "OrderLockTimeout",
]
