# payment/__init__.py
# ============================================================================
# VIRTUAL GIFTS BACKEND: PAYMENT MODULE
# ============================================================================
# Processor adapters, webhook interpretation and the gateway registry
# ============================================================================

from payment.base import IPaymentGateway, HttpGateway
from payment.config import GatewayConfig
from payment.service import PaymentService, SUPPORTED_METHODS, build_default_gateways
from payment.webhooks import interpret_webhook

__all__ = [
    "IPaymentGateway",
    "HttpGateway",
    "GatewayConfig",
    "PaymentService",
    "SUPPORTED_METHODS",
    "build_default_gateways",
    "interpret_webhook",
]
