"""
Payment Service
===============
Routes payment operations to the right processor adapter.

- Registry is injected once at construction and is read-only afterwards
- Intent creation errors propagate (they abort the purchase)
- Confirmation and refund errors come back as failed PaymentResults
- Webhooks are verified, then interpreted into (payment id, status)
"""

from decimal import Decimal
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional

import structlog

from errors import CommerceError, UnsupportedGateway
from payment.base import IPaymentGateway, Payload
from payment.config import GatewayConfig
from payment.webhooks import interpret_webhook
from schemas.payment import (
    GatewayName,
    PaymentIntent,
    PaymentMethodType,
    PaymentResult,
    PaymentStatus,
    WebhookOutcome,
)

logger = structlog.get_logger().bind(component="payment_service")


SUPPORTED_METHODS: Mapping[PaymentMethodType, tuple] = MappingProxyType({
    PaymentMethodType.CREDIT_CARD: (GatewayName.STRIPE.value,),
    PaymentMethodType.PAYPAL: (GatewayName.PAYPAL.value,),
    PaymentMethodType.CRYPTO: (
        GatewayName.COINBASE.value,
        GatewayName.BITPAY.value,
        GatewayName.NOWPAYMENTS.value,
    ),
    PaymentMethodType.BINANCE_PAY: (GatewayName.BINANCE_PAY.value,),
})


def build_default_gateways(config: Optional[GatewayConfig] = None) -> Dict[str, IPaymentGateway]:
    """One adapter per processor, keyed by gateway id"""
    from payment.binance_pay_gateway import BinancePayGateway
    from payment.bitpay_gateway import BitPayGateway
    from payment.coinbase_gateway import CoinbaseGateway
    from payment.nowpayments_gateway import NowPaymentsGateway
    from payment.paypal_gateway import PayPalGateway
    from payment.stripe_gateway import StripeGateway

    adapters: List[IPaymentGateway] = [
        StripeGateway(config),
        PayPalGateway(config),
        CoinbaseGateway(config),
        BitPayGateway(config),
        NowPaymentsGateway(config),
        BinancePayGateway(config),
    ]
    return {adapter.name: adapter for adapter in adapters}


class PaymentService:
    """
    Gateway registry + orchestration.

    Example:
        payments = PaymentService({"stripe": StripeGateway()})
        intent = await payments.create_payment_intent(
            PaymentMethodType.CREDIT_CARD, "stripe", Decimal("56.14"), "USD", {}
        )
    """

    def __init__(self, gateways: Optional[Mapping[str, IPaymentGateway]] = None):
        registry = dict(gateways) if gateways is not None else build_default_gateways()
        self._gateways: Mapping[str, IPaymentGateway] = MappingProxyType(registry)
        logger.info("payment_service_initialized", gateways=sorted(registry))

    @property
    def gateways(self) -> Mapping[str, IPaymentGateway]:
        return self._gateways

    def get_gateway(self, gateway: str) -> IPaymentGateway:
        adapter = self._gateways.get(gateway)
        if adapter is None:
            raise UnsupportedGateway(gateway)
        return adapter

    async def create_payment_intent(
        self,
        method_type: PaymentMethodType,
        gateway: str,
        amount: Decimal,
        currency: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> PaymentIntent:
        adapter = self.get_gateway(gateway)
        logger.info(
            "payment_intent_requested",
            method=method_type.value,
            gateway=gateway,
            amount=str(amount),
            currency=currency,
        )
        try:
            intent = await adapter.create_payment_intent(amount, currency, metadata or {})
        except Exception as e:
            logger.error("payment_intent_failed", gateway=gateway, error=str(e), error_type=type(e).__name__)
            raise
        logger.info("payment_intent_created", gateway=gateway, intent_id=intent.id, status=intent.status.value)
        return intent

    async def process_payment(
        self,
        gateway: str,
        intent_id: str,
        method_data: Optional[Dict[str, Any]] = None,
    ) -> PaymentResult:
        adapter = self.get_gateway(gateway)
        try:
            result = await adapter.confirm_payment(intent_id, method_data or {})
        except CommerceError as e:
            logger.error("payment_confirmation_failed", gateway=gateway, intent_id=intent_id, error=e.message)
            return PaymentResult.failure(intent_id, e.message)
        except Exception as e:
            logger.exception("payment_confirmation_crashed", gateway=gateway, intent_id=intent_id, error=str(e))
            return PaymentResult.failure(intent_id, "Payment confirmation failed")
        logger.info("payment_processed", gateway=gateway, intent_id=intent_id, status=result.status.value)
        return result

    async def refund_payment(
        self,
        gateway: str,
        payment_id: str,
        amount: Optional[Decimal] = None,
    ) -> PaymentResult:
        adapter = self.get_gateway(gateway)
        try:
            result = await adapter.refund_payment(payment_id, amount)
        except CommerceError as e:
            logger.error("refund_failed", gateway=gateway, payment_id=payment_id, error=e.message)
            return PaymentResult.failure(payment_id, e.message)
        except Exception as e:
            logger.exception("refund_crashed", gateway=gateway, payment_id=payment_id, error=str(e))
            return PaymentResult.failure(payment_id, "Refund failed")
        logger.info("refund_processed", gateway=gateway, payment_id=payment_id, success=result.success)
        return result

    async def get_payment_status(self, gateway: str, payment_id: str) -> PaymentStatus:
        return await self.get_gateway(gateway).get_payment_status(payment_id)

    async def handle_webhook(
        self,
        gateway: str,
        payload: Payload,
        signature: Optional[str],
        headers: Optional[Mapping[str, str]] = None,
    ) -> WebhookOutcome:
        """Verify and interpret; never raises"""
        try:
            adapter = self.get_gateway(gateway)
            event = await adapter.verify_webhook(payload, signature, headers)
        except CommerceError as e:
            logger.warning("webhook_rejected", gateway=gateway, error=e.message)
            return WebhookOutcome(success=False, gateway=gateway, error=e.message)
        except Exception as e:
            logger.exception("webhook_verification_crashed", gateway=gateway, error=str(e))
            return WebhookOutcome(success=False, gateway=gateway, error="Webhook verification failed")

        payment_id, status = interpret_webhook(gateway, event)
        logger.info(
            "webhook_verified",
            gateway=gateway,
            event_type=event.type,
            payment_id=payment_id,
            status=status.value,
        )
        return WebhookOutcome(
            success=True,
            gateway=gateway,
            payment_id=payment_id,
            status=status,
            event_type=event.type,
        )

    def validate_payment_method(self, method_type: PaymentMethodType, gateway: str) -> bool:
        return gateway in SUPPORTED_METHODS.get(method_type, ()) and gateway in self._gateways

    def get_supported_payment_methods(self) -> List[Dict[str, Any]]:
        methods = []
        for method_type, gateways in SUPPORTED_METHODS.items():
            available = [g for g in gateways if g in self._gateways]
            if available:
                methods.append({"type": method_type.value, "gateways": available})
        return methods

    async def close(self):
        for adapter in self._gateways.values():
            await adapter.close()
