"""
Stripe Gateway
==============
Card payments through the PaymentIntents API.

- Amounts converted to cents
- Idempotency key per order number on intent creation
- Confirm skips intents that already succeeded
- Webhooks verified with stripe.Webhook.construct_event

The stripe SDK is synchronous; calls run in a worker thread.

pip install stripe
"""

import asyncio
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional

import stripe
import structlog

from errors import GatewayError, InvalidSignature
from payment.base import (
    IPaymentGateway,
    Payload,
    parse_webhook_body,
    raw_bytes,
    require_webhook_secret,
    to_minor_units,
)
from payment.config import GatewayConfig, config as default_config
from schemas.payment import PaymentIntent, PaymentResult, PaymentStatus, WebhookEvent


STRIPE_STATUSES = {
    "requires_payment_method": PaymentStatus.PENDING,
    "requires_confirmation": PaymentStatus.PENDING,
    "requires_action": PaymentStatus.PENDING,
    "processing": PaymentStatus.PROCESSING,
    "requires_capture": PaymentStatus.PROCESSING,
    "succeeded": PaymentStatus.COMPLETED,
    "canceled": PaymentStatus.CANCELLED,
}


def sanitize_stripe_error(error: Exception) -> str:
    """Customer-safe message for a Stripe SDK error"""
    if isinstance(error, stripe.CardError):
        return f"Card error: {error.user_message or 'Card declined'}"
    if isinstance(error, stripe.InvalidRequestError):
        return "Invalid payment request"
    if isinstance(error, stripe.APIConnectionError):
        return "Network error, please try again"
    if isinstance(error, stripe.AuthenticationError):
        return "Payment service authentication error"
    if isinstance(error, stripe.RateLimitError):
        return "Too many requests, please try again later"
    if isinstance(error, stripe.IdempotencyError):
        return "Duplicate request detected"
    if isinstance(error, stripe.APIError):
        return "Payment service temporarily unavailable"
    return "Payment processing error"


class StripeGateway(IPaymentGateway):
    name = "stripe"
    display_name = "Stripe"
    supported_currencies = frozenset({"USD", "EUR", "GBP", "CAD", "AUD"})
    status_table = STRIPE_STATUSES

    def __init__(self, config: Optional[GatewayConfig] = None):
        self.config = config or default_config
        self._logger = structlog.get_logger().bind(component="stripe_gateway")

        stripe.max_network_retries = self.config.GATEWAY_MAX_RETRIES
        stripe.default_http_client = stripe.RequestsClient(timeout=self.config.GATEWAY_TIMEOUT_SECONDS)

    async def _call(self, fn, *args, **kwargs):
        return await asyncio.to_thread(fn, *args, api_key=self.config.STRIPE_SECRET_KEY, **kwargs)

    async def create_payment_intent(
        self,
        amount: Decimal,
        currency: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> PaymentIntent:
        code = self.ensure_currency(currency)
        metadata = metadata or {}
        params: Dict[str, Any] = {
            "amount": to_minor_units(amount),
            "currency": code.lower(),
            "automatic_payment_methods": {"enabled": True, "allow_redirects": "never"},
            # Stripe metadata values must be strings
            "metadata": {k: str(v) for k, v in metadata.items() if v is not None},
        }
        if metadata.get("orderNumber"):
            params["idempotency_key"] = f"pi_{metadata['orderNumber']}"
        if metadata.get("customerEmail"):
            params["receipt_email"] = metadata["customerEmail"]

        try:
            intent = await self._call(stripe.PaymentIntent.create, **params)
        except stripe.StripeError as e:
            self._logger.error("intent_create_failed", error=str(e), error_type=type(e).__name__)
            raise GatewayError(sanitize_stripe_error(e), gateway=self.name) from e

        self._logger.info("intent_created", intent_id=intent.id, status=intent.status)
        return PaymentIntent(
            id=intent.id,
            amount=Decimal(intent.amount) / 100,
            currency=intent.currency.upper(),
            status=self.map_status(intent.status),
            client_secret=intent.client_secret,
            metadata={**metadata, "nativeStatus": intent.status},
        )

    def _result(self, intent) -> PaymentResult:
        status = self.map_status(intent.status)
        return PaymentResult(
            success=status == PaymentStatus.COMPLETED,
            payment_id=intent.id,
            transaction_id=intent.id,
            status=status,
            amount=Decimal(intent.amount) / 100,
            currency=intent.currency.upper(),
            gateway_response={"status": intent.status, "latest_charge": intent.get("latest_charge")},
            error=None if status == PaymentStatus.COMPLETED else f"Payment status: {intent.status}",
        )

    async def confirm_payment(
        self,
        intent_id: str,
        method_data: Optional[Dict[str, Any]] = None,
    ) -> PaymentResult:
        method_data = method_data or {}
        try:
            intent = await self._call(stripe.PaymentIntent.retrieve, intent_id)
            if intent.status == "succeeded":
                return self._result(intent)

            params: Dict[str, Any] = {}
            if method_data.get("payment_method"):
                params["payment_method"] = method_data["payment_method"]
            if method_data.get("return_url"):
                params["return_url"] = method_data["return_url"]
            if intent.status in ("requires_confirmation", "requires_payment_method") and params:
                intent = await self._call(stripe.PaymentIntent.confirm, intent_id, **params)
            return self._result(intent)

        except stripe.StripeError as e:
            self._logger.error("confirm_failed", intent_id=intent_id, error=str(e))
            return PaymentResult.failure(intent_id, sanitize_stripe_error(e))

    async def refund_payment(self, payment_id: str, amount: Optional[Decimal] = None) -> PaymentResult:
        params: Dict[str, Any] = {"payment_intent": payment_id}
        if amount is not None:
            params["amount"] = to_minor_units(amount)
        try:
            refund = await self._call(stripe.Refund.create, **params)
        except stripe.StripeError as e:
            self._logger.error("refund_failed", payment_id=payment_id, error=str(e))
            return PaymentResult.failure(payment_id, sanitize_stripe_error(e))

        succeeded = refund.status == "succeeded"
        return PaymentResult(
            success=succeeded or refund.status == "pending",
            payment_id=payment_id,
            transaction_id=refund.id,
            status=PaymentStatus.REFUNDED if succeeded else PaymentStatus.PROCESSING,
            amount=Decimal(refund.amount) / 100,
            currency=refund.currency.upper(),
            gateway_response={"refund_status": refund.status},
        )

    async def verify_webhook(
        self,
        payload: Payload,
        signature: Optional[str],
        headers: Optional[Mapping[str, str]] = None,
    ) -> WebhookEvent:
        if not signature:
            raise InvalidSignature(self.name, "Missing stripe-signature header")
        secret = require_webhook_secret(self.name, self.config.STRIPE_WEBHOOK_SECRET)
        try:
            stripe.Webhook.construct_event(raw_bytes(payload), signature, secret)
        except stripe.SignatureVerificationError as e:
            self._logger.warning("webhook_signature_invalid", error=str(e))
            raise InvalidSignature(self.name) from e
        except ValueError as e:
            raise InvalidSignature(self.name, "Malformed webhook payload") from e

        body = parse_webhook_body(self.name, payload)
        return WebhookEvent(
            id=body.get("id") or "",
            type=body.get("type", "unknown"),
            data=body.get("data") or {},
            signature=signature,
        )

    async def get_payment_status(self, payment_id: str) -> PaymentStatus:
        try:
            intent = await self._call(stripe.PaymentIntent.retrieve, payment_id)
        except stripe.StripeError as e:
            self._logger.error("status_poll_failed", payment_id=payment_id, error=str(e))
            return PaymentStatus.FAILED
        return self.map_status(intent.status)


__all__ = ["StripeGateway", "STRIPE_STATUSES", "sanitize_stripe_error"]
