"""
Coinbase Commerce Gateway
=========================
Hosted crypto checkout through the charges API.

- Status is the last entry of the charge timeline
- Refunds are manual (dashboard only); no network call is made
- Webhooks: HMAC-SHA256 hex of the raw body, header x-cc-webhook-signature
"""

import hashlib
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional

from errors import GatewayError, InvalidSignature
from payment.base import (
    HttpGateway,
    Payload,
    format_amount,
    hmac_hexdigest,
    parse_webhook_body,
    require_webhook_secret,
    signatures_match,
)
from schemas.payment import PaymentIntent, PaymentResult, PaymentStatus, WebhookEvent


COINBASE_STATUSES = {
    "new": PaymentStatus.PENDING,
    "signed": PaymentStatus.PENDING,
    "pending": PaymentStatus.PROCESSING,
    "unresolved": PaymentStatus.PROCESSING,
    "resolved": PaymentStatus.PROCESSING,
    "completed": PaymentStatus.COMPLETED,
    "confirmed": PaymentStatus.COMPLETED,
    "expired": PaymentStatus.CANCELLED,
    "canceled": PaymentStatus.CANCELLED,
}

MANUAL_REFUND_MESSAGE = "Coinbase Commerce refunds require manual processing through the dashboard"


def timeline_status(charge: Dict[str, Any]) -> Optional[str]:
    timeline = charge.get("timeline") or []
    if timeline:
        return timeline[-1].get("status")
    return charge.get("status")


class CoinbaseGateway(HttpGateway):
    name = "coinbase"
    display_name = "Coinbase Commerce"
    supported_currencies = frozenset({"USD", "EUR", "GBP", "CAD", "AUD"})
    status_table = COINBASE_STATUSES

    def _base_url(self) -> str:
        return "https://api.commerce.coinbase.com"

    def _default_headers(self) -> Dict[str, str]:
        headers = super()._default_headers()
        headers["X-CC-Api-Key"] = self.config.COINBASE_COMMERCE_API_KEY
        headers["X-CC-Version"] = "2018-03-22"
        return headers

    async def create_payment_intent(
        self,
        amount: Decimal,
        currency: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> PaymentIntent:
        code = self.ensure_currency(currency)
        metadata = metadata or {}
        frontend = self.config.FRONTEND_URL.rstrip("/")
        body = {
            "name": "VirtualGifts Order",
            "description": metadata.get("description") or "VirtualGifts Purchase",
            "pricing_type": "fixed_price",
            "local_price": {"amount": format_amount(amount), "currency": code},
            "metadata": {
                "orderNumber": metadata.get("orderNumber"),
                "customerEmail": metadata.get("customerEmail"),
            },
            "redirect_url": metadata.get("returnUrl") or f"{frontend}/payment/success",
            "cancel_url": metadata.get("cancelUrl") or f"{frontend}/payment/cancel",
        }
        charge = self._json(await self._request("POST", "/charges", json=body), "charge creation")["data"]
        native = timeline_status(charge)

        self._logger.info("intent_created", intent_id=charge["id"], code=charge.get("code"))
        return PaymentIntent(
            id=charge["id"],
            amount=amount,
            currency=code,
            status=self.map_status(native),
            client_secret=charge.get("hosted_url"),
            metadata={**metadata, "nativeStatus": native, "chargeCode": charge.get("code")},
        )

    async def _charge(self, charge_id: str) -> Dict[str, Any]:
        response = await self._request("GET", f"/charges/{charge_id}", read_only=True)
        return self._json(response, "charge lookup")["data"]

    async def confirm_payment(
        self,
        intent_id: str,
        method_data: Optional[Dict[str, Any]] = None,
    ) -> PaymentResult:
        try:
            charge = await self._charge(intent_id)
        except GatewayError as e:
            return PaymentResult.failure(intent_id, e.message)

        native = timeline_status(charge)
        status = self.map_status(native)
        price = (charge.get("pricing") or {}).get("local") or {}
        return PaymentResult(
            success=status == PaymentStatus.COMPLETED,
            payment_id=intent_id,
            transaction_id=charge.get("id") or intent_id,
            status=status,
            amount=Decimal(price.get("amount", "0")),
            currency=price.get("currency", "USD"),
            gateway_response={"timeline_status": native, "code": charge.get("code")},
            error=None if status == PaymentStatus.COMPLETED else f"Payment status: {native}",
        )

    async def refund_payment(self, payment_id: str, amount: Optional[Decimal] = None) -> PaymentResult:
        self._logger.warning("manual_refund_required", payment_id=payment_id)
        return PaymentResult.failure(payment_id, MANUAL_REFUND_MESSAGE)

    async def verify_webhook(
        self,
        payload: Payload,
        signature: Optional[str],
        headers: Optional[Mapping[str, str]] = None,
    ) -> WebhookEvent:
        secret = require_webhook_secret(self.name, self.config.COINBASE_COMMERCE_WEBHOOK_SECRET)
        expected = hmac_hexdigest(secret, payload, hashlib.sha256)
        if not signatures_match(expected, signature):
            self._logger.warning("webhook_signature_invalid")
            raise InvalidSignature(self.name)

        body = parse_webhook_body(self.name, payload)
        # Commerce wraps the event in an "event" envelope
        event = body.get("event") if isinstance(body.get("event"), dict) else body
        return WebhookEvent(
            id=event.get("id") or "",
            type=event.get("type") or "charge:unknown",
            data=event.get("data") or {},
            signature=signature,
        )

    async def get_payment_status(self, payment_id: str) -> PaymentStatus:
        try:
            charge = await self._charge(payment_id)
        except GatewayError as e:
            self._logger.error("status_poll_failed", payment_id=payment_id, error=e.message)
            return PaymentStatus.FAILED
        return self.map_status(timeline_status(charge))
