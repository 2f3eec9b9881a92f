"""
NOWPayments Gateway
===================
Direct crypto payments through the /payment API (x-api-key auth).

- Default pay currency is usdt unless the checkout picks another coin
- Refunds are manual (dashboard only); no network call is made
- IPN: HMAC-SHA512 over the JSON body with keys sorted recursively and
  compact separators, header x-nowpayments-sig, compared case-insensitively
"""

import hashlib
import json
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional

from errors import GatewayError, InvalidSignature
from payment.base import (
    HttpGateway,
    Payload,
    hmac_hexdigest,
    parse_webhook_body,
    require_webhook_secret,
    signatures_match,
)
from schemas.payment import PaymentIntent, PaymentResult, PaymentStatus, WebhookEvent


NOWPAYMENTS_STATUSES = {
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

MANUAL_REFUND_MESSAGE = "NOWPayments refunds must be processed manually through the dashboard"
DEFAULT_PAY_CURRENCY = "usdt"


def canonical_ipn_body(body: Dict[str, Any]) -> str:
    """Sorted, compact JSON exactly as NOWPayments signs it"""
    return json.dumps(body, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


class NowPaymentsGateway(HttpGateway):
    name = "nowpayments"
    display_name = "NOWPayments"
    supported_currencies = frozenset({"USD", "EUR", "GBP", "CAD", "AUD"})
    status_table = NOWPAYMENTS_STATUSES

    def _base_url(self) -> str:
        if self.config.NOWPAYMENTS_SANDBOX:
            return "https://api-sandbox.nowpayments.io/v1"
        return "https://api.nowpayments.io/v1"

    def _default_headers(self) -> Dict[str, str]:
        headers = super()._default_headers()
        headers["x-api-key"] = self.config.NOWPAYMENTS_API_KEY
        return headers

    async def _payment(self, payment_id: str) -> Dict[str, Any]:
        response = await self._request("GET", f"/payment/{payment_id}", read_only=True)
        return self._json(response, "payment lookup")

    async def create_payment_intent(
        self,
        amount: Decimal,
        currency: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> PaymentIntent:
        code = self.ensure_currency(currency)
        metadata = metadata or {}
        order_number = metadata.get("orderNumber")
        body = {
            "price_amount": float(amount),
            "price_currency": code.lower(),
            "pay_currency": (metadata.get("payCurrency") or DEFAULT_PAY_CURRENCY).lower(),
            "order_id": order_number,
            "order_description": metadata.get("description") or f"Order {order_number}",
            "ipn_callback_url": metadata.get("ipnCallbackUrl"),
            "success_url": metadata.get("returnUrl"),
            "cancel_url": metadata.get("cancelUrl"),
        }
        body = {k: v for k, v in body.items() if v is not None}
        payment = self._json(await self._request("POST", "/payment", json=body), "payment creation")

        payment_id = str(payment["payment_id"])
        self._logger.info("intent_created", intent_id=payment_id, status=payment.get("payment_status"))
        return PaymentIntent(
            id=payment_id,
            amount=amount,
            currency=code,
            status=self.map_status(payment.get("payment_status")),
            client_secret=payment.get("pay_address"),
            metadata={
                **metadata,
                "nativeStatus": payment.get("payment_status"),
                "payAddress": payment.get("pay_address"),
                "payAmount": payment.get("pay_amount"),
                "payCurrency": payment.get("pay_currency"),
            },
        )

    async def confirm_payment(
        self,
        intent_id: str,
        method_data: Optional[Dict[str, Any]] = None,
    ) -> PaymentResult:
        try:
            payment = await self._payment(intent_id)
        except GatewayError as e:
            return PaymentResult.failure(intent_id, e.message)

        native = payment.get("payment_status")
        status = self.map_status(native)
        return PaymentResult(
            success=status == PaymentStatus.COMPLETED,
            payment_id=intent_id,
            transaction_id=str(payment.get("payment_id") or intent_id),
            status=status,
            amount=Decimal(str(payment.get("price_amount", 0))),
            currency=str(payment.get("price_currency", "usd")).upper(),
            gateway_response={"payment_status": native, "payin_hash": payment.get("payin_hash")},
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
        secret = require_webhook_secret(self.name, self.config.NOWPAYMENTS_IPN_SECRET)
        body = parse_webhook_body(self.name, payload)
        expected = hmac_hexdigest(secret, canonical_ipn_body(body), hashlib.sha512)
        if not signatures_match(expected, signature, case_insensitive=True):
            self._logger.warning("webhook_signature_invalid", payment_id=body.get("payment_id"))
            raise InvalidSignature(self.name)

        return WebhookEvent(
            id=str(body.get("payment_id") or ""),
            type=f"payment_{body.get('payment_status', 'unknown')}",
            data=body,
            signature=signature,
        )

    async def get_payment_status(self, payment_id: str) -> PaymentStatus:
        try:
            payment = await self._payment(payment_id)
        except GatewayError as e:
            self._logger.error("status_poll_failed", payment_id=payment_id, error=e.message)
            return PaymentStatus.FAILED
        return self.map_status(payment.get("payment_status"))
