"""
BitPay Gateway
==============
Invoice API with the merchant token in every request.

- Prices in fiat (USD, EUR, GBP, CAD, AUD, JPY), paid in crypto
- Refunds go through /refund and need the invoice's currency
- Webhooks: HMAC-SHA256 hex of the raw body keyed by the token, header x-signature
"""

import hashlib
import json
import time
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


BITPAY_STATUSES = {
    "new": PaymentStatus.PENDING,
    "paid": PaymentStatus.PROCESSING,
    "confirmed": PaymentStatus.COMPLETED,
    "complete": PaymentStatus.COMPLETED,
    "expired": PaymentStatus.CANCELLED,
    "invalid": PaymentStatus.FAILED,
    "declined": PaymentStatus.FAILED,
}

PAYMENT_CURRENCIES = ["BTC", "BCH", "ETH", "USDC", "GUSD", "PAX", "BUSD", "DOGE", "LTC", "WBTC"]


class BitPayGateway(HttpGateway):
    name = "bitpay"
    display_name = "BitPay"
    supported_currencies = frozenset({"USD", "EUR", "GBP", "CAD", "AUD", "JPY"})
    status_table = BITPAY_STATUSES

    def _base_url(self) -> str:
        if self.config.BITPAY_ENVIRONMENT == "prod":
            return "https://bitpay.com/api"
        return "https://test.bitpay.com/api"

    def _default_headers(self) -> Dict[str, str]:
        headers = super()._default_headers()
        headers["X-Accept-Version"] = "2.0.0"
        return headers

    async def _invoice(self, invoice_id: str) -> Dict[str, Any]:
        response = await self._request(
            "GET",
            f"/invoice/{invoice_id}",
            read_only=True,
            params={"token": self.config.BITPAY_TOKEN},
        )
        return self._json(response, "invoice lookup")["data"]

    async def create_payment_intent(
        self,
        amount: Decimal,
        currency: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> PaymentIntent:
        code = self.ensure_currency(currency)
        metadata = metadata or {}
        body = {
            "token": self.config.BITPAY_TOKEN,
            "price": float(amount),
            "currency": code,
            "orderId": metadata.get("orderNumber"),
            "itemDesc": metadata.get("description") or "VirtualGifts Digital Product Purchase",
            "notificationEmail": metadata.get("customerEmail"),
            "redirectURL": metadata.get("returnUrl"),
            "closeURL": metadata.get("cancelUrl"),
            "posData": json.dumps({"orderNumber": metadata.get("orderNumber"), "source": "virtualgifts-backend"}),
            "transactionSpeed": "medium",
            "fullNotifications": True,
            "extendedNotifications": True,
            "physical": False,
            "paymentCurrencies": PAYMENT_CURRENCIES,
        }
        body = {k: v for k, v in body.items() if v is not None}
        invoice = self._json(await self._request("POST", "/invoice", json=body), "invoice creation")["data"]

        self._logger.info("intent_created", intent_id=invoice["id"], status=invoice.get("status"))
        return PaymentIntent(
            id=invoice["id"],
            amount=amount,
            currency=code,
            status=self.map_status(invoice.get("status")),
            client_secret=invoice.get("url"),
            metadata={**metadata, "nativeStatus": invoice.get("status"), "paymentUrl": invoice.get("url")},
        )

    async def confirm_payment(
        self,
        intent_id: str,
        method_data: Optional[Dict[str, Any]] = None,
    ) -> PaymentResult:
        try:
            invoice = await self._invoice(intent_id)
        except GatewayError as e:
            return PaymentResult.failure(intent_id, e.message)

        native = invoice.get("status")
        status = self.map_status(native)
        # "paid" is still PROCESSING here: only confirmed/complete settle the order
        return PaymentResult(
            success=status == PaymentStatus.COMPLETED,
            payment_id=intent_id,
            transaction_id=invoice.get("id") or intent_id,
            status=status,
            amount=Decimal(str(invoice.get("price", 0))),
            currency=invoice.get("currency", "USD"),
            gateway_response={"status": native, "exceptionStatus": invoice.get("exceptionStatus")},
            error=None if status == PaymentStatus.COMPLETED else f"Payment status: {native}",
        )

    async def refund_payment(self, payment_id: str, amount: Optional[Decimal] = None) -> PaymentResult:
        try:
            invoice = await self._invoice(payment_id)
            body = {
                "token": self.config.BITPAY_TOKEN,
                "invoiceId": payment_id,
                "amount": float(amount) if amount is not None else invoice.get("price"),
                "currency": invoice.get("currency"),
                "reference": f"refund_{payment_id}_{int(time.time() * 1000)}",
                "immediate": False,
            }
            refund = self._json(await self._request("POST", "/refund", json=body), "refund")["data"]
        except GatewayError as e:
            return PaymentResult.failure(payment_id, e.message)

        return PaymentResult(
            success=True,
            payment_id=payment_id,
            transaction_id=refund.get("id"),
            status=PaymentStatus.REFUNDED,
            amount=Decimal(str(refund.get("amount", 0))),
            currency=refund.get("currency", "USD"),
            gateway_response={"refund_status": refund.get("status")},
        )

    async def verify_webhook(
        self,
        payload: Payload,
        signature: Optional[str],
        headers: Optional[Mapping[str, str]] = None,
    ) -> WebhookEvent:
        secret = require_webhook_secret(self.name, self.config.BITPAY_TOKEN)
        expected = hmac_hexdigest(secret, payload, hashlib.sha256)
        if not signatures_match(expected, signature):
            self._logger.warning("webhook_signature_invalid")
            raise InvalidSignature(self.name)

        body = parse_webhook_body(self.name, payload)
        # IPN v2 nests the invoice under "data" with the event under "event"
        invoice = body.get("data") if isinstance(body.get("data"), dict) else body
        native = str(invoice.get("status") or "unknown").lower()
        return WebhookEvent(
            id=invoice.get("id") or "",
            type=f"invoice_{native}",
            data=invoice,
            signature=signature,
        )

    async def get_payment_status(self, payment_id: str) -> PaymentStatus:
        try:
            invoice = await self._invoice(payment_id)
        except GatewayError as e:
            self._logger.error("status_poll_failed", payment_id=payment_id, error=e.message)
            return PaymentStatus.FAILED
        return self.map_status(invoice.get("status"))
