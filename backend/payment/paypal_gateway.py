"""
PayPal Gateway
==============
Orders v2 REST API over httpx.

- OAuth client-credentials token cached until shortly before expiry
- Intent = PayPal order (intent CAPTURE); approve link is the client secret
- Capture carries PayPal-Request-Id so a retried capture is not doubled
- Refunds accept an order id and resolve it to the order's capture
- Webhooks verified through /v1/notifications/verify-webhook-signature
"""

import asyncio
import time
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional

from errors import GatewayError, InvalidSignature
from payment.base import (
    HttpGateway,
    Payload,
    format_amount,
    header,
    parse_webhook_body,
    require_webhook_secret,
)
from schemas.payment import PaymentIntent, PaymentResult, PaymentStatus, WebhookEvent


PAYPAL_STATUSES = {
    # Order statuses
    "CREATED": PaymentStatus.PENDING,
    "SAVED": PaymentStatus.PENDING,
    "APPROVED": PaymentStatus.PENDING,
    "PAYER_ACTION_REQUIRED": PaymentStatus.PENDING,
    "VOIDED": PaymentStatus.CANCELLED,
    "CANCELLED": PaymentStatus.CANCELLED,
    "COMPLETED": PaymentStatus.COMPLETED,
    "REFUNDED": PaymentStatus.REFUNDED,
    # Capture statuses
    "PENDING": PaymentStatus.PENDING,
    "DECLINED": PaymentStatus.FAILED,
    "FAILED": PaymentStatus.FAILED,
    "PARTIALLY_REFUNDED": PaymentStatus.COMPLETED,
}

TRANSMISSION_HEADERS = {
    "transmission_id": "paypal-transmission-id",
    "transmission_time": "paypal-transmission-time",
    "transmission_sig": "paypal-transmission-sig",
    "cert_url": "paypal-cert-url",
    "auth_algo": "paypal-auth-algo",
}

# Refresh this many seconds before PayPal's stated expiry
TOKEN_EXPIRY_MARGIN = 60


def _first_capture(order: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    for unit in order.get("purchase_units") or []:
        captures = (unit.get("payments") or {}).get("captures") or []
        if captures:
            return captures[0]
    return None


class PayPalGateway(HttpGateway):
    name = "paypal"
    display_name = "PayPal"
    supported_currencies = frozenset({"USD", "EUR", "GBP", "CAD", "AUD"})
    status_table = PAYPAL_STATUSES
    status_case = "upper"

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._token: Optional[str] = None
        self._token_expires_at = 0.0
        self._token_lock = asyncio.Lock()

    def _base_url(self) -> str:
        if self.config.PAYPAL_MODE == "live":
            return "https://api-m.paypal.com"
        return "https://api-m.sandbox.paypal.com"

    async def _access_token(self) -> str:
        async with self._token_lock:
            if self._token and time.monotonic() < self._token_expires_at:
                return self._token

            response = await self._request(
                "POST",
                "/v1/oauth2/token",
                data={"grant_type": "client_credentials"},
                auth=(self.config.PAYPAL_CLIENT_ID, self.config.PAYPAL_CLIENT_SECRET),
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )
            data = self._json(response, "authentication")
            self._token = data["access_token"]
            self._token_expires_at = time.monotonic() + int(data.get("expires_in", 0)) - TOKEN_EXPIRY_MARGIN
            return self._token

    async def _authed(self, method: str, path: str, read_only: bool = False, **kwargs):
        token = await self._access_token()
        headers = dict(kwargs.pop("headers", {}) or {})
        headers["Authorization"] = f"Bearer {token}"
        return await self._request(method, path, read_only=read_only, headers=headers, **kwargs)

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
            "intent": "CAPTURE",
            "purchase_units": [
                {
                    "reference_id": metadata.get("orderNumber") or "default",
                    "description": metadata.get("description") or "VirtualGifts Purchase",
                    "amount": {"currency_code": code, "value": format_amount(amount)},
                }
            ],
            "application_context": {
                "return_url": metadata.get("returnUrl") or f"{frontend}/payment/success",
                "cancel_url": metadata.get("cancelUrl") or f"{frontend}/payment/cancel",
                "user_action": "PAY_NOW",
            },
        }
        headers = {}
        if metadata.get("orderNumber"):
            headers["PayPal-Request-Id"] = f"create-{metadata['orderNumber']}"

        order = self._json(
            await self._authed("POST", "/v2/checkout/orders", json=body, headers=headers),
            "order creation",
        )
        approve = next(
            (link["href"] for link in order.get("links", []) if link.get("rel") in ("approve", "payer-action")),
            None,
        )
        self._logger.info("intent_created", intent_id=order["id"], status=order.get("status"))
        return PaymentIntent(
            id=order["id"],
            amount=amount,
            currency=code,
            status=self.map_status(order.get("status")),
            client_secret=approve,
            metadata={**metadata, "nativeStatus": order.get("status"), "approveUrl": approve},
        )

    def _result(self, order: Dict[str, Any]) -> PaymentResult:
        capture = _first_capture(order)
        native = (capture or {}).get("status") or order.get("status")
        status = self.map_status(native)
        amount = (capture or {}).get("amount") or {}
        return PaymentResult(
            success=status == PaymentStatus.COMPLETED,
            payment_id=order["id"],
            transaction_id=(capture or {}).get("id") or order["id"],
            status=status,
            amount=Decimal(amount.get("value", "0")),
            currency=amount.get("currency_code", "USD"),
            gateway_response={"order_status": order.get("status"), "capture_status": native},
            error=None if status == PaymentStatus.COMPLETED else f"Payment status: {native}",
        )

    async def confirm_payment(
        self,
        intent_id: str,
        method_data: Optional[Dict[str, Any]] = None,
    ) -> PaymentResult:
        try:
            order = self._json(
                await self._authed("GET", f"/v2/checkout/orders/{intent_id}", read_only=True),
                "order lookup",
            )
            if order.get("status") == "COMPLETED":
                return self._result(order)

            response = await self._authed(
                "POST",
                f"/v2/checkout/orders/{intent_id}/capture",
                json={},
                headers={"PayPal-Request-Id": f"capture-{intent_id}"},
            )
            if response.status_code == 422 and "ORDER_ALREADY_CAPTURED" in response.text:
                order = self._json(
                    await self._authed("GET", f"/v2/checkout/orders/{intent_id}", read_only=True),
                    "order lookup",
                )
                return self._result(order)
            return self._result(self._json(response, "capture"))

        except GatewayError as e:
            return PaymentResult.failure(intent_id, e.message)

    async def _capture_id(self, payment_id: str) -> str:
        """Resolve an order id to its first capture; an id PayPal has no order for is taken as a capture id"""
        response = await self._authed("GET", f"/v2/checkout/orders/{payment_id}", read_only=True)
        if response.status_code == 404:
            return payment_id
        capture = _first_capture(self._json(response, "order lookup"))
        if capture is None:
            raise GatewayError(f"PayPal order {payment_id} has no capture to refund", gateway=self.name)
        return capture["id"]

    async def refund_payment(self, payment_id: str, amount: Optional[Decimal] = None) -> PaymentResult:
        body: Dict[str, Any] = {}
        if amount is not None:
            # PayPal infers the currency from the capture; USD is the store currency
            body["amount"] = {"value": format_amount(amount), "currency_code": "USD"}
        try:
            capture_id = await self._capture_id(payment_id)
            refund = self._json(
                await self._authed("POST", f"/v2/payments/captures/{capture_id}/refund", json=body),
                "refund",
            )
        except GatewayError as e:
            return PaymentResult.failure(payment_id, e.message)

        completed = refund.get("status") == "COMPLETED"
        value = (refund.get("amount") or {}).get("value")
        return PaymentResult(
            success=completed or refund.get("status") == "PENDING",
            payment_id=payment_id,
            transaction_id=refund.get("id"),
            status=PaymentStatus.REFUNDED if completed else PaymentStatus.PROCESSING,
            amount=Decimal(value) if value else (amount or Decimal("0")),
            currency=(refund.get("amount") or {}).get("currency_code", "USD"),
            gateway_response={"refund_status": refund.get("status")},
        )

    async def verify_webhook(
        self,
        payload: Payload,
        signature: Optional[str],
        headers: Optional[Mapping[str, str]] = None,
    ) -> WebhookEvent:
        webhook_id = require_webhook_secret(self.name, self.config.PAYPAL_WEBHOOK_ID)
        event = parse_webhook_body(self.name, payload)

        verification = {field: header(headers, name) for field, name in TRANSMISSION_HEADERS.items()}
        if signature and not verification["transmission_sig"]:
            verification["transmission_sig"] = signature
        missing = [name for field, name in TRANSMISSION_HEADERS.items() if not verification[field]]
        if missing:
            raise InvalidSignature(self.name, f"Missing webhook headers: {', '.join(missing)}")

        verification["webhook_id"] = webhook_id
        verification["webhook_event"] = event
        try:
            result = self._json(
                await self._authed("POST", "/v1/notifications/verify-webhook-signature", json=verification),
                "webhook verification",
            )
        except GatewayError as e:
            raise InvalidSignature(self.name, "Webhook verification unavailable") from e

        if result.get("verification_status") != "SUCCESS":
            self._logger.warning("webhook_signature_invalid", status=result.get("verification_status"))
            raise InvalidSignature(self.name)

        return WebhookEvent(
            id=event.get("id") or "",
            type=event.get("event_type", "unknown"),
            data=event.get("resource") or {},
            signature=verification["transmission_sig"],
        )

    async def get_payment_status(self, payment_id: str) -> PaymentStatus:
        try:
            order = self._json(
                await self._authed("GET", f"/v2/checkout/orders/{payment_id}", read_only=True),
                "order lookup",
            )
        except GatewayError as e:
            self._logger.error("status_poll_failed", payment_id=payment_id, error=e.message)
            return PaymentStatus.FAILED
        return self.map_status(order.get("status"))
