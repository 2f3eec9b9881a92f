"""
Binance Pay Gateway
===================
Merchant API v3 orders, v2 query and refund.

Every request is signed: HMAC-SHA512 of "timestamp\\nnonce\\nbody\\n" with the
secret key, upper-case hex. The body is sent byte-for-byte as signed.
Webhooks use the same scheme over the raw body with the
binancepay-timestamp / binancepay-nonce headers.
"""

import hashlib
import json
import secrets
import string
import time
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional

from errors import GatewayError, InvalidSignature
from payment.base import (
    HttpGateway,
    Payload,
    format_amount,
    header,
    hmac_hexdigest,
    parse_webhook_body,
    raw_bytes,
    require_webhook_secret,
    signatures_match,
)
from schemas.payment import PaymentIntent, PaymentResult, PaymentStatus, WebhookEvent


BINANCE_STATUSES = {
    "INITIAL": PaymentStatus.PENDING,
    "PENDING": PaymentStatus.PENDING,
    "PAID": PaymentStatus.COMPLETED,
    "SUCCESS": PaymentStatus.COMPLETED,
    "CANCELED": PaymentStatus.CANCELLED,
    "CANCELLED": PaymentStatus.CANCELLED,
    "REFUNDING": PaymentStatus.PROCESSING,
    "REFUNDED": PaymentStatus.REFUNDED,
    "ERROR": PaymentStatus.FAILED,
    "EXPIRED": PaymentStatus.FAILED,
}

# Webhook event name derived from an order status when bizStatus is absent
STATUS_EVENT_NAMES = {
    "PAID": "PAY_SUCCESS",
    "SUCCESS": "PAY_SUCCESS",
    "CANCELED": "PAY_CLOSE",
    "CANCELLED": "PAY_CLOSE",
    "REFUNDED": "PAY_REFUND",
    "ERROR": "PAY_FAILED",
    "EXPIRED": "PAY_FAILED",
}

NONCE_ALPHABET = string.ascii_letters + string.digits


def generate_nonce(length: int = 32) -> str:
    return "".join(secrets.choice(NONCE_ALPHABET) for _ in range(length))


def sign_payload(secret: str, timestamp: str, nonce: str, body: Payload) -> str:
    message = f"{timestamp}\n{nonce}\n".encode("utf-8") + raw_bytes(body) + b"\n"
    return hmac_hexdigest(secret, message, hashlib.sha512).upper()


class BinancePayGateway(HttpGateway):
    name = "binance_pay"
    display_name = "Binance Pay"
    supported_currencies = frozenset({"USDT", "USDC", "BNB", "BTC", "BUSD", "MBOX"})
    status_table = BINANCE_STATUSES
    status_case = "upper"

    def _base_url(self) -> str:
        return self.config.BINANCE_PAY_BASE_URL

    async def _signed(self, path: str, payload: Dict[str, Any], action: str, read_only: bool = False) -> Dict[str, Any]:
        body = json.dumps({k: v for k, v in payload.items() if v is not None}, separators=(",", ":"))
        timestamp = str(int(time.time() * 1000))
        nonce = generate_nonce()
        headers = {
            "BinancePay-Timestamp": timestamp,
            "BinancePay-Nonce": nonce,
            "BinancePay-Certificate-SN": self.config.BINANCE_PAY_CERTIFICATE_SN or self.config.BINANCE_PAY_API_KEY,
            "BinancePay-Signature": sign_payload(self.config.BINANCE_PAY_SECRET_KEY, timestamp, nonce, body),
        }
        data = self._json(
            await self._request("POST", path, read_only=read_only, content=body, headers=headers),
            action,
        )
        if data.get("status") != "SUCCESS":
            self._logger.error("binance_api_error", action=action, code=data.get("code"), message=data.get("errorMessage"))
            raise GatewayError(f"Binance Pay {action} failed", gateway=self.name, code=str(data.get("code") or ""))
        return data.get("data") or {}

    async def create_payment_intent(
        self,
        amount: Decimal,
        currency: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> PaymentIntent:
        code = self.ensure_currency(currency)
        metadata = metadata or {}
        now_ms = int(time.time() * 1000)
        merchant_trade_no = f"VG_{now_ms}_{generate_nonce()[:8]}"
        description = metadata.get("description") or "VirtualGifts Purchase"

        order = await self._signed(
            "/binancepay/openapi/v3/order",
            {
                "env": {"terminalType": "WEB"},
                "merchantTradeNo": merchant_trade_no,
                "orderAmount": float(format_amount(amount, places=8)),
                "currency": code,
                "description": description,
                "goodsDetails": [
                    {
                        "goodsType": "02",
                        "goodsCategory": "Z000",
                        "referenceGoodsId": metadata.get("orderNumber") or merchant_trade_no,
                        "goodsName": description,
                    }
                ],
                "returnUrl": metadata.get("returnUrl"),
                "cancelUrl": metadata.get("cancelUrl"),
                "orderExpireTime": now_ms + 60 * 60 * 1000,
            },
            "order creation",
        )

        self._logger.info("intent_created", intent_id=order.get("prepayId"), merchant_trade_no=merchant_trade_no)
        return PaymentIntent(
            id=order["prepayId"],
            amount=amount,
            currency=code,
            status=PaymentStatus.PENDING,
            client_secret=order.get("checkoutUrl"),
            metadata={
                **metadata,
                "nativeStatus": "INITIAL",
                "merchantTradeNo": merchant_trade_no,
                "checkoutUrl": order.get("checkoutUrl"),
                "deeplink": order.get("deeplink"),
                "universalUrl": order.get("universalUrl"),
            },
        )

    async def _query(self, prepay_id: str) -> Dict[str, Any]:
        return await self._signed(
            "/binancepay/openapi/v2/order/query",
            {"prepayId": prepay_id},
            "order query",
            read_only=True,
        )

    async def confirm_payment(
        self,
        intent_id: str,
        method_data: Optional[Dict[str, Any]] = None,
    ) -> PaymentResult:
        try:
            order = await self._query(intent_id)
        except GatewayError as e:
            return PaymentResult.failure(intent_id, e.message)

        native = order.get("status")
        status = self.map_status(native)
        return PaymentResult(
            success=status == PaymentStatus.COMPLETED,
            payment_id=intent_id,
            transaction_id=order.get("prepayId") or intent_id,
            status=status,
            amount=Decimal(str(order.get("orderAmount") or order.get("totalFee") or 0)),
            currency=order.get("currency", "USDT"),
            gateway_response={"status": native, "transactionId": order.get("transactionId")},
            error=None if status == PaymentStatus.COMPLETED else f"Payment status: {native}",
        )

    async def refund_payment(self, payment_id: str, amount: Optional[Decimal] = None) -> PaymentResult:
        payload: Dict[str, Any] = {
            "refundRequestId": f"RF_{int(time.time() * 1000)}_{generate_nonce()[:8]}",
            "prepayId": payment_id,
            "refundReason": "Customer refund",
        }
        if amount is not None:
            payload["refundAmount"] = float(format_amount(amount, places=8))
        try:
            refund = await self._signed("/binancepay/openapi/v2/refund", payload, "refund")
        except GatewayError as e:
            return PaymentResult.failure(payment_id, e.message)

        return PaymentResult(
            success=True,
            payment_id=payment_id,
            transaction_id=refund.get("refundRequestId") or payload["refundRequestId"],
            status=PaymentStatus.REFUNDED,
            amount=Decimal(str(refund.get("refundedAmount") or refund.get("refundAmount") or amount or 0)),
            currency=refund.get("currency", "USDT"),
            gateway_response={"refund_status": refund.get("status")},
        )

    async def verify_webhook(
        self,
        payload: Payload,
        signature: Optional[str],
        headers: Optional[Mapping[str, str]] = None,
    ) -> WebhookEvent:
        secret = require_webhook_secret(self.name, self.config.BINANCE_PAY_SECRET_KEY)
        timestamp = header(headers, "binancepay-timestamp")
        nonce = header(headers, "binancepay-nonce")
        if not timestamp or not nonce:
            raise InvalidSignature(self.name, "Missing BinancePay-Timestamp or BinancePay-Nonce header")

        expected = sign_payload(secret, timestamp, nonce, payload)
        if not signatures_match(expected, signature, case_insensitive=True):
            self._logger.warning("webhook_signature_invalid")
            raise InvalidSignature(self.name)

        event = parse_webhook_body(self.name, payload)
        data = event.get("data") or {}
        # Binance sends data as a JSON-encoded string
        if isinstance(data, str):
            try:
                data = json.loads(data)
            except ValueError as e:
                raise InvalidSignature(self.name, "Malformed webhook payload") from e
        if event.get("bizId") and not data.get("prepayId"):
            data["prepayId"] = str(event["bizId"])

        event_type = event.get("bizStatus") or STATUS_EVENT_NAMES.get(
            str(data.get("status") or "").upper(), event.get("bizType") or "PAY_UPDATE"
        )
        return WebhookEvent(
            id=str(data.get("prepayId") or data.get("merchantTradeNo") or ""),
            type=event_type,
            data=data,
            signature=signature or "",
        )

    async def get_payment_status(self, payment_id: str) -> PaymentStatus:
        try:
            order = await self._query(payment_id)
        except GatewayError as e:
            self._logger.error("status_poll_failed", payment_id=payment_id, error=e.message)
            return PaymentStatus.FAILED
        return self.map_status(order.get("status"))
