"""
Payment Gateway Contract
========================
Uniform interface every processor adapter implements, plus the shared
plumbing the adapters are built from:

- Native status tables with an unknown -> PENDING fallback
- Currency guard raising UnsupportedCurrency
- httpx transport with explicit timeout and bounded retry
- HMAC helpers for webhook signatures

Retry policy:
- Connection failures are always retried (the request never left)
- Timeouts and 5xx responses are retried only for read-only calls
- Backoff doubles per attempt, bounded by GATEWAY_MAX_RETRIES
"""

import asyncio
import hashlib
import hmac
import json
from abc import ABC, abstractmethod
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, FrozenSet, Mapping, Optional, Union

import httpx
import structlog

from errors import GatewayError, InvalidSignature, UnsupportedCurrency
from payment.config import GatewayConfig, config as default_config
from schemas.payment import PaymentIntent, PaymentResult, PaymentStatus, WebhookEvent

Payload = Union[bytes, str]


# =============================================================================
# HELPERS
# =============================================================================

def to_minor_units(amount: Decimal) -> int:
    """Major units (dollars) to minor units (cents)"""
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def format_amount(amount: Decimal, places: int = 2) -> str:
    quantum = Decimal(1).scaleb(-places)
    return str(Decimal(amount).quantize(quantum, rounding=ROUND_HALF_UP))


def raw_bytes(payload: Payload) -> bytes:
    return payload if isinstance(payload, bytes) else payload.encode("utf-8")


def hmac_hexdigest(secret: str, message: Payload, digestmod=hashlib.sha256) -> str:
    return hmac.new(secret.encode("utf-8"), raw_bytes(message), digestmod).hexdigest()


def signatures_match(expected: str, received: Optional[str], case_insensitive: bool = False) -> bool:
    """Constant-time comparison"""
    if not received:
        return False
    if case_insensitive:
        expected, received = expected.lower(), received.lower()
    return hmac.compare_digest(expected.encode("utf-8"), received.encode("utf-8"))


def require_webhook_secret(gateway: str, secret: Optional[str]) -> str:
    """Webhooks are never verified against an empty key"""
    if not secret:
        raise InvalidSignature(gateway, "Webhook secret not configured")
    return secret


def parse_webhook_body(gateway: str, payload: Payload) -> Dict[str, Any]:
    try:
        body = json.loads(raw_bytes(payload))
    except ValueError as e:
        raise InvalidSignature(gateway, "Malformed webhook payload") from e
    if not isinstance(body, dict):
        raise InvalidSignature(gateway, "Malformed webhook payload")
    return body


def header(headers: Optional[Mapping[str, str]], name: str) -> Optional[str]:
    """Case-insensitive header lookup over a plain mapping"""
    if not headers:
        return None
    wanted = name.lower()
    for key, value in headers.items():
        if key.lower() == wanted:
            return value
    return None


# =============================================================================
# INTERFACE
# =============================================================================

class IPaymentGateway(ABC):
    """
    Processor adapter contract.

    Amounts are Decimal major units at this boundary; adapters convert to
    whatever the processor expects. Unmapped native statuses are PENDING.
    """

    name: str = ""
    display_name: str = ""
    supported_currencies: FrozenSet[str] = frozenset()
    status_table: Mapping[str, PaymentStatus] = {}
    # How native statuses are normalized before lookup: "lower" or "upper"
    status_case: str = "lower"

    def map_status(self, native: Optional[str]) -> PaymentStatus:
        if not native:
            return PaymentStatus.PENDING
        key = str(native).lower() if self.status_case == "lower" else str(native).upper()
        return self.status_table.get(key, PaymentStatus.PENDING)

    def ensure_currency(self, currency: str) -> str:
        code = (currency or "").upper()
        if self.supported_currencies and code not in self.supported_currencies:
            raise UnsupportedCurrency(currency, sorted(self.supported_currencies))
        return code

    @abstractmethod
    async def create_payment_intent(
        self,
        amount: Decimal,
        currency: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> PaymentIntent:
        pass

    @abstractmethod
    async def confirm_payment(
        self,
        intent_id: str,
        method_data: Optional[Dict[str, Any]] = None,
    ) -> PaymentResult:
        """Capture or re-read an intent. Already-completed intents return success."""
        pass

    @abstractmethod
    async def refund_payment(self, payment_id: str, amount: Optional[Decimal] = None) -> PaymentResult:
        pass

    @abstractmethod
    async def verify_webhook(
        self,
        payload: Payload,
        signature: Optional[str],
        headers: Optional[Mapping[str, str]] = None,
    ) -> WebhookEvent:
        """Raises InvalidSignature when the signature does not verify."""
        pass

    @abstractmethod
    async def get_payment_status(self, payment_id: str) -> PaymentStatus:
        """Read-only poll; any failure reads as FAILED."""
        pass

    async def close(self):
        pass


# =============================================================================
# HTTP TRANSPORT
# =============================================================================

class HttpGateway(IPaymentGateway):
    """Base for REST processors reached over httpx"""

    def __init__(
        self,
        config: Optional[GatewayConfig] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.config = config or default_config
        self._client = client
        self._owns_client = client is None
        self._logger = structlog.get_logger().bind(component=f"{self.name}_gateway")

    @abstractmethod
    def _base_url(self) -> str:
        pass

    def _default_headers(self) -> Dict[str, str]:
        return {"Content-Type": "application/json", "Accept": "application/json"}

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._base_url(),
                timeout=self.config.GATEWAY_TIMEOUT_SECONDS,
                headers=self._default_headers(),
            )
        return self._client

    async def close(self):
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def _request(
        self,
        method: str,
        path: str,
        read_only: bool = False,
        **kwargs,
    ) -> httpx.Response:
        attempts = max(0, self.config.GATEWAY_MAX_RETRIES) + 1

        for attempt in range(1, attempts + 1):
            try:
                response = await self.client.request(method, path, **kwargs)
            except (httpx.ConnectError, httpx.ConnectTimeout) as e:
                reason = f"{type(e).__name__}: {e}"
            except httpx.TimeoutException as e:
                if not read_only:
                    raise GatewayError(f"{self.display_name} request timed out", gateway=self.name) from e
                reason = f"{type(e).__name__}: {e}"
            except httpx.RequestError as e:
                self._logger.error("gateway_request_error", method=method, path=path, error=str(e))
                raise GatewayError(f"{self.display_name} request failed", gateway=self.name) from e
            else:
                if response.status_code < 500 or not read_only or attempt == attempts:
                    return response
                reason = f"HTTP {response.status_code}"

            self._logger.warning(
                "gateway_request_retry",
                method=method,
                path=path,
                attempt=attempt,
                max_attempts=attempts,
                reason=reason,
            )
            if attempt < attempts:
                await asyncio.sleep(self.config.GATEWAY_RETRY_BACKOFF_SECONDS * 2 ** (attempt - 1))

        raise GatewayError(f"{self.display_name} is unreachable", gateway=self.name)

    def _json(self, response: httpx.Response, action: str) -> Dict[str, Any]:
        """Decode a response, turning processor errors into GatewayError"""
        if response.status_code >= 400:
            self._logger.error(
                "gateway_http_error",
                action=action,
                status_code=response.status_code,
                body=response.text[:500],
            )
            raise GatewayError(
                f"{self.display_name} {action} failed (HTTP {response.status_code})",
                gateway=self.name,
            )
        try:
            return response.json()
        except ValueError as e:
            raise GatewayError(f"{self.display_name} returned an unreadable response", gateway=self.name) from e
