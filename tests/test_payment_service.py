"""Tests for gateway routing and the shared httpx transport."""

import json
from decimal import Decimal

import httpx
import pytest

from errors import GatewayError, InvalidSignature, UnsupportedCurrency, UnsupportedGateway
from payment.binance_pay_gateway import BinancePayGateway, sign_payload
from payment.coinbase_gateway import CoinbaseGateway
from payment.config import GatewayConfig
from payment.paypal_gateway import PayPalGateway
from payment.service import PaymentService
from schemas.payment import PaymentMethodType, PaymentStatus
from services.order_service import OrderService


@pytest.fixture
def fast_config():
    cfg = GatewayConfig()
    cfg.GATEWAY_MAX_RETRIES = 2
    cfg.GATEWAY_RETRY_BACKOFF_SECONDS = 0
    cfg.BINANCE_PAY_SECRET_KEY = "bn-secret"
    cfg.BINANCE_PAY_API_KEY = "bn-key"
    return cfg


def coinbase_with(handler, cfg):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="https://api.commerce.coinbase.com")
    return CoinbaseGateway(cfg, client=client)


CHARGE = {"data": {"id": "charge-1", "code": "ABC", "timeline": [{"status": "NEW"}, {"status": "COMPLETED"}]}}


class TestRouting:
    def test_validate_payment_method(self, payments):
        assert payments.validate_payment_method(PaymentMethodType.CREDIT_CARD, "stripe") is True
        assert payments.validate_payment_method(PaymentMethodType.CRYPTO, "coinbase") is True
        # Known pairing, but not registered
        assert payments.validate_payment_method(PaymentMethodType.CRYPTO, "bitpay") is False
        # Registered, wrong method
        assert payments.validate_payment_method(PaymentMethodType.CREDIT_CARD, "coinbase") is False

    def test_supported_methods_follow_registry(self, payments):
        assert payments.get_supported_payment_methods() == [
            {"type": "credit_card", "gateways": ["stripe"]},
            {"type": "crypto", "gateways": ["coinbase"]},
        ]

    def test_unknown_gateway(self, payments):
        with pytest.raises(UnsupportedGateway, match="Unsupported payment gateway: venmo"):
            payments.get_gateway("venmo")

    def test_registry_is_read_only(self, payments):
        with pytest.raises(TypeError):
            payments.gateways["venmo"] = object()

    async def test_confirmation_crash_becomes_failed_result(self, payments, card_gateway, monkeypatch):
        async def explode(intent_id, method_data=None):
            raise RuntimeError("socket closed")

        monkeypatch.setattr(card_gateway, "confirm_payment", explode)

        result = await payments.process_payment("stripe", "pi_1")

        assert result.success is False
        assert result.status == PaymentStatus.FAILED
        assert result.error == "Payment confirmation failed"

    async def test_intent_errors_propagate(self, payments, card_gateway):
        card_gateway.fail_create = True
        with pytest.raises(GatewayError):
            await payments.create_payment_intent(PaymentMethodType.CREDIT_CARD, "stripe", Decimal("5.00"), "USD")


class TestHandleWebhook:
    async def test_verified_event(self, payments):
        body = json.dumps({
            "type": "payment_intent.succeeded",
            "data": {"object": {"id": "pi_7", "object": "payment_intent"}},
        })

        outcome = await payments.handle_webhook("stripe", body.encode(), "valid")

        assert outcome.success is True
        assert outcome.payment_id == "pi_7"
        assert outcome.status == PaymentStatus.COMPLETED
        assert outcome.event_type == "payment_intent.succeeded"

    async def test_bad_signature(self, payments):
        outcome = await payments.handle_webhook("stripe", b"{}", "forged")
        assert outcome.success is False
        assert outcome.error == "Invalid webhook signature"

    async def test_unknown_gateway(self, payments):
        outcome = await payments.handle_webhook("venmo", b"{}", "valid")
        assert outcome.success is False
        assert "venmo" in outcome.error


class TestHttpTransport:
    async def test_reads_retry_server_errors(self, fast_config):
        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) < 3:
                return httpx.Response(503, json={"error": "busy"})
            return httpx.Response(200, json=CHARGE)

        gateway = coinbase_with(handler, fast_config)

        assert await gateway.get_payment_status("charge-1") == PaymentStatus.COMPLETED
        assert len(calls) == 3
        assert calls[0].url.path == "/charges/charge-1"

    async def test_reads_give_up_after_max_retries(self, fast_config):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(502)

        gateway = coinbase_with(handler, fast_config)

        assert await gateway.get_payment_status("charge-1") == PaymentStatus.FAILED
        assert len(calls) == 3

    async def test_writes_are_not_retried_on_server_errors(self, fast_config):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(500, json={"error": "boom"})

        gateway = coinbase_with(handler, fast_config)

        with pytest.raises(GatewayError, match=r"HTTP 500"):
            await gateway.create_payment_intent(Decimal("56.14"), "USD", {"orderNumber": "VG-2026-ABC123"})
        assert len(calls) == 1

    async def test_connection_failures_are_retried(self, fast_config):
        calls = []

        def handler(request):
            calls.append(request)
            raise httpx.ConnectError("connection refused", request=request)

        gateway = coinbase_with(handler, fast_config)

        with pytest.raises(GatewayError, match="Coinbase Commerce is unreachable"):
            await gateway.create_payment_intent(Decimal("56.14"), "USD", {})
        assert len(calls) == 3

    async def test_write_timeout_is_not_retried(self, fast_config):
        calls = []

        def handler(request):
            calls.append(request)
            raise httpx.ReadTimeout("slow", request=request)

        gateway = coinbase_with(handler, fast_config)

        with pytest.raises(GatewayError, match="timed out"):
            await gateway.create_payment_intent(Decimal("56.14"), "USD", {})
        assert len(calls) == 1

    async def test_charge_body(self, fast_config):
        captured = {}

        def handler(request):
            captured["body"] = json.loads(request.content)
            return httpx.Response(201, json={"data": {
                "id": "charge-9",
                "code": "XYZ",
                "hosted_url": "https://commerce.coinbase.com/charges/XYZ",
                "timeline": [{"status": "NEW"}],
            }})

        gateway = coinbase_with(handler, fast_config)
        intent = await gateway.create_payment_intent(Decimal("56.14"), "usd", {"orderNumber": "VG-2026-ABC123"})

        assert captured["body"]["local_price"] == {"amount": "56.14", "currency": "USD"}
        assert captured["body"]["metadata"]["orderNumber"] == "VG-2026-ABC123"
        assert intent.id == "charge-9"
        assert intent.status == PaymentStatus.PENDING
        assert intent.client_secret.endswith("/XYZ")

    async def test_currency_guard_runs_before_network(self, fast_config):
        def handler(request):
            raise AssertionError("no request expected")

        gateway = coinbase_with(handler, fast_config)

        with pytest.raises(UnsupportedCurrency):
            await gateway.create_payment_intent(Decimal("1.00"), "BTC", {})

    async def test_manual_refund_makes_no_request(self, fast_config):
        calls = []
        gateway = coinbase_with(lambda request: calls.append(request), fast_config)

        result = await gateway.refund_payment("charge-1")

        assert result.success is False
        assert calls == []


class TestBinancePaySigning:
    async def test_requests_are_signed(self, fast_config):
        captured = {}

        def handler(request):
            captured["request"] = request
            return httpx.Response(200, json={
                "status": "SUCCESS",
                "code": "000000",
                "data": {"prepayId": "P-1", "checkoutUrl": "https://pay.binance.com/checkout/P-1"},
            })

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="https://bpay.binanceapi.com")
        gateway = BinancePayGateway(fast_config, client=client)

        intent = await gateway.create_payment_intent(Decimal("10.00"), "usdt", {"orderNumber": "VG-2026-ABC123"})

        request = captured["request"]
        expected = sign_payload(
            "bn-secret",
            request.headers["BinancePay-Timestamp"],
            request.headers["BinancePay-Nonce"],
            request.content,
        )
        assert request.headers["BinancePay-Signature"] == expected
        assert request.headers["BinancePay-Certificate-SN"] == "bn-key"
        body = json.loads(request.content)
        assert body["currency"] == "USDT"
        assert "returnUrl" not in body
        assert intent.id == "P-1"
        assert intent.client_secret == "https://pay.binance.com/checkout/P-1"

    async def test_api_level_error(self, fast_config):
        def handler(request):
            return httpx.Response(200, json={"status": "FAIL", "code": "400201", "errorMessage": "bad"})

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="https://bpay.binanceapi.com")
        gateway = BinancePayGateway(fast_config, client=client)

        with pytest.raises(GatewayError) as excinfo:
            await gateway.create_payment_intent(Decimal("10.00"), "USDT", {})
        assert excinfo.value.code == "400201"


def paypal_order(order_id, status="COMPLETED", capture_id="CAP-1", value="56.14"):
    order = {"id": order_id, "status": status, "purchase_units": [{"reference_id": "VG-2026-ABC123"}]}
    if capture_id:
        order["purchase_units"][0]["payments"] = {"captures": [{
            "id": capture_id,
            "status": "COMPLETED",
            "amount": {"value": value, "currency_code": "USD"},
        }]}
    return order


class PayPalSandbox:
    """Scripted PayPal REST API. `orders` maps an order id to the bodies GET returns, in turn."""

    def __init__(self):
        self.requests = []
        self.orders = {}
        self.capture_response = None
        self.verification_status = "SUCCESS"

    @property
    def calls(self):
        return [(request.method, request.url.path) for request in self.requests]

    def __call__(self, request):
        self.requests.append(request)
        path = request.url.path

        if path == "/v1/oauth2/token":
            return httpx.Response(200, json={"access_token": "A21", "token_type": "Bearer", "expires_in": 32400})
        if path == "/v1/notifications/verify-webhook-signature":
            return httpx.Response(200, json={"verification_status": self.verification_status})
        if path == "/v2/checkout/orders":
            return httpx.Response(201, json={
                "id": "ORDER-1",
                "status": "CREATED",
                "links": [{"rel": "approve", "href": "https://www.sandbox.paypal.com/checkoutnow?token=ORDER-1"}],
            })
        if path.endswith("/capture"):
            return self.capture_response
        if path.startswith("/v2/payments/captures/") and path.endswith("/refund"):
            requested = json.loads(request.content or b"{}").get("amount") or {}
            return httpx.Response(201, json={
                "id": "RF-1",
                "status": "COMPLETED",
                "amount": {"value": requested.get("value", "56.14"), "currency_code": "USD"},
            })
        if request.method == "GET" and path.startswith("/v2/checkout/orders/"):
            bodies = self.orders.get(path.rsplit("/", 1)[1])
            if not bodies:
                return httpx.Response(404, json={"name": "RESOURCE_NOT_FOUND"})
            return httpx.Response(200, json=bodies.pop(0) if len(bodies) > 1 else bodies[0])
        return httpx.Response(404)


@pytest.fixture
def sandbox():
    return PayPalSandbox()


@pytest.fixture
def paypal(sandbox, fast_config):
    fast_config.PAYPAL_CLIENT_ID = "client-id"
    fast_config.PAYPAL_CLIENT_SECRET = "client-secret"
    fast_config.PAYPAL_WEBHOOK_ID = "WH-1"
    client = httpx.AsyncClient(transport=httpx.MockTransport(sandbox), base_url="https://api-m.sandbox.paypal.com")
    return PayPalGateway(fast_config, client=client)


class TestPayPalGateway:
    async def test_create_order(self, paypal, sandbox):
        intent = await paypal.create_payment_intent(Decimal("56.14"), "usd", {"orderNumber": "VG-2026-ABC123"})

        create = sandbox.requests[-1]
        body = json.loads(create.content)
        assert body["intent"] == "CAPTURE"
        assert body["purchase_units"][0]["amount"] == {"currency_code": "USD", "value": "56.14"}
        assert body["purchase_units"][0]["reference_id"] == "VG-2026-ABC123"
        assert create.headers["Authorization"] == "Bearer A21"
        assert create.headers["PayPal-Request-Id"] == "create-VG-2026-ABC123"
        assert intent.id == "ORDER-1"
        assert intent.status == PaymentStatus.PENDING
        assert intent.client_secret.endswith("token=ORDER-1")

    async def test_token_is_cached(self, paypal, sandbox):
        await paypal.create_payment_intent(Decimal("5.00"), "USD", {})
        await paypal.create_payment_intent(Decimal("6.00"), "USD", {})

        assert sandbox.calls.count(("POST", "/v1/oauth2/token")) == 1

    async def test_capture(self, paypal, sandbox):
        sandbox.orders["ORDER-1"] = [paypal_order("ORDER-1", status="APPROVED", capture_id=None)]
        sandbox.capture_response = httpx.Response(201, json=paypal_order("ORDER-1"))

        result = await paypal.confirm_payment("ORDER-1")

        assert result.success is True
        assert result.transaction_id == "CAP-1"
        assert result.amount == Decimal("56.14")
        assert sandbox.requests[-1].headers["PayPal-Request-Id"] == "capture-ORDER-1"

    async def test_already_captured_order_is_read_back(self, paypal, sandbox):
        sandbox.orders["ORDER-1"] = [
            paypal_order("ORDER-1", status="APPROVED", capture_id=None),
            paypal_order("ORDER-1"),
        ]
        sandbox.capture_response = httpx.Response(422, json={
            "name": "UNPROCESSABLE_ENTITY",
            "details": [{"issue": "ORDER_ALREADY_CAPTURED"}],
        })

        result = await paypal.confirm_payment("ORDER-1")

        assert result.success is True
        assert result.transaction_id == "CAP-1"
        assert sandbox.calls.count(("GET", "/v2/checkout/orders/ORDER-1")) == 2

    async def test_completed_order_is_not_captured_again(self, paypal, sandbox):
        sandbox.orders["ORDER-1"] = [paypal_order("ORDER-1")]

        result = await paypal.confirm_payment("ORDER-1")

        assert result.success is True
        assert ("POST", "/v2/checkout/orders/ORDER-1/capture") not in sandbox.calls

    async def test_refund_by_order_id_targets_its_capture(self, paypal, sandbox):
        sandbox.orders["ORDER-1"] = [paypal_order("ORDER-1")]

        result = await paypal.refund_payment("ORDER-1", Decimal("10.00"))

        assert result.success is True
        assert result.status == PaymentStatus.REFUNDED
        assert result.amount == Decimal("10.00")
        assert sandbox.calls[-1] == ("POST", "/v2/payments/captures/CAP-1/refund")

    async def test_refund_by_capture_id(self, paypal, sandbox):
        result = await paypal.refund_payment("CAP-7")

        assert result.success is True
        assert sandbox.calls[-1] == ("POST", "/v2/payments/captures/CAP-7/refund")

    async def test_refund_of_uncaptured_order(self, paypal, sandbox):
        sandbox.orders["ORDER-2"] = [paypal_order("ORDER-2", status="APPROVED", capture_id=None)]

        result = await paypal.refund_payment("ORDER-2")

        assert result.success is False
        assert "no capture" in result.error
        assert not any(path.endswith("/refund") for _, path in sandbox.calls)

    async def test_webhook_verified_by_paypal(self, paypal, sandbox):
        payload = json.dumps({
            "id": "WH-EVT-1",
            "event_type": "PAYMENT.CAPTURE.COMPLETED",
            "resource": {"id": "CAP-1", "supplementary_data": {"related_ids": {"order_id": "ORDER-1"}}},
        }).encode()
        headers = {
            "PAYPAL-TRANSMISSION-ID": "tx-1",
            "PAYPAL-TRANSMISSION-TIME": "2026-10-18T10:00:00Z",
            "PAYPAL-TRANSMISSION-SIG": "sig",
            "PAYPAL-CERT-URL": "https://api.sandbox.paypal.com/cert.pem",
            "PAYPAL-AUTH-ALGO": "SHA256withRSA",
        }

        event = await paypal.verify_webhook(payload, None, headers)

        verification = json.loads(sandbox.requests[-1].content)
        assert verification["webhook_id"] == "WH-1"
        assert verification["transmission_sig"] == "sig"
        assert verification["webhook_event"]["event_type"] == "PAYMENT.CAPTURE.COMPLETED"
        assert event.type == "PAYMENT.CAPTURE.COMPLETED"
        assert event.data["id"] == "CAP-1"

        sandbox.verification_status = "FAILURE"
        with pytest.raises(InvalidSignature):
            await paypal.verify_webhook(payload, None, headers)

    async def test_webhook_missing_transmission_headers(self, paypal, sandbox):
        with pytest.raises(InvalidSignature, match="Missing webhook headers"):
            await paypal.verify_webhook(b'{"event_type": "PAYMENT.CAPTURE.COMPLETED"}', None, {})
        assert sandbox.requests == []


class TestPayPalRefundAfterWebhook:
    async def test_refund_reaches_the_capture(self, paypal, sandbox, products, events, mail, gift_card, purchase_request):
        orders = OrderService(
            payments=PaymentService({"paypal": paypal}),
            products=products,
            events=events,
            mail=mail,
        )
        purchase = await orders.process_purchase(purchase_request(payment_method={"type": "paypal", "paypal": {}}))
        assert purchase.order.transaction_id == "ORDER-1"

        await orders.update_payment_status_from_webhook(
            "ORDER-1", PaymentStatus.COMPLETED, "PAYMENT.CAPTURE.COMPLETED", gateway="paypal"
        )
        sandbox.orders["ORDER-1"] = [paypal_order("ORDER-1")]

        result = await orders.refund_order(purchase.order.id)

        assert result.success is True
        assert result.order.payment_status == PaymentStatus.REFUNDED
        assert sandbox.calls[-1] == ("POST", "/v2/payments/captures/CAP-1/refund")
