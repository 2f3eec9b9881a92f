"""Tests for the FastAPI app."""

import asyncio
import json
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from api.container import build_services
from api.server import create_app
from schemas.commerce import Product
from schemas.payment import PaymentStatus


PURCHASE = {
    "customerEmail": "jane@example.com",
    "items": [{"productId": "gift-card", "quantity": 2}],
    "paymentMethod": {"type": "credit_card", "creditCard": {"gateway": "stripe"}},
    "shipping": {
        "firstName": "Jane",
        "lastName": "Doe",
        "email": "jane@example.com",
        "address": "1 Market St",
        "city": "Springfield",
        "state": "IL",
        "zipCode": "62701",
        "country": "US",
    },
}


@pytest.fixture
def services(payments, mail):
    services = build_services("memory", payments=payments, mail=mail)
    product = Product(id="gift-card", name="Gift Card", price=Decimal("25.99"), stock=10)
    asyncio.run(services.orders.products.save(product))
    return services


@pytest.fixture
def api_client(services):
    with TestClient(create_app(services=services, run_background_tasks=False)) as client:
        yield client


@pytest.fixture
def order_id(api_client):
    response = api_client.post("/orders/purchase", json=PURCHASE)
    assert response.status_code == 200
    return response.json()["order"]["id"]


def stripe_webhook(api_client, payment_id, event_type="payment_intent.succeeded", signature="valid"):
    body = json.dumps({
        "id": "evt_1",
        "type": event_type,
        "data": {"object": {"id": payment_id, "object": "payment_intent"}},
    })
    return api_client.post(
        "/payment/webhook/stripe",
        content=body,
        headers={"stripe-signature": signature, "content-type": "application/json"},
    )


class TestHealthCheck:
    def test_health(self, api_client):
        response = api_client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["storage_backend"] == "memory"
        assert data["database_connected"] is False
        assert data["gateways"] == ["coinbase", "stripe"]

    def test_readiness_and_liveness(self, api_client):
        assert api_client.get("/ready").json() == {"ready": True}
        assert api_client.get("/live").json() == {"live": True}

    def test_timing_headers(self, api_client):
        response = api_client.get("/live")
        assert "X-Request-ID" in response.headers
        assert float(response.headers["X-Response-Time-Ms"]) >= 0


class TestPurchase:
    def test_purchase(self, api_client):
        response = api_client.post("/orders/purchase", json=PURCHASE)

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["requiresAction"] is True
        assert data["order"]["total"] == 56.14
        assert data["order"]["paymentStatus"] == "PENDING"
        assert data["order"]["orderNumber"].startswith("VG-")
        assert data["paymentIntent"]["clientSecret"] == "secret_123"

    def test_stock_failure_is_400(self, api_client):
        body = {**PURCHASE, "items": [{"productId": "gift-card", "quantity": 11}]}

        response = api_client.post("/orders/purchase", json=body)

        assert response.status_code == 400
        assert "Available: 10" in response.json()["detail"]
        assert response.json()["code"] == "client_error"

    def test_malformed_request_is_400(self, api_client):
        body = {k: v for k, v in PURCHASE.items() if k != "shipping"}

        response = api_client.post("/orders/purchase", json=body)

        assert response.status_code == 400
        assert response.json()["code"] == "validation_error"

    def test_gateway_failure_is_502(self, api_client, card_gateway):
        card_gateway.fail_create = True

        response = api_client.post("/orders/purchase", json=PURCHASE)

        assert response.status_code == 502
        assert response.json()["code"] == "gateway_error"


class TestOrders:
    def test_get_and_list(self, api_client, order_id):
        assert api_client.get(f"/orders/{order_id}").json()["id"] == order_id

        page = api_client.get("/orders", params={"page": 1, "limit": 5}).json()
        assert page["total"] == 1
        assert page["totalPages"] == 1

        assert api_client.get("/orders", params={"status": "CANCELLED"}).json()["total"] == 0

    def test_missing_order_is_404(self, api_client):
        response = api_client.get("/orders/missing")
        assert response.status_code == 404
        assert response.json() == {"detail": "Order with ID missing not found", "code": "not_found"}

    def test_confirm_payment_is_idempotent(self, api_client, order_id, mail):
        first = api_client.post(f"/orders/{order_id}/confirm-payment", json={"methodData": {"payment_method": "pm_x"}})
        second = api_client.post(f"/orders/{order_id}/confirm-payment")

        assert first.status_code == 200
        assert first.json()["order"]["paymentStatus"] == "COMPLETED"
        assert second.json()["alreadyConfirmed"] is True
        assert len(mail.sent) == 1

    def test_declined_confirmation_is_400(self, api_client, order_id, card_gateway):
        card_gateway.confirm_status = PaymentStatus.FAILED

        response = api_client.post(f"/orders/{order_id}/confirm-payment")

        assert response.status_code == 400
        assert response.json()["success"] is False
        assert response.json()["order"]["status"] == "CANCELLED"

    def test_retry_after_decline(self, api_client, order_id, card_gateway):
        card_gateway.confirm_status = PaymentStatus.FAILED
        api_client.post(f"/orders/{order_id}/confirm-payment")
        card_gateway.confirm_status = PaymentStatus.COMPLETED

        response = api_client.post(f"/orders/{order_id}/retry-payment", json={"methodData": {}})

        assert response.status_code == 200
        assert response.json()["order"]["paymentStatus"] == "COMPLETED"

    def test_payment_status(self, api_client, order_id):
        data = api_client.get(f"/orders/{order_id}/payment-status").json()
        assert data["paymentStatus"] == "PENDING"
        assert data["canRetry"] is True
        assert data["requiresAction"] is True

    def test_events(self, api_client, order_id):
        data = api_client.get(f"/orders/{order_id}/events").json()
        assert data["orderId"] == order_id
        assert [e["event_type"] for e in data["events"]] == ["ORDER_CREATED", "STOCK_RESERVED"]

    def test_update_and_cancel(self, api_client, order_id):
        updated = api_client.patch(f"/orders/{order_id}", json={"status": "PROCESSING"})
        assert updated.json()["status"] == "PROCESSING"

        cancelled = api_client.delete(f"/orders/{order_id}")
        assert cancelled.status_code == 200
        assert cancelled.json()["status"] == "CANCELLED"

    def test_unexpected_error_is_500(self, services, monkeypatch):
        async def broken(order_id):
            raise RuntimeError("database melted")

        monkeypatch.setattr(services.orders, "find_one", broken)
        app = create_app(services=services, run_background_tasks=False)

        with TestClient(app, raise_server_exceptions=False) as client:
            response = client.get("/orders/anything")

        assert response.status_code == 500
        assert response.json() == {"detail": "Could not complete operation"}


class TestPayment:
    def test_methods(self, api_client):
        assert api_client.get("/payment/methods").json() == {"methods": [
            {"type": "credit_card", "gateways": ["stripe"]},
            {"type": "crypto", "gateways": ["coinbase"]},
        ]}

    def test_webhook_confirms_order(self, api_client, order_id, mail):
        transaction_id = api_client.get(f"/orders/{order_id}").json()["transactionId"]

        response = stripe_webhook(api_client, transaction_id)
        replay = stripe_webhook(api_client, transaction_id)

        assert response.json() == {"success": True}
        assert replay.status_code == 200
        assert api_client.get(f"/orders/{order_id}").json()["paymentStatus"] == "COMPLETED"
        assert len(mail.sent) == 1

    def test_webhook_bad_signature_is_400(self, api_client, order_id):
        response = stripe_webhook(api_client, "pi_x", signature="forged")

        assert response.status_code == 400
        assert response.json() == {"success": False, "error": "Invalid webhook signature"}

    def test_webhook_for_unknown_payment_is_acknowledged(self, api_client):
        assert stripe_webhook(api_client, "pi_unknown").status_code == 200

    def test_refund(self, api_client, order_id):
        pending = api_client.post(f"/payment/refund/{order_id}")
        assert pending.status_code == 400
        assert pending.json()["detail"] == "Only completed payments can be refunded"

        api_client.post(f"/orders/{order_id}/confirm-payment")
        refunded = api_client.post(f"/payment/refund/{order_id}", json={"amount": 10})

        assert refunded.status_code == 200
        assert refunded.json()["order"]["paymentDetails"]["refunded_amount"] == "10.00"

    def test_retry_completed_order_is_400(self, api_client, order_id):
        api_client.post(f"/orders/{order_id}/confirm-payment")

        response = api_client.post(f"/payment/retry/{order_id}")

        assert response.status_code == 400
        assert response.json()["detail"] == "Order payment is already completed"


class TestCart:
    def test_cart_flow(self, api_client):
        cart = api_client.post("/cart", json={"userId": "u1"}).json()
        assert api_client.post("/cart", json={"userId": "u1"}).status_code == 409

        added = api_client.post("/cart/add", json={"userId": "u1", "productId": "gift-card", "quantity": 2}).json()
        item_id = added["items"][0]["id"]
        assert added["items"][0]["product"]["name"] == "Gift Card"

        totals = api_client.get(f"/cart/{cart['id']}/totals").json()
        assert totals == {"subtotal": 51.98, "totalItems": 2, "items": 1}

        assert api_client.get(f"/cart/{cart['id']}/validate").json()["valid"] is True
        assert api_client.get("/cart/user/u1").json()["id"] == cart["id"]

        updated = api_client.patch(f"/cart/item/{item_id}", json={"quantity": 3}).json()
        assert updated["items"][0]["quantity"] == 3

        assert api_client.delete(f"/cart/item/{item_id}").json()["items"] == []
        assert api_client.delete(f"/cart/{cart['id']}/clear").json()["items"] == []

    def test_missing_cart_is_404(self, api_client):
        assert api_client.get("/cart/missing").status_code == 404

    def test_add_beyond_stock_is_400(self, api_client):
        response = api_client.post("/cart/add", json={"userId": "u1", "productId": "gift-card", "quantity": 50})
        assert response.status_code == 400
        assert response.json()["detail"] == "Insufficient stock. Available: 10"

    def test_purchase_from_cart(self, api_client):
        cart = api_client.post("/cart/add", json={"userId": "u2", "productId": "gift-card", "quantity": 1}).json()
        body = {k: v for k, v in PURCHASE.items() if k != "items"}

        response = api_client.post("/orders/purchase", json={**body, "cartId": cart["id"]})

        assert response.status_code == 200
        assert api_client.get(f"/cart/{cart['id']}").json()["items"] == []
