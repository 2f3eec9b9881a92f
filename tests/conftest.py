"""Pytest fixtures for checkout tests."""

import itertools
from decimal import Decimal

import pytest

from errors import GatewayError, InvalidSignature
from payment.base import IPaymentGateway, parse_webhook_body
from payment.service import PaymentService
from schemas.checkout import CreateOrderRequest
from schemas.commerce import Product
from schemas.payment import PaymentIntent, PaymentResult, PaymentStatus, WebhookEvent
from services.mail_service import IMailSender
from services.order_service import OrderService
from storage.repositories import InMemoryEventLog, InMemoryProductRepository


SHIPPING = {
    "firstName": "Jane",
    "lastName": "Doe",
    "email": "jane@example.com",
    "address": "1 Market St",
    "city": "Springfield",
    "state": "IL",
    "zipCode": "62701",
    "country": "US",
}


class FakeGateway(IPaymentGateway):
    """Scripted processor. `confirm_status` decides what confirmation reports."""

    display_name = "Fake Processor"

    def __init__(self, name: str = "stripe", confirm_status: PaymentStatus = PaymentStatus.COMPLETED):
        self.name = name
        self.confirm_status = confirm_status
        self.fail_create = False
        self.refund_success = True
        self.created = []
        self.confirm_calls = []
        self.refund_calls = []
        self._ids = itertools.count(1)

    async def create_payment_intent(self, amount, currency, metadata=None):
        if self.fail_create:
            raise GatewayError("Fake Processor order creation failed", gateway=self.name)
        intent = PaymentIntent(
            id=f"{self.name}_pi_{next(self._ids)}",
            amount=amount,
            currency=currency,
            status=PaymentStatus.PENDING,
            client_secret="secret_123",
            metadata=metadata or {},
        )
        self.created.append(intent)
        return intent

    async def confirm_payment(self, intent_id, method_data=None):
        self.confirm_calls.append((intent_id, method_data))
        status = self.confirm_status
        return PaymentResult(
            success=status == PaymentStatus.COMPLETED,
            payment_id=intent_id,
            transaction_id=intent_id,
            status=status,
            error=None if status == PaymentStatus.COMPLETED else f"Payment status: {status.value}",
        )

    async def refund_payment(self, payment_id, amount=None):
        self.refund_calls.append((payment_id, amount))
        if not self.refund_success:
            return PaymentResult.failure(payment_id, "Refund declined")
        return PaymentResult(
            success=True,
            payment_id=payment_id,
            transaction_id=f"re_{payment_id}",
            status=PaymentStatus.REFUNDED,
            amount=amount or Decimal("0"),
        )

    async def verify_webhook(self, payload, signature, headers=None):
        if signature != "valid":
            raise InvalidSignature(self.name)
        body = parse_webhook_body(self.name, payload)
        return WebhookEvent(
            id=body.get("id", ""),
            type=body.get("type", "unknown"),
            data=body.get("data") or {},
            signature=signature,
        )

    async def get_payment_status(self, payment_id):
        return self.confirm_status


class RecordingMailSender(IMailSender):
    def __init__(self):
        self.sent = []
        self.fail = False

    async def send_email(self, to, subject, html):
        if self.fail:
            raise RuntimeError("SMTP relay refused the message")
        self.sent.append({"to": to, "subject": subject, "html": html})


@pytest.fixture
def card_gateway():
    return FakeGateway("stripe")


@pytest.fixture
def crypto_gateway():
    return FakeGateway("coinbase", confirm_status=PaymentStatus.PENDING)


@pytest.fixture
def payments(card_gateway, crypto_gateway):
    return PaymentService({"stripe": card_gateway, "coinbase": crypto_gateway})


@pytest.fixture
def products():
    return InMemoryProductRepository()


@pytest.fixture
def events():
    return InMemoryEventLog()


@pytest.fixture
def mail():
    return RecordingMailSender()


@pytest.fixture
def order_service(payments, products, events, mail):
    return OrderService(payments=payments, products=products, events=events, mail=mail)


@pytest.fixture
async def gift_card(products):
    """Gift Card at 25.99 with 10 in stock"""
    product = Product(id="gift-card", name="Gift Card", sku="GC-25", price=Decimal("25.99"), stock=10)
    await products.save(product)
    return product


@pytest.fixture
def purchase_request():
    """Builder for CreateOrderRequest in its wire (camelCase) form"""

    def build(
        quantity: int = 2,
        product_id: str = "gift-card",
        token=None,
        cart_id=None,
        items=None,
        payment_method=None,
        email: str = "jane@example.com",
    ) -> CreateOrderRequest:
        if payment_method is None:
            card = {"gateway": "stripe"}
            if token:
                card["token"] = token
            payment_method = {"type": "credit_card", "creditCard": card}
        if items is None and cart_id is None:
            items = [{"productId": product_id, "quantity": quantity}]

        payload = {
            "customerEmail": email,
            "paymentMethod": payment_method,
            "shipping": {**SHIPPING, "email": email},
        }
        if items is not None:
            payload["items"] = items
        if cart_id is not None:
            payload["cartId"] = cart_id
        return CreateOrderRequest.model_validate(payload)

    return build


@pytest.fixture
def stock_of(products):
    async def read(product_id: str = "gift-card") -> int:
        return (await products.get(product_id)).stock

    return read


@pytest.fixture
def event_types(events):
    async def read(order_id: str) -> list:
        return [e.event_type for e in await events.get_for_order(order_id)]

    return read
