"""
Mail Service
============
Order confirmation email: a small HTML template plus swappable senders.

- SendGridMailSender: SendGrid v3 HTTP API over httpx
- LoggingMailSender: logs instead of sending (MAIL_ENABLED=false, local runs)

Delivery is fire-and-forget from the order flow's point of view; callers
fence send failures themselves.
"""

import os
from abc import ABC, abstractmethod
from decimal import Decimal
from html import escape
from typing import Optional

import httpx
import structlog

from schemas.commerce import Order

logger = structlog.get_logger().bind(component="mail_service")


class MailConfig:
    SENDGRID_API_KEY = os.getenv("SENDGRID_API_KEY", "")
    SENDGRID_API_URL = os.getenv("SENDGRID_API_URL", "https://api.sendgrid.com/v3/mail/send")
    MAIL_FROM = os.getenv("MAIL_FROM", "orders@virtualgifts.example")
    MAIL_ENABLED = os.getenv("MAIL_ENABLED", "false").lower() in ("1", "true", "yes")
    MAIL_TIMEOUT_SECONDS = float(os.getenv("MAIL_TIMEOUT_SECONDS", "10"))


config = MailConfig()


# =============================================================================
# SENDERS
# =============================================================================

class IMailSender(ABC):

    @abstractmethod
    async def send_email(self, to: str, subject: str, html: str) -> None:
        pass

    async def close(self) -> None:
        pass


class LoggingMailSender(IMailSender):
    """Records outgoing mail in the log only"""

    async def send_email(self, to: str, subject: str, html: str) -> None:
        logger.info("email_suppressed", to=to, subject=subject, size=len(html))


class SendGridMailSender(IMailSender):

    def __init__(self, config: MailConfig = config, client: Optional[httpx.AsyncClient] = None):
        self.config = config
        self._client = client

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.config.MAIL_TIMEOUT_SECONDS)
        return self._client

    async def send_email(self, to: str, subject: str, html: str) -> None:
        payload = {
            "personalizations": [{"to": [{"email": to}]}],
            "from": {"email": self.config.MAIL_FROM},
            "subject": subject,
            "content": [{"type": "text/html", "value": html}],
        }
        response = await self.client.post(
            self.config.SENDGRID_API_URL,
            json=payload,
            headers={"Authorization": f"Bearer {self.config.SENDGRID_API_KEY}"},
        )
        response.raise_for_status()
        logger.info("email_sent", to=to, subject=subject)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


def build_mail_sender(config: MailConfig = config) -> IMailSender:
    if config.MAIL_ENABLED and config.SENDGRID_API_KEY:
        return SendGridMailSender(config)
    return LoggingMailSender()


# =============================================================================
# TEMPLATE
# =============================================================================

PAYMENT_METHOD_LABELS = {
    "credit_card": "Credit Card",
    "crypto": "Cryptocurrency",
    "binance_pay": "Binance Pay",
    "paypal": "PayPal",
}


def _money(value: Decimal) -> str:
    return f"${value:,.2f}"


def order_confirmation_subject(order: Order) -> str:
    return f"Order Confirmation - {order.order_number}"


def render_order_confirmation_email(order: Order, customer_name: str) -> str:
    rows = "".join(
        f"<tr><td>{escape(item.product_name or item.product_id)}</td>"
        f"<td style=\"text-align:center\">{item.quantity}</td>"
        f"<td style=\"text-align:right\">{_money(item.price)}</td>"
        f"<td style=\"text-align:right\">{_money(item.total)}</td></tr>"
        for item in order.items
    )
    method = PAYMENT_METHOD_LABELS.get(order.payment_method or "", order.payment_method or "")
    placed = order.created_at.strftime("%B %d, %Y")

    address = ""
    if order.shipping_details is not None:
        s = order.shipping_details
        address = (
            "<h3>Billing address</h3>"
            f"<p>{escape(s.address)}<br>{escape(s.city)}, {escape(s.state)} {escape(s.zip_code)}"
            f"<br>{escape(s.country)}</p>"
        )

    return (
        "<!DOCTYPE html>"
        "<html lang=\"en\"><head><meta charset=\"UTF-8\">"
        f"<title>Order Confirmation - {escape(order.order_number)}</title></head>"
        "<body style=\"font-family:Arial,sans-serif;color:#374151\">"
        "<h1>Thank you for your order!</h1>"
        f"<p>Hi {escape(customer_name)}, your payment was received.</p>"
        f"<p><strong>Order:</strong> {escape(order.order_number)}<br>"
        f"<strong>Date:</strong> {placed}<br>"
        f"<strong>Payment method:</strong> {escape(method)}</p>"
        "<table width=\"100%\" cellpadding=\"6\">"
        "<tr><th align=\"left\">Item</th><th>Qty</th><th align=\"right\">Price</th>"
        "<th align=\"right\">Total</th></tr>"
        f"{rows}</table>"
        f"<p style=\"text-align:right\">Subtotal: {_money(order.subtotal)}<br>"
        f"Tax: {_money(order.tax)}<br>"
        f"<strong>Total: {_money(order.total)}</strong></p>"
        f"{address}"
        "</body></html>"
    )
