"""
Service Container
=================
Wires repositories, gateways, mail and the order orchestrator for one
storage backend. The FastAPI app keeps a single instance on app.state.
"""

from typing import Optional

import structlog

from payment.service import PaymentService
from services.cart_service import CartService
from services.mail_service import IMailSender, build_mail_sender
from services.order_service import OrderService
from services.stock_validation import StockValidationService
from storage.repositories import (
    IEventLog,
    InMemoryCartRepository,
    InMemoryEventLog,
    InMemoryOrderRepository,
    InMemoryProductRepository,
    InMemoryUserRepository,
)

logger = structlog.get_logger().bind(component="container")


class AppServices:
    """Everything a request handler needs"""

    def __init__(
        self,
        orders: OrderService,
        payments: PaymentService,
        events: IEventLog,
        mail: IMailSender,
        uses_database: bool = False,
    ):
        self.orders = orders
        self.payments = payments
        self.events = events
        self.mail = mail
        self.uses_database = uses_database

    @property
    def carts(self) -> CartService:
        return self.orders.cart_service

    @property
    def stock(self) -> StockValidationService:
        return self.orders.stock

    async def close(self):
        await self.payments.close()
        await self.mail.close()


def build_services(
    storage_backend: str = "memory",
    payments: Optional[PaymentService] = None,
    mail: Optional[IMailSender] = None,
) -> AppServices:
    payments = payments or PaymentService()
    mail = mail or build_mail_sender()

    if storage_backend == "postgres":
        from storage.postgres import (
            PostgresCartRepository,
            PostgresEventLog,
            PostgresOrderRepository,
            PostgresProductRepository,
            PostgresUserRepository,
        )
        events = PostgresEventLog()
        orders = OrderService(
            payments=payments,
            products=PostgresProductRepository(),
            users=PostgresUserRepository(),
            carts=PostgresCartRepository(),
            orders=PostgresOrderRepository(),
            events=events,
            mail=mail,
        )
    else:
        events = InMemoryEventLog()
        orders = OrderService(
            payments=payments,
            products=InMemoryProductRepository(),
            users=InMemoryUserRepository(),
            carts=InMemoryCartRepository(),
            orders=InMemoryOrderRepository(),
            events=events,
            mail=mail,
        )

    logger.info("services_built", storage_backend=storage_backend, mail=type(mail).__name__)
    return AppServices(
        orders=orders,
        payments=payments,
        events=events,
        mail=mail,
        uses_database=storage_backend == "postgres",
    )
