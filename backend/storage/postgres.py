"""
PostgreSQL Repositories
=======================
asyncpg-backed implementations of the storage interfaces.

- Order + items are written inside one transaction
- Stock decrement is a single conditional UPDATE (no read-then-write)
- order_number uniqueness is enforced by the table constraint
"""

import json
import uuid
from typing import List, Optional, Tuple

import asyncpg
import structlog

from database import Database, get_order_events, log_event
from errors import DuplicateOrderNumber
from schemas.commerce import (
    Cart,
    CartItem,
    Order,
    OrderItem,
    OrderStatus,
    Product,
    ProductStatus,
    ShippingDetails,
    User,
)
from storage.repositories import (
    ICartRepository,
    IEventLog,
    IOrderRepository,
    IProductRepository,
    IUserRepository,
    SystemEvent,
)

logger = structlog.get_logger().bind(component="postgres_storage")


def _as_uuid(value: Optional[str]) -> Optional[uuid.UUID]:
    """Parse an identifier; malformed ids behave like unknown ids"""
    if not value:
        return None
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


def _row_dict(row: asyncpg.Record) -> dict:
    data = dict(row)
    for key, value in data.items():
        if isinstance(value, uuid.UUID):
            data[key] = str(value)
    return data


# =============================================================================
# PRODUCTS
# =============================================================================

class PostgresProductRepository(IProductRepository):

    async def get(self, product_id: str) -> Optional[Product]:
        pid = _as_uuid(product_id)
        if pid is None:
            return None
        row = await Database.fetch_one("SELECT * FROM products WHERE id = $1", pid)
        return Product(**_row_dict(row)) if row else None

    async def get_many(self, product_ids: List[str]) -> List[Product]:
        ids = [u for u in (_as_uuid(p) for p in product_ids) if u is not None]
        if not ids:
            return []
        rows = await Database.fetch_all("SELECT * FROM products WHERE id = ANY($1::uuid[])", ids)
        return [Product(**_row_dict(r)) for r in rows]

    async def save(self, product: Product) -> Product:
        await Database.execute(
            """
            INSERT INTO products (id, name, sku, price, sale_price, stock, status, updated_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
            ON CONFLICT (id) DO UPDATE SET
                name = EXCLUDED.name, sku = EXCLUDED.sku, price = EXCLUDED.price,
                sale_price = EXCLUDED.sale_price, stock = EXCLUDED.stock,
                status = EXCLUDED.status, updated_at = EXCLUDED.updated_at
            """,
            _as_uuid(product.id), product.name, product.sku, product.price,
            product.sale_price, product.stock, product.status.value, product.updated_at,
        )
        return product

    async def decrement_stock_if_available(self, product_id: str, quantity: int) -> bool:
        row = await Database.fetch_one(
            """
            UPDATE products
            SET stock = stock - $2, updated_at = NOW()
            WHERE id = $1 AND stock >= $2
            RETURNING stock
            """,
            _as_uuid(product_id),
            quantity,
        )
        return row is not None

    async def increment_stock(self, product_id: str, quantity: int) -> None:
        await Database.execute(
            "UPDATE products SET stock = stock + $2, updated_at = NOW() WHERE id = $1",
            _as_uuid(product_id),
            quantity,
        )

    async def update_status(self, product_id: str, status: ProductStatus) -> None:
        await Database.execute(
            "UPDATE products SET status = $2, updated_at = NOW() WHERE id = $1",
            _as_uuid(product_id),
            status.value,
        )

    async def list_status_mismatches(self) -> List[Product]:
        rows = await Database.fetch_all(
            """
            SELECT * FROM products
            WHERE (status = 'ACTIVE' AND stock <= 0)
               OR (status = 'OUT_OF_STOCK' AND stock > 0)
            """
        )
        return [Product(**_row_dict(r)) for r in rows]

    async def list_low_stock(self, threshold: int) -> List[Product]:
        rows = await Database.fetch_all(
            """
            SELECT * FROM products
            WHERE status = 'ACTIVE' AND stock > 0 AND stock <= $1
            ORDER BY stock ASC
            """,
            threshold,
        )
        return [Product(**_row_dict(r)) for r in rows]


# =============================================================================
# USERS
# =============================================================================

_USER_COLUMNS = (
    "email", "first_name", "last_name", "password_hash", "role", "status",
    "phone", "street", "city", "state", "zip_code", "country",
    "notifications_enabled", "marketing_enabled",
)


class PostgresUserRepository(IUserRepository):

    async def get(self, user_id: str) -> Optional[User]:
        uid = _as_uuid(user_id)
        if uid is None:
            return None
        row = await Database.fetch_one("SELECT * FROM users WHERE id = $1", uid)
        return User(**_row_dict(row)) if row else None

    async def get_by_email(self, email: str) -> Optional[User]:
        row = await Database.fetch_one("SELECT * FROM users WHERE email = $1", email)
        return User(**_row_dict(row)) if row else None

    def _values(self, user: User) -> list:
        data = user.model_dump()
        data["password_hash"] = user.password_hash
        data["role"] = user.role.value
        data["status"] = user.status.value
        return [data[c] for c in _USER_COLUMNS]

    async def create(self, user: User) -> User:
        placeholders = ", ".join(f"${i}" for i in range(2, len(_USER_COLUMNS) + 2))
        await Database.execute(
            f"INSERT INTO users (id, {', '.join(_USER_COLUMNS)}) VALUES ($1, {placeholders})",
            _as_uuid(user.id),
            *self._values(user),
        )
        return user

    async def update(self, user: User) -> User:
        assignments = ", ".join(f"{c} = ${i}" for i, c in enumerate(_USER_COLUMNS, start=2))
        await Database.execute(
            f"UPDATE users SET {assignments}, updated_at = NOW() WHERE id = $1",
            _as_uuid(user.id),
            *self._values(user),
        )
        return user


# =============================================================================
# CARTS
# =============================================================================

class PostgresCartRepository(ICartRepository):

    async def _hydrate(self, row: asyncpg.Record) -> Cart:
        cart = _row_dict(row)
        items = await Database.fetch_all(
            "SELECT * FROM cart_items WHERE cart_id = $1 ORDER BY created_at",
            row["id"],
        )
        cart["items"] = [CartItem(**_row_dict(i)) for i in items]
        return Cart(**cart)

    async def get(self, cart_id: str) -> Optional[Cart]:
        cid = _as_uuid(cart_id)
        if cid is None:
            return None
        row = await Database.fetch_one("SELECT * FROM carts WHERE id = $1", cid)
        return await self._hydrate(row) if row else None

    async def get_by_user(self, user_id: str) -> Optional[Cart]:
        uid = _as_uuid(user_id)
        if uid is None:
            return None
        row = await Database.fetch_one("SELECT * FROM carts WHERE user_id = $1", uid)
        return await self._hydrate(row) if row else None

    async def create(self, cart: Cart) -> Cart:
        await Database.execute(
            "INSERT INTO carts (id, user_id, created_at, updated_at) VALUES ($1, $2, $3, $4)",
            _as_uuid(cart.id), _as_uuid(cart.user_id), cart.created_at, cart.updated_at,
        )
        return cart.model_copy(update={"items": []})

    async def get_item(self, item_id: str) -> Optional[CartItem]:
        iid = _as_uuid(item_id)
        if iid is None:
            return None
        row = await Database.fetch_one("SELECT * FROM cart_items WHERE id = $1", iid)
        return CartItem(**_row_dict(row)) if row else None

    async def save_item(self, item: CartItem) -> CartItem:
        await Database.execute(
            """
            INSERT INTO cart_items (id, cart_id, product_id, quantity, created_at, updated_at)
            VALUES ($1, $2, $3, $4, $5, NOW())
            ON CONFLICT (id) DO UPDATE SET quantity = EXCLUDED.quantity, updated_at = NOW()
            """,
            _as_uuid(item.id), _as_uuid(item.cart_id), _as_uuid(item.product_id),
            item.quantity, item.created_at,
        )
        return item

    async def delete_item(self, item_id: str) -> bool:
        result = await Database.execute("DELETE FROM cart_items WHERE id = $1", _as_uuid(item_id))
        return result.endswith(" 1")

    async def clear(self, cart_id: str) -> None:
        await Database.execute("DELETE FROM cart_items WHERE cart_id = $1", _as_uuid(cart_id))


# =============================================================================
# ORDERS
# =============================================================================

class PostgresOrderRepository(IOrderRepository):

    async def _load(self, row: Optional[asyncpg.Record]) -> Optional[Order]:
        if row is None:
            return None
        data = _row_dict(row)
        data["payment_details"] = json.loads(data["payment_details"] or "{}")
        if data.get("shipping_details"):
            data["shipping_details"] = ShippingDetails(**json.loads(data["shipping_details"]))
        items = await Database.fetch_all(
            "SELECT * FROM order_items WHERE order_id = $1 ORDER BY created_at",
            row["id"],
        )
        data["items"] = [OrderItem(**_row_dict(i)) for i in items]
        return Order(**data)

    async def create(self, order: Order) -> Order:
        shipping = order.shipping_details.model_dump_json() if order.shipping_details else None
        try:
            async with Database.transaction() as conn:
                await conn.execute(
                    """
                    INSERT INTO orders (
                        id, order_number, user_id, status, payment_status,
                        subtotal, tax, shipping, discount, total, currency,
                        shipping_details, payment_method, transaction_id,
                        payment_details, stock_reserved, notes, created_at, updated_at
                    ) VALUES (
                        $1, $2, $3, $4, $5, $6, $7, $8, $9, $10,
                        $11, $12, $13, $14, $15, $16, $17, $18, $19
                    )
                    """,
                    _as_uuid(order.id), order.order_number, _as_uuid(order.user_id),
                    order.status.value, order.payment_status.value,
                    order.subtotal, order.tax, order.shipping, order.discount, order.total,
                    order.currency, shipping, order.payment_method, order.transaction_id,
                    json.dumps(order.payment_details, default=str), order.stock_reserved,
                    order.notes, order.created_at, order.updated_at,
                )
                await conn.executemany(
                    """
                    INSERT INTO order_items
                    (id, order_id, product_id, product_name, quantity, price, total, created_at)
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                    """,
                    [
                        (
                            _as_uuid(i.id), _as_uuid(order.id), _as_uuid(i.product_id),
                            i.product_name, i.quantity, i.price, i.total, i.created_at,
                        )
                        for i in order.items
                    ],
                )
        except asyncpg.UniqueViolationError as e:
            raise DuplicateOrderNumber(f"Order number {order.order_number} already exists") from e
        return order

    async def get(self, order_id: str) -> Optional[Order]:
        oid = _as_uuid(order_id)
        if oid is None:
            return None
        return await self._load(await Database.fetch_one("SELECT * FROM orders WHERE id = $1", oid))

    async def get_by_transaction_id(self, transaction_id: str) -> Optional[Order]:
        row = await Database.fetch_one(
            """
            SELECT * FROM orders
            WHERE transaction_id = $1
               OR payment_details->>'gateway_transaction_id' = $1
            ORDER BY (transaction_id = $1) DESC
            LIMIT 1
            """,
            transaction_id,
        )
        return await self._load(row)

    async def update(self, order: Order) -> Order:
        await Database.execute(
            """
            UPDATE orders SET
                status = $2, payment_status = $3, transaction_id = $4,
                payment_details = $5, stock_reserved = $6, updated_at = $7
            WHERE id = $1
            """,
            _as_uuid(order.id), order.status.value, order.payment_status.value,
            order.transaction_id, json.dumps(order.payment_details, default=str),
            order.stock_reserved, order.updated_at,
        )
        return order

    async def order_number_exists(self, order_number: str) -> bool:
        return bool(await Database.fetch_value(
            "SELECT EXISTS(SELECT 1 FROM orders WHERE order_number = $1)", order_number
        ))

    async def list(
        self,
        page: int = 1,
        limit: int = 10,
        status: Optional[OrderStatus] = None,
    ) -> Tuple[List[Order], int]:
        offset = (page - 1) * limit
        if status:
            rows = await Database.fetch_all(
                "SELECT * FROM orders WHERE status = $1 ORDER BY created_at DESC LIMIT $2 OFFSET $3",
                status.value, limit, offset,
            )
            total = await Database.fetch_value("SELECT COUNT(*) FROM orders WHERE status = $1", status.value)
        else:
            rows = await Database.fetch_all(
                "SELECT * FROM orders ORDER BY created_at DESC LIMIT $1 OFFSET $2",
                limit, offset,
            )
            total = await Database.fetch_value("SELECT COUNT(*) FROM orders")
        return [await self._load(r) for r in rows], int(total or 0)

    async def count_by_user(self, user_id: str) -> int:
        uid = _as_uuid(user_id)
        if uid is None:
            return 0
        return int(await Database.fetch_value("SELECT COUNT(*) FROM orders WHERE user_id = $1", uid) or 0)


# =============================================================================
# EVENT LOG
# =============================================================================

class PostgresEventLog(IEventLog):
    """Writes through to the system_events black box"""

    async def append(self, event: SystemEvent) -> None:
        await log_event(
            event.event_type,
            event.payload,
            order_id=event.order_id,
            component=event.component,
            severity=event.severity,
            event_id=event.id,
            timestamp=event.timestamp,
        )

    async def get_for_order(self, order_id: str) -> List[SystemEvent]:
        oid = _as_uuid(order_id)
        if oid is None:
            return []
        events = []
        for row in await get_order_events(oid):
            data = _row_dict(row)
            data["payload"] = json.loads(data["payload"] or "{}")
            events.append(SystemEvent(**data))
        return events
