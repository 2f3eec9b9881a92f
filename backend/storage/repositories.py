"""
Repositories - Persistence Interfaces
=====================================
Abstract repositories for the checkout core plus asyncio-safe in-memory
implementations (tests, local runs). PostgreSQL versions live in
storage/postgres.py and are swapped in without code changes.

Stock invariants:
- decrement_stock_if_available is a single atomic "decrement if the
  result stays >= 0"; callers must check its return value
- increment_stock only adds, so it is always safe to call
"""

import asyncio
from abc import ABC, abstractmethod
from collections import defaultdict
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, Field

from errors import DuplicateOrderNumber
from schemas.base import new_id, utcnow
from schemas.commerce import (
    Cart,
    CartItem,
    Order,
    OrderStatus,
    Product,
    ProductStatus,
    User,
)


# =============================================================================
# EVENT LOG ENTRY (The Black Box)
# =============================================================================

class SystemEvent(BaseModel):
    """Durable audit entry for a significant state change"""
    id: str = Field(default_factory=new_id)
    event_type: str
    order_id: Optional[str] = None
    component: Optional[str] = None
    payload: dict = Field(default_factory=dict)
    severity: str = "INFO"
    timestamp: datetime = Field(default_factory=utcnow)


# =============================================================================
# INTERFACES
# =============================================================================

class IProductRepository(ABC):
    """Catalog lookup and stock mutation"""

    @abstractmethod
    async def get(self, product_id: str) -> Optional[Product]:
        pass

    @abstractmethod
    async def get_many(self, product_ids: List[str]) -> List[Product]:
        pass

    @abstractmethod
    async def save(self, product: Product) -> Product:
        pass

    @abstractmethod
    async def decrement_stock_if_available(self, product_id: str, quantity: int) -> bool:
        """Atomically decrement; False when stock would drop below zero."""
        pass

    @abstractmethod
    async def increment_stock(self, product_id: str, quantity: int) -> None:
        pass

    @abstractmethod
    async def update_status(self, product_id: str, status: ProductStatus) -> None:
        pass

    @abstractmethod
    async def list_status_mismatches(self) -> List[Product]:
        """ACTIVE products with no stock and OUT_OF_STOCK products with stock."""
        pass

    @abstractmethod
    async def list_low_stock(self, threshold: int) -> List[Product]:
        pass


class IUserRepository(ABC):

    @abstractmethod
    async def get(self, user_id: str) -> Optional[User]:
        pass

    @abstractmethod
    async def get_by_email(self, email: str) -> Optional[User]:
        pass

    @abstractmethod
    async def create(self, user: User) -> User:
        pass

    @abstractmethod
    async def update(self, user: User) -> User:
        pass


class ICartRepository(ABC):

    @abstractmethod
    async def get(self, cart_id: str) -> Optional[Cart]:
        pass

    @abstractmethod
    async def get_by_user(self, user_id: str) -> Optional[Cart]:
        pass

    @abstractmethod
    async def create(self, cart: Cart) -> Cart:
        pass

    @abstractmethod
    async def get_item(self, item_id: str) -> Optional[CartItem]:
        pass

    @abstractmethod
    async def save_item(self, item: CartItem) -> CartItem:
        pass

    @abstractmethod
    async def delete_item(self, item_id: str) -> bool:
        pass

    @abstractmethod
    async def clear(self, cart_id: str) -> None:
        pass


class IOrderRepository(ABC):

    @abstractmethod
    async def create(self, order: Order) -> Order:
        """Persist order and items as one unit. Raises DuplicateOrderNumber."""
        pass

    @abstractmethod
    async def get(self, order_id: str) -> Optional[Order]:
        pass

    @abstractmethod
    async def get_by_transaction_id(self, transaction_id: str) -> Optional[Order]:
        pass

    @abstractmethod
    async def update(self, order: Order) -> Order:
        """Persist mutable order fields. Items are never rewritten."""
        pass

    @abstractmethod
    async def order_number_exists(self, order_number: str) -> bool:
        pass

    @abstractmethod
    async def list(
        self,
        page: int = 1,
        limit: int = 10,
        status: Optional[OrderStatus] = None,
    ) -> Tuple[List[Order], int]:
        pass

    @abstractmethod
    async def count_by_user(self, user_id: str) -> int:
        pass


class IEventLog(ABC):
    """Append-only audit trail"""

    @abstractmethod
    async def append(self, event: SystemEvent) -> None:
        pass

    @abstractmethod
    async def get_for_order(self, order_id: str) -> List[SystemEvent]:
        pass


# =============================================================================
# IN-MEMORY IMPLEMENTATIONS
# =============================================================================

class InMemoryProductRepository(IProductRepository):
    """Lock-guarded product store"""

    def __init__(self):
        self._products: Dict[str, Product] = {}
        self._lock = asyncio.Lock()

    async def get(self, product_id: str) -> Optional[Product]:
        async with self._lock:
            product = self._products.get(product_id)
            return product.model_copy() if product else None

    async def get_many(self, product_ids: List[str]) -> List[Product]:
        async with self._lock:
            return [self._products[pid].model_copy() for pid in product_ids if pid in self._products]

    async def save(self, product: Product) -> Product:
        async with self._lock:
            self._products[product.id] = product.model_copy()
            return product

    async def decrement_stock_if_available(self, product_id: str, quantity: int) -> bool:
        async with self._lock:
            product = self._products.get(product_id)
            if product is None or product.stock < quantity:
                return False
            self._products[product_id] = product.model_copy(
                update={"stock": product.stock - quantity, "updated_at": utcnow()}
            )
            return True

    async def increment_stock(self, product_id: str, quantity: int) -> None:
        async with self._lock:
            product = self._products.get(product_id)
            if product is None:
                return
            self._products[product_id] = product.model_copy(
                update={"stock": product.stock + quantity, "updated_at": utcnow()}
            )

    async def update_status(self, product_id: str, status: ProductStatus) -> None:
        async with self._lock:
            product = self._products.get(product_id)
            if product is not None:
                self._products[product_id] = product.model_copy(
                    update={"status": status, "updated_at": utcnow()}
                )

    async def list_status_mismatches(self) -> List[Product]:
        async with self._lock:
            return [
                p.model_copy() for p in self._products.values()
                if (p.status == ProductStatus.ACTIVE and p.stock <= 0)
                or (p.status == ProductStatus.OUT_OF_STOCK and p.stock > 0)
            ]

    async def list_low_stock(self, threshold: int) -> List[Product]:
        async with self._lock:
            low = [
                p.model_copy() for p in self._products.values()
                if p.status == ProductStatus.ACTIVE and 0 < p.stock <= threshold
            ]
            return sorted(low, key=lambda p: p.stock)


class InMemoryUserRepository(IUserRepository):

    def __init__(self):
        self._users: Dict[str, User] = {}
        self._lock = asyncio.Lock()

    async def get(self, user_id: str) -> Optional[User]:
        async with self._lock:
            user = self._users.get(user_id)
            return user.model_copy() if user else None

    async def get_by_email(self, email: str) -> Optional[User]:
        async with self._lock:
            for user in self._users.values():
                if user.email == email:
                    return user.model_copy()
            return None

    async def create(self, user: User) -> User:
        async with self._lock:
            self._users[user.id] = user.model_copy()
            return user

    async def update(self, user: User) -> User:
        async with self._lock:
            self._users[user.id] = user.model_copy()
            return user


class InMemoryCartRepository(ICartRepository):

    def __init__(self):
        self._carts: Dict[str, Cart] = {}
        self._items: Dict[str, CartItem] = {}
        self._lock = asyncio.Lock()

    def _hydrate(self, cart: Cart) -> Cart:
        items = [i.model_copy() for i in self._items.values() if i.cart_id == cart.id]
        items.sort(key=lambda i: i.created_at)
        return cart.model_copy(update={"items": items})

    async def get(self, cart_id: str) -> Optional[Cart]:
        async with self._lock:
            cart = self._carts.get(cart_id)
            return self._hydrate(cart) if cart else None

    async def get_by_user(self, user_id: str) -> Optional[Cart]:
        async with self._lock:
            for cart in self._carts.values():
                if cart.user_id == user_id:
                    return self._hydrate(cart)
            return None

    async def create(self, cart: Cart) -> Cart:
        async with self._lock:
            self._carts[cart.id] = cart.model_copy(update={"items": []})
            return self._hydrate(cart)

    async def get_item(self, item_id: str) -> Optional[CartItem]:
        async with self._lock:
            item = self._items.get(item_id)
            return item.model_copy() if item else None

    async def save_item(self, item: CartItem) -> CartItem:
        async with self._lock:
            self._items[item.id] = item.model_copy(update={"product": None, "updated_at": utcnow()})
            return item

    async def delete_item(self, item_id: str) -> bool:
        async with self._lock:
            return self._items.pop(item_id, None) is not None

    async def clear(self, cart_id: str) -> None:
        async with self._lock:
            for item_id in [i.id for i in self._items.values() if i.cart_id == cart_id]:
                del self._items[item_id]


class InMemoryOrderRepository(IOrderRepository):
    """Order store with a unique order_number constraint"""

    def __init__(self):
        self._orders: Dict[str, Order] = {}
        self._lock = asyncio.Lock()

    async def create(self, order: Order) -> Order:
        async with self._lock:
            if any(o.order_number == order.order_number for o in self._orders.values()):
                raise DuplicateOrderNumber(f"Order number {order.order_number} already exists")
            self._orders[order.id] = order.model_copy(deep=True)
            return order

    async def get(self, order_id: str) -> Optional[Order]:
        async with self._lock:
            order = self._orders.get(order_id)
            return order.model_copy(deep=True) if order else None

    async def get_by_transaction_id(self, transaction_id: str) -> Optional[Order]:
        async with self._lock:
            for order in self._orders.values():
                if order.transaction_id == transaction_id:
                    return order.model_copy(deep=True)
            for order in self._orders.values():
                if order.payment_details.get("gateway_transaction_id") == transaction_id:
                    return order.model_copy(deep=True)
            return None

    async def update(self, order: Order) -> Order:
        async with self._lock:
            existing = self._orders.get(order.id)
            items = existing.items if existing else order.items
            self._orders[order.id] = order.model_copy(update={"items": items}, deep=True)
            return order

    async def order_number_exists(self, order_number: str) -> bool:
        async with self._lock:
            return any(o.order_number == order_number for o in self._orders.values())

    async def list(
        self,
        page: int = 1,
        limit: int = 10,
        status: Optional[OrderStatus] = None,
    ) -> Tuple[List[Order], int]:
        async with self._lock:
            matching = [o for o in self._orders.values() if status is None or o.status == status]
            matching.sort(key=lambda o: o.created_at, reverse=True)
            start = (page - 1) * limit
            return [o.model_copy(deep=True) for o in matching[start:start + limit]], len(matching)

    async def count_by_user(self, user_id: str) -> int:
        async with self._lock:
            return sum(1 for o in self._orders.values() if o.user_id == user_id)


class InMemoryEventLog(IEventLog):
    """Append-only event log"""

    def __init__(self):
        self._events: List[SystemEvent] = []
        self._by_order: Dict[str, List[SystemEvent]] = defaultdict(list)
        self._lock = asyncio.Lock()

    async def append(self, event: SystemEvent) -> None:
        async with self._lock:
            self._events.append(event)
            if event.order_id:
                self._by_order[event.order_id].append(event)

    async def get_for_order(self, order_id: str) -> List[SystemEvent]:
        async with self._lock:
            return list(self._by_order.get(order_id, []))
