# schemas/commerce.py
# ============================================================================
# VIRTUAL GIFTS BACKEND: COMMERCE ENTITIES
# ============================================================================
# Purpose: Type-safe catalog, user, cart and order entities
#
# CONVENTIONS:
# - snake_case in Python, camelCase on the wire (alias generator)
# - Money is Decimal internally, serialized as a JSON number
# - OrderItem is a purchase-time snapshot, decoupled from live prices
# ============================================================================

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field
from pydantic.alias_generators import to_camel

from schemas.base import CamelModel, Money, new_id, utcnow
from schemas.payment import PaymentStatus


# ============================================================================
# SECTION 1: ENUMS
# ============================================================================

class UserRole(str, Enum):
    ADMIN = "ADMIN"
    CUSTOMER = "CUSTOMER"
    MANAGER = "MANAGER"


class UserStatus(str, Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    PENDING = "PENDING"
    SUSPENDED = "SUSPENDED"


class ProductStatus(str, Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    OUT_OF_STOCK = "OUT_OF_STOCK"
    DISCONTINUED = "DISCONTINUED"


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"


# ============================================================================
# SECTION 2: CATALOG + USERS
# ============================================================================

class Product(CamelModel):
    """Catalog product as seen by the checkout core"""
    id: str = Field(default_factory=new_id)
    name: str
    sku: Optional[str] = None
    price: Money
    sale_price: Optional[Money] = None
    stock: int = Field(default=0, ge=0)
    status: ProductStatus = ProductStatus.ACTIVE
    updated_at: datetime = Field(default_factory=utcnow)

    @computed_field
    @property
    def effective_price(self) -> Money:
        return self.sale_price if self.sale_price else self.price


class User(CamelModel):
    id: str = Field(default_factory=new_id)
    email: str
    first_name: str
    last_name: str
    password_hash: str = Field(default="", exclude=True)
    role: UserRole = UserRole.CUSTOMER
    status: UserStatus = UserStatus.PENDING
    phone: Optional[str] = None
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    country: Optional[str] = None
    notifications_enabled: bool = True
    marketing_enabled: bool = False
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @computed_field
    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class GuestUserData(BaseModel):
    """Contact data used to find or create a guest account"""
    email: str
    first_name: str
    last_name: str
    phone: Optional[str] = None
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    country: Optional[str] = None


# ============================================================================
# SECTION 3: CART
# ============================================================================

class CartItem(CamelModel):
    id: str = Field(default_factory=new_id)
    cart_id: str
    product_id: str
    quantity: int = Field(ge=1)
    product: Optional[Product] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Cart(CamelModel):
    id: str = Field(default_factory=new_id)
    user_id: str
    items: List[CartItem] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class CartTotals(CamelModel):
    subtotal: Money
    total_items: int
    items: int


class CartValidation(CamelModel):
    valid: bool
    errors: List[str] = Field(default_factory=list)
    cart: Cart


# ============================================================================
# SECTION 4: ORDERS
# ============================================================================

class ShippingDetails(CamelModel):
    first_name: str
    last_name: str
    email: str
    address: str
    city: str
    state: str
    zip_code: str
    country: str
    phone: Optional[str] = None


class OrderItem(CamelModel):
    """Immutable line snapshot taken at purchase time"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: str = Field(default_factory=new_id)
    order_id: str
    product_id: str
    product_name: Optional[str] = None
    quantity: int = Field(ge=1)
    price: Money
    total: Money
    created_at: datetime = Field(default_factory=utcnow)


class OrderTotals(CamelModel):
    subtotal: Money
    tax: Money
    shipping: Money
    discount: Money
    total: Money


class Order(CamelModel):
    """Aggregate root of a purchase"""
    id: str = Field(default_factory=new_id)
    order_number: str
    user_id: str
    status: OrderStatus = OrderStatus.PENDING
    payment_status: PaymentStatus = PaymentStatus.PENDING

    subtotal: Money
    tax: Money
    shipping: Money = Decimal("0.00")
    discount: Money = Decimal("0.00")
    total: Money
    currency: str = "USD"

    shipping_details: Optional[ShippingDetails] = None
    payment_method: Optional[str] = None
    transaction_id: Optional[str] = None
    payment_details: Dict[str, Any] = Field(default_factory=dict)
    stock_reserved: bool = False
    notes: Optional[str] = None

    items: List[OrderItem] = Field(default_factory=list)

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def gateway(self) -> str:
        return self.payment_details.get("gateway") or "stripe"

    def reservation_lines(self) -> List["StockLine"]:
        return [StockLine(product_id=i.product_id, quantity=i.quantity) for i in self.items]

    def transition(self, **changes) -> "Order":
        """Copy with changes applied and updated_at bumped"""
        changes["updated_at"] = utcnow()
        return self.model_copy(update=changes)


class OrderPage(CamelModel):
    orders: List[Order]
    total: int
    page: int
    total_pages: int


class StockLine(CamelModel):
    """A (product, quantity) pair used by validation and reservation"""
    product_id: str
    quantity: int = Field(ge=1)

