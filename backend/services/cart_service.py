"""
Cart Service
============
One cart per user. Items are stored as (product, quantity) and hydrated with
the live product on every read so totals always reflect current prices.
"""

from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

import structlog

from errors import ClientError, ConflictError, NotFoundError
from schemas.commerce import Cart, CartItem, CartTotals, CartValidation, ProductStatus
from storage.repositories import ICartRepository, IProductRepository

logger = structlog.get_logger().bind(component="cart_service")

CENT = Decimal("0.01")


class CartService:

    def __init__(self, carts: ICartRepository, products: IProductRepository):
        self.carts = carts
        self.products = products

    async def _hydrate(self, cart: Cart) -> Cart:
        products = await self.products.get_many([item.product_id for item in cart.items])
        by_id = {p.id: p for p in products}
        items = [item.model_copy(update={"product": by_id.get(item.product_id)}) for item in cart.items]
        return cart.model_copy(update={"items": items})

    # =========================================================================
    # CART LIFECYCLE
    # =========================================================================

    async def create(self, user_id: str) -> Cart:
        if await self.carts.get_by_user(user_id) is not None:
            raise ConflictError("User already has a cart")
        cart = await self.carts.create(Cart(user_id=user_id))
        logger.info("cart_created", cart_id=cart.id, user_id=user_id)
        return cart

    async def get_or_create_cart(self, user_id: str) -> Cart:
        cart = await self.carts.get_by_user(user_id)
        if cart is None:
            cart = await self.carts.create(Cart(user_id=user_id))
            logger.info("cart_created", cart_id=cart.id, user_id=user_id)
        return await self._hydrate(cart)

    async def get_cart_by_id(self, cart_id: str) -> Cart:
        cart = await self.carts.get(cart_id)
        if cart is None:
            raise NotFoundError("Cart not found")
        return await self._hydrate(cart)

    async def get_cart_by_user_id(self, user_id: str) -> Optional[Cart]:
        cart = await self.carts.get_by_user(user_id)
        return await self._hydrate(cart) if cart else None

    async def clear_cart(self, cart_id: str) -> Cart:
        await self.carts.clear(cart_id)
        logger.info("cart_cleared", cart_id=cart_id)
        return await self.get_cart_by_id(cart_id)

    # =========================================================================
    # ITEMS
    # =========================================================================

    async def add_to_cart(self, user_id: str, product_id: str, quantity: int) -> Cart:
        product = await self.products.get(product_id)
        if product is None:
            raise NotFoundError("Product not found")
        if product.status != ProductStatus.ACTIVE:
            raise ClientError("Product is not available")
        if product.stock < quantity:
            raise ClientError(f"Insufficient stock. Available: {product.stock}")

        cart = await self.get_or_create_cart(user_id)
        existing = next((i for i in cart.items if i.product_id == product_id), None)

        if existing is not None:
            merged = existing.quantity + quantity
            if merged > product.stock:
                raise ClientError(
                    f"Cannot add {quantity} items. Total would exceed available stock ({product.stock})"
                )
            await self.carts.save_item(existing.model_copy(update={"quantity": merged}))
        else:
            await self.carts.save_item(CartItem(cart_id=cart.id, product_id=product_id, quantity=quantity))

        logger.info("cart_item_added", cart_id=cart.id, product_id=product_id, quantity=quantity)
        return await self.get_cart_by_id(cart.id)

    async def update_cart_item(self, item_id: str, quantity: int) -> Cart:
        item = await self.carts.get_item(item_id)
        if item is None:
            raise NotFoundError("Cart item not found")

        product = await self.products.get(item.product_id)
        available = product.stock if product else 0
        if quantity > available:
            raise ClientError(f"Insufficient stock. Available: {available}")

        await self.carts.save_item(item.model_copy(update={"quantity": quantity}))
        return await self.get_cart_by_id(item.cart_id)

    async def remove_from_cart(self, item_id: str) -> Cart:
        item = await self.carts.get_item(item_id)
        if item is None:
            raise NotFoundError("Cart item not found")
        await self.carts.delete_item(item_id)
        return await self.get_cart_by_id(item.cart_id)

    # =========================================================================
    # CHECKOUT HELPERS
    # =========================================================================

    def calculate_cart_totals(self, cart: Cart) -> CartTotals:
        subtotal = Decimal("0")
        total_items = 0
        for item in cart.items:
            if item.product is not None:
                subtotal += item.product.effective_price * item.quantity
            total_items += item.quantity
        return CartTotals(
            subtotal=subtotal.quantize(CENT, rounding=ROUND_HALF_UP),
            total_items=total_items,
            items=len(cart.items),
        )

    async def validate_cart_for_checkout(self, cart_id: str) -> CartValidation:
        cart = await self.get_cart_by_id(cart_id)
        errors = []

        if not cart.items:
            errors.append("Cart is empty")

        for item in cart.items:
            product = item.product
            if product is None:
                errors.append(f"Product with ID {item.product_id} not found")
                continue
            if product.status != ProductStatus.ACTIVE:
                errors.append(f'Product "{product.name}" is no longer available')
            if item.quantity > product.stock:
                errors.append(
                    f'Insufficient stock for "{product.name}". '
                    f"Available: {product.stock}, Requested: {item.quantity}"
                )

        return CartValidation(valid=not errors, errors=errors, cart=cart)
