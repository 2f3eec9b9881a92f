"""Tests for CartService."""

from decimal import Decimal

import pytest

from errors import ClientError, ConflictError, NotFoundError
from schemas.commerce import Product, ProductStatus
from services.cart_service import CartService
from storage.repositories import InMemoryCartRepository


@pytest.fixture
def carts(products):
    return CartService(InMemoryCartRepository(), products)


class TestCartLifecycle:
    async def test_add_creates_cart_with_live_product(self, carts, gift_card):
        cart = await carts.add_to_cart("user-1", "gift-card", 2)

        assert cart.user_id == "user-1"
        assert len(cart.items) == 1
        assert cart.items[0].quantity == 2
        assert cart.items[0].product.name == "Gift Card"

    async def test_one_cart_per_user(self, carts):
        await carts.create("user-1")
        with pytest.raises(ConflictError, match="User already has a cart"):
            await carts.create("user-1")

    async def test_get_or_create_is_stable(self, carts):
        first = await carts.get_or_create_cart("user-1")
        second = await carts.get_or_create_cart("user-1")
        assert first.id == second.id

    async def test_lookup(self, carts, gift_card):
        cart = await carts.add_to_cart("user-1", "gift-card", 1)

        assert (await carts.get_cart_by_user_id("user-1")).id == cart.id
        assert await carts.get_cart_by_user_id("someone-else") is None
        with pytest.raises(NotFoundError, match="Cart not found"):
            await carts.get_cart_by_id("nope")

    async def test_clear(self, carts, gift_card):
        cart = await carts.add_to_cart("user-1", "gift-card", 1)
        cleared = await carts.clear_cart(cart.id)
        assert cleared.items == []


class TestCartItems:
    async def test_adding_same_product_merges(self, carts, gift_card):
        await carts.add_to_cart("user-1", "gift-card", 2)
        cart = await carts.add_to_cart("user-1", "gift-card", 3)

        assert len(cart.items) == 1
        assert cart.items[0].quantity == 5

    async def test_merge_cannot_exceed_stock(self, carts, gift_card):
        await carts.add_to_cart("user-1", "gift-card", 6)
        with pytest.raises(ClientError, match=r"Cannot add 5 items. Total would exceed available stock \(10\)"):
            await carts.add_to_cart("user-1", "gift-card", 5)

    async def test_add_rejections(self, carts, products, gift_card):
        await products.save(
            Product(id="paused", name="Paused", price=Decimal("3.00"), stock=5, status=ProductStatus.INACTIVE)
        )

        with pytest.raises(NotFoundError, match="Product not found"):
            await carts.add_to_cart("user-1", "ghost", 1)
        with pytest.raises(ClientError, match="Product is not available"):
            await carts.add_to_cart("user-1", "paused", 1)
        with pytest.raises(ClientError, match="Insufficient stock. Available: 10"):
            await carts.add_to_cart("user-1", "gift-card", 11)

    async def test_update_quantity(self, carts, gift_card):
        cart = await carts.add_to_cart("user-1", "gift-card", 1)
        item_id = cart.items[0].id

        cart = await carts.update_cart_item(item_id, 4)
        assert cart.items[0].quantity == 4

        with pytest.raises(ClientError, match="Insufficient stock. Available: 10"):
            await carts.update_cart_item(item_id, 12)
        with pytest.raises(NotFoundError, match="Cart item not found"):
            await carts.update_cart_item("nope", 1)

    async def test_remove(self, carts, gift_card):
        cart = await carts.add_to_cart("user-1", "gift-card", 1)

        cart = await carts.remove_from_cart(cart.items[0].id)

        assert cart.items == []
        with pytest.raises(NotFoundError):
            await carts.remove_from_cart("nope")


class TestCheckoutHelpers:
    async def test_totals_use_sale_price(self, carts, products, gift_card):
        await products.save(
            Product(id="promo", name="Promo", price=Decimal("25.00"), sale_price=Decimal("20.00"), stock=5)
        )
        await carts.add_to_cart("user-1", "promo", 3)
        cart = await carts.add_to_cart("user-1", "gift-card", 1)

        totals = carts.calculate_cart_totals(cart)

        assert totals.subtotal == Decimal("85.99")
        assert totals.total_items == 4
        assert totals.items == 2

    async def test_validate_empty_cart(self, carts):
        cart = await carts.create("user-1")
        result = await carts.validate_cart_for_checkout(cart.id)
        assert result.valid is False
        assert result.errors == ["Cart is empty"]

    async def test_validate_detects_catalog_changes(self, carts, products, gift_card):
        cart = await carts.add_to_cart("user-1", "gift-card", 4)
        await products.save(gift_card.model_copy(update={"stock": 1, "status": ProductStatus.INACTIVE}))

        result = await carts.validate_cart_for_checkout(cart.id)

        assert result.valid is False
        assert result.errors == [
            'Product "Gift Card" is no longer available',
            'Insufficient stock for "Gift Card". Available: 1, Requested: 4',
        ]
