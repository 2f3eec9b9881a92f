"""Tests for stock validation, reservation and the catalog sweep."""

from decimal import Decimal

import pytest

from errors import ClientError, InsufficientStock
from schemas.commerce import Product, ProductStatus, StockLine
from services.stock_validation import StockValidationService, merge_lines
from tasks.stock_sweep import StockSweepConfig, run_stock_sweep, stock_sweep_loop


@pytest.fixture
def stock(products):
    return StockValidationService(products)


@pytest.fixture
async def catalog(products):
    items = [
        Product(id="mug", name="Mug", price=Decimal("12.00"), stock=5),
        Product(id="poster", name="Poster", price=Decimal("8.50"), stock=3),
        Product(id="retired", name="Retired Tee", price=Decimal("15.00"), stock=4, status=ProductStatus.DISCONTINUED),
    ]
    for product in items:
        await products.save(product)
    return {p.id: p for p in items}


def line(product_id, quantity):
    return StockLine(product_id=product_id, quantity=quantity)


class TestMergeLines:
    def test_collapses_repeats_in_first_seen_order(self):
        merged = merge_lines([line("b", 1), line("a", 2), line("b", 3)])
        assert [(m.product_id, m.quantity) for m in merged] == [("b", 4), ("a", 2)]


class TestValidateStock:
    async def test_valid(self, stock, catalog):
        result = await stock.validate_stock([line("mug", 5), line("poster", 1)])
        assert result.valid is True
        assert result.errors == []
        assert {p.id for p in result.validated_products} == {"mug", "poster"}

    async def test_reports_every_violation(self, stock, catalog):
        result = await stock.validate_stock([line("ghost", 1), line("retired", 1), line("poster", 4)])

        assert result.valid is False
        assert result.errors == [
            "Product with ID ghost not found",
            'Product "Retired Tee" is not available (status: DISCONTINUED)',
            'Insufficient stock for "Poster". Available: 3, Requested: 4',
        ]

    async def test_repeated_lines_are_summed(self, stock, catalog):
        result = await stock.validate_stock([line("mug", 3), line("mug", 3)])
        assert result.valid is False
        assert "Available: 5, Requested: 6" in result.errors[0]

    async def test_single_product(self, stock, catalog):
        ok = await stock.validate_single_product("mug", 2)
        assert ok.valid is True
        assert ok.product.id == "mug"

        bad = await stock.validate_single_product("mug", 6)
        assert bad.valid is False
        assert "Available: 5" in bad.error


class TestReserveAndRelease:
    async def test_reserve_then_release_conserves_stock(self, stock, catalog, products):
        lines = [line("mug", 2), line("poster", 3)]

        await stock.reserve_stock(lines)
        assert (await products.get("mug")).stock == 3
        assert (await products.get("poster")).stock == 0

        await stock.release_stock(lines)
        assert (await products.get("mug")).stock == 5
        assert (await products.get("poster")).stock == 3

    async def test_invalid_reservation_touches_nothing(self, stock, catalog, products):
        with pytest.raises(ClientError, match="Stock validation failed"):
            await stock.reserve_stock([line("mug", 1), line("poster", 9)])

        assert (await products.get("mug")).stock == 5

    async def test_lost_race_gives_back_earlier_lines(self, stock, catalog, products, monkeypatch):
        real_decrement = products.decrement_stock_if_available

        async def poster_sold_out(product_id, quantity):
            if product_id == "poster":
                return False
            return await real_decrement(product_id, quantity)

        monkeypatch.setattr(products, "decrement_stock_if_available", poster_sold_out)

        with pytest.raises(InsufficientStock, match='"Poster"'):
            await stock.reserve_stock([line("mug", 2), line("poster", 1)])

        assert (await products.get("mug")).stock == 5

    async def test_stock_never_goes_negative(self, products):
        await products.save(Product(id="one", name="One", price=Decimal("1.00"), stock=1))

        assert await products.decrement_stock_if_available("one", 1) is True
        assert await products.decrement_stock_if_available("one", 1) is False
        assert (await products.get("one")).stock == 0


class TestCatalogSweep:
    async def test_flips_status_both_ways(self, stock, products):
        await products.save(Product(id="empty", name="Empty", price=Decimal("1.00"), stock=0))
        await products.save(
            Product(id="restocked", name="Restocked", price=Decimal("1.00"), stock=4, status=ProductStatus.OUT_OF_STOCK)
        )

        assert await stock.update_out_of_stock_status() == 2
        assert (await products.get("empty")).status == ProductStatus.OUT_OF_STOCK
        assert (await products.get("restocked")).status == ProductStatus.ACTIVE
        assert await stock.update_out_of_stock_status() == 0

    async def test_low_stock_is_sorted_and_bounded(self, stock, products):
        for pid, qty in (("a", 7), ("b", 2), ("c", 0), ("d", 30)):
            await products.save(Product(id=pid, name=pid.upper(), price=Decimal("1.00"), stock=qty))

        low = await stock.get_low_stock_products(threshold=10)

        assert [p.id for p in low] == ["b", "a"]

    async def test_sweep_cycle_records_event(self, stock, products, events):
        await products.save(Product(id="empty", name="Empty", price=Decimal("1.00"), stock=0))
        await products.save(Product(id="low", name="Low", price=Decimal("1.00"), stock=3))

        result = await run_stock_sweep(stock, events, threshold=5)

        assert result == {"flipped": 1, "low_stock": 1}
        assert events._events[-1].event_type == "STOCK_STATUS_SWEEP"

    async def test_disabled_loop_returns(self, stock):
        disabled = StockSweepConfig()
        disabled.ENABLED = False

        assert await stock_sweep_loop(stock, None, disabled) is None
