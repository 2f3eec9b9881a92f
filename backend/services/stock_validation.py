"""
Stock Validation & Reservation
==============================
Inventory checks against the catalog and the reserve/release pair used by
the order lifecycle.

- validate_stock reports every violation, never fails fast
- reserve_stock decrements with an atomic "decrement if >= 0" per line and
  compensates the lines already taken when one loses a race
- release_stock only adds, so it is always safe to call
"""

from collections import OrderedDict
from typing import Dict, List, Optional, Sequence

import structlog
from pydantic import BaseModel, Field

from errors import ClientError, InsufficientStock
from schemas.commerce import Product, ProductStatus, StockLine
from storage.repositories import IProductRepository

logger = structlog.get_logger().bind(component="stock_validation")


class StockValidationResult(BaseModel):
    valid: bool
    errors: List[str] = Field(default_factory=list)
    validated_products: List[Product] = Field(default_factory=list)


class SingleProductValidation(BaseModel):
    valid: bool
    error: Optional[str] = None
    product: Optional[Product] = None


def merge_lines(items: Sequence[StockLine]) -> List[StockLine]:
    """Collapse repeated products into one line, keeping first-seen order"""
    merged: Dict[str, int] = OrderedDict()
    for item in items:
        merged[item.product_id] = merged.get(item.product_id, 0) + item.quantity
    return [StockLine(product_id=pid, quantity=qty) for pid, qty in merged.items()]


def check_product(product_id: str, product: Optional[Product], quantity: int) -> Optional[str]:
    """Error message for one line, or None when it can be fulfilled"""
    if product is None:
        return f"Product with ID {product_id} not found"
    if product.status != ProductStatus.ACTIVE:
        return f'Product "{product.name}" is not available (status: {product.status.value})'
    if product.stock < quantity:
        return f'Insufficient stock for "{product.name}". Available: {product.stock}, Requested: {quantity}'
    return None


class StockValidationService:

    def __init__(self, products: IProductRepository):
        self.products = products

    async def validate_stock(self, items: Sequence[StockLine]) -> StockValidationResult:
        lines = merge_lines(items)
        products = await self.products.get_many([line.product_id for line in lines])
        by_id = {p.id: p for p in products}

        errors: List[str] = []
        validated: List[Product] = []
        for line in lines:
            product = by_id.get(line.product_id)
            error = check_product(line.product_id, product, line.quantity)
            if error:
                errors.append(error)
            else:
                validated.append(product)

        return StockValidationResult(valid=not errors, errors=errors, validated_products=validated)

    async def validate_single_product(self, product_id: str, quantity: int) -> SingleProductValidation:
        product = await self.products.get(product_id)
        error = check_product(product_id, product, quantity)
        if error:
            return SingleProductValidation(valid=False, error=error)
        return SingleProductValidation(valid=True, product=product)

    async def reserve_stock(self, items: Sequence[StockLine]) -> None:
        """
        Decrement stock for every line or for none of them.

        Raises:
            ClientError: validation failed before anything was touched
            InsufficientStock: a concurrent reservation took the last units
        """
        lines = merge_lines(items)
        validation = await self.validate_stock(lines)
        if not validation.valid:
            raise ClientError(f"Stock validation failed: {', '.join(validation.errors)}")

        taken: List[StockLine] = []
        for line in lines:
            if await self.products.decrement_stock_if_available(line.product_id, line.quantity):
                taken.append(line)
                continue

            # Lost the race on this line: give back what we already took
            await self.release_stock(taken)
            product = await self.products.get(line.product_id)
            available = product.stock if product else 0
            name = product.name if product else line.product_id
            logger.warning(
                "stock_reservation_lost_race",
                product_id=line.product_id,
                requested=line.quantity,
                available=available,
            )
            raise InsufficientStock(
                f'Insufficient stock for "{name}". Available: {available}, Requested: {line.quantity}'
            )

        logger.info("stock_reserved", products=len(lines), units=sum(l.quantity for l in lines))

    async def release_stock(self, items: Sequence[StockLine]) -> None:
        for line in merge_lines(items):
            await self.products.increment_stock(line.product_id, line.quantity)
        if items:
            logger.info("stock_released", products=len(items))

    async def update_out_of_stock_status(self) -> int:
        """Flip ACTIVE <-> OUT_OF_STOCK to match current stock; returns products changed"""
        flipped = 0
        for product in await self.products.list_status_mismatches():
            target = ProductStatus.OUT_OF_STOCK if product.stock <= 0 else ProductStatus.ACTIVE
            await self.products.update_status(product.id, target)
            flipped += 1
            logger.info("product_status_flipped", product_id=product.id, status=target.value, stock=product.stock)
        return flipped

    async def get_low_stock_products(self, threshold: int = 10) -> List[Product]:
        return await self.products.list_low_stock(threshold)
