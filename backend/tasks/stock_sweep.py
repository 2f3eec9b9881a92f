"""
Stock Sweep - Catalog Consistency Loop
======================================
Background task that keeps product status in line with stock.

Features:
- Flips ACTIVE <-> OUT_OF_STOCK from the current stock value
- Reports low-stock products each cycle
- Records each productive cycle in the event log
- Configurable interval and threshold
"""

import asyncio
import os
from typing import Optional

import structlog

from services.stock_validation import StockValidationService
from storage.repositories import IEventLog, SystemEvent

logger = structlog.get_logger().bind(component="stock_sweep")


# =============================================================================
# CONFIGURATION
# =============================================================================

class StockSweepConfig:
    """Stock sweep configuration"""

    # How often to sweep (seconds)
    INTERVAL = int(os.getenv("STOCK_SWEEP_INTERVAL", "300"))

    # Stock at or below this (but above zero) is reported as low
    LOW_STOCK_THRESHOLD = int(os.getenv("LOW_STOCK_THRESHOLD", "10"))

    ENABLED = os.getenv("STOCK_SWEEP_ENABLED", "true").lower() == "true"


config = StockSweepConfig()


# =============================================================================
# SWEEP
# =============================================================================

async def run_stock_sweep(
    stock: StockValidationService,
    events: Optional[IEventLog] = None,
    threshold: int = config.LOW_STOCK_THRESHOLD,
) -> dict:
    """One sweep cycle; returns what it changed and found"""
    flipped = await stock.update_out_of_stock_status()
    low = await stock.get_low_stock_products(threshold)

    if low:
        logger.warning(
            "low_stock_products",
            count=len(low),
            products=[{"id": p.id, "name": p.name, "stock": p.stock} for p in low[:20]],
        )

    if flipped and events is not None:
        await events.append(SystemEvent(
            event_type="STOCK_STATUS_SWEEP",
            component="stock_sweep",
            payload={"flipped": flipped, "low_stock": len(low)},
        ))

    return {"flipped": flipped, "low_stock": len(low)}


async def stock_sweep_loop(
    stock: StockValidationService,
    events: Optional[IEventLog] = None,
    sweep_config: StockSweepConfig = config,
):
    """Runs until cancelled"""
    logger.info(
        "stock_sweep_started",
        interval=sweep_config.INTERVAL,
        threshold=sweep_config.LOW_STOCK_THRESHOLD,
        enabled=sweep_config.ENABLED,
    )

    if not sweep_config.ENABLED:
        logger.info("stock_sweep_disabled")
        return

    while True:
        try:
            result = await run_stock_sweep(stock, events, sweep_config.LOW_STOCK_THRESHOLD)
            logger.info("stock_sweep_cycle_complete", **result)
        except Exception as e:
            logger.error("stock_sweep_error", error=str(e), error_type=type(e).__name__)

        await asyncio.sleep(sweep_config.INTERVAL)
