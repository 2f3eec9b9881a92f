# tasks/__init__.py
from tasks.stock_sweep import StockSweepConfig, run_stock_sweep, stock_sweep_loop

__all__ = [
    "StockSweepConfig",
    "run_stock_sweep",
    "stock_sweep_loop",
]
