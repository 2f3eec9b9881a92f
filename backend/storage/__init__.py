# storage/__init__.py
# ============================================================================
# VIRTUAL GIFTS BACKEND: STORAGE MODULE
# ============================================================================
# Repository interfaces with in-memory and PostgreSQL implementations
# ============================================================================

from storage.repositories import (
    IProductRepository,
    IUserRepository,
    ICartRepository,
    IOrderRepository,
    IEventLog,
    SystemEvent,
    InMemoryProductRepository,
    InMemoryUserRepository,
    InMemoryCartRepository,
    InMemoryOrderRepository,
    InMemoryEventLog,
)

__all__ = [
    # Interfaces
    "IProductRepository",
    "IUserRepository",
    "ICartRepository",
    "IOrderRepository",
    "IEventLog",
    "SystemEvent",
    # In-memory implementations
    "InMemoryProductRepository",
    "InMemoryUserRepository",
    "InMemoryCartRepository",
    "InMemoryOrderRepository",
    "InMemoryEventLog",
]
