"""
Order Store Factory

Returns the SQL or in-memory store based on ORDER_STORE_BACKEND.
"""

import logging
from functools import lru_cache

from orderflow.core.config import StoreBackend, get_settings
from orderflow.services.store.base import BaseOrderStore, Transition
from orderflow.services.store.memory import InMemoryOrderStore
from orderflow.services.store.sql import SqlOrderStore

logger = logging.getLogger(__name__)


@lru_cache()
def get_order_store() -> BaseOrderStore:
    """Get the configured order store."""
    settings = get_settings()

    if settings.order_store_backend == StoreBackend.MEMORY:
        logger.info("Order Store: Using InMemoryOrderStore")
        return InMemoryOrderStore(max_retries=settings.store_max_retries)

    from orderflow.database import async_session_maker

    logger.info("Order Store: Using SqlOrderStore")
    return SqlOrderStore(async_session_maker, max_retries=settings.store_max_retries)


def reset_order_store() -> None:
    """Clear the cached store instance."""
    get_order_store.cache_clear()


__all__ = [
    "get_order_store",
    "reset_order_store",
    "BaseOrderStore",
    "Transition",
    "InMemoryOrderStore",
    "SqlOrderStore",
]
