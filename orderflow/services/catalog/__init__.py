"""
Catalog Collaborator Factory

Menu lookups and cart clearing for the order workflow. The backend follows
ORDER_STORE_BACKEND so a memory deployment needs no database at all.
"""

import logging
from decimal import Decimal
from functools import lru_cache

from orderflow.core.config import StoreBackend, get_settings
from orderflow.services.catalog.base import (
    BaseCartService,
    BaseMenuCatalog,
    MenuItemInfo,
    ModifierInfo,
)
from orderflow.services.catalog.memory import InMemoryCartService, InMemoryMenuCatalog
from orderflow.services.catalog.sql import SqlCartService, SqlMenuCatalog

logger = logging.getLogger(__name__)


def _mod(id: str, name: str, adjustment: str) -> ModifierInfo:
    return ModifierInfo(id=id, name=name, price_adjustment=Decimal(adjustment))


# Seeded in development so the API can be exercised straight away
DEMO_MENU: tuple[MenuItemInfo, ...] = (
    MenuItemInfo(
        id="espresso",
        name="Espresso",
        price=Decimal("2.50"),
        modifiers={
            m.id: m for m in (
                _mod("extra-shot", "Extra Shot", "0.75"),
                _mod("oat-milk", "Oat Milk", "0.50"),
            )
        },
    ),
    MenuItemInfo(
        id="cappuccino",
        name="Cappuccino",
        price=Decimal("3.80"),
        modifiers={
            m.id: m for m in (
                _mod("extra-shot", "Extra Shot", "0.75"),
                _mod("oat-milk", "Oat Milk", "0.50"),
                _mod("decaf", "Decaf", "0.00"),
            )
        },
    ),
    MenuItemInfo(id="croissant", name="Butter Croissant", price=Decimal("4.50")),
    MenuItemInfo(
        id="club-sandwich",
        name="Club Sandwich",
        price=Decimal("9.90"),
        modifiers={m.id: m for m in (_mod("no-bacon", "No Bacon", "0.00"),)},
    ),
    MenuItemInfo(id="cheesecake", name="Cheesecake", price=Decimal("5.25")),
    MenuItemInfo(id="seasonal-tart", name="Seasonal Tart", price=Decimal("6.00"), available=False),
)


@lru_cache()
def get_menu_catalog() -> BaseMenuCatalog:
    """Get the configured menu catalog."""
    settings = get_settings()

    if settings.order_store_backend == StoreBackend.MEMORY:
        logger.info("Menu Catalog: Using InMemoryMenuCatalog")
        return InMemoryMenuCatalog(DEMO_MENU if settings.seed_demo_menu else ())

    from orderflow.database import async_session_maker

    logger.info("Menu Catalog: Using SqlMenuCatalog")
    return SqlMenuCatalog(async_session_maker)


@lru_cache()
def get_cart_service() -> BaseCartService:
    """Get the configured cart service."""
    settings = get_settings()

    if settings.order_store_backend == StoreBackend.MEMORY:
        return InMemoryCartService()

    from orderflow.database import async_session_maker

    return SqlCartService(async_session_maker)


def reset_catalog_services() -> None:
    """Clear the cached instances."""
    get_menu_catalog.cache_clear()
    get_cart_service.cache_clear()


__all__ = [
    "DEMO_MENU",
    "get_menu_catalog",
    "get_cart_service",
    "reset_catalog_services",
    "BaseMenuCatalog",
    "BaseCartService",
    "MenuItemInfo",
    "ModifierInfo",
    "InMemoryMenuCatalog",
    "InMemoryCartService",
    "SqlMenuCatalog",
    "SqlCartService",
]
