"""
In-memory menu and cart, used in tests and with ORDER_STORE_BACKEND=memory.
"""

import logging
from collections import defaultdict
from typing import Iterable, Optional

from orderflow.services.catalog.base import (
    BaseCartService,
    BaseMenuCatalog,
    MenuItemInfo,
)

logger = logging.getLogger(__name__)


class InMemoryMenuCatalog(BaseMenuCatalog):

    def __init__(self, items: Iterable[MenuItemInfo] = ()):
        self._items: dict[str, MenuItemInfo] = {item.id: item for item in items}

    async def get_item(self, item_id: str) -> Optional[MenuItemInfo]:
        return self._items.get(item_id)

    async def seed(self, items: Iterable[MenuItemInfo]) -> int:
        added = 0
        for item in items:
            if item.id not in self._items:
                self._items[item.id] = item
                added += 1
        return added

    def put(self, item: MenuItemInfo) -> None:
        """Add or replace an item."""
        self._items[item.id] = item


class InMemoryCartService(BaseCartService):

    def __init__(self):
        # customer_ref -> list of (table_ref, menu_item_id, quantity)
        self._lines: dict[str, list[tuple[Optional[str], str, int]]] = defaultdict(list)

    def add_line(
        self,
        customer_ref: str,
        menu_item_id: str,
        quantity: int = 1,
        table_ref: Optional[str] = None,
    ) -> None:
        self._lines[customer_ref].append((table_ref, menu_item_id, quantity))

    def lines_for(self, customer_ref: str) -> list[tuple[Optional[str], str, int]]:
        return list(self._lines.get(customer_ref, []))

    async def clear_cart(self, customer_ref: str, table_ref: Optional[str] = None) -> int:
        lines = self._lines.get(customer_ref, [])
        keep = [line for line in lines if table_ref is not None and line[0] != table_ref]
        removed = len(lines) - len(keep)
        self._lines[customer_ref] = keep
        logger.debug(f"Cleared {removed} cart line(s) for {customer_ref}")
        return removed
