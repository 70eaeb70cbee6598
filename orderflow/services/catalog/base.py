"""
Menu & Cart Collaborators

The workflow only needs two things from the catalog side of the system:
price/availability lookups while an order is created, and clearing the
customer's cart once it exists. Menu and cart CRUD live elsewhere.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Iterable, Optional


@dataclass(frozen=True)
class ModifierInfo:
    """A selectable modifier of a menu item."""
    id: str
    name: str
    price_adjustment: Decimal = Decimal("0.00")
    available: bool = True


@dataclass(frozen=True)
class MenuItemInfo:
    """Price and availability of one menu item."""
    id: str
    name: str
    price: Decimal
    available: bool = True
    modifiers: dict[str, ModifierInfo] = field(default_factory=dict)


class BaseMenuCatalog(ABC):
    """Abstract base class for menu lookups."""

    @abstractmethod
    async def get_item(self, item_id: str) -> Optional[MenuItemInfo]:
        """Return the item, or None if it does not exist."""
        pass

    @abstractmethod
    async def seed(self, items: Iterable[MenuItemInfo]) -> int:
        """Insert items that are not present yet. Returns the number added."""
        pass


class BaseCartService(ABC):
    """Abstract base class for cart maintenance."""

    @abstractmethod
    async def clear_cart(self, customer_ref: str, table_ref: Optional[str] = None) -> int:
        """Remove the customer's cart lines. Returns the number removed."""
        pass
