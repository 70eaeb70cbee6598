"""
Order Store Abstract Base Class

Defines the persistence contract for orders. Both InMemoryOrderStore and
SqlOrderStore implement it, so the workflow service behaves identically
regardless of which backend is active.

Every mutation goes through ``mutate``: read the current version, apply a
pure transition function, then compare-and-swap on ``version``. A lost
swap re-reads and re-applies, so the transition function always sees the
latest state (e.g. the loser of a claim race sees the winner's claim).
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import replace
from typing import Callable, Iterable

from orderflow.core.exceptions import StorageUnavailable
from orderflow.domain import Order, OrderStatus

logger = logging.getLogger(__name__)

Transition = Callable[[Order], Order]


class BaseOrderStore(ABC):
    """Abstract base class for order stores."""

    def __init__(self, max_retries: int = 5):
        self.max_retries = max_retries

    @property
    @abstractmethod
    def backend_name(self) -> str:
        """Return the backend name."""
        pass

    @abstractmethod
    async def add(self, order: Order) -> Order:
        """Persist a new order."""
        pass

    @abstractmethod
    async def get(self, order_id: str) -> Order:
        """
        Load an order.

        Raises:
            OrderNotFound: If no order has this id
        """
        pass

    @abstractmethod
    async def list_all(self) -> list[Order]:
        """All orders, newest first."""
        pass

    @abstractmethod
    async def list_by_customer(self, customer_ref: str) -> list[Order]:
        """Orders placed by a customer, newest first."""
        pass

    @abstractmethod
    async def list_by_staff(self, staff_id: str) -> list[Order]:
        """Orders assigned to a chef or waiter, newest first."""
        pass

    @abstractmethod
    async def list_by_status(self, statuses: Iterable[OrderStatus]) -> list[Order]:
        """Orders whose status is in ``statuses``, oldest first."""
        pass

    @abstractmethod
    async def compare_and_swap(self, expected: Order, updated: Order) -> bool:
        """
        Replace ``expected`` with ``updated`` only if the stored version still
        equals ``expected.version``. The stored version becomes
        ``expected.version + 1`` and history entries beyond those of
        ``expected`` are appended in the same atomic step.

        Returns:
            bool: True if the swap happened
        """
        pass

    @abstractmethod
    async def health_check(self) -> bool:
        """Check backend connectivity."""
        pass

    async def mutate(self, order_id: str, transition: Transition) -> tuple[Order, Order]:
        """
        Atomically apply ``transition`` to the order.

        ``transition`` must be pure: it may raise to reject the change, or
        return its argument unchanged to signal a no-op (nothing is written).

        Returns:
            (before, after) snapshots; identical objects for a no-op

        Raises:
            StorageUnavailable: If the swap kept losing to concurrent writers
        """
        for attempt in range(1, self.max_retries + 1):
            current = await self.get(order_id)
            updated = transition(current)
            if updated is current:
                return current, current

            if await self.compare_and_swap(current, updated):
                stored = replace(updated, version=current.version + 1)
                return current, stored

            logger.debug(
                f"Order {order_id}: version {current.version} changed underneath "
                f"(attempt {attempt}/{self.max_retries})"
            )

        logger.error(f"Order {order_id}: gave up after {self.max_retries} conflicting writes")
        raise StorageUnavailable(
            f"Order {order_id} is being modified concurrently, please retry"
        )
