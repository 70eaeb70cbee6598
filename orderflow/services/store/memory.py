"""
In-Memory Order Store

Keeps orders in a dict and serializes swaps with one asyncio.Lock per
order id. Used by the test-suite and for single-process development
(ORDER_STORE_BACKEND=memory). Lock scope is always a single order.
"""

import asyncio
import logging
from dataclasses import replace
from typing import Iterable

from orderflow.core.exceptions import OrderNotFound, StorageUnavailable
from orderflow.domain import Order, OrderStatus
from orderflow.services.store.base import BaseOrderStore

logger = logging.getLogger(__name__)


class InMemoryOrderStore(BaseOrderStore):
    """Process-local order store."""

    def __init__(self, max_retries: int = 5):
        super().__init__(max_retries=max_retries)
        self._orders: dict[str, Order] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        logger.info(f"InMemoryOrderStore initialized (max_retries={max_retries})")

    @property
    def backend_name(self) -> str:
        return "memory"

    def _lock_for(self, order_id: str) -> asyncio.Lock:
        lock = self._locks.get(order_id)
        if lock is None:
            lock = self._locks.setdefault(order_id, asyncio.Lock())
        return lock

    async def add(self, order: Order) -> Order:
        async with self._lock_for(order.id):
            if order.id in self._orders:
                raise StorageUnavailable(f"Order id {order.id} already exists")
            self._orders[order.id] = order
        return order

    async def get(self, order_id: str) -> Order:
        order = self._orders.get(order_id)
        if order is None:
            raise OrderNotFound(f"Order not found with id: {order_id}")
        return order

    async def list_all(self) -> list[Order]:
        return sorted(self._orders.values(), key=lambda o: o.created_at, reverse=True)

    async def list_by_customer(self, customer_ref: str) -> list[Order]:
        return [o for o in await self.list_all() if o.customer_ref == customer_ref]

    async def list_by_staff(self, staff_id: str) -> list[Order]:
        return [
            o for o in await self.list_all()
            if staff_id in (o.assigned_chef, o.assigned_waiter)
        ]

    async def list_by_status(self, statuses: Iterable[OrderStatus]) -> list[Order]:
        wanted = set(statuses)
        matching = [o for o in self._orders.values() if o.status in wanted]
        return sorted(matching, key=lambda o: o.created_at)

    async def compare_and_swap(self, expected: Order, updated: Order) -> bool:
        async with self._lock_for(expected.id):
            stored = self._orders.get(expected.id)
            if stored is None:
                raise OrderNotFound(f"Order not found with id: {expected.id}")
            if stored.version != expected.version:
                return False
            self._orders[expected.id] = replace(updated, version=expected.version + 1)
            return True

    async def health_check(self) -> bool:
        return True
