"""
SQL Order Store

Production store on SQLAlchemy's async engine (PostgreSQL via psycopg).

The compare-and-swap is a single conditional statement:

    UPDATE orders SET ..., version = :v + 1 WHERE id = :id AND version = :v

followed, in the same transaction, by inserts for the new history rows.
If the UPDATE matches nothing the transaction adds nothing, so a lost race
never leaves history behind.
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Iterable, Optional

from sqlalchemy import or_, select, text, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from orderflow.core.exceptions import OrderNotFound, StorageUnavailable
from orderflow.domain import (
    ClaimSlot,
    LineModifier,
    Order,
    OrderLine,
    OrderStatus,
    StatusChange,
)
from orderflow.models import (
    OrderItemModifierRow,
    OrderItemRow,
    OrderRow,
    StatusHistoryRow,
)
from orderflow.services.store.base import BaseOrderStore

logger = logging.getLogger(__name__)


def _order_query():
    return select(OrderRow).options(
        selectinload(OrderRow.items).selectinload(OrderItemRow.modifiers),
        selectinload(OrderRow.history),
    )


class SqlOrderStore(BaseOrderStore):
    """
    Order store backed by a relational database.

    Attributes:
        session_factory: async_sessionmaker producing AsyncSession objects
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        max_retries: int = 5,
    ):
        super().__init__(max_retries=max_retries)
        self._session_factory = session_factory
        logger.info(f"SqlOrderStore initialized (max_retries={max_retries})")

    @property
    def backend_name(self) -> str:
        return "sql"

    # =========================================================================
    # READS
    # =========================================================================

    async def get(self, order_id: str) -> Order:
        row = await self._fetch_one(_order_query().where(OrderRow.id == order_id))
        if row is None:
            raise OrderNotFound(f"Order not found with id: {order_id}")
        return _to_domain(row)

    async def list_all(self) -> list[Order]:
        return await self._fetch_many(_order_query().order_by(OrderRow.created_at.desc()))

    async def list_by_customer(self, customer_ref: str) -> list[Order]:
        return await self._fetch_many(
            _order_query()
            .where(OrderRow.customer_ref == customer_ref)
            .order_by(OrderRow.created_at.desc())
        )

    async def list_by_staff(self, staff_id: str) -> list[Order]:
        return await self._fetch_many(
            _order_query()
            .where(or_(OrderRow.assigned_chef == staff_id, OrderRow.assigned_waiter == staff_id))
            .order_by(OrderRow.created_at.desc())
        )

    async def list_by_status(self, statuses: Iterable[OrderStatus]) -> list[Order]:
        return await self._fetch_many(
            _order_query()
            .where(OrderRow.status.in_(list(statuses)))
            .order_by(OrderRow.created_at.asc())
        )

    async def _fetch_one(self, query) -> Optional[OrderRow]:
        try:
            async with self._session_factory() as session:
                result = await session.execute(query)
                return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.error(f"Order store read failed: {e}")
            raise StorageUnavailable("Order store is unavailable") from e

    async def _fetch_many(self, query) -> list[Order]:
        try:
            async with self._session_factory() as session:
                result = await session.execute(query)
                return [_to_domain(row) for row in result.scalars().all()]
        except SQLAlchemyError as e:
            logger.error(f"Order store read failed: {e}")
            raise StorageUnavailable("Order store is unavailable") from e

    # =========================================================================
    # WRITES
    # =========================================================================

    async def add(self, order: Order) -> Order:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    session.add(_to_row(order))
        except SQLAlchemyError as e:
            logger.error(f"Failed to insert order {order.id}: {e}")
            raise StorageUnavailable("Order store is unavailable") from e
        return order

    async def compare_and_swap(self, expected: Order, updated: Order) -> bool:
        new_history = updated.status_history[len(expected.status_history):]

        try:
            async with self._session_factory() as session:
                async with session.begin():
                    result = await session.execute(
                        update(OrderRow)
                        .where(
                            OrderRow.id == expected.id,
                            OrderRow.version == expected.version,
                        )
                        .values(**_mutable_columns(updated), version=expected.version + 1)
                        .execution_options(synchronize_session=False)
                    )
                    if result.rowcount != 1:
                        return False

                    for offset, change in enumerate(new_history):
                        session.add(_history_row(
                            expected.id,
                            len(expected.status_history) + offset,
                            change,
                        ))
        except SQLAlchemyError as e:
            logger.error(f"Failed to update order {expected.id}: {e}")
            raise StorageUnavailable("Order store is unavailable") from e

        return True

    async def health_check(self) -> bool:
        try:
            async with self._session_factory() as session:
                await session.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError as e:
            logger.error(f"Order store health check failed: {e}")
            return False


# =============================================================================
# MAPPING
# =============================================================================

def _mutable_columns(order: Order) -> dict:
    """Columns a mutation may change; items, owner and total never do."""
    return {
        "status": order.status,
        "payment_status": order.payment_status,
        "payment_ref": order.payment_ref,
        "assigned_chef": order.assigned_chef,
        "assigned_waiter": order.assigned_waiter,
        "chef_claimant_id": order.chef_claim.claimant_id,
        "chef_claimed_at": order.chef_claim.claimed_at,
        "chef_claim_active": order.chef_claim.active,
        "waiter_claimant_id": order.waiter_claim.claimant_id,
        "waiter_claimed_at": order.waiter_claim.claimed_at,
        "waiter_claim_active": order.waiter_claim.active,
        "updated_at": order.updated_at,
    }


def _history_row(order_id: str, sequence: int, change: StatusChange) -> StatusHistoryRow:
    return StatusHistoryRow(
        order_id=order_id,
        sequence=sequence,
        status=change.status,
        actor_id=change.actor_id,
        note=change.note,
        created_at=change.timestamp,
    )


def _to_row(order: Order) -> OrderRow:
    row = OrderRow(
        id=order.id,
        customer_ref=order.customer_ref,
        table_ref=order.table_ref,
        order_type=order.order_type,
        special_instructions=order.special_instructions,
        total_amount=order.total_amount,
        payment_method=order.payment_method,
        version=order.version,
        created_at=order.created_at,
        **_mutable_columns(order),
    )
    row.items = [
        OrderItemRow(
            position=position,
            menu_item_id=line.menu_item_id,
            name=line.name,
            quantity=line.quantity,
            unit_price=line.unit_price,
            note=line.note,
            modifiers=[
                OrderItemModifierRow(
                    modifier_id=m.modifier_id,
                    name=m.name,
                    price_adjustment=m.price_adjustment,
                )
                for m in line.modifiers
            ],
        )
        for position, line in enumerate(order.items)
    ]
    row.history = [
        _history_row(order.id, sequence, change)
        for sequence, change in enumerate(order.status_history)
    ]
    return row


def _money(value) -> Decimal:
    return Decimal(str(value)).quantize(Decimal("0.01"))


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite drops tzinfo; every stored timestamp is UTC
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _to_domain(row: OrderRow) -> Order:
    return Order(
        id=row.id,
        customer_ref=row.customer_ref,
        table_ref=row.table_ref,
        order_type=row.order_type,
        special_instructions=row.special_instructions,
        items=tuple(
            OrderLine(
                menu_item_id=item.menu_item_id,
                name=item.name,
                quantity=item.quantity,
                unit_price=_money(item.unit_price),
                note=item.note,
                modifiers=tuple(
                    LineModifier(
                        modifier_id=m.modifier_id,
                        name=m.name,
                        price_adjustment=_money(m.price_adjustment),
                    )
                    for m in item.modifiers
                ),
            )
            for item in row.items
        ),
        total_amount=_money(row.total_amount),
        status=row.status,
        payment_method=row.payment_method,
        payment_status=row.payment_status,
        payment_ref=row.payment_ref,
        assigned_chef=row.assigned_chef,
        assigned_waiter=row.assigned_waiter,
        chef_claim=ClaimSlot(
            claimant_id=row.chef_claimant_id,
            claimed_at=as_utc(row.chef_claimed_at),
            active=bool(row.chef_claim_active),
        ),
        waiter_claim=ClaimSlot(
            claimant_id=row.waiter_claimant_id,
            claimed_at=as_utc(row.waiter_claimed_at),
            active=bool(row.waiter_claim_active),
        ),
        status_history=tuple(
            StatusChange(
                status=h.status,
                actor_id=h.actor_id,
                note=h.note,
                timestamp=as_utc(h.created_at),
            )
            for h in row.history
        ),
        created_at=as_utc(row.created_at),
        updated_at=as_utc(row.updated_at),
        version=row.version,
    )
