"""
SQL-backed menu and cart on the shared async engine.
"""

import logging
from decimal import Decimal
from typing import Iterable, Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from orderflow.models import CartItemRow, MenuItemRow, ModifierRow
from orderflow.services.catalog.base import (
    BaseCartService,
    BaseMenuCatalog,
    MenuItemInfo,
    ModifierInfo,
)

logger = logging.getLogger(__name__)


def _to_info(row: MenuItemRow) -> MenuItemInfo:
    return MenuItemInfo(
        id=row.id,
        name=row.name,
        price=Decimal(str(row.price)),
        available=row.available,
        modifiers={
            m.id: ModifierInfo(
                id=m.id,
                name=m.name,
                price_adjustment=Decimal(str(m.price_adjustment)),
                available=m.available,
            )
            for m in row.modifiers
        },
    )


class SqlMenuCatalog(BaseMenuCatalog):

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def get_item(self, item_id: str) -> Optional[MenuItemInfo]:
        async with self._session_factory() as session:
            result = await session.execute(select(MenuItemRow).where(MenuItemRow.id == item_id))
            row = result.scalar_one_or_none()
            return _to_info(row) if row is not None else None

    async def seed(self, items: Iterable[MenuItemInfo]) -> int:
        added = 0
        async with self._session_factory() as session:
            async with session.begin():
                existing = set((await session.execute(select(MenuItemRow.id))).scalars().all())
                for item in items:
                    if item.id in existing:
                        continue
                    session.add(MenuItemRow(
                        id=item.id,
                        name=item.name,
                        price=item.price,
                        available=item.available,
                        modifiers=[
                            ModifierRow(
                                id=m.id,
                                name=m.name,
                                price_adjustment=m.price_adjustment,
                                available=m.available,
                            )
                            for m in item.modifiers.values()
                        ],
                    ))
                    added += 1
        if added:
            logger.info(f"Seeded {added} menu item(s)")
        return added


class SqlCartService(BaseCartService):

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def clear_cart(self, customer_ref: str, table_ref: Optional[str] = None) -> int:
        stmt = delete(CartItemRow).where(CartItemRow.customer_ref == customer_ref)
        if table_ref is not None:
            stmt = stmt.where(CartItemRow.table_ref == table_ref)

        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(stmt)
        return result.rowcount or 0
