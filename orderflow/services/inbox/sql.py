"""
SQL Staff Inbox

Entries live in ``staff_notifications``; each read is a row in
``staff_notification_reads`` keyed by (entry, reader), so a role-wide entry
is read or unread independently for every colleague.
"""

import logging
from typing import Optional

from sqlalchemy import and_, or_, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from orderflow.core.exceptions import NotificationNotFound, StorageUnavailable
from orderflow.domain import StaffNotification, StaffRole
from orderflow.models import NotificationReadRow, NotificationRow
from orderflow.services.inbox.base import BaseNotificationInbox
from orderflow.services.store.sql import as_utc

logger = logging.getLogger(__name__)


def _addressed_to(user_id: str, role: StaffRole):
    return or_(
        NotificationRow.recipient_id == user_id,
        and_(NotificationRow.recipient_id.is_(None), NotificationRow.recipient_role == role),
    )


def _unread_by(user_id: str):
    seen = select(NotificationReadRow.notification_id).where(NotificationReadRow.reader_id == user_id)
    return NotificationRow.id.not_in(seen)


class SqlNotificationInbox(BaseNotificationInbox):
    """
    Inbox backed by the order database.

    Attributes:
        session_factory: async_sessionmaker producing AsyncSession objects
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    @property
    def backend_name(self) -> str:
        return "sql"

    async def add(self, notification: StaffNotification) -> StaffNotification:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    session.add(_to_row(notification))
        except SQLAlchemyError as e:
            logger.error(f"Failed to store notification {notification.id}: {e}")
            raise StorageUnavailable("Notification inbox is unavailable") from e
        return notification

    async def list_for(
        self,
        user_id: str,
        role: StaffRole,
        unread_only: bool = False,
        limit: int = 50,
    ) -> list[StaffNotification]:
        query = select(NotificationRow).where(_addressed_to(user_id, role))
        if unread_only:
            query = query.where(_unread_by(user_id))
        query = query.order_by(NotificationRow.created_at.desc()).limit(limit)

        try:
            async with self._session_factory() as session:
                result = await session.execute(query)
                return [_to_domain(row) for row in result.scalars().all()]
        except SQLAlchemyError as e:
            logger.error(f"Notification inbox read failed: {e}")
            raise StorageUnavailable("Notification inbox is unavailable") from e

    async def mark_read(self, notification_id: str, user_id: str, role: StaffRole) -> StaffNotification:
        try:
            entry = await self._get(notification_id)
            if entry is None or not entry.addressed_to(user_id, role):
                raise NotificationNotFound(f"Notification not found with id: {notification_id}")
            if entry.is_read_by(user_id):
                return entry

            try:
                async with self._session_factory() as session:
                    async with session.begin():
                        session.add(NotificationReadRow(notification_id=notification_id, reader_id=user_id))
            except IntegrityError:
                logger.debug(f"Notification {notification_id} already read by {user_id}")
            return await self._get(notification_id)
        except SQLAlchemyError as e:
            logger.error(f"Failed to mark notification {notification_id} read: {e}")
            raise StorageUnavailable("Notification inbox is unavailable") from e

    async def mark_all_read(self, user_id: str, role: StaffRole) -> int:
        query = select(NotificationRow.id).where(_addressed_to(user_id, role), _unread_by(user_id))
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    unread = (await session.execute(query)).scalars().all()
                    session.add_all(
                        NotificationReadRow(notification_id=entry_id, reader_id=user_id)
                        for entry_id in unread
                    )
        except SQLAlchemyError as e:
            logger.error(f"Failed to mark notifications of {user_id} read: {e}")
            raise StorageUnavailable("Notification inbox is unavailable") from e
        return len(unread)

    async def _get(self, notification_id: str) -> Optional[StaffNotification]:
        async with self._session_factory() as session:
            row = await session.get(NotificationRow, notification_id)
            return _to_domain(row) if row is not None else None


# =============================================================================
# MAPPING
# =============================================================================

def _to_row(notification: StaffNotification) -> NotificationRow:
    return NotificationRow(
        id=notification.id,
        order_id=notification.order_id,
        kind=notification.kind,
        title=notification.title,
        message=notification.message,
        recipient_id=notification.recipient_id,
        recipient_role=notification.recipient_role,
        created_at=notification.created_at,
        reads=[NotificationReadRow(reader_id=reader) for reader in notification.read_by],
    )


def _to_domain(row: NotificationRow) -> StaffNotification:
    return StaffNotification(
        id=row.id,
        order_id=row.order_id,
        kind=row.kind,
        title=row.title,
        message=row.message,
        recipient_id=row.recipient_id,
        recipient_role=row.recipient_role,
        read_by=frozenset(read.reader_id for read in row.reads),
        created_at=as_utc(row.created_at),
    )
