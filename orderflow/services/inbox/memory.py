"""
In-Memory Staff Inbox

Process-local inbox for development and the test-suite
(ORDER_STORE_BACKEND=memory).
"""

import logging
from dataclasses import replace

from orderflow.core.exceptions import NotificationNotFound
from orderflow.domain import StaffNotification, StaffRole
from orderflow.services.inbox.base import BaseNotificationInbox

logger = logging.getLogger(__name__)


class InMemoryNotificationInbox(BaseNotificationInbox):
    """Keeps inbox entries in a dict keyed by id."""

    def __init__(self):
        self._entries: dict[str, StaffNotification] = {}

    @property
    def backend_name(self) -> str:
        return "memory"

    async def add(self, notification: StaffNotification) -> StaffNotification:
        self._entries[notification.id] = notification
        return notification

    async def list_for(
        self,
        user_id: str,
        role: StaffRole,
        unread_only: bool = False,
        limit: int = 50,
    ) -> list[StaffNotification]:
        matching = [
            n for n in self._entries.values()
            if n.addressed_to(user_id, role) and not (unread_only and n.is_read_by(user_id))
        ]
        matching.sort(key=lambda n: n.created_at, reverse=True)
        return matching[:limit]

    async def mark_read(self, notification_id: str, user_id: str, role: StaffRole) -> StaffNotification:
        entry = self._entries.get(notification_id)
        if entry is None or not entry.addressed_to(user_id, role):
            raise NotificationNotFound(f"Notification not found with id: {notification_id}")
        if entry.is_read_by(user_id):
            return entry
        entry = replace(entry, read_by=entry.read_by | {user_id})
        self._entries[notification_id] = entry
        return entry

    async def mark_all_read(self, user_id: str, role: StaffRole) -> int:
        unread = await self.list_for(user_id, role, unread_only=True, limit=len(self._entries))
        for entry in unread:
            self._entries[entry.id] = replace(entry, read_by=entry.read_by | {user_id})
        return len(unread)
