"""
Staff Inbox Abstract Base Class

The real-time fan-out only reaches staff who are connected when an event
fires. The inbox keeps the events staff must act on (an order ready to
serve, an order assigned to them by an admin) until they read them.
"""

from abc import ABC, abstractmethod

from orderflow.domain import StaffNotification, StaffRole


class BaseNotificationInbox(ABC):
    """Abstract base class for staff inbox backends."""

    @property
    @abstractmethod
    def backend_name(self) -> str:
        """Return the backend name."""
        pass

    @abstractmethod
    async def add(self, notification: StaffNotification) -> StaffNotification:
        """Persist a new entry."""
        pass

    @abstractmethod
    async def list_for(
        self,
        user_id: str,
        role: StaffRole,
        unread_only: bool = False,
        limit: int = 50,
    ) -> list[StaffNotification]:
        """Entries addressed to the user or their role, newest first."""
        pass

    @abstractmethod
    async def mark_read(self, notification_id: str, user_id: str, role: StaffRole) -> StaffNotification:
        """
        Record that ``user_id`` has read an entry. Marking twice is harmless.

        Raises:
            NotificationNotFound: No such entry, or it is addressed to someone else
        """
        pass

    @abstractmethod
    async def mark_all_read(self, user_id: str, role: StaffRole) -> int:
        """Mark every unread entry for the user as read; returns how many changed."""
        pass
