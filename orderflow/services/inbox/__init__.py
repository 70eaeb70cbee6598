"""
Staff Inbox Factory

The inbox follows the order store: SQL tables next to the orders, or a
process-local dict when ORDER_STORE_BACKEND=memory.
"""

import logging
from functools import lru_cache

from orderflow.core.config import StoreBackend, get_settings
from orderflow.services.inbox.base import BaseNotificationInbox
from orderflow.services.inbox.memory import InMemoryNotificationInbox
from orderflow.services.inbox.sql import SqlNotificationInbox

logger = logging.getLogger(__name__)


@lru_cache()
def get_notification_inbox() -> BaseNotificationInbox:
    """Get the configured staff inbox."""
    settings = get_settings()

    if settings.order_store_backend == StoreBackend.MEMORY:
        logger.info("Staff Inbox: Using InMemoryNotificationInbox")
        return InMemoryNotificationInbox()

    from orderflow.database import async_session_maker

    logger.info("Staff Inbox: Using SqlNotificationInbox")
    return SqlNotificationInbox(async_session_maker)


def reset_notification_inbox() -> None:
    """Clear the cached inbox instance."""
    get_notification_inbox.cache_clear()


__all__ = [
    "get_notification_inbox",
    "reset_notification_inbox",
    "BaseNotificationInbox",
    "InMemoryNotificationInbox",
    "SqlNotificationInbox",
]
