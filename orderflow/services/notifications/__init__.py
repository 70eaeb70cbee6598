"""
Notification Service Factory

Returns the OrderNotifier wired to the transport chosen by
NOTIFICATION_TRANSPORT (websocket, redis or mock) and to the staff inbox.
"""

import logging
from functools import lru_cache

from orderflow.core.config import TransportKind, get_settings
from orderflow.services.inbox import get_notification_inbox
from orderflow.services.notifications.base import BaseTransport, NotificationResult
from orderflow.services.notifications.fanout import (
    OrderNotifier,
    OrderUpdateEvent,
    inbox_entry_for,
    resolve_channels,
)
from orderflow.services.notifications.mock import MockTransport
from orderflow.services.notifications.redis_pubsub import RedisTransport
from orderflow.services.notifications.websocket import ConnectionManager, WebSocketTransport

logger = logging.getLogger(__name__)


@lru_cache()
def get_connection_manager() -> ConnectionManager:
    """Process-wide WebSocket registry."""
    # A stalled socket is dropped well before the whole channel send times out
    return ConnectionManager(send_timeout=get_settings().notification_timeout_seconds / 2)


@lru_cache()
def get_transport() -> BaseTransport:
    """Get the configured real-time transport."""
    settings = get_settings()

    if settings.notification_transport == TransportKind.REDIS:
        logger.info("Notification Transport: Using RedisTransport")
        return RedisTransport(settings.redis_url)
    if settings.notification_transport == TransportKind.MOCK:
        logger.info("Notification Transport: Using MockTransport")
        return MockTransport()

    logger.info("Notification Transport: Using WebSocketTransport")
    return WebSocketTransport(get_connection_manager())


@lru_cache()
def get_notifier() -> OrderNotifier:
    """Get the configured order notifier."""
    settings = get_settings()
    return OrderNotifier(
        get_transport(),
        timeout=settings.notification_timeout_seconds,
        inbox=get_notification_inbox(),
    )


def reset_notification_service() -> None:
    """Clear the cached instances."""
    get_notifier.cache_clear()
    get_transport.cache_clear()
    get_connection_manager.cache_clear()


__all__ = [
    "get_connection_manager",
    "get_transport",
    "get_notifier",
    "reset_notification_service",
    "BaseTransport",
    "NotificationResult",
    "OrderNotifier",
    "OrderUpdateEvent",
    "inbox_entry_for",
    "resolve_channels",
    "MockTransport",
    "RedisTransport",
    "ConnectionManager",
    "WebSocketTransport",
]
