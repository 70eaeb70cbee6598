"""
Real-time Transport Abstract Base Class

A transport delivers one JSON-serializable message to one named channel.
Channel names are plain strings such as ``customer.C-42`` or
``kitchen.orders``; the fan-out decides which channels an event goes to.
Supports WebSocket (single process), Redis Pub/Sub (multi-worker) and
Mock (development/tests) implementations.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Optional


@dataclass
class NotificationResult:
    """Result from delivering a message to one channel."""
    success: bool
    channel: str
    delivered: int = 0
    error_message: Optional[str] = None
    provider: str = "unknown"


class BaseTransport(ABC):
    """Abstract base class for real-time transports."""

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Return the provider name."""
        pass

    @abstractmethod
    async def send(self, channel: str, message: dict[str, Any]) -> NotificationResult:
        """Deliver ``message`` to every subscriber of ``channel``."""
        pass

    @abstractmethod
    async def health_check(self) -> bool:
        """Check transport connectivity."""
        pass
