"""
WebSocket Transport

In-process channel registry for FastAPI WebSocket connections. Clients
subscribe with ``GET /ws/{channel}``; every message sent to that channel is
pushed to each open socket. Only suitable for a single API worker; use the
Redis transport when running several.
"""

import asyncio
import logging
from collections import defaultdict
from typing import Any

from fastapi import WebSocket

from orderflow.services.notifications.base import BaseTransport, NotificationResult

logger = logging.getLogger(__name__)


class ConnectionManager:
    """
    Tracks open sockets per channel.

    Args:
        send_timeout: Seconds one socket may take to accept a message before
            it is treated as dead
    """

    def __init__(self, send_timeout: float = 1.0):
        self.send_timeout = send_timeout
        self._channels: dict[str, set[WebSocket]] = defaultdict(set)
        self._lock = asyncio.Lock()

    async def connect(self, channel: str, websocket: WebSocket) -> None:
        await websocket.accept()
        async with self._lock:
            self._channels[channel].add(websocket)
        logger.info(f"WebSocket subscribed to {channel}")

    async def disconnect(self, channel: str, websocket: WebSocket) -> None:
        async with self._lock:
            sockets = self._channels.get(channel)
            if sockets is not None:
                sockets.discard(websocket)
                if not sockets:
                    del self._channels[channel]
        logger.info(f"WebSocket left {channel}")

    def subscriber_count(self, channel: str) -> int:
        return len(self._channels.get(channel, ()))

    async def _send_one(self, channel: str, websocket: WebSocket, message: dict[str, Any]) -> bool:
        try:
            await asyncio.wait_for(websocket.send_json(message), self.send_timeout)
            return True
        except asyncio.TimeoutError:
            logger.warning(f"Dropping stalled WebSocket on {channel} after {self.send_timeout}s")
        except Exception as e:
            logger.warning(f"Dropping dead WebSocket on {channel}: {e}")
        await self.disconnect(channel, websocket)
        return False

    async def broadcast(self, channel: str, message: dict[str, Any]) -> int:
        """Send to every socket on ``channel`` at once; dead or stalled sockets are dropped."""
        async with self._lock:
            sockets = list(self._channels.get(channel, ()))

        results = await asyncio.gather(
            *(self._send_one(channel, websocket, message) for websocket in sockets)
        )
        return sum(results)


class WebSocketTransport(BaseTransport):
    """Delivers fan-out messages to locally connected WebSocket clients."""

    def __init__(self, manager: ConnectionManager):
        self.manager = manager

    @property
    def provider_name(self) -> str:
        return "websocket"

    async def send(self, channel: str, message: dict[str, Any]) -> NotificationResult:
        delivered = await self.manager.broadcast(channel, message)
        return NotificationResult(
            success=True,
            channel=channel,
            delivered=delivered,
            provider="websocket",
        )

    async def health_check(self) -> bool:
        return True
