"""
Mock Transport

Records every message instead of delivering it. Used for development and
in the test-suite, where ``sent`` is inspected directly.
"""

import asyncio
import logging
import random
from typing import Any, Iterable

from orderflow.services.notifications.base import BaseTransport, NotificationResult

logger = logging.getLogger(__name__)


class MockTransport(BaseTransport):
    """Mock transport for development and tests."""

    def __init__(
        self,
        failure_rate: float = 0.0,
        latency: float = 0.0,
        failing_channels: Iterable[str] = (),
    ):
        self.failure_rate = failure_rate
        self.latency = latency
        self.failing_channels = set(failing_channels)
        self.sent: list[tuple[str, dict[str, Any]]] = []
        logger.info(f"MockTransport initialized (failure_rate={failure_rate:.0%})")

    @property
    def provider_name(self) -> str:
        return "mock"

    def _should_fail(self, channel: str) -> bool:
        return channel in self.failing_channels or random.random() < self.failure_rate

    def channels(self) -> list[str]:
        return [channel for channel, _ in self.sent]

    def messages_for(self, channel: str) -> list[dict[str, Any]]:
        return [message for name, message in self.sent if name == channel]

    def clear(self) -> None:
        self.sent.clear()

    async def send(self, channel: str, message: dict[str, Any]) -> NotificationResult:
        if self.latency:
            await asyncio.sleep(self.latency)

        if self._should_fail(channel):
            raise ConnectionError(f"Simulated delivery failure on {channel}")

        self.sent.append((channel, message))
        logger.debug(f"Mock message on {channel}: {message.get('event_type')}")
        return NotificationResult(success=True, channel=channel, delivered=1, provider="mock")

    async def health_check(self) -> bool:
        return True
