"""
Redis Pub/Sub Transport

Publishes fan-out messages to Redis channels of the same name, so every API
worker (and any other subscriber) receives them. Pub/Sub is fire-and-forget:
subscribers that are offline miss the message.
"""

import json
import logging
from typing import Any

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from orderflow.services.notifications.base import BaseTransport, NotificationResult

logger = logging.getLogger(__name__)


class RedisTransport(BaseTransport):
    """Publishes to Redis Pub/Sub."""

    def __init__(self, redis_url: str):
        self.redis_url = redis_url
        self._redis: aioredis.Redis = aioredis.from_url(redis_url, decode_responses=True)
        logger.info("RedisTransport initialized")

    @property
    def provider_name(self) -> str:
        return "redis"

    async def send(self, channel: str, message: dict[str, Any]) -> NotificationResult:
        receivers = await self._redis.publish(channel, json.dumps(message, default=str))
        return NotificationResult(
            success=True,
            channel=channel,
            delivered=receivers,
            provider="redis",
        )

    async def health_check(self) -> bool:
        try:
            return bool(await self._redis.ping())
        except RedisError as e:
            logger.error(f"Redis health check failed: {e}")
            return False

    async def close(self) -> None:
        await self._redis.aclose()
