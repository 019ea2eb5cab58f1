"""Redis transport for cross-process event fan-out."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Optional, Tuple

import redis.asyncio as redis

from ..contracts import OperationalEvent
from .base import BaseTransport

logger = logging.getLogger(__name__)


class RedisTransport(BaseTransport[str]):
    """Redis-based transport for distributed messaging."""

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
    ) -> None:
        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self._redis: Optional[Any] = None

    async def connect(self) -> None:
        """Connect to Redis."""
        self._redis = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
        )
        await self._redis.ping()

    async def disconnect(self) -> None:
        """Disconnect from Redis."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def publish(self, topic: str, event: OperationalEvent) -> None:
        """Publish event to Redis list (acting as queue)."""
        if not self._redis:
            await self.connect()

        await self._redis.lpush(f"opsflow:{topic}", event.to_json())

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[str, OperationalEvent]]:
        """Subscribe to events from Redis queue."""
        if not self._redis:
            await self.connect()

        queue_name = f"opsflow:{topic}"
        start_time = asyncio.get_running_loop().time() if lifespan else None

        while True:
            if lifespan and start_time:
                elapsed = asyncio.get_running_loop().time() - start_time
                if elapsed >= lifespan:
                    break

            result = await self._redis.brpop(queue_name, timeout=1)

            if result:
                _, message_json = result
                try:
                    event = OperationalEvent.from_json(message_json)
                except ValueError as e:
                    logger.warning(f"Dropping malformed event on {queue_name}: {e}")
                    continue
                yield message_json, event

            await asyncio.sleep(0.01)

    async def ack(self, raw_message: str) -> None:
        """No-op acknowledgment for Redis transport (message already consumed)."""
        pass
