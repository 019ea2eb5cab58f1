"""In-memory transport for testing and single-process deployments."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import AsyncIterator, Deque, Dict, Optional, Tuple

from ..contracts import OperationalEvent
from .base import BaseTransport

logger = logging.getLogger(__name__)

DEFAULT_MAX_DEPTH = 10_000


class InMemoryTransport(BaseTransport[Tuple[str, OperationalEvent]]):
    """Simple in-process queue.

    Each topic holds at most ``max_depth`` messages; publishing to a full
    topic drops its oldest message. Events are stored by the event bus before
    they are published, so a dropped message is still in the event history.
    """

    def __init__(self, max_depth: int = DEFAULT_MAX_DEPTH) -> None:
        self.max_depth = max_depth
        self._queues: Dict[str, Deque[Tuple[str, OperationalEvent]]] = {}
        self._lock = asyncio.Lock()

    def _queue(self, topic: str) -> Deque[Tuple[str, OperationalEvent]]:
        if topic not in self._queues:
            self._queues[topic] = deque(maxlen=self.max_depth)
        return self._queues[topic]

    async def publish(self, topic: str, event: OperationalEvent) -> None:
        """Publish event to in-memory queue."""
        raw = (event.to_json(), event)
        async with self._lock:
            queue = self._queue(topic)
            if len(queue) == self.max_depth:
                logger.warning(f"Topic {topic} is full ({self.max_depth}); dropping its oldest message")
            queue.append(raw)

    def depth(self, topic: str) -> int:
        return len(self._queue(topic))

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[Tuple[str, OperationalEvent], OperationalEvent]]:
        """Subscribe to events from topic.

        Args:
            topic: The topic to subscribe to
            lifespan: Maximum time in seconds to keep connection open. If None, runs indefinitely.
        """
        start_time = asyncio.get_running_loop().time() if lifespan else None

        while True:
            if lifespan and start_time:
                elapsed = asyncio.get_running_loop().time() - start_time
                if elapsed >= lifespan:
                    break

            async with self._lock:
                queue = self._queue(topic)
                raw_message = queue.popleft() if queue else None
            if raw_message is not None:
                yield raw_message, raw_message[1]
                continue

            await asyncio.sleep(0.1)

    async def ack(self, raw_message: Tuple[str, OperationalEvent]) -> None:
        """No-op acknowledgment for in-memory transport."""
        pass
