"""In-memory transport for tests and single-process deployments."""

from __future__ import annotations

import asyncio
from collections import defaultdict, deque
from typing import AsyncIterator, Deque, Dict, Optional, Tuple

from ..contracts import JobMessage
from .base import BaseTransport

RawMessage = Tuple[str, str, JobMessage]


class InMemoryTransport(BaseTransport[RawMessage]):
    """Simple in-process queue.

    Raw messages are ``(topic, json, message)`` triples so ``nack`` can put
    a message back on the queue it came from.
    """

    def __init__(self, published_limit: int = 1000) -> None:
        self._queues: Dict[str, Deque[RawMessage]] = defaultdict(deque)
        self._lock = asyncio.Lock()
        # recent publications, newest last
        self.published: Deque[JobMessage] = deque(maxlen=published_limit)

    async def publish(self, topic: str, message: JobMessage) -> None:
        """Publish message to in-memory queue."""
        raw = (topic, message.to_json(), message)
        async with self._lock:
            self._queues[topic].append(raw)
            self.published.append(message)

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawMessage, JobMessage]]:
        """Subscribe to messages from topic.

        Args:
            topic: The topic to subscribe to
            lifespan: Maximum time in seconds to keep connection open. If None, runs indefinitely.
        """
        loop = asyncio.get_running_loop()
        start_time = loop.time() if lifespan else None

        while True:
            if lifespan and start_time:
                if loop.time() - start_time >= lifespan:
                    break

            raw_message = await self.get_nowait(topic)
            if raw_message is not None:
                yield raw_message, raw_message[2]
                continue

            await asyncio.sleep(0.05)

    async def get_nowait(self, topic: str) -> Optional[RawMessage]:
        """Pop the next message on ``topic`` without waiting."""
        async with self._lock:
            if self._queues[topic]:
                return self._queues[topic].popleft()
        return None

    async def ack(self, raw_message: RawMessage) -> None:
        """No-op acknowledgment for in-memory transport."""
        pass

    async def nack(self, raw_message: RawMessage, requeue: bool = True) -> None:
        if requeue:
            async with self._lock:
                self._queues[raw_message[0]].appendleft(raw_message)

    async def pending_count(self, topic: str) -> int:
        return len(self._queues[topic])
