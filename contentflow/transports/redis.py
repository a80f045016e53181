"""Redis transport for cross-process job delivery."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Optional, Tuple

from pydantic import ValidationError

try:
    import redis.asyncio as redis
except ImportError:
    redis = None

from ..contracts import JobMessage
from .base import BaseTransport

logger = logging.getLogger(__name__)

RawMessage = Tuple[str, str]


class RedisTransport(BaseTransport[RawMessage]):
    """Redis list based queue with a per-topic processing list.

    Received messages are moved atomically to ``<queue>:processing`` and
    removed from it on ack, so a crashed consumer's messages can be
    recovered with :meth:`requeue_unacked`.
    """

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        namespace: str = "contentflow",
    ) -> None:
        if redis is None:
            raise ImportError("redis package is required for RedisTransport")

        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self.namespace = namespace
        self._redis: Optional[Any] = None

    def _queue(self, topic: str) -> str:
        return f"{self.namespace}:{topic}"

    def _processing(self, topic: str) -> str:
        return f"{self._queue(topic)}:processing"

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

    async def publish(self, topic: str, message: JobMessage) -> None:
        """Publish message to Redis list (acting as queue)."""
        if not self._redis:
            await self.connect()
        await self._redis.lpush(self._queue(topic), message.to_json())

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawMessage, JobMessage]]:
        """Subscribe to messages from Redis queue."""
        if not self._redis:
            await self.connect()

        loop = asyncio.get_running_loop()
        start_time = loop.time() if lifespan else None

        while True:
            if lifespan and start_time:
                if loop.time() - start_time >= lifespan:
                    break

            message_json = await self._redis.blmove(
                self._queue(topic), self._processing(topic), 1, "RIGHT", "LEFT"
            )
            if message_json is None:
                continue

            raw = (topic, message_json)
            try:
                message = JobMessage.from_json(message_json)
            except ValidationError as e:
                logger.error(f"Dropping malformed message on {topic}: {e}")
                await self.ack(raw)
                continue
            yield raw, message

    async def ack(self, raw_message: RawMessage) -> None:
        topic, message_json = raw_message
        await self._redis.lrem(self._processing(topic), 1, message_json)

    async def nack(self, raw_message: RawMessage, requeue: bool = True) -> None:
        topic, message_json = raw_message
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.lrem(self._processing(topic), 1, message_json)
            if requeue:
                pipe.rpush(self._queue(topic), message_json)
            await pipe.execute()

    async def requeue_unacked(self, topic: str) -> int:
        """Move every message left in the processing list back to the queue."""
        if not self._redis:
            await self.connect()
        moved = 0
        while await self._redis.lmove(
            self._processing(topic), self._queue(topic), "RIGHT", "RIGHT"
        ):
            moved += 1
        if moved:
            logger.info(f"Requeued {moved} unacknowledged messages on {topic}")
        return moved

    async def pending_count(self, topic: str) -> int:
        if not self._redis:
            await self.connect()
        return await self._redis.llen(self._queue(topic))
