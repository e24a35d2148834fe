"""Redis event bus for cross-process messaging."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Optional, Tuple

import redis.asyncio as redis
from pydantic import ValidationError

from ..contracts import BusMessage
from .base import BaseEventBus

logger = logging.getLogger(__name__)


class RedisEventBus(BaseEventBus[str]):
    """Redis lists used as per-topic queues."""

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        prefix: str = "tollgate",
    ) -> None:
        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self.prefix = prefix
        self._redis: Optional[Any] = None

    def _queue_name(self, topic: str) -> str:
        return f"{self.prefix}:{topic}"

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

    async def publish_message(self, message: BusMessage) -> None:
        """Push message onto the topic list."""
        if not self._redis:
            await self.connect()
        await self._redis.lpush(self._queue_name(message.topic), message.to_json())

    async def listen(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[str, BusMessage]]:
        """Blocking-pop messages from the topic list."""
        if not self._redis:
            await self.connect()

        queue_name = self._queue_name(topic)
        loop = asyncio.get_running_loop()
        start_time = loop.time()

        while True:
            if lifespan is not None and loop.time() - start_time >= lifespan:
                break

            result = await self._redis.brpop(queue_name, timeout=1)
            if result:
                _, message_json = result
                try:
                    message = BusMessage.from_json(message_json)
                except ValidationError as e:
                    logger.warning(f"Dropping unparseable message on {topic}: {e}")
                    continue
                yield message_json, message

    async def ack(self, raw_message: str) -> None:
        """No-op acknowledgment for Redis (message already popped)."""
        pass

    async def nack(self, raw_message: str, requeue: bool = True) -> None:
        if not requeue:
            return
        message = BusMessage.from_json(raw_message)
        await self._redis.lpush(self._queue_name(message.topic), raw_message)
