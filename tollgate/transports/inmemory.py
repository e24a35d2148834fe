"""In-memory event bus for testing and single-process use."""

from __future__ import annotations

import asyncio
from collections import defaultdict, deque
from typing import AsyncIterator, Deque, Dict, List, Optional, Tuple

from ..contracts import BusMessage
from .base import BaseEventBus


class InMemoryEventBus(BaseEventBus[Tuple[str, BusMessage]]):
    """Simple in-process queue per topic."""

    def __init__(self, poll_interval: float = 0.05) -> None:
        self._queues: Dict[str, Deque[Tuple[str, BusMessage]]] = defaultdict(deque)
        self._lock = asyncio.Lock()
        self._poll_interval = poll_interval

    async def publish_message(self, message: BusMessage) -> None:
        """Append message to the topic queue."""
        raw = (message.to_json(), message)
        async with self._lock:
            self._queues[message.topic].append(raw)

    async def listen(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[Tuple[str, BusMessage], BusMessage]]:
        """Pop messages from ``topic`` until ``lifespan`` elapses."""
        loop = asyncio.get_running_loop()
        start_time = loop.time()

        while True:
            if lifespan is not None and loop.time() - start_time >= lifespan:
                break

            async with self._lock:
                raw_message = self._queues[topic].popleft() if self._queues[topic] else None

            # Yield outside the lock so handlers can publish.
            if raw_message is not None:
                yield raw_message, raw_message[1]
                continue

            await asyncio.sleep(self._poll_interval)

    async def ack(self, raw_message: Tuple[str, BusMessage]) -> None:
        """No-op acknowledgment for in-memory bus."""
        pass

    async def nack(self, raw_message: Tuple[str, BusMessage], requeue: bool = True) -> None:
        if requeue:
            async with self._lock:
                self._queues[raw_message[1].topic].append(raw_message)

    async def drain(self, topic: str) -> List[BusMessage]:
        """Remove and return every queued message on ``topic``."""
        async with self._lock:
            queue = self._queues[topic]
            messages = [raw[1] for raw in queue]
            queue.clear()
        return messages

    def pending(self, topic: str) -> int:
        return len(self._queues[topic])
