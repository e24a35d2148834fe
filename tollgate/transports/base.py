"""Base event bus interface."""

from __future__ import annotations

import abc
import logging
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Generic, Optional, Tuple, TypeVar

from ..contracts import BusMessage
from ..errors import PersistenceError, WorkflowError

logger = logging.getLogger(__name__)

RawMessageT = TypeVar("RawMessageT")

Handler = Callable[[BusMessage], Awaitable[Any]]


class BaseEventBus(Generic[RawMessageT], metaclass=abc.ABCMeta):
    """Publish/subscribe channel with at-least-once delivery."""

    async def connect(self) -> None:
        """Open connection to broker (no-op by default)."""
        pass

    async def disconnect(self) -> None:
        """Close connection to broker (no-op by default)."""
        pass

    @abc.abstractmethod
    async def publish_message(self, message: BusMessage) -> None:
        """Send an already built envelope to ``message.topic``."""
        raise NotImplementedError

    async def publish(self, topic: str, payload: Dict[str, Any]) -> BusMessage:
        """Wrap ``payload`` in an envelope and publish it on ``topic``."""
        message = BusMessage(topic=topic, payload=payload)
        await self.publish_message(message)
        logger.debug(f"Published {message.message_id} on {topic}")
        return message

    @abc.abstractmethod
    def listen(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawMessageT, BusMessage]]:
        """Yield raw transport message and envelope pairs.

        Args:
            topic: The topic to listen on
            lifespan: Maximum time in seconds to keep listening. If None, runs indefinitely.
        """
        raise NotImplementedError

    @abc.abstractmethod
    async def ack(self, raw_message: RawMessageT) -> None:
        """Acknowledge successful processing."""
        raise NotImplementedError

    async def nack(self, raw_message: RawMessageT, requeue: bool = True) -> None:
        """Negatively acknowledge (default to ack if unsupported)."""
        await self.ack(raw_message)

    async def subscribe(
        self, topic: str, handler: Handler, lifespan: Optional[float] = None
    ) -> int:
        """Feed every message on ``topic`` to ``handler``.

        Messages are acked after the handler returns. A handler failure nacks
        the message; it is requeued unless the failure is a workflow error
        that retrying cannot fix. Returns the number of handled messages.
        """
        handled = 0
        async for raw_message, message in self.listen(topic, lifespan=lifespan):
            try:
                await handler(message)
            except Exception as e:
                retryable = not isinstance(e, WorkflowError) or isinstance(e, PersistenceError)
                logger.error(
                    f"Handler for {topic} failed on message {message.message_id} "
                    f"(requeue={retryable}): {e}"
                )
                await self.nack(raw_message, requeue=retryable)
                continue
            await self.ack(raw_message)
            handled += 1
        return handled
