"""Kafka event bus implementation using aiokafka."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Iterable, Optional, Tuple

from aiokafka import AIOKafkaConsumer, AIOKafkaProducer
from aiokafka.structs import TopicPartition
from pydantic import ValidationError

from ..contracts import BusMessage
from .base import BaseEventBus

logger = logging.getLogger(__name__)


def _topic_name(topic: str) -> str:
    # Kafka topic names may not contain ':'.
    return topic.replace(":", ".")


class KafkaEventBus(BaseEventBus[Any]):
    """Kafka-based event bus for distributed messaging."""

    def __init__(
        self,
        brokers: Iterable[str] | str = "localhost:9092",
        group_id: str = "tollgate",
        dlq_topic: str = "tollgate.deadletter",
    ) -> None:
        self.brokers = [brokers] if isinstance(brokers, str) else list(brokers)
        self.group_id = group_id
        self.dlq_topic = dlq_topic
        self._producer: Optional[AIOKafkaProducer] = None

    async def connect(self) -> None:
        self._producer = AIOKafkaProducer(bootstrap_servers=self.brokers)
        await self._producer.start()

    async def disconnect(self) -> None:
        if self._producer:
            await self._producer.stop()
            self._producer = None

    async def publish_message(self, message: BusMessage) -> None:
        if not self._producer:
            raise RuntimeError("KafkaEventBus not connected")
        await self._producer.send_and_wait(
            _topic_name(message.topic), value=message.to_json().encode()
        )

    async def listen(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[Tuple[AIOKafkaConsumer, Any], BusMessage]]:
        """Consume ``topic`` with a dedicated consumer in the shared group."""
        if not self._producer:
            raise RuntimeError("KafkaEventBus not connected")
        consumer = AIOKafkaConsumer(
            _topic_name(topic),
            bootstrap_servers=self.brokers,
            group_id=self.group_id,
            enable_auto_commit=False,
            auto_offset_reset="earliest",
        )
        await consumer.start()
        loop = asyncio.get_running_loop()
        start_time = loop.time()

        try:
            while True:
                if lifespan is not None and loop.time() - start_time >= lifespan:
                    break
                batch = await consumer.getmany(timeout_ms=1000, max_records=1)
                for records in batch.values():
                    for msg in records:
                        try:
                            envelope = BusMessage.from_json(msg.value.decode())
                        except ValidationError as e:
                            logger.warning(f"Dead-lettering unparseable message on {topic}: {e}")
                            await self.nack((consumer, msg), requeue=False)
                            continue
                        yield (consumer, msg), envelope
        finally:
            await consumer.stop()

    async def ack(self, raw_message: Tuple[AIOKafkaConsumer, Any]) -> None:
        consumer, msg = raw_message
        tp = TopicPartition(msg.topic, msg.partition)
        await consumer.commit({tp: msg.offset + 1})

    async def nack(self, raw_message: Tuple[AIOKafkaConsumer, Any], requeue: bool = True) -> None:
        consumer, msg = raw_message
        if requeue:
            consumer.seek(TopicPartition(msg.topic, msg.partition), msg.offset)
            return
        if self._producer:
            await self._producer.send_and_wait(self.dlq_topic, value=msg.value)
        await self.ack(raw_message)
