"""Event bus factory and initialization."""

from __future__ import annotations

import os
from typing import Optional

from ..config import TollgateConfig, load_config
from .base import BaseEventBus, Handler
from .inmemory import InMemoryEventBus


def get_event_bus(
    backend: Optional[str] = None, config: Optional[TollgateConfig] = None
) -> BaseEventBus:
    """Factory function to get the configured event bus."""

    config = config or load_config()
    backend = (
        backend
        or os.getenv("TOLLGATE_EVENT_BUS")
        or config.event_bus.backend
    ).lower()

    if backend == "inmemory":
        return InMemoryEventBus()
    elif backend == "redis":
        from .redis import RedisEventBus

        redis_conf = config.event_bus.redis
        return RedisEventBus(
            host=redis_conf.host,
            port=redis_conf.port,
            db=redis_conf.db,
            password=redis_conf.password,
        )
    elif backend == "kafka":
        from .kafka import KafkaEventBus

        kafka_conf = config.event_bus.kafka
        return KafkaEventBus(
            brokers=kafka_conf.brokers,
            group_id=kafka_conf.group_id,
            dlq_topic=kafka_conf.dlq_topic,
        )
    elif backend == "rabbitmq":
        from .rabbitmq import RabbitMQEventBus

        return RabbitMQEventBus(url=config.event_bus.rabbitmq.url)
    else:
        raise ValueError(f"Unsupported event bus backend: {backend}")


__all__ = ["BaseEventBus", "Handler", "InMemoryEventBus", "get_event_bus"]
