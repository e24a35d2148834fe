"""Event bus tests."""

import asyncio

import pytest

from tollgate.contracts import BusMessage
from tollgate.errors import InvalidTransition, PersistenceError
from tollgate.transports.inmemory import InMemoryEventBus


@pytest.mark.asyncio
async def test_inmemory_bus_basic():
    """Test basic InMemoryEventBus publish/listen."""
    bus = InMemoryEventBus()

    published = await bus.publish("workflow:started", {"instanceId": "i-1"})

    message_received = False
    async for raw_msg, received in bus.listen("workflow:started"):
        assert received.message_id == published.message_id
        assert received.payload["instanceId"] == "i-1"

        # Acknowledge message
        await bus.ack(raw_msg)
        message_received = True
        break

    assert message_received


def test_bus_message_json_round_trip():
    message = BusMessage(topic="workflow:transition", payload={"instanceId": "i-1", "data": {"n": 1}})
    assert BusMessage.from_json(message.to_json()) == message


@pytest.mark.asyncio
async def test_subscribe_acks_handled_messages():
    bus = InMemoryEventBus(poll_interval=0.01)
    seen = []

    async def handler(message):
        seen.append(message.payload["n"])

    for n in range(3):
        await bus.publish("jobs", {"n": n})

    handled = await bus.subscribe("jobs", handler, lifespan=0.1)

    assert handled == 3
    assert seen == [0, 1, 2]
    assert bus.pending("jobs") == 0


@pytest.mark.asyncio
async def test_handlers_may_publish_while_listening():
    bus = InMemoryEventBus(poll_interval=0.01)

    async def forward(message):
        await bus.publish("out", message.payload)

    await bus.publish("in", {"n": 1})
    await asyncio.wait_for(bus.subscribe("in", forward, lifespan=0.1), timeout=1)

    assert [m.payload for m in await bus.drain("out")] == [{"n": 1}]


@pytest.mark.asyncio
async def test_workflow_errors_are_not_requeued():
    bus = InMemoryEventBus(poll_interval=0.01)
    attempts = []

    async def reject(message):
        attempts.append(message.message_id)
        raise InvalidTransition("no such transition")

    await bus.publish("jobs", {})
    handled = await bus.subscribe("jobs", reject, lifespan=0.1)

    assert handled == 0
    assert len(attempts) == 1
    assert bus.pending("jobs") == 0


@pytest.mark.asyncio
async def test_transient_failures_are_requeued():
    bus = InMemoryEventBus(poll_interval=0.01)
    attempts = []

    async def flaky(message):
        attempts.append(message.message_id)
        if len(attempts) < 3:
            raise PersistenceError("database is locked")

    await bus.publish("jobs", {})
    handled = await bus.subscribe("jobs", flaky, lifespan=0.2)

    assert handled == 1
    assert len(attempts) == 3
    assert len(set(attempts)) == 1


def test_redis_bus_import():
    """Test Redis bus can be imported and configured without a server."""
    from tollgate.transports.redis import RedisEventBus

    bus = RedisEventBus()
    assert bus.host == "localhost"
    assert bus.port == 6379
    assert bus._queue_name("workflow:start") == "tollgate:workflow:start"


def test_kafka_topic_names():
    from tollgate.transports.kafka import KafkaEventBus, _topic_name

    bus = KafkaEventBus(brokers="broker:9092")
    assert bus.brokers == ["broker:9092"]
    assert _topic_name("workflow:started") == "workflow.started"


@pytest.mark.asyncio
async def test_kafka_publish_requires_connection():
    from tollgate.transports.kafka import KafkaEventBus

    with pytest.raises(RuntimeError):
        await KafkaEventBus().publish("workflow:started", {})
