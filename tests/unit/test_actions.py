"""Action execution tests."""

import time

import pytest
import requests
from pydantic import TypeAdapter

from tollgate.actions import (
    Action,
    ActionContext,
    CallbackRegistry,
    EmitEvent,
    ErrorPolicy,
    InvokeCallback,
    InvokeWebhook,
    render_template,
)
from tollgate.errors import ActionFailed, ActionTimeout
from tollgate.executor import ActionExecutor
from tollgate.models import WorkflowInstance
from tollgate.transports.inmemory import InMemoryEventBus

actions_adapter = TypeAdapter(list[Action])


class FakeResponse:
    def __init__(self, status_code=200):
        self.status_code = status_code

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Error")


def _instance():
    return WorkflowInstance(
        id="inst-1",
        workflow_id="orders",
        workflow_version="1",
        entity_id="order-9",
        current_state="placed",
        data={"total": 42, "customer": {"email": "a@example.com"}},
    )


def _context(bus=None, callbacks=None, **kwargs):
    instance = _instance()
    return ActionContext(
        instance=instance,
        state="placed",
        data=instance.data,
        input={"note": "rush"},
        bus=bus,
        callbacks=callbacks or CallbackRegistry(),
        **kwargs,
    )


def test_render_template_substitutes_whole_placeholders():
    context = {"data": {"total": 42, "items": [1, 2]}, "input": {}}
    rendered = render_template(
        {"amount": "{{ data.total }}", "items": ["{{data.items}}"], "label": "total {{ data.total }}"},
        context,
    )
    assert rendered == {"amount": 42, "items": [[1, 2]], "label": "total {{ data.total }}"}


def test_rendered_payload_carries_envelope_and_is_detached():
    context = _context()
    payload = context.render({"email": "{{ data.customer.email }}"})

    assert payload["email"] == "a@example.com"
    assert payload["instanceId"] == "inst-1"
    assert payload["entityId"] == "order-9"
    assert payload["state"] == "placed"
    payload["data"]["total"] = 0
    assert context.data["total"] == 42


def test_action_union_selects_variant():
    actions = actions_adapter.validate_python(
        [
            {"type": "emit_event", "topic": "orders:placed"},
            {"type": "webhook", "url": "https://example.com", "payloadTemplate": {"a": 1}},
            {"type": "callback", "callback": "notify", "errorPolicy": "continue"},
        ]
    )
    assert [type(a) for a in actions] == [EmitEvent, InvokeWebhook, InvokeCallback]
    assert actions[1].payload == {"a": 1}
    assert actions[2].error_policy is ErrorPolicy.CONTINUE


@pytest.mark.asyncio
async def test_emit_event_publishes_rendered_payload():
    bus = InMemoryEventBus()
    action = EmitEvent(topic="orders:placed", payload={"total": "{{ data.total }}"})

    await action.execute(_context(bus=bus))

    [message] = await bus.drain("orders:placed")
    assert message.payload["total"] == 42
    assert message.payload["instanceId"] == "inst-1"


@pytest.mark.asyncio
async def test_emit_event_without_bus_fails():
    with pytest.raises(RuntimeError):
        await EmitEvent(topic="x").execute(_context())


@pytest.mark.asyncio
async def test_webhook_posts_json(monkeypatch):
    calls = []

    def fake_request(method, url, json=None, headers=None, timeout=None):
        calls.append((method, url, json, headers, timeout))
        return FakeResponse(204)

    monkeypatch.setattr(requests, "request", fake_request)
    action = InvokeWebhook(
        url="https://hooks.example.com/orders",
        method="put",
        headers={"X-Token": "t"},
        payload={"note": "{{ input.note }}"},
    )

    status = await action.execute(_context(webhook_timeout=3.0))

    assert status == 204
    method, url, body, headers, timeout = calls[0]
    assert (method, url, headers, timeout) == ("PUT", "https://hooks.example.com/orders", {"X-Token": "t"}, 3.0)
    assert body["note"] == "rush"
    assert body["workflowId"] == "orders"


@pytest.mark.asyncio
async def test_webhook_http_error_propagates(monkeypatch):
    monkeypatch.setattr(requests, "request", lambda *a, **kw: FakeResponse(503))
    with pytest.raises(requests.HTTPError):
        await InvokeWebhook(url="https://example.com").execute(_context())


@pytest.mark.asyncio
async def test_webhook_timeout(monkeypatch):
    def slow_request(*args, **kwargs):
        time.sleep(0.3)
        return FakeResponse()

    monkeypatch.setattr(requests, "request", slow_request)
    with pytest.raises(ActionTimeout) as exc_info:
        await InvokeWebhook(url="https://example.com", timeout=0.05).execute(_context())
    assert exc_info.value.kind == "Timeout"


@pytest.mark.asyncio
async def test_webhook_requests_timeout_is_action_timeout(monkeypatch):
    def timing_out(*args, **kwargs):
        raise requests.Timeout("read timed out")

    monkeypatch.setattr(requests, "request", timing_out)
    with pytest.raises(ActionTimeout):
        await InvokeWebhook(url="https://example.com").execute(_context())


@pytest.mark.asyncio
async def test_callbacks_sync_and_async():
    callbacks = CallbackRegistry()
    seen = []

    @callbacks.register("async_cb")
    async def async_cb(payload):
        seen.append(("async", payload["total"]))
        return "a"

    def sync_cb(payload):
        seen.append(("sync", payload["total"]))
        return "s"

    callbacks.register("sync_cb", sync_cb)
    context = _context(callbacks=callbacks)

    assert await InvokeCallback(callback="async_cb", payload={"total": "{{ data.total }}"}).execute(context) == "a"
    assert await InvokeCallback(callback="sync_cb", payload={"total": 1}).execute(context) == "s"
    assert seen == [("async", 42), ("sync", 1)]
    assert list(callbacks) == ["async_cb", "sync_cb"]


@pytest.mark.asyncio
async def test_unregistered_callback_fails():
    callbacks = CallbackRegistry()
    callbacks.register("gone", lambda payload: None)
    callbacks.unregister("gone")
    assert "gone" not in callbacks
    with pytest.raises(LookupError):
        await InvokeCallback(callback="gone").execute(_context(callbacks=callbacks))


@pytest.mark.asyncio
async def test_executor_runs_in_order_and_honours_policies():
    callbacks = CallbackRegistry()
    order = []
    callbacks.register("first", lambda payload: order.append("first"))
    callbacks.register("boom", lambda payload: 1 / 0)
    callbacks.register("last", lambda payload: order.append("last"))
    executor = ActionExecutor(callbacks=callbacks)
    actions = actions_adapter.validate_python(
        [
            {"type": "callback", "callback": "first"},
            {"type": "callback", "callback": "boom", "errorPolicy": "continue"},
            {"type": "callback", "callback": "last"},
        ]
    )
    instance = _instance()

    failures = await executor.run("entry:placed", actions, executor.context_for(instance, "placed", instance.data))

    assert order == ["first", "last"]
    assert [(f.hook, f.index, f.type, f.cause) for f in failures] == [
        ("entry:placed", 1, "callback", "ZeroDivisionError")
    ]


@pytest.mark.asyncio
async def test_executor_abort_stops_at_first_failure():
    callbacks = CallbackRegistry()
    order = []
    callbacks.register("boom", lambda payload: 1 / 0)
    callbacks.register("never", lambda payload: order.append("never"))
    executor = ActionExecutor(callbacks=callbacks)
    actions = actions_adapter.validate_python(
        [{"type": "callback", "callback": "boom"}, {"type": "callback", "callback": "never"}]
    )
    instance = _instance()
    context = executor.context_for(instance, "placed", instance.data)

    with pytest.raises(ActionFailed) as exc_info:
        await executor.run("transition:ship", actions, context)

    assert order == []
    assert exc_info.value.details == {
        "hook": "transition:ship",
        "index": 0,
        "cause": "ZeroDivisionError",
        "cause_message": "division by zero",
    }


@pytest.mark.asyncio
async def test_executor_action_policy_overrides_default():
    callbacks = CallbackRegistry()
    order = []
    callbacks.register("boom", lambda payload: 1 / 0)
    callbacks.register("never", lambda payload: order.append("never"))
    executor = ActionExecutor(callbacks=callbacks)
    actions = actions_adapter.validate_python(
        [
            {"type": "callback", "callback": "boom", "errorPolicy": "abort"},
            {"type": "callback", "callback": "never"},
        ]
    )
    instance = _instance()
    context = executor.context_for(instance, "placed", instance.data)

    with pytest.raises(ActionFailed) as exc_info:
        await executor.run("transition:ship", actions, context, ErrorPolicy.CONTINUE)

    assert order == []
    assert exc_info.value.hook == "transition:ship"
    assert exc_info.value.index == 0
    assert isinstance(exc_info.value.cause, ZeroDivisionError)
    assert exc_info.value.instance.id == "inst-1"
