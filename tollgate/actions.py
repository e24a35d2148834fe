"""Side-effecting actions run at state entry/exit and on transitions."""

from __future__ import annotations

import asyncio
import copy
import inspect
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Annotated, Any, Callable, Dict, Iterator, Literal, Optional, Union

import requests
from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .conditions import resolve_path
from .errors import ActionTimeout

if TYPE_CHECKING:
    from .models import WorkflowInstance
    from .transports import BaseEventBus

logger = logging.getLogger(__name__)

DEFAULT_ACTION_TIMEOUT = 10.0

_PLACEHOLDER = re.compile(r"^\{\{\s*([A-Za-z_][\w.]*)\s*\}\}$")


class ErrorPolicy(str, Enum):
    ABORT = "abort"
    CONTINUE = "continue"


class CallbackRegistry:
    """Functions the surrounding system exposes to ``callback`` actions.

    Callbacks receive the rendered payload. Coroutine functions are awaited;
    plain functions run in a worker thread.
    """

    def __init__(self) -> None:
        self._callbacks: Dict[str, Callable[[Dict[str, Any]], Any]] = {}

    def register(self, name: str, fn: Optional[Callable] = None):
        """Register ``fn`` under ``name``; usable as a decorator."""

        def decorator(func: Callable) -> Callable:
            self._callbacks[name] = func
            return func

        if fn is not None:
            return decorator(fn)
        return decorator

    def unregister(self, name: str) -> None:
        self._callbacks.pop(name, None)

    def get(self, name: str) -> Callable[[Dict[str, Any]], Any]:
        try:
            return self._callbacks[name]
        except KeyError:
            raise LookupError(f"Callback not registered: {name}") from None

    def __contains__(self, name: object) -> bool:
        return name in self._callbacks

    def __iter__(self) -> Iterator[str]:
        return iter(sorted(self._callbacks))


def render_template(template: Any, context: Dict[str, Any]) -> Any:
    """Substitute ``{{ path }}`` placeholders with values from ``context``.

    Only strings consisting entirely of one placeholder are substituted, so
    the substituted value keeps its type.
    """
    if isinstance(template, str):
        match = _PLACEHOLDER.match(template)
        if match is None:
            return template
        return resolve_path(context, tuple(match.group(1).split(".")))
    if isinstance(template, dict):
        return {k: render_template(v, context) for k, v in template.items()}
    if isinstance(template, list):
        return [render_template(v, context) for v in template]
    return template


@dataclass
class ActionContext:
    """Everything an action may touch while it runs."""

    instance: "WorkflowInstance"
    state: str
    data: Dict[str, Any]
    input: Dict[str, Any]
    bus: Optional["BaseEventBus"] = None
    callbacks: CallbackRegistry = field(default_factory=CallbackRegistry)
    webhook_timeout: float = DEFAULT_ACTION_TIMEOUT
    callback_timeout: float = DEFAULT_ACTION_TIMEOUT

    def envelope(self) -> Dict[str, Any]:
        return {
            "instanceId": self.instance.id,
            "workflowId": self.instance.workflow_id,
            "entityId": self.instance.entity_id,
            "state": self.state,
        }

    def render(self, template: Dict[str, Any]) -> Dict[str, Any]:
        envelope = self.envelope()
        rendered = render_template(
            template,
            {"data": self.data, "input": self.input, "instance": envelope},
        )
        payload: Dict[str, Any] = dict(rendered or {})
        payload.setdefault("data", self.data)
        payload.update(envelope)
        # Actions must not be able to mutate instance data through the payload.
        return copy.deepcopy(payload)


class BaseAction(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, alias_generator=to_camel)

    payload: Dict[str, Any] = Field(
        default_factory=dict,
        validation_alias=AliasChoices("payload", "payloadTemplate", "payload_template"),
    )
    error_policy: Optional[ErrorPolicy] = None

    async def execute(self, context: ActionContext) -> Any:  # pragma: no cover - abstract
        raise NotImplementedError


class EmitEvent(BaseAction):
    """Publish a message on the event bus."""

    type: Literal["emit_event"] = "emit_event"
    topic: str

    async def execute(self, context: ActionContext) -> None:
        if context.bus is None:
            raise RuntimeError(f"No event bus configured for topic {self.topic}")
        await context.bus.publish(self.topic, context.render(self.payload))


def _send_request(
    method: str, url: str, body: Dict[str, Any], headers: Dict[str, str], timeout: float
) -> requests.Response:
    response = requests.request(method, url, json=body, headers=headers, timeout=timeout)
    response.raise_for_status()
    return response


class InvokeWebhook(BaseAction):
    """Call an HTTP endpoint with the rendered payload as JSON."""

    type: Literal["webhook"] = "webhook"
    url: str
    method: str = "POST"
    headers: Dict[str, str] = Field(default_factory=dict)
    timeout: Optional[float] = Field(default=None, gt=0)

    async def execute(self, context: ActionContext) -> int:
        timeout = self.timeout or context.webhook_timeout
        body = context.render(self.payload)
        try:
            response = await asyncio.wait_for(
                asyncio.to_thread(
                    _send_request, self.method.upper(), self.url, body, dict(self.headers), timeout
                ),
                timeout,
            )
        except (asyncio.TimeoutError, requests.Timeout) as e:
            raise ActionTimeout(
                f"Webhook {self.url} timed out after {timeout}s",
                details={"url": self.url, "timeout": timeout},
            ) from e
        logger.debug(f"Webhook {self.method} {self.url} returned {response.status_code}")
        return response.status_code


class InvokeCallback(BaseAction):
    """Invoke a function registered by the surrounding system."""

    type: Literal["callback"] = "callback"
    callback: str = Field(
        validation_alias=AliasChoices("callback", "registeredFunctionId", "registered_function_id")
    )
    timeout: Optional[float] = Field(default=None, gt=0)

    async def execute(self, context: ActionContext) -> Any:
        fn = context.callbacks.get(self.callback)
        timeout = self.timeout or context.callback_timeout
        payload = context.render(self.payload)
        if inspect.iscoroutinefunction(fn):
            pending = fn(payload)
        else:
            pending = asyncio.to_thread(fn, payload)
        try:
            result = await asyncio.wait_for(pending, timeout)
        except asyncio.TimeoutError as e:
            raise ActionTimeout(
                f"Callback {self.callback} timed out after {timeout}s",
                details={"callback": self.callback, "timeout": timeout},
            ) from e
        if inspect.isawaitable(result):
            result = await asyncio.wait_for(result, timeout)
        return result


Action = Annotated[
    Union[EmitEvent, InvokeWebhook, InvokeCallback],
    Field(discriminator="type"),
]


__all__ = [
    "Action",
    "ActionContext",
    "BaseAction",
    "CallbackRegistry",
    "EmitEvent",
    "ErrorPolicy",
    "InvokeCallback",
    "InvokeWebhook",
    "render_template",
]
