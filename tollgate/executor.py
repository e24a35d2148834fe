"""Ordered execution of action hooks with per-action error policy."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Sequence

from pydantic import BaseModel

from .actions import (
    DEFAULT_ACTION_TIMEOUT,
    Action,
    ActionContext,
    CallbackRegistry,
    ErrorPolicy,
)
from .errors import ActionFailed, cause_kind

if TYPE_CHECKING:
    from .models import WorkflowInstance
    from .transports import BaseEventBus

logger = logging.getLogger(__name__)


class ActionFailure(BaseModel):
    """A failure tolerated under the ``continue`` policy."""

    hook: str
    index: int
    type: str
    cause: str
    message: str


class ActionExecutor:
    """Runs action lists for a hook, one action at a time, in order."""

    def __init__(
        self,
        bus: Optional["BaseEventBus"] = None,
        callbacks: Optional[CallbackRegistry] = None,
        webhook_timeout: float = DEFAULT_ACTION_TIMEOUT,
        callback_timeout: float = DEFAULT_ACTION_TIMEOUT,
    ) -> None:
        self.bus = bus
        self.callbacks = callbacks or CallbackRegistry()
        self.webhook_timeout = webhook_timeout
        self.callback_timeout = callback_timeout

    def context_for(
        self,
        instance: "WorkflowInstance",
        state: str,
        data: Dict[str, Any],
        input_data: Optional[Dict[str, Any]] = None,
    ) -> ActionContext:
        return ActionContext(
            instance=instance,
            state=state,
            data=data,
            input=input_data or {},
            bus=self.bus,
            callbacks=self.callbacks,
            webhook_timeout=self.webhook_timeout,
            callback_timeout=self.callback_timeout,
        )

    async def run(
        self,
        hook: str,
        actions: Sequence[Action],
        context: ActionContext,
        default_policy: ErrorPolicy = ErrorPolicy.ABORT,
    ) -> List[ActionFailure]:
        """Execute ``actions`` in order.

        Returns the failures tolerated under the ``continue`` policy. The first
        failure under ``abort`` raises :class:`ActionFailed` and stops the run.
        """
        failures: List[ActionFailure] = []
        for index, action in enumerate(actions):
            policy = action.error_policy or default_policy
            logger.debug(
                f"Running {action.type} action {index} of {hook} for instance {context.instance.id}"
            )
            try:
                await action.execute(context)
            except Exception as e:
                if policy is ErrorPolicy.CONTINUE:
                    logger.warning(
                        f"Action {index} ({action.type}) of {hook} failed for instance "
                        f"{context.instance.id}, continuing: {e}"
                    )
                    failures.append(
                        ActionFailure(
                            hook=hook,
                            index=index,
                            type=action.type,
                            cause=cause_kind(e),
                            message=str(e),
                        )
                    )
                    continue
                logger.error(
                    f"Action {index} ({action.type}) of {hook} failed for instance "
                    f"{context.instance.id}: {e}"
                )
                raise ActionFailed(hook, index, e, instance=context.instance.snapshot()) from e
        return failures
