"""Error taxonomy for the workflow engine.

Every error exposes a stable ``kind`` and, where an instance is involved, the
instance as it was when the failure happened so that clients can decide
whether to retry.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Dict, Optional

if TYPE_CHECKING:
    from .models import WorkflowInstance


class WorkflowError(Exception):
    """Base class for all engine errors."""

    kind: str = "WorkflowError"

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        instance: Optional["WorkflowInstance"] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.instance = instance

    def to_dict(self) -> Dict[str, Any]:
        """Render the error for API responses and bus replies."""
        out: Dict[str, Any] = {
            "kind": self.kind,
            "message": self.message,
            "details": self.details,
        }
        if self.instance is not None:
            out["instance"] = {
                "id": self.instance.id,
                "status": self.instance.status.value,
                "currentState": self.instance.current_state,
                "version": self.instance.version,
            }
        return out


class DefinitionNotFound(WorkflowError):
    kind = "DefinitionNotFound"


class DefinitionInvalid(WorkflowError):
    kind = "DefinitionInvalid"


class ConditionSyntaxError(DefinitionInvalid):
    """A guard expression uses syntax outside the restricted grammar."""


class InstanceNotFound(WorkflowError):
    kind = "InstanceNotFound"


class InvalidTransition(WorkflowError):
    kind = "InvalidTransition"


class ConditionNotMet(WorkflowError):
    kind = "ConditionNotMet"


class AlreadyTerminal(WorkflowError):
    kind = "AlreadyTerminal"


class ActionTimeout(WorkflowError):
    """An action did not finish within its timeout."""

    kind = "Timeout"


class ActionFailed(WorkflowError):
    """An action failed under the ``abort`` policy."""

    kind = "ActionFailed"

    def __init__(
        self,
        hook: str,
        index: int,
        cause: BaseException,
        instance: Optional["WorkflowInstance"] = None,
    ) -> None:
        self.hook = hook
        self.index = index
        self.cause = cause
        super().__init__(
            f"Action {index} of {hook} hook failed: {cause}",
            details={
                "hook": hook,
                "index": index,
                "cause": cause_kind(cause),
                "cause_message": str(cause),
            },
            instance=instance,
        )


class InvalidCommand(WorkflowError):
    """A bus command is missing required fields or names an unknown topic."""

    kind = "InvalidCommand"


class PersistenceError(WorkflowError):
    kind = "PersistenceError"


class ConcurrentModification(PersistenceError):
    """A write would overwrite a newer committed state."""

    kind = "ConcurrentModification"


def cause_kind(exc: BaseException) -> str:
    """Return the stable kind of ``exc`` or its class name."""
    if isinstance(exc, WorkflowError):
        return exc.kind
    return type(exc).__name__


__all__ = [
    "WorkflowError",
    "DefinitionNotFound",
    "DefinitionInvalid",
    "ConditionSyntaxError",
    "InstanceNotFound",
    "InvalidTransition",
    "ConditionNotMet",
    "AlreadyTerminal",
    "ActionTimeout",
    "ActionFailed",
    "InvalidCommand",
    "PersistenceError",
    "ConcurrentModification",
    "cause_kind",
]
