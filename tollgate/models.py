"""Workflow definitions and instances."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from .actions import Action, ErrorPolicy
from .conditions import Expression, parse_condition
from .errors import DefinitionInvalid


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, alias_generator=to_camel)


class _Mutable(BaseModel):
    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)


class StateSpec(_Frozen):
    """Hooks attached to one state."""

    entry_actions: Tuple[Action, ...] = ()
    exit_actions: Tuple[Action, ...] = ()


class TransitionSpec(_Frozen):
    """A named, optionally guarded edge between two states."""

    name: str
    from_state: str = Field(alias="from")
    to: str
    condition: Optional[Expression] = None
    actions: Tuple[Action, ...] = ()
    error_policy: ErrorPolicy = ErrorPolicy.ABORT

    @field_validator("condition", mode="before")
    @classmethod
    def _parse_condition(cls, v: Any) -> Any:
        return parse_condition(v)


class WorkflowDefinition(_Frozen):
    """Immutable declarative description of a workflow.

    Construction only checks field types. Call :meth:`check` (the registry
    does) to enforce graph consistency.
    """

    id: str
    name: str
    version: str = "1"
    description: Optional[str] = None
    active: bool = True
    states: Dict[str, StateSpec]
    transitions: Tuple[TransitionSpec, ...] = ()
    start_state: str
    end_states: Tuple[str, ...] = ()

    @field_validator("version", mode="before")
    @classmethod
    def _version_as_str(cls, v: Any) -> Any:
        if isinstance(v, float):
            # YAML reads 1.10 as 1.1; only a quoted string keeps the segments.
            raise ValueError(f"version {v!r} must be quoted, e.g. version: \"{v}\"")
        if isinstance(v, int) and not isinstance(v, bool):
            return str(v)
        return v

    @field_validator("states", mode="before")
    @classmethod
    def _empty_states(cls, v: Any) -> Any:
        # ``review:`` with no hooks parses to None in YAML.
        if isinstance(v, Mapping):
            return {name: spec if spec is not None else {} for name, spec in v.items()}
        return v

    @classmethod
    def from_document(cls, document: Mapping[str, Any]) -> "WorkflowDefinition":
        """Build and check a definition from its authoring format."""
        try:
            definition = cls.model_validate(document)
        except ValidationError as e:
            raise DefinitionInvalid(
                f"Workflow definition {document.get('id', '<unknown>')!r} is malformed: {e}",
                details={"workflow_id": document.get("id"), "errors": e.errors(include_url=False)},
            ) from e
        definition.check()
        return definition

    def check(self) -> None:
        """Raise :class:`DefinitionInvalid` listing every consistency problem."""
        problems: List[str] = []
        if not self.states:
            problems.append("workflow declares no states")
        for state in self.states:
            if not state:
                problems.append("state names must be non-empty")
        if self.start_state not in self.states:
            problems.append(f"start state {self.start_state!r} is not a declared state")
        for end in self.end_states:
            if end not in self.states:
                problems.append(f"end state {end!r} is not a declared state")
        seen: set[Tuple[str, str]] = set()
        for t in self.transitions:
            if t.from_state not in self.states:
                problems.append(f"transition {t.name!r} starts at unknown state {t.from_state!r}")
            if t.to not in self.states:
                problems.append(f"transition {t.name!r} targets unknown state {t.to!r}")
            key = (t.name, t.from_state)
            if key in seen:
                problems.append(
                    f"transition {t.name!r} is declared more than once from state {t.from_state!r}"
                )
            seen.add(key)
        if problems:
            raise DefinitionInvalid(
                f"Workflow definition {self.id!r} is invalid: " + "; ".join(problems),
                details={"workflow_id": self.id, "version": self.version, "problems": problems},
            )

    def find_transition(self, name: str, from_state: str) -> Optional[TransitionSpec]:
        for t in self.transitions:
            if t.name == name and t.from_state == from_state:
                return t
        return None

    def transitions_from(self, state: str) -> List[TransitionSpec]:
        return [t for t in self.transitions if t.from_state == state]

    def is_end_state(self, state: str) -> bool:
        return state in self.end_states

    def to_document(self) -> Dict[str, Any]:
        """Render in the camelCase authoring format."""
        return self.model_dump(mode="json", by_alias=True)


class InstanceStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class HistoryEntry(_Mutable):
    """One state the instance has occupied."""

    state: str
    transition_name: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)
    data_snapshot: Dict[str, Any] = Field(default_factory=dict)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class WorkflowInstance(_Mutable):
    """One execution of a workflow definition for an external entity."""

    id: str
    workflow_id: str
    workflow_version: str
    entity_id: str
    current_state: str
    data: Dict[str, Any] = Field(default_factory=dict)
    history: List[HistoryEntry] = Field(default_factory=list)
    status: InstanceStatus = InstanceStatus.ACTIVE
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    result: Optional[Any] = None
    cancelled_at: Optional[datetime] = None
    cancel_reason: Optional[str] = None
    version: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status is not InstanceStatus.ACTIVE

    def snapshot(self) -> "WorkflowInstance":
        """Deep copy the engine can mutate without touching this instance."""
        return self.model_copy(deep=True)


class InstanceFilter(BaseModel):
    """Query options for listing instances; newest first."""

    entity_id: Optional[str] = None
    status: Optional[InstanceStatus] = None
    workflow_id: Optional[str] = None
    limit: Optional[int] = Field(default=None, ge=0)
    offset: int = Field(default=0, ge=0)

    def matches(self, instance: WorkflowInstance) -> bool:
        if self.entity_id is not None and instance.entity_id != self.entity_id:
            return False
        if self.status is not None and instance.status is not self.status:
            return False
        if self.workflow_id is not None and instance.workflow_id != self.workflow_id:
            return False
        return True

    def page(self, instances: List[WorkflowInstance]) -> List[WorkflowInstance]:
        """Filter, order by ``created_at`` descending and paginate."""
        selected = sorted(
            (i for i in instances if self.matches(i)),
            key=lambda i: i.created_at,
            reverse=True,
        )
        end = None if self.limit is None else self.offset + self.limit
        return selected[self.offset:end]


__all__ = [
    "HistoryEntry",
    "InstanceFilter",
    "InstanceStatus",
    "StateSpec",
    "TransitionSpec",
    "WorkflowDefinition",
    "WorkflowInstance",
    "utcnow",
]
