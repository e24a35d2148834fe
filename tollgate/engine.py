"""Instance lifecycle orchestration."""

from __future__ import annotations

import asyncio
import copy
import logging
import uuid
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

from .actions import CallbackRegistry
from .conditions import ConditionEvaluator
from .config import EngineConfig, TollgateConfig
from .contracts import (
    CANCEL_COMMAND,
    COMMAND_TOPICS,
    COMPLETE_COMMAND,
    START_COMMAND,
    TRANSITION_COMMAND,
    WORKFLOW_CANCELLED,
    WORKFLOW_COMPLETED,
    WORKFLOW_STARTED,
    WORKFLOW_TRANSITIONED,
    BusMessage,
)
from .errors import (
    ActionFailed,
    AlreadyTerminal,
    ConcurrentModification,
    ConditionNotMet,
    DefinitionInvalid,
    InstanceNotFound,
    InvalidCommand,
    InvalidTransition,
    WorkflowError,
)
from .executor import ActionExecutor, ActionFailure
from .locks import InstanceLocks
from .models import (
    HistoryEntry,
    InstanceFilter,
    InstanceStatus,
    WorkflowInstance,
    utcnow,
)
from .persistence import WorkflowRepository, get_repository
from .registry import LoadReport, WorkflowDefinitionRegistry
from .transports import BaseEventBus, get_event_bus

logger = logging.getLogger(__name__)

_DEFINITION_SUFFIXES = (".yaml", ".yml", ".json")


def _failure_metadata(failures: List[ActionFailure]) -> Dict[str, Any]:
    if not failures:
        return {}
    return {"action_failures": [f.model_dump() for f in failures]}


def _definition_files(path: Union[str, Path]) -> List[Path]:
    path = Path(path)
    if path.is_dir():
        return sorted(p for p in path.iterdir() if p.suffix in _DEFINITION_SUFFIXES)
    return [path]


class WorkflowEngine:
    """Drives workflow instances through their definitions.

    The engine is the only writer of instances. Every mutating operation runs
    under a per-instance lock, works on a copy of the committed instance and
    publishes that copy to the cache only after the repository accepted it,
    so a failed operation never leaves partial state behind. Callers always
    receive snapshots they are free to modify.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        bus: Optional[BaseEventBus] = None,
        registry: Optional[WorkflowDefinitionRegistry] = None,
        callbacks: Optional[CallbackRegistry] = None,
        config: Optional[EngineConfig] = None,
        evaluator: Optional[ConditionEvaluator] = None,
    ) -> None:
        self.config = config or EngineConfig()
        self.repository = repository
        self.bus = bus
        self.registry = registry or WorkflowDefinitionRegistry(repository)
        self.callbacks = callbacks or CallbackRegistry()
        self.evaluator = evaluator or ConditionEvaluator()
        self.executor = ActionExecutor(
            bus,
            self.callbacks,
            webhook_timeout=self.config.webhook_timeout,
            callback_timeout=self.config.callback_timeout,
        )
        self._cache: Dict[str, WorkflowInstance] = {}
        self._locks = InstanceLocks()

    @classmethod
    def from_config(
        cls,
        config: TollgateConfig,
        callbacks: Optional[CallbackRegistry] = None,
    ) -> "WorkflowEngine":
        """Build an engine wired to the configured repository and bus."""
        return cls(
            get_repository(config=config),
            bus=get_event_bus(config=config),
            callbacks=callbacks,
            config=config.engine,
        )

    async def initialize(self) -> LoadReport:
        """Load stored definitions, then any files under ``definitions_path``."""
        report = await self.registry.load_definitions()
        if self.config.definitions_path:
            for path in _definition_files(self.config.definitions_path):
                try:
                    definitions = await self.registry.register_file(path)
                except DefinitionInvalid as e:
                    logger.warning(f"Rejected workflow definitions in {path}: {e.message}")
                    report.rejected[str(path)] = e.message
                    continue
                report.loaded.extend(f"{d.id}@{d.version}" for d in definitions)
        logger.info(
            f"Workflow engine initialized with {len(self.registry.list_definitions())} definitions"
        )
        return report

    # -- lifecycle -----------------------------------------------------------

    async def start_instance(
        self,
        workflow_id: str,
        entity_id: str,
        initial_data: Optional[Mapping[str, Any]] = None,
    ) -> WorkflowInstance:
        definition = self.registry.get_definition(workflow_id)
        data = copy.deepcopy(dict(initial_data or {}))
        now = utcnow()
        instance = WorkflowInstance(
            id=str(uuid.uuid4()),
            workflow_id=definition.id,
            workflow_version=definition.version,
            entity_id=entity_id,
            current_state=definition.start_state,
            data=data,
            status=InstanceStatus.ACTIVE,
            created_at=now,
            updated_at=now,
        )

        async with self._locks.hold(instance.id):
            start = definition.start_state
            context = self.executor.context_for(instance, start, data, data)
            try:
                failures = await self.executor.run(
                    f"entry:{start}", definition.states[start].entry_actions, context
                )
            except ActionFailed as e:
                # Nothing was persisted; there is no instance to report.
                e.instance = None
                raise

            instance.history.append(
                HistoryEntry(
                    state=start,
                    timestamp=now,
                    data_snapshot=copy.deepcopy(data),
                    metadata=_failure_metadata(failures),
                )
            )
            instance.version = 1
            await self._commit(instance, expected_version=None)
            logger.info(
                f"Started instance {instance.id} of {definition.id}@{definition.version} "
                f"for entity {entity_id}"
            )
            await self._emit(
                WORKFLOW_STARTED, self._event_payload(instance, state=start, data=instance.data)
            )
            if definition.is_end_state(start):
                instance = await self._complete(instance, instance.data)
        return instance.snapshot()

    async def execute_transition(
        self,
        instance_id: str,
        transition_name: str,
        input_data: Optional[Mapping[str, Any]] = None,
    ) -> WorkflowInstance:
        input_data = copy.deepcopy(dict(input_data or {}))
        async with self._locks.hold(instance_id):
            current = await self._load(instance_id)
            if current.is_terminal:
                raise AlreadyTerminal(
                    f"Instance {instance_id} is {current.status.value}",
                    details={"transition": transition_name},
                    instance=current.snapshot(),
                )
            definition = self.registry.get_definition(
                current.workflow_id, current.workflow_version
            )
            source = current.current_state
            transition = definition.find_transition(transition_name, source)
            if transition is None:
                raise InvalidTransition(
                    f"No transition {transition_name!r} from state {source!r}",
                    details={
                        "transition": transition_name,
                        "state": source,
                        "available": [t.name for t in definition.transitions_from(source)],
                    },
                    instance=current.snapshot(),
                )
            if not self.evaluator.evaluate(transition.condition, current.data, input_data):
                raise ConditionNotMet(
                    f"Condition of transition {transition_name!r} is not met",
                    details={"transition": transition_name, "state": source},
                    instance=current.snapshot(),
                )

            merged = {**copy.deepcopy(current.data), **input_data}
            policy = transition.error_policy
            target = transition.to
            failures: List[ActionFailure] = []
            failures += await self.executor.run(
                f"exit:{source}",
                definition.states[source].exit_actions,
                self.executor.context_for(current, source, current.data, input_data),
                policy,
            )
            failures += await self.executor.run(
                f"transition:{transition.name}",
                transition.actions,
                self.executor.context_for(current, source, merged, input_data),
                policy,
            )
            failures += await self.executor.run(
                f"entry:{target}",
                definition.states[target].entry_actions,
                self.executor.context_for(current, target, merged, input_data),
                policy,
            )

            now = utcnow()
            updated = current.snapshot()
            updated.current_state = target
            updated.data = merged
            updated.history.append(
                HistoryEntry(
                    state=target,
                    transition_name=transition.name,
                    timestamp=now,
                    data_snapshot=copy.deepcopy(merged),
                    metadata=_failure_metadata(failures),
                )
            )
            updated.updated_at = now
            updated.version = current.version + 1
            await self._commit(updated, expected_version=current.version)
            logger.info(
                f"Instance {instance_id} transitioned {source} -> {target} via {transition.name}"
            )
            await self._emit(
                WORKFLOW_TRANSITIONED,
                self._event_payload(
                    updated,
                    fromState=source,
                    toState=target,
                    transition=transition.name,
                    data=updated.data,
                    input=input_data,
                ),
            )
            if definition.is_end_state(target):
                updated = await self._complete(updated, updated.data)
        return updated.snapshot()

    async def complete_instance(
        self, instance_id: str, result: Optional[Any] = None
    ) -> WorkflowInstance:
        async with self._locks.hold(instance_id):
            current = await self._load(instance_id)
            updated = await self._complete(current, {} if result is None else result)
        return updated.snapshot()

    async def cancel_instance(self, instance_id: str, reason: str = "") -> WorkflowInstance:
        async with self._locks.hold(instance_id):
            current = await self._load(instance_id)
            if current.is_terminal:
                raise AlreadyTerminal(
                    f"Instance {instance_id} is {current.status.value}",
                    instance=current.snapshot(),
                )
            now = utcnow()
            updated = current.snapshot()
            updated.status = InstanceStatus.CANCELLED
            updated.cancelled_at = now
            updated.cancel_reason = reason
            updated.updated_at = now
            updated.version = current.version + 1
            await self._commit(updated, expected_version=current.version)
            logger.info(f"Cancelled instance {instance_id}: {reason or 'no reason given'}")
            await self._emit(
                WORKFLOW_CANCELLED,
                self._event_payload(updated, state=updated.current_state, reason=reason),
            )
        return updated.snapshot()

    # -- queries -------------------------------------------------------------

    async def get_instance(self, instance_id: str) -> WorkflowInstance:
        return (await self._load(instance_id)).snapshot()

    async def list_instances_for_entity(
        self,
        entity_id: str,
        status: Optional[Union[InstanceStatus, str]] = None,
        workflow_id: Optional[str] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[WorkflowInstance]:
        query = InstanceFilter(
            entity_id=entity_id,
            status=status,
            workflow_id=workflow_id,
            limit=limit,
            offset=offset,
        )
        return await self.repository.query_instances(query)

    # -- bus commands --------------------------------------------------------

    async def handle_command(
        self, topic: str, payload: Mapping[str, Any]
    ) -> WorkflowInstance:
        """Dispatch one external command to the matching operation."""
        if topic == START_COMMAND:
            _require(topic, payload, "workflowId", "entityId")
            return await self.start_instance(
                payload["workflowId"],
                payload["entityId"],
                _first(payload, "data", "initialData"),
            )
        if topic == TRANSITION_COMMAND:
            _require(topic, payload, "instanceId", "transition")
            return await self.execute_transition(
                payload["instanceId"],
                payload["transition"],
                _first(payload, "data", "transitionData"),
            )
        if topic == COMPLETE_COMMAND:
            _require(topic, payload, "instanceId")
            return await self.complete_instance(payload["instanceId"], payload.get("result"))
        if topic == CANCEL_COMMAND:
            _require(topic, payload, "instanceId")
            return await self.cancel_instance(
                payload["instanceId"], payload.get("reason") or ""
            )
        raise InvalidCommand(f"Unknown command topic: {topic}", details={"topic": topic})

    async def _on_message(self, message: BusMessage) -> None:
        logger.debug(f"Received command {message.message_id} on {message.topic}")
        try:
            await self.handle_command(message.topic, message.payload)
        except WorkflowError as e:
            logger.error(
                f"Command {message.message_id} on {message.topic} failed: {e.kind}: {e.message}"
            )
            raise

    async def listen(self, lifespan: Optional[float] = None) -> int:
        """Consume commands from every command topic; returns handled count."""
        if self.bus is None:
            raise RuntimeError("Workflow engine has no event bus to listen on")
        handled = await asyncio.gather(
            *(
                self.bus.subscribe(topic, self._on_message, lifespan=lifespan)
                for topic in COMMAND_TOPICS
            )
        )
        return sum(handled)

    # -- internals -----------------------------------------------------------

    async def _load(self, instance_id: str) -> WorkflowInstance:
        instance = self._cache.get(instance_id)
        if instance is None:
            instance = await self.repository.load_instance(instance_id)
            if instance is None:
                raise InstanceNotFound(
                    f"Instance not found: {instance_id}",
                    details={"instance_id": instance_id},
                )
            self._remember(instance)
        return instance

    async def _commit(
        self, instance: WorkflowInstance, expected_version: Optional[int]
    ) -> None:
        try:
            await self.repository.upsert_instance(instance, expected_version=expected_version)
        except ConcurrentModification:
            # Another process won; the next call must reload from storage.
            self._cache.pop(instance.id, None)
            raise
        self._remember(instance)

    def _remember(self, instance: WorkflowInstance) -> None:
        # Terminal instances never change again; reads go to the repository.
        if instance.is_terminal:
            self._cache.pop(instance.id, None)
        else:
            self._cache[instance.id] = instance

    async def _complete(self, current: WorkflowInstance, result: Any) -> WorkflowInstance:
        if current.is_terminal:
            raise AlreadyTerminal(
                f"Instance {current.id} is {current.status.value}",
                instance=current.snapshot(),
            )
        now = utcnow()
        updated = current.snapshot()
        updated.status = InstanceStatus.COMPLETED
        updated.completed_at = now
        updated.result = copy.deepcopy(result)
        updated.updated_at = now
        updated.version = current.version + 1
        await self._commit(updated, expected_version=current.version)
        logger.info(f"Completed instance {current.id} in state {current.current_state}")
        await self._emit(
            WORKFLOW_COMPLETED,
            self._event_payload(updated, state=updated.current_state, result=updated.result),
        )
        return updated

    def _event_payload(self, instance: WorkflowInstance, **fields: Any) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "instanceId": instance.id,
            "workflowId": instance.workflow_id,
            "workflowVersion": instance.workflow_version,
            "entityId": instance.entity_id,
            "status": instance.status.value,
            "version": instance.version,
        }
        payload.update(fields)
        return copy.deepcopy(payload)

    async def _emit(self, topic: str, payload: Dict[str, Any]) -> None:
        if self.bus is None:
            return
        try:
            await self.bus.publish(topic, payload)
        except Exception as e:
            # The state change is already committed and must be reported as such.
            logger.error(f"Failed to publish {topic} for instance {payload['instanceId']}: {e}")


def _require(topic: str, payload: Mapping[str, Any], *keys: str) -> None:
    missing = [k for k in keys if not payload.get(k)]
    if missing:
        raise InvalidCommand(
            f"Command {topic} is missing {', '.join(missing)}",
            details={"topic": topic, "missing": missing},
        )


def _first(payload: Mapping[str, Any], *keys: str) -> Any:
    """Value of the first of ``keys`` present in ``payload``."""
    for key in keys:
        if payload.get(key) is not None:
            return payload[key]
    return None


__all__ = ["WorkflowEngine"]
