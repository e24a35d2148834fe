"""In-memory implementation of the workflow repository."""

from __future__ import annotations

import json
from typing import Any, Dict, Tuple

from ..errors import ConcurrentModification, PersistenceError
from ..models import InstanceFilter, WorkflowDefinition, WorkflowInstance
from .models import InstanceRecord, from_record, to_record
from .repository import WorkflowRepository


class InMemoryWorkflowRepository(WorkflowRepository):
    """Store definitions and instances in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Records are stored serialized so
    callers never share objects with the store.
    """

    def __init__(self) -> None:
        self._definitions: Dict[Tuple[str, str], str] = {}
        self._instances: Dict[str, InstanceRecord] = {}

    # ------------------------------------------------------------------
    async def save_definition(self, definition: WorkflowDefinition) -> None:
        self._definitions[(definition.id, definition.version)] = json.dumps(
            definition.to_document()
        )

    async def load_active_definitions(self) -> list[dict[str, Any]]:
        documents = [json.loads(raw) for raw in self._definitions.values()]
        return [doc for doc in documents if doc.get("active", True)]

    async def upsert_instance(
        self, instance: WorkflowInstance, expected_version: int | None
    ) -> None:
        stored = self._instances.get(instance.id)
        if expected_version is None:
            if stored is not None:
                raise ConcurrentModification(
                    f"Instance {instance.id} already exists",
                    details={"instance_id": instance.id, "stored_version": stored.version},
                )
        elif stored is None:
            raise PersistenceError(
                f"Instance {instance.id} is not stored", details={"instance_id": instance.id}
            )
        elif stored.version != expected_version:
            raise ConcurrentModification(
                f"Instance {instance.id} is at version {stored.version}, "
                f"expected {expected_version}",
                details={
                    "instance_id": instance.id,
                    "stored_version": stored.version,
                    "expected_version": expected_version,
                },
            )
        self._instances[instance.id] = to_record(instance)

    async def load_instance(self, instance_id: str) -> WorkflowInstance | None:
        record = self._instances.get(instance_id)
        return from_record(record) if record is not None else None

    async def query_instances(self, filter: InstanceFilter) -> list[WorkflowInstance]:
        return filter.page([from_record(r) for r in self._instances.values()])
