"""Repository abstraction for definitions and instances."""

from __future__ import annotations

from typing import Any, Protocol

from ..models import InstanceFilter, WorkflowDefinition, WorkflowInstance


class WorkflowRepository(Protocol):
    """Protocol for durable storage backends.

    Instance writes use ``version`` as an optimistic-concurrency token: a
    write names the version it expects to replace (``None`` for a new
    instance) and fails with ``ConcurrentModification`` if the stored
    version differs. Storage failures surface as ``PersistenceError``.
    """

    async def save_definition(self, definition: WorkflowDefinition) -> None:
        """Persist a definition, replacing any stored copy of the same version."""

    async def load_active_definitions(self) -> list[dict[str, Any]]:
        """Return the authoring documents of all active definitions.

        Documents are returned unvalidated so that one bad definition does
        not prevent the others from loading.
        """

    async def upsert_instance(
        self, instance: WorkflowInstance, expected_version: int | None
    ) -> None:
        """Insert or replace an instance if its stored version matches."""

    async def load_instance(self, instance_id: str) -> WorkflowInstance | None:
        """Retrieve an instance by id."""

    async def query_instances(self, filter: InstanceFilter) -> list[WorkflowInstance]:
        """Return matching instances, newest first, paginated."""
