"""Bounded retries around a repository."""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, TypeVar

from ..errors import ConcurrentModification, PersistenceError
from ..models import InstanceFilter, WorkflowDefinition, WorkflowInstance
from ..utils.retry import schedule_retry
from .repository import WorkflowRepository

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryingRepository(WorkflowRepository):
    """Retry transient storage failures with exponential backoff.

    ``ConcurrentModification`` is never retried: replaying the same write
    cannot succeed. After ``attempts`` tries the last error is re-raised.
    """

    def __init__(
        self,
        inner: WorkflowRepository,
        attempts: int = 3,
        base: float = 1.5,
        jitter: float = 0.1,
    ) -> None:
        if attempts < 1:
            raise ValueError("attempts must be at least 1")
        self.inner = inner
        self.attempts = attempts
        self.base = base
        self.jitter = jitter

    async def _call(self, name: str, fn: Callable[[], Awaitable[T]]) -> T:
        attempt = 1
        while True:
            try:
                return await fn()
            except ConcurrentModification:
                raise
            except PersistenceError as e:
                if attempt >= self.attempts:
                    logger.error(f"{name} failed after {attempt} attempts: {e}")
                    raise
                logger.warning(f"{name} failed (attempt {attempt}/{self.attempts}), retrying: {e}")
                await schedule_retry(attempt, base=self.base, jitter=self.jitter)
                attempt += 1

    async def save_definition(self, definition: WorkflowDefinition) -> None:
        await self._call("save_definition", lambda: self.inner.save_definition(definition))

    async def load_active_definitions(self) -> list[dict[str, Any]]:
        return await self._call("load_active_definitions", self.inner.load_active_definitions)

    async def upsert_instance(
        self, instance: WorkflowInstance, expected_version: int | None
    ) -> None:
        await self._call(
            "upsert_instance",
            lambda: self.inner.upsert_instance(instance, expected_version),
        )

    async def load_instance(self, instance_id: str) -> WorkflowInstance | None:
        return await self._call("load_instance", lambda: self.inner.load_instance(instance_id))

    async def query_instances(self, filter: InstanceFilter) -> list[WorkflowInstance]:
        return await self._call("query_instances", lambda: self.inner.query_instances(filter))
