"""Persistence layer for workflow definitions and instances."""

from __future__ import annotations

import os
from typing import Optional

from ..config import TollgateConfig, load_config
from .inmemory import InMemoryWorkflowRepository
from .models import InstanceRecord, from_record, to_record
from .repository import WorkflowRepository
from .retry import RetryingRepository
from .sqlite import SQLiteWorkflowRepository

_repository_instance: WorkflowRepository | None = None


def get_repository(
    database_url: Optional[str] = None, config: Optional[TollgateConfig] = None
) -> WorkflowRepository:
    """Factory function to obtain a workflow repository.

    The backend is selected based on ``database_url`` which can be provided
    explicitly, via environment variable ``TOLLGATE_DATABASE_URL`` or
    ``DATABASE_URL``, or from loaded configuration. When no database is
    configured, an in-memory repository is returned. Database backends are
    wrapped in a :class:`RetryingRepository` using the configured backoff.
    """

    global _repository_instance
    if _repository_instance is not None and database_url is None and config is None:
        return _repository_instance

    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("TOLLGATE_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or config.database_url
    )

    if not database_url:
        _repository_instance = InMemoryWorkflowRepository()
        return _repository_instance

    if database_url.startswith("sqlite://"):
        path = database_url.replace("sqlite://", "", 1)
        backend: WorkflowRepository = SQLiteWorkflowRepository(path)
    elif database_url.startswith("postgres://") or database_url.startswith(
        "postgresql://"
    ):
        from .postgres import PostgresWorkflowRepository

        backend = PostgresWorkflowRepository(database_url)
    else:
        raise ValueError(f"Unsupported database backend: {database_url}")

    _repository_instance = RetryingRepository(
        backend,
        attempts=config.retry.attempts,
        base=config.retry.base,
        jitter=config.retry.jitter,
    )
    return _repository_instance


__all__ = [
    "InstanceRecord",
    "InMemoryWorkflowRepository",
    "RetryingRepository",
    "SQLiteWorkflowRepository",
    "WorkflowRepository",
    "from_record",
    "get_repository",
    "to_record",
]
