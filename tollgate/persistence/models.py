"""Persistence records for workflow instances."""

from __future__ import annotations

import json
from datetime import datetime
from typing import Optional

from pydantic import BaseModel

from ..models import HistoryEntry, InstanceStatus, WorkflowInstance


class InstanceRecord(BaseModel):
    """Flat storage shape of a :class:`WorkflowInstance`.

    ``data``, ``history`` and ``result`` are JSON blobs.
    """

    id: str
    workflow_id: str
    workflow_version: str
    entity_id: str
    current_state: str
    status: str
    data: str
    history: str
    result: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancel_reason: Optional[str] = None
    version: int


def to_record(instance: WorkflowInstance) -> InstanceRecord:
    dumped = instance.model_dump(mode="json")
    return InstanceRecord(
        id=instance.id,
        workflow_id=instance.workflow_id,
        workflow_version=instance.workflow_version,
        entity_id=instance.entity_id,
        current_state=instance.current_state,
        status=instance.status.value,
        data=json.dumps(dumped["data"]),
        history=json.dumps(dumped["history"]),
        result=None if instance.result is None else json.dumps(dumped["result"]),
        created_at=instance.created_at,
        updated_at=instance.updated_at,
        completed_at=instance.completed_at,
        cancelled_at=instance.cancelled_at,
        cancel_reason=instance.cancel_reason,
        version=instance.version,
    )


def from_record(record: InstanceRecord) -> WorkflowInstance:
    return WorkflowInstance(
        id=record.id,
        workflow_id=record.workflow_id,
        workflow_version=record.workflow_version,
        entity_id=record.entity_id,
        current_state=record.current_state,
        status=InstanceStatus(record.status),
        data=json.loads(record.data),
        history=[HistoryEntry.model_validate(h) for h in json.loads(record.history)],
        result=None if record.result is None else json.loads(record.result),
        created_at=record.created_at,
        updated_at=record.updated_at,
        completed_at=record.completed_at,
        cancelled_at=record.cancelled_at,
        cancel_reason=record.cancel_reason,
        version=record.version,
    )
