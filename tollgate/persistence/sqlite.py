"""SQLite implementation of the workflow repository."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, TypeVar

from ..errors import ConcurrentModification, PersistenceError
from ..models import InstanceFilter, WorkflowDefinition, WorkflowInstance, utcnow
from .models import InstanceRecord, from_record, to_record
from .repository import WorkflowRepository

T = TypeVar("T")

_INSTANCE_COLUMNS = (
    "id, workflow_id, workflow_version, entity_id, current_state, status, data, history, "
    "result, created_at, updated_at, completed_at, cancelled_at, cancel_reason, version"
)


def _ts(value: datetime | None) -> str | None:
    return value.isoformat(timespec="microseconds") if value is not None else None


def _parse_ts(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class SQLiteWorkflowRepository(WorkflowRepository):
    """Persist definitions and instances using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        # One connection shared by worker threads.
        self._write_lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_definitions (
                id TEXT NOT NULL,
                version TEXT NOT NULL,
                active INTEGER NOT NULL DEFAULT 1,
                document TEXT NOT NULL,
                saved_at TEXT NOT NULL,
                PRIMARY KEY (id, version)
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_instances (
                id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                workflow_version TEXT NOT NULL,
                entity_id TEXT NOT NULL,
                current_state TEXT NOT NULL,
                status TEXT NOT NULL,
                data TEXT NOT NULL,
                history TEXT NOT NULL,
                result TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                completed_at TEXT,
                cancelled_at TEXT,
                cancel_reason TEXT,
                version INTEGER NOT NULL
            )
            """
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS idx_instances_entity "
            "ON workflow_instances (entity_id, created_at)"
        )
        self._conn.commit()

    def close(self) -> None:
        self._conn.close()

    # ------------------------------------------------------------------
    # Helper methods
    async def _run(self, fn: Callable[..., T], *args: Any) -> T:
        try:
            return await asyncio.to_thread(fn, *args)
        except sqlite3.Error as e:
            raise PersistenceError(f"SQLite operation failed: {e}") from e

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._write_lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._write_lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchall()

    def _save_definition(self, definition: WorkflowDefinition) -> None:
        with self._write_lock, self._conn:
            self._conn.execute(
                """
                INSERT INTO workflow_definitions (id, version, active, document, saved_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT (id, version) DO UPDATE SET
                    active = excluded.active,
                    document = excluded.document,
                    saved_at = excluded.saved_at
                """,
                (
                    definition.id,
                    definition.version,
                    int(definition.active),
                    json.dumps(definition.to_document()),
                    _ts(utcnow()),
                ),
            )

    def _upsert(self, record: InstanceRecord, expected_version: int | None) -> str:
        values = (
            record.workflow_id,
            record.workflow_version,
            record.entity_id,
            record.current_state,
            record.status,
            record.data,
            record.history,
            record.result,
            _ts(record.created_at),
            _ts(record.updated_at),
            _ts(record.completed_at),
            _ts(record.cancelled_at),
            record.cancel_reason,
            record.version,
        )
        with self._write_lock, self._conn:
            if expected_version is None:
                try:
                    self._conn.execute(
                        f"INSERT INTO workflow_instances ({_INSTANCE_COLUMNS}) "
                        "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                        (record.id, *values),
                    )
                except sqlite3.IntegrityError:
                    return "exists"
                return "ok"
            cur = self._conn.execute(
                """
                UPDATE workflow_instances SET
                    workflow_id = ?, workflow_version = ?, entity_id = ?, current_state = ?,
                    status = ?, data = ?, history = ?, result = ?, created_at = ?,
                    updated_at = ?, completed_at = ?, cancelled_at = ?, cancel_reason = ?,
                    version = ?
                WHERE id = ? AND version = ?
                """,
                (*values, record.id, expected_version),
            )
            if cur.rowcount == 1:
                return "ok"
            row = self._conn.execute(
                "SELECT version FROM workflow_instances WHERE id = ?", (record.id,)
            ).fetchone()
            return "missing" if row is None else f"stale:{row['version']}"

    def _row_to_instance(self, row: sqlite3.Row) -> WorkflowInstance:
        return from_record(
            InstanceRecord(
                id=row["id"],
                workflow_id=row["workflow_id"],
                workflow_version=row["workflow_version"],
                entity_id=row["entity_id"],
                current_state=row["current_state"],
                status=row["status"],
                data=row["data"],
                history=row["history"],
                result=row["result"],
                created_at=_parse_ts(row["created_at"]),
                updated_at=_parse_ts(row["updated_at"]),
                completed_at=_parse_ts(row["completed_at"]),
                cancelled_at=_parse_ts(row["cancelled_at"]),
                cancel_reason=row["cancel_reason"],
                version=row["version"],
            )
        )

    # ------------------------------------------------------------------
    # Repository API
    async def save_definition(self, definition: WorkflowDefinition) -> None:
        await self._run(self._save_definition, definition)

    async def load_active_definitions(self) -> list[dict[str, Any]]:
        rows = await self._run(
            self._fetchall,
            "SELECT document FROM workflow_definitions WHERE active = 1 ORDER BY saved_at",
        )
        return [json.loads(r["document"]) for r in rows]

    async def upsert_instance(
        self, instance: WorkflowInstance, expected_version: int | None
    ) -> None:
        outcome = await self._run(self._upsert, to_record(instance), expected_version)
        if outcome == "ok":
            return
        if outcome == "missing":
            raise PersistenceError(
                f"Instance {instance.id} is not stored", details={"instance_id": instance.id}
            )
        raise ConcurrentModification(
            f"Instance {instance.id} was modified concurrently "
            f"(expected version {expected_version})",
            details={"instance_id": instance.id, "expected_version": expected_version},
        )

    async def load_instance(self, instance_id: str) -> WorkflowInstance | None:
        row = await self._run(
            self._fetchone,
            f"SELECT {_INSTANCE_COLUMNS} FROM workflow_instances WHERE id = ?",
            instance_id,
        )
        if not row:
            return None
        return self._row_to_instance(row)

    async def query_instances(self, filter: InstanceFilter) -> list[WorkflowInstance]:
        clauses: list[str] = []
        params: list[Any] = []
        if filter.entity_id is not None:
            clauses.append("entity_id = ?")
            params.append(filter.entity_id)
        if filter.status is not None:
            clauses.append("status = ?")
            params.append(filter.status.value)
        if filter.workflow_id is not None:
            clauses.append("workflow_id = ?")
            params.append(filter.workflow_id)
        query = f"SELECT {_INSTANCE_COLUMNS} FROM workflow_instances"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY created_at DESC LIMIT ? OFFSET ?"
        params.extend([filter.limit if filter.limit is not None else -1, filter.offset])
        rows = await self._run(self._fetchall, query, *params)
        return [self._row_to_instance(r) for r in rows]
