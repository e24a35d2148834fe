"""PostgreSQL implementation of the workflow repository."""

from __future__ import annotations

import json
from typing import Any

import asyncpg

from ..errors import ConcurrentModification, PersistenceError
from ..models import InstanceFilter, WorkflowDefinition, WorkflowInstance
from .models import InstanceRecord, from_record, to_record
from .repository import WorkflowRepository

_INSTANCE_COLUMNS = (
    "id, workflow_id, workflow_version, entity_id, current_state, status, data, history, "
    "result, created_at, updated_at, completed_at, cancelled_at, cancel_reason, version"
)


def _json_text(value: Any) -> str | None:
    # asyncpg hands JSONB back as text unless a codec is registered.
    if value is None or isinstance(value, str):
        return value
    return json.dumps(value)


class PostgresWorkflowRepository(WorkflowRepository):
    """Persist definitions and instances using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        try:
            conn = await asyncpg.connect(self._dsn)
        except (OSError, asyncpg.PostgresError) as e:
            raise PersistenceError(f"Cannot connect to PostgreSQL: {e}") from e
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_definitions (
                id TEXT NOT NULL,
                version TEXT NOT NULL,
                active BOOLEAN NOT NULL DEFAULT TRUE,
                document JSONB NOT NULL,
                saved_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                PRIMARY KEY (id, version)
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_instances (
                id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                workflow_version TEXT NOT NULL,
                entity_id TEXT NOT NULL,
                current_state TEXT NOT NULL,
                status TEXT NOT NULL,
                data JSONB NOT NULL,
                history JSONB NOT NULL,
                result JSONB,
                created_at TIMESTAMPTZ NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL,
                completed_at TIMESTAMPTZ,
                cancelled_at TIMESTAMPTZ,
                cancel_reason TEXT,
                version INTEGER NOT NULL
            )
            """
        )
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_instances_entity "
            "ON workflow_instances (entity_id, created_at DESC)"
        )

    def _row_to_instance(self, row: asyncpg.Record) -> WorkflowInstance:
        return from_record(
            InstanceRecord(
                id=row["id"],
                workflow_id=row["workflow_id"],
                workflow_version=row["workflow_version"],
                entity_id=row["entity_id"],
                current_state=row["current_state"],
                status=row["status"],
                data=_json_text(row["data"]),
                history=_json_text(row["history"]),
                result=_json_text(row["result"]),
                created_at=row["created_at"],
                updated_at=row["updated_at"],
                completed_at=row["completed_at"],
                cancelled_at=row["cancelled_at"],
                cancel_reason=row["cancel_reason"],
                version=row["version"],
            )
        )

    # ------------------------------------------------------------------
    async def save_definition(self, definition: WorkflowDefinition) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                INSERT INTO workflow_definitions (id, version, active, document, saved_at)
                VALUES ($1, $2, $3, $4, now())
                ON CONFLICT (id, version) DO UPDATE SET
                    active = EXCLUDED.active,
                    document = EXCLUDED.document,
                    saved_at = EXCLUDED.saved_at
                """,
                definition.id,
                definition.version,
                definition.active,
                json.dumps(definition.to_document()),
            )
        except asyncpg.PostgresError as e:
            raise PersistenceError(f"Failed to save definition {definition.id}: {e}") from e
        finally:
            await conn.close()

    async def load_active_definitions(self) -> list[dict[str, Any]]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                "SELECT document FROM workflow_definitions WHERE active ORDER BY saved_at"
            )
        except asyncpg.PostgresError as e:
            raise PersistenceError(f"Failed to load definitions: {e}") from e
        finally:
            await conn.close()
        return [json.loads(_json_text(r["document"])) for r in rows]

    async def upsert_instance(
        self, instance: WorkflowInstance, expected_version: int | None
    ) -> None:
        record = to_record(instance)
        values = (
            record.workflow_id,
            record.workflow_version,
            record.entity_id,
            record.current_state,
            record.status,
            record.data,
            record.history,
            record.result,
            record.created_at,
            record.updated_at,
            record.completed_at,
            record.cancelled_at,
            record.cancel_reason,
            record.version,
        )
        conn = await self._connect()
        try:
            if expected_version is None:
                status = await conn.execute(
                    f"INSERT INTO workflow_instances ({_INSTANCE_COLUMNS}) "
                    "VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15) "
                    "ON CONFLICT (id) DO NOTHING",
                    record.id,
                    *values,
                )
            else:
                status = await conn.execute(
                    """
                    UPDATE workflow_instances SET
                        workflow_id = $1, workflow_version = $2, entity_id = $3,
                        current_state = $4, status = $5, data = $6, history = $7,
                        result = $8, created_at = $9, updated_at = $10, completed_at = $11,
                        cancelled_at = $12, cancel_reason = $13, version = $14
                    WHERE id = $15 AND version = $16
                    """,
                    *values,
                    record.id,
                    expected_version,
                )
                # Status tags look like "INSERT 0 1" / "UPDATE 1".
                if status.split()[-1] == "0":
                    stored = await conn.fetchval(
                        "SELECT version FROM workflow_instances WHERE id = $1", record.id
                    )
                    if stored is None:
                        raise PersistenceError(
                            f"Instance {instance.id} is not stored",
                            details={"instance_id": instance.id},
                        )
        except asyncpg.PostgresError as e:
            raise PersistenceError(f"Failed to write instance {instance.id}: {e}") from e
        finally:
            await conn.close()

        if status.split()[-1] == "0":
            raise ConcurrentModification(
                f"Instance {instance.id} was modified concurrently "
                f"(expected version {expected_version})",
                details={"instance_id": instance.id, "expected_version": expected_version},
            )

    async def load_instance(self, instance_id: str) -> WorkflowInstance | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                f"SELECT {_INSTANCE_COLUMNS} FROM workflow_instances WHERE id = $1",
                instance_id,
            )
        except asyncpg.PostgresError as e:
            raise PersistenceError(f"Failed to load instance {instance_id}: {e}") from e
        finally:
            await conn.close()
        if not row:
            return None
        return self._row_to_instance(row)

    async def query_instances(self, filter: InstanceFilter) -> list[WorkflowInstance]:
        clauses: list[str] = []
        params: list[Any] = []
        if filter.entity_id is not None:
            params.append(filter.entity_id)
            clauses.append(f"entity_id = ${len(params)}")
        if filter.status is not None:
            params.append(filter.status.value)
            clauses.append(f"status = ${len(params)}")
        if filter.workflow_id is not None:
            params.append(filter.workflow_id)
            clauses.append(f"workflow_id = ${len(params)}")
        query = f"SELECT {_INSTANCE_COLUMNS} FROM workflow_instances"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY created_at DESC"
        if filter.limit is not None:
            params.append(filter.limit)
            query += f" LIMIT ${len(params)}"
        if filter.offset:
            params.append(filter.offset)
            query += f" OFFSET ${len(params)}"

        conn = await self._connect()
        try:
            rows = await conn.fetch(query, *params)
        except asyncpg.PostgresError as e:
            raise PersistenceError(f"Failed to query instances: {e}") from e
        finally:
            await conn.close()
        return [self._row_to_instance(r) for r in rows]
