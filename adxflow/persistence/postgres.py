"""PostgreSQL implementation of the execution repository."""

from __future__ import annotations

import json
from typing import Any, Iterable, Optional

import asyncpg

from ..contracts import ExecutionError, ExecutionStatus, StepError, TenantContext
from .models import SignalRecord, StepRecord, WorkflowExecution
from .repository import ExecutionRepository

_EXECUTION_COLUMNS = (
    "execution_id, workflow_type, version, tenant_id, tenant_context, status, "
    "current_step_index, input, result, error, resume_point, signals, "
    "started_at, updated_at"
)
_STEP_COLUMNS = (
    "execution_id, sequence, step_name, step_index, attempt_count, status, "
    "output, last_error, idempotency_key, started_at, completed_at"
)


def _dumps(value: Any) -> str:
    # values must be JSON-native so replay sees exactly what the engine saw
    return json.dumps(value)


def _loads(value: Any) -> Any:
    # asyncpg hands JSONB back as text unless a codec is registered
    if isinstance(value, str):
        return json.loads(value)
    return value


class PostgresExecutionRepository(ExecutionRepository):
    """Persist execution state using PostgreSQL."""

    def __init__(self, dsn: str, min_size: int = 1, max_size: int = 10):
        self._dsn = dsn
        self._min_size = min_size
        self._max_size = max_size
        self._pool: asyncpg.Pool | None = None

    async def open(self) -> None:
        if self._pool is not None:
            return
        self._pool = await asyncpg.create_pool(
            self._dsn, min_size=self._min_size, max_size=self._max_size
        )
        async with self._pool.acquire() as conn:
            await self._ensure_schema(conn)

    async def close(self) -> None:
        if self._pool is None:
            return
        pool, self._pool = self._pool, None
        await pool.close()

    @property
    def pool(self) -> asyncpg.Pool:
        if self._pool is None:
            raise RuntimeError("Postgres repository is not open")
        return self._pool

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS executions (
                execution_id TEXT PRIMARY KEY,
                workflow_type TEXT NOT NULL,
                version TEXT NOT NULL,
                tenant_id TEXT NOT NULL,
                tenant_context JSONB NOT NULL,
                status TEXT NOT NULL,
                current_step_index INTEGER NOT NULL DEFAULT 0,
                input JSONB,
                result JSONB,
                error JSONB,
                resume_point TEXT,
                signals JSONB,
                started_at TIMESTAMPTZ NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS step_history (
                id SERIAL PRIMARY KEY,
                execution_id TEXT NOT NULL REFERENCES executions (execution_id),
                sequence INTEGER NOT NULL,
                step_name TEXT NOT NULL,
                step_index INTEGER NOT NULL,
                attempt_count INTEGER NOT NULL,
                status TEXT NOT NULL,
                output JSONB,
                last_error JSONB,
                idempotency_key TEXT,
                started_at TIMESTAMPTZ,
                completed_at TIMESTAMPTZ,
                UNIQUE (execution_id, step_name, attempt_count)
            )
            """
        )
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_executions_tenant ON executions (tenant_id)"
        )

    @staticmethod
    def _execution_from_row(
        row: asyncpg.Record, history: list[StepRecord] | None = None
    ) -> WorkflowExecution:
        error = _loads(row["error"])
        return WorkflowExecution(
            execution_id=row["execution_id"],
            workflow_type=row["workflow_type"],
            version=row["version"],
            tenant_id=row["tenant_id"],
            tenant_context=TenantContext.model_validate(_loads(row["tenant_context"])),
            status=ExecutionStatus(row["status"]),
            current_step_index=row["current_step_index"],
            input=_loads(row["input"]),
            result=_loads(row["result"]),
            error=ExecutionError.model_validate(error) if error else None,
            resume_point=row["resume_point"],
            signals=[SignalRecord.model_validate(s) for s in _loads(row["signals"]) or []],
            started_at=row["started_at"],
            updated_at=row["updated_at"],
            history=history or [],
        )

    @staticmethod
    def _step_from_row(row: asyncpg.Record) -> StepRecord:
        last_error = _loads(row["last_error"])
        return StepRecord(
            execution_id=row["execution_id"],
            sequence=row["sequence"],
            step_name=row["step_name"],
            step_index=row["step_index"],
            attempt_count=row["attempt_count"],
            status=row["status"],
            output=_loads(row["output"]),
            last_error=StepError.model_validate(last_error) if last_error else None,
            idempotency_key=row["idempotency_key"],
            started_at=row["started_at"],
            completed_at=row["completed_at"],
        )

    # ------------------------------------------------------------------
    async def create_execution(self, execution: WorkflowExecution) -> None:
        await self.pool.execute(
            f"INSERT INTO executions ({_EXECUTION_COLUMNS}) "
            "VALUES ($1, $2, $3, $4, $5::jsonb, $6, $7, $8::jsonb, $9::jsonb, "
            "$10::jsonb, $11, $12::jsonb, $13, $14)",
            execution.execution_id,
            execution.workflow_type,
            execution.version,
            execution.tenant_id,
            execution.tenant_context.model_dump_json(),
            execution.status.value,
            execution.current_step_index,
            _dumps(execution.input),
            _dumps(execution.result),
            execution.error.model_dump_json() if execution.error else None,
            execution.resume_point,
            _dumps([s.model_dump(mode="json") for s in execution.signals]),
            execution.started_at,
            execution.updated_at,
        )

    async def update_execution(self, execution: WorkflowExecution) -> None:
        await self.pool.execute(
            """
            UPDATE executions
            SET status = $1, current_step_index = $2, result = $3::jsonb,
                error = $4::jsonb, resume_point = $5, signals = $6::jsonb,
                version = $7, updated_at = $8
            WHERE execution_id = $9
            """,
            execution.status.value,
            execution.current_step_index,
            _dumps(execution.result),
            execution.error.model_dump_json() if execution.error else None,
            execution.resume_point,
            _dumps([s.model_dump(mode="json") for s in execution.signals]),
            execution.version,
            execution.updated_at,
            execution.execution_id,
        )

    async def append_step(self, record: StepRecord) -> None:
        await self.pool.execute(
            f"INSERT INTO step_history ({_STEP_COLUMNS}) "
            "VALUES ($1, $2, $3, $4, $5, $6, $7::jsonb, $8::jsonb, $9, $10, $11) "
            "ON CONFLICT (execution_id, step_name, attempt_count) DO NOTHING",
            record.execution_id,
            record.sequence,
            record.step_name,
            record.step_index,
            record.attempt_count,
            record.status.value,
            _dumps(record.output),
            record.last_error.model_dump_json() if record.last_error else None,
            record.idempotency_key,
            record.started_at,
            record.completed_at,
        )

    async def update_step(self, record: StepRecord) -> None:
        await self.pool.execute(
            """
            UPDATE step_history
            SET status = $1, output = $2::jsonb, last_error = $3::jsonb,
                started_at = $4, completed_at = $5
            WHERE execution_id = $6 AND step_name = $7 AND attempt_count = $8
            """,
            record.status.value,
            _dumps(record.output),
            record.last_error.model_dump_json() if record.last_error else None,
            record.started_at,
            record.completed_at,
            record.execution_id,
            record.step_name,
            record.attempt_count,
        )

    async def get_execution(self, execution_id: str) -> Optional[WorkflowExecution]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT {_EXECUTION_COLUMNS} FROM executions WHERE execution_id = $1",
                execution_id,
            )
            if not row:
                return None
            step_rows = await conn.fetch(
                f"SELECT {_STEP_COLUMNS} FROM step_history "
                "WHERE execution_id = $1 ORDER BY sequence",
                execution_id,
            )
        return self._execution_from_row(row, [self._step_from_row(r) for r in step_rows])

    async def list_executions(
        self,
        tenant_id: Optional[str] = None,
        statuses: Optional[Iterable[ExecutionStatus]] = None,
    ) -> list[WorkflowExecution]:
        query = f"SELECT {_EXECUTION_COLUMNS} FROM executions"
        clauses: list[str] = []
        params: list[Any] = []
        if tenant_id is not None:
            params.append(tenant_id)
            clauses.append(f"tenant_id = ${len(params)}")
        if statuses is not None:
            params.append([ExecutionStatus(s).value for s in statuses])
            clauses.append(f"status = ANY(${len(params)}::text[])")
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY started_at"
        rows = await self.pool.fetch(query, *params)
        return [self._execution_from_row(row) for row in rows]
