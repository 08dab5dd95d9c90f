"""SQLite implementation of the execution repository."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, Optional

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


def _loads(value: Optional[str]) -> Any:
    return json.loads(value) if value else None


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class SQLiteExecutionRepository(ExecutionRepository):
    """Persist execution state using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn: sqlite3.Connection | None = None
        # one connection is shared by the worker threads
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Lifecycle
    async def open(self) -> None:
        if self._conn is not None:
            return
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        await asyncio.to_thread(self._ensure_schema)

    async def close(self) -> None:
        if self._conn is None:
            return
        conn, self._conn = self._conn, None
        await asyncio.to_thread(conn.close)

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._connection.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS executions (
                execution_id TEXT PRIMARY KEY,
                workflow_type TEXT NOT NULL,
                version TEXT NOT NULL,
                tenant_id TEXT NOT NULL,
                tenant_context TEXT NOT NULL,
                status TEXT NOT NULL,
                current_step_index INTEGER NOT NULL DEFAULT 0,
                input TEXT,
                result TEXT,
                error TEXT,
                resume_point TEXT,
                signals TEXT,
                started_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS step_history (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                execution_id TEXT NOT NULL,
                sequence INTEGER NOT NULL,
                step_name TEXT NOT NULL,
                step_index INTEGER NOT NULL,
                attempt_count INTEGER NOT NULL,
                status TEXT NOT NULL,
                output TEXT,
                last_error TEXT,
                idempotency_key TEXT,
                started_at TEXT,
                completed_at TEXT,
                UNIQUE (execution_id, step_name, attempt_count)
            )
            """
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS idx_executions_tenant ON executions (tenant_id)"
        )
        self._connection.commit()

    # ------------------------------------------------------------------
    # Helper methods
    @property
    def _connection(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("SQLite repository is not open")
        return self._conn

    def _execute(self, query: str, *params: Any) -> None:
        with self._lock:
            cur = self._connection.cursor()
            cur.execute(query, params)
            self._connection.commit()

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._lock:
            cur = self._connection.cursor()
            cur.execute(query, params)
            return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            cur = self._connection.cursor()
            cur.execute(query, params)
            return cur.fetchall()

    @staticmethod
    def _execution_from_row(
        row: sqlite3.Row, history: list[StepRecord] | None = None
    ) -> WorkflowExecution:
        error = _loads(row["error"])
        return WorkflowExecution(
            execution_id=row["execution_id"],
            workflow_type=row["workflow_type"],
            version=row["version"],
            tenant_id=row["tenant_id"],
            tenant_context=TenantContext.model_validate_json(row["tenant_context"]),
            status=ExecutionStatus(row["status"]),
            current_step_index=row["current_step_index"],
            input=_loads(row["input"]),
            result=_loads(row["result"]),
            error=ExecutionError.model_validate(error) if error else None,
            resume_point=row["resume_point"],
            signals=[SignalRecord.model_validate(s) for s in _loads(row["signals"]) or []],
            started_at=_parse_dt(row["started_at"]),
            updated_at=_parse_dt(row["updated_at"]),
            history=history or [],
        )

    @staticmethod
    def _step_from_row(row: sqlite3.Row) -> StepRecord:
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
            started_at=_parse_dt(row["started_at"]),
            completed_at=_parse_dt(row["completed_at"]),
        )

    # ------------------------------------------------------------------
    # Repository API
    async def create_execution(self, execution: WorkflowExecution) -> None:
        await asyncio.to_thread(
            self._execute,
            f"INSERT INTO executions ({_EXECUTION_COLUMNS}) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
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
            _iso(execution.started_at),
            _iso(execution.updated_at),
        )

    async def update_execution(self, execution: WorkflowExecution) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            UPDATE executions
            SET status = ?, current_step_index = ?, result = ?, error = ?,
                resume_point = ?, signals = ?, version = ?, updated_at = ?
            WHERE execution_id = ?
            """,
            execution.status.value,
            execution.current_step_index,
            _dumps(execution.result),
            execution.error.model_dump_json() if execution.error else None,
            execution.resume_point,
            _dumps([s.model_dump(mode="json") for s in execution.signals]),
            execution.version,
            _iso(execution.updated_at),
            execution.execution_id,
        )

    async def append_step(self, record: StepRecord) -> None:
        await asyncio.to_thread(
            self._execute,
            f"INSERT OR IGNORE INTO step_history ({_STEP_COLUMNS}) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            record.execution_id,
            record.sequence,
            record.step_name,
            record.step_index,
            record.attempt_count,
            record.status.value,
            _dumps(record.output),
            record.last_error.model_dump_json() if record.last_error else None,
            record.idempotency_key,
            _iso(record.started_at),
            _iso(record.completed_at),
        )

    async def update_step(self, record: StepRecord) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            UPDATE step_history
            SET status = ?, output = ?, last_error = ?, started_at = ?, completed_at = ?
            WHERE execution_id = ? AND step_name = ? AND attempt_count = ?
            """,
            record.status.value,
            _dumps(record.output),
            record.last_error.model_dump_json() if record.last_error else None,
            _iso(record.started_at),
            _iso(record.completed_at),
            record.execution_id,
            record.step_name,
            record.attempt_count,
        )

    async def get_execution(self, execution_id: str) -> Optional[WorkflowExecution]:
        row = await asyncio.to_thread(
            self._fetchone,
            f"SELECT {_EXECUTION_COLUMNS} FROM executions WHERE execution_id = ?",
            execution_id,
        )
        if not row:
            return None
        step_rows = await asyncio.to_thread(
            self._fetchall,
            f"SELECT {_STEP_COLUMNS} FROM step_history WHERE execution_id = ? ORDER BY sequence",
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
            clauses.append("tenant_id = ?")
            params.append(tenant_id)
        if statuses is not None:
            wanted = [ExecutionStatus(s).value for s in statuses]
            if not wanted:
                return []
            clauses.append(f"status IN ({', '.join('?' for _ in wanted)})")
            params.extend(wanted)
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY started_at"
        rows = await asyncio.to_thread(self._fetchall, query, *params)
        return [self._execution_from_row(row) for row in rows]
