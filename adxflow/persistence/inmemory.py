"""In-memory implementation of the execution repository."""

from __future__ import annotations

from typing import Dict, Iterable, Optional

from ..contracts import ExecutionStatus
from .models import StepRecord, WorkflowExecution
from .repository import ExecutionRepository


class InMemoryExecutionRepository(ExecutionRepository):
    """Store execution state in local memory.

    Useful for tests or when no database is configured. Data survives an
    engine restart within the same process (a fresh engine can share the
    repository) but not a process restart.
    """

    def __init__(self) -> None:
        self._executions: Dict[str, WorkflowExecution] = {}

    async def open(self) -> None:
        return None

    async def close(self) -> None:
        return None

    # ------------------------------------------------------------------
    async def create_execution(self, execution: WorkflowExecution) -> None:
        if execution.execution_id in self._executions:
            raise ValueError(f"Execution {execution.execution_id} already exists")
        self._executions[execution.execution_id] = execution.model_copy(deep=True)

    async def update_execution(self, execution: WorkflowExecution) -> None:
        stored = self._executions.get(execution.execution_id)
        if stored is None:
            return
        header = execution.model_copy(deep=True, update={"history": stored.history})
        self._executions[execution.execution_id] = header

    async def append_step(self, record: StepRecord) -> None:
        stored = self._executions.get(record.execution_id)
        if stored is None:
            return
        # ignore duplicate appends for the same attempt
        if stored.find_attempt(record.step_name, record.attempt_count) is not None:
            return
        stored.history.append(record.model_copy(deep=True))

    async def update_step(self, record: StepRecord) -> None:
        stored = self._executions.get(record.execution_id)
        if stored is None:
            return
        for position, existing in enumerate(stored.history):
            if (
                existing.step_name == record.step_name
                and existing.attempt_count == record.attempt_count
            ):
                stored.history[position] = record.model_copy(deep=True)
                break

    async def get_execution(self, execution_id: str) -> Optional[WorkflowExecution]:
        stored = self._executions.get(execution_id)
        return stored.model_copy(deep=True) if stored else None

    async def list_executions(
        self,
        tenant_id: Optional[str] = None,
        statuses: Optional[Iterable[ExecutionStatus]] = None,
    ) -> list[WorkflowExecution]:
        wanted = set(statuses) if statuses is not None else None
        return [
            wf.model_copy(deep=True, update={"history": []})
            for wf in self._executions.values()
            if (tenant_id is None or wf.tenant_id == tenant_id)
            and (wanted is None or wf.status in wanted)
        ]
