"""Repository abstraction for execution state persistence."""

from __future__ import annotations

from typing import Iterable, Optional, Protocol

from ..contracts import ExecutionStatus
from .models import StepRecord, WorkflowExecution


class ExecutionRepository(Protocol):
    """Protocol for execution state persistence backends.

    The repository is the only shared mutable resource of the engine. Step
    appends are idempotent per ``(execution_id, step_name, attempt_count)``.
    """

    async def open(self) -> None:
        """Prepare the backend (connect, create schema)."""

    async def close(self) -> None:
        """Flush and release backend resources."""

    async def create_execution(self, execution: WorkflowExecution) -> None:
        """Persist a new execution and its initial header."""

    async def update_execution(self, execution: WorkflowExecution) -> None:
        """Persist header fields: status, step index, result, error, signals."""

    async def append_step(self, record: StepRecord) -> None:
        """Append a step attempt to the execution history."""

    async def update_step(self, record: StepRecord) -> None:
        """Persist the new state of an existing step attempt."""

    async def get_execution(self, execution_id: str) -> Optional[WorkflowExecution]:
        """Retrieve an execution with its full history."""

    async def list_executions(
        self,
        tenant_id: Optional[str] = None,
        statuses: Optional[Iterable[ExecutionStatus]] = None,
    ) -> list[WorkflowExecution]:
        """Return executions, optionally filtered, without histories."""
