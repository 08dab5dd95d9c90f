"""Data models for persisted execution state."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, model_validator

from ..contracts import (
    ExecutionError,
    ExecutionStatus,
    StepError,
    StepStatus,
    TenantContext,
    utcnow,
)


class StepRecord(BaseModel):
    """Record of one attempt of one workflow step."""

    execution_id: str
    sequence: int
    step_name: str
    step_index: int
    attempt_count: int = 1
    status: StepStatus = StepStatus.SCHEDULED
    output: Any = None
    last_error: Optional[StepError] = None
    idempotency_key: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class SignalRecord(BaseModel):
    """External event delivered to an execution."""

    name: str
    payload: Any = None
    received_at: datetime = Field(default_factory=utcnow)
    consumed_by: Optional[int] = None


class WorkflowExecution(BaseModel):
    """Persisted execution of a workflow."""

    execution_id: str
    workflow_type: str
    version: str
    tenant_id: str
    tenant_context: TenantContext
    status: ExecutionStatus = ExecutionStatus.PENDING
    current_step_index: int = 0
    input: Any = None
    result: Any = None
    error: Optional[ExecutionError] = None
    resume_point: Optional[str] = None
    started_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    history: List[StepRecord] = Field(default_factory=list)
    signals: List[SignalRecord] = Field(default_factory=list)

    @model_validator(mode="after")
    def _tenant_matches_context(self) -> "WorkflowExecution":
        if self.tenant_context.tenant_id != self.tenant_id:
            raise ValueError("tenant_id does not match tenant_context")
        return self

    def find_attempt(self, step_name: str, attempt_count: int) -> Optional[StepRecord]:
        for record in self.history:
            if record.step_name == step_name and record.attempt_count == attempt_count:
                return record
        return None

    def attempts_for(self, step_index: int) -> List[StepRecord]:
        return [r for r in self.history if r.step_index == step_index]

    def step_outputs(self) -> Dict[str, Any]:
        """Outputs of succeeded steps keyed by step name, in history order."""
        return {
            r.step_name: r.output
            for r in self.history
            if r.status == StepStatus.SUCCEEDED
        }

    def succeeded_indexes(self) -> set[int]:
        return {r.step_index for r in self.history if r.status == StepStatus.SUCCEEDED}
