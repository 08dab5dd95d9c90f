"""Core value objects exchanged between orchestration components."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .constants import DEFAULT_ACTIVITY_TIMEOUT, DEFAULT_SUBSCRIPTION_TIER
from .errors import RETRYABLE_KINDS, ErrorKind


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ExecutionStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUSPENDED = "suspended"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {
        ExecutionStatus.COMPLETED,
        ExecutionStatus.FAILED,
        ExecutionStatus.CANCELLED,
        ExecutionStatus.TIMED_OUT,
    }
)

# Edges of the execution state machine.
ALLOWED_TRANSITIONS: Dict[ExecutionStatus, FrozenSet[ExecutionStatus]] = {
    ExecutionStatus.PENDING: frozenset(
        {ExecutionStatus.RUNNING, ExecutionStatus.CANCELLED, ExecutionStatus.FAILED}
    ),
    ExecutionStatus.RUNNING: frozenset(
        {
            ExecutionStatus.SUSPENDED,
            ExecutionStatus.COMPLETED,
            ExecutionStatus.FAILED,
            ExecutionStatus.CANCELLED,
            ExecutionStatus.TIMED_OUT,
        }
    ),
    ExecutionStatus.SUSPENDED: frozenset(
        {
            ExecutionStatus.RUNNING,
            ExecutionStatus.FAILED,
            ExecutionStatus.CANCELLED,
            ExecutionStatus.TIMED_OUT,
        }
    ),
    ExecutionStatus.COMPLETED: frozenset(),
    ExecutionStatus.FAILED: frozenset(),
    ExecutionStatus.CANCELLED: frozenset(),
    ExecutionStatus.TIMED_OUT: frozenset(),
}


class StepStatus(str, Enum):
    SCHEDULED = "scheduled"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    RETRYING = "retrying"

    @property
    def is_finished(self) -> bool:
        return self in (StepStatus.SUCCEEDED, StepStatus.FAILED, StepStatus.RETRYING)


class TenantContext(BaseModel):
    """Tenant identity attached to a request and every call it causes.

    Instances are frozen: once resolved at the boundary the context is passed
    by value to the engine, the executor and each activity.
    """

    model_config = ConfigDict(frozen=True)

    tenant_id: str = Field(..., min_length=1)
    tenant_name: str = ""
    subscription_tier: str = DEFAULT_SUBSCRIPTION_TIER
    features: FrozenSet[str] = Field(default_factory=frozenset)
    quotas: Dict[str, int] = Field(default_factory=dict)
    source: Literal["claim", "header", "default"] = "claim"

    def has_feature(self, feature: str) -> bool:
        return feature in self.features

    def quota(self, name: str, default: int = 0) -> int:
        return self.quotas.get(name, default)


class RetryPolicy(BaseModel):
    """Retry configuration attached to an activity type."""

    model_config = ConfigDict(frozen=True)

    max_attempts: int = Field(default=3, ge=1)
    initial_backoff: float = Field(default=1.0, ge=0)
    backoff_multiplier: float = Field(default=2.0, ge=1.0)
    max_backoff: float = Field(default=60.0, ge=0)
    retryable_error_kinds: FrozenSet[ErrorKind] = RETRYABLE_KINDS

    @classmethod
    def no_retry(cls) -> "RetryPolicy":
        return cls(max_attempts=1)

    @classmethod
    def exponential(cls, max_attempts: int, initial_backoff: float) -> "RetryPolicy":
        return cls(
            max_attempts=max_attempts,
            initial_backoff=initial_backoff,
            backoff_multiplier=2.0,
            max_backoff=60.0,
        )

    @classmethod
    def linear(cls, max_attempts: int, interval: float) -> "RetryPolicy":
        return cls(
            max_attempts=max_attempts,
            initial_backoff=interval,
            backoff_multiplier=1.0,
            max_backoff=interval,
        )

    @classmethod
    def database_operations(cls) -> "RetryPolicy":
        return cls(
            max_attempts=5, initial_backoff=0.5, backoff_multiplier=1.5, max_backoff=30.0
        )

    @classmethod
    def external_service_calls(cls) -> "RetryPolicy":
        return cls(
            max_attempts=4, initial_backoff=2.0, backoff_multiplier=2.0, max_backoff=120.0
        )

    @classmethod
    def file_operations(cls) -> "RetryPolicy":
        return cls(
            max_attempts=3, initial_backoff=0.1, backoff_multiplier=1.5, max_backoff=10.0
        )


class StepError(BaseModel):
    """Typed error recorded on a step attempt."""

    kind: ErrorKind
    message: str = ""


class ActivityInvocation(BaseModel):
    """A single request to run an activity. Not persisted."""

    model_config = ConfigDict(frozen=True)

    activity_type: str
    tenant_context: TenantContext
    input: Any = None
    timeout: float = Field(default=DEFAULT_ACTIVITY_TIMEOUT, gt=0)


class ActivityResult(BaseModel):
    """Outcome of running an activity through all of its attempts."""

    activity_type: str
    succeeded: bool
    output: Any = None
    error: Optional[StepError] = None
    attempts: int = 0
    cancelled: bool = False


class ExecutionEvent(BaseModel):
    """Lifecycle notification published whenever an execution changes status."""

    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    execution_id: str
    tenant_id: str
    workflow_type: str
    status: ExecutionStatus
    current_step_index: int = 0
    timestamp: datetime = Field(default_factory=utcnow)

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str) -> "ExecutionEvent":
        return cls.model_validate_json(data)


class ExecutionError(BaseModel):
    """What a failed, suspended or timed out execution reports to callers."""

    step_name: Optional[str] = None
    kind: ErrorKind
    message: str = ""
    attempts: int = 0


class ExecutionOutcome(BaseModel):
    """Result of waiting on an execution from the client facade."""

    execution_id: str
    status: ExecutionStatus
    result: Any = None
    error: Optional[ExecutionError] = None
    timed_out: bool = False

    @model_validator(mode="after")
    def _timed_out_wait_is_not_terminal(self) -> "ExecutionOutcome":
        if self.timed_out and self.status.is_terminal:
            raise ValueError("a terminal execution cannot report a timed out wait")
        return self
