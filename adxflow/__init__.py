"""adxflow: Durable, tenant-aware workflow orchestration."""

from .api import ExecutionAPI
from .client import OrchestrationClient
from .contracts import (
    ActivityInvocation,
    ActivityResult,
    ExecutionOutcome,
    ExecutionStatus,
    RetryPolicy,
    StepStatus,
    TenantContext,
)
from .engine import ExecutionSnapshot, WorkflowEngine
from .execute import ActivityContext, ActivityExecutor
from .persistence import get_repository
from .tenancy import ClaimsVerifier, TenantContextPropagator
from .transports import get_transport
from .versioning import ActivityStep, SignalStep, WorkflowDefinition, WorkflowVersionManager

__version__ = "0.1.0"
__all__ = [
    "ActivityContext",
    "ActivityExecutor",
    "ActivityInvocation",
    "ActivityResult",
    "ActivityStep",
    "ClaimsVerifier",
    "ExecutionAPI",
    "ExecutionOutcome",
    "ExecutionSnapshot",
    "ExecutionStatus",
    "OrchestrationClient",
    "RetryPolicy",
    "SignalStep",
    "StepStatus",
    "TenantContext",
    "TenantContextPropagator",
    "WorkflowDefinition",
    "WorkflowEngine",
    "WorkflowVersionManager",
    "get_repository",
    "get_transport",
]
