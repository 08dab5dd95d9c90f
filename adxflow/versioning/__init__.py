"""Workflow definitions and the version registry."""

from __future__ import annotations

from .manager import WorkflowVersionManager, history_replays_on
from .models import (
    ActivityStep,
    SemanticVersion,
    SignalStep,
    Step,
    StepContext,
    WorkflowDefinition,
    normalize_version,
)

__all__ = [
    "ActivityStep",
    "SemanticVersion",
    "SignalStep",
    "Step",
    "StepContext",
    "WorkflowDefinition",
    "WorkflowVersionManager",
    "history_replays_on",
    "normalize_version",
]
