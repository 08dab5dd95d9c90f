"""Pydantic models describing versioned workflow definitions."""

from __future__ import annotations

import re
from typing import Annotated, Any, Callable, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from ..contracts import RetryPolicy, TenantContext

_VERSION_RE = re.compile(r"^v?(\d+)(?:\.(\d+))?(?:\.(\d+))?$")


class SemanticVersion(BaseModel):
    """Semantic version with ``major.minor.patch`` components."""

    model_config = ConfigDict(frozen=True)

    major: int
    minor: int = 0
    patch: int = 0

    @classmethod
    def parse(cls, value: str) -> "SemanticVersion":
        """Parse ``1``, ``1.2``, ``1.2.3`` or the same with a ``v`` prefix."""
        match = _VERSION_RE.match(str(value).strip())
        if not match:
            raise ValueError(f"Invalid version format: {value}")
        major, minor, patch = (int(p) if p else 0 for p in match.groups())
        return cls(major=major, minor=minor, patch=patch)

    @property
    def key(self) -> tuple[int, int, int]:
        return (self.major, self.minor, self.patch)

    def __lt__(self, other: "SemanticVersion") -> bool:
        return self.key < other.key

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        return f"{self.major}.{self.minor}.{self.patch}"


def normalize_version(value: str) -> str:
    return str(SemanticVersion.parse(value))


class StepContext(BaseModel):
    """What conditions and input builders may look at.

    Only persisted values are exposed so that evaluating a step graph
    against the same history always yields the same decisions.
    """

    model_config = ConfigDict(frozen=True)

    execution_id: str
    input: Any = None
    outputs: Dict[str, Any] = Field(default_factory=dict)
    tenant: TenantContext


Condition = Callable[[StepContext], bool]


class ActivityStep(BaseModel):
    """Run an activity."""

    kind: Literal["activity"] = "activity"
    name: str
    activity: str
    retry_policy: Optional[RetryPolicy] = None
    timeout: Optional[float] = Field(default=None, gt=0)
    input_builder: Optional[Callable[[StepContext], Any]] = None
    condition: Optional[Condition] = None

    def build_input(self, context: StepContext) -> Any:
        if self.input_builder is None:
            return context.input
        return self.input_builder(context)


class SignalStep(BaseModel):
    """Suspend until the named signal arrives; its payload is the step output."""

    kind: Literal["signal"] = "signal"
    name: str
    signal: str
    condition: Optional[Condition] = None


Step = Annotated[Union[ActivityStep, SignalStep], Field(discriminator="kind")]


class WorkflowDefinition(BaseModel):
    """One version of a workflow: an ordered step graph."""

    workflow_type: str
    version: str
    steps: List[Step] = Field(min_length=1)
    execution_timeout: Optional[float] = Field(default=None, gt=0)
    description: Optional[str] = None

    @field_validator("version")
    @classmethod
    def _normalize_version(cls, v: str) -> str:
        return normalize_version(v)

    @model_validator(mode="after")
    def _unique_step_names(self) -> "WorkflowDefinition":
        names = self.step_names
        if len(names) != len(set(names)):
            raise ValueError(f"{self.workflow_type}: step names must be unique")
        return self

    @property
    def step_names(self) -> List[str]:
        return [step.name for step in self.steps]

    @property
    def semantic_version(self) -> SemanticVersion:
        return SemanticVersion.parse(self.version)
