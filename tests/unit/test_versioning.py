"""Workflow version manager tests."""

import pytest

from adxflow.contracts import ExecutionStatus, StepStatus, TenantContext
from adxflow.errors import NotFoundError, ValidationError, VersionConflictError
from adxflow.persistence.models import StepRecord, WorkflowExecution
from adxflow.versioning import (
    ActivityStep,
    SemanticVersion,
    SignalStep,
    WorkflowDefinition,
    WorkflowVersionManager,
    normalize_version,
)


def _definition(version, *names, workflow_type="user_onboarding"):
    return WorkflowDefinition(
        workflow_type=workflow_type,
        version=version,
        steps=[ActivityStep(name=name, activity=name) for name in names],
    )


def _execution(version, recorded, status=ExecutionStatus.RUNNING):
    tenant = TenantContext(tenant_id="acme")
    return WorkflowExecution(
        execution_id="exec-1",
        workflow_type="user_onboarding",
        version=version,
        tenant_id="acme",
        tenant_context=tenant,
        status=status,
        history=[
            StepRecord(
                execution_id="exec-1",
                sequence=i + 1,
                step_name=name,
                step_index=i,
                status=StepStatus.SUCCEEDED,
            )
            for i, name in enumerate(recorded)
        ],
    )


def test_versions_are_normalised():
    assert normalize_version("1") == "1.0.0"
    assert normalize_version("v2.3") == "2.3.0"
    assert SemanticVersion.parse("1.10.0") > SemanticVersion.parse("1.9.9")
    with pytest.raises(ValueError):
        normalize_version("latest")


def test_definition_rejects_duplicate_step_names():
    with pytest.raises(ValueError):
        _definition("1", "validate_email", "validate_email")


def test_steps_deserialize_by_kind():
    definition = WorkflowDefinition.model_validate(
        {
            "workflow_type": "approval",
            "version": "1",
            "steps": [
                {"kind": "activity", "name": "draft", "activity": "draft"},
                {"kind": "signal", "name": "approval", "signal": "approve"},
            ],
        }
    )
    assert isinstance(definition.steps[1], SignalStep)
    assert definition.step_names == ["draft", "approval"]


def test_new_executions_get_highest_version_unless_default_set():
    manager = WorkflowVersionManager()
    manager.register(_definition("1", "a"))
    manager.register(_definition("1.2", "a", "b"))
    assert manager.resolve("user_onboarding").version == "1.2.0"

    manager.register(_definition("1.1", "a"), default=True)
    assert manager.resolve("user_onboarding").version == "1.1.0"
    assert manager.versions("user_onboarding") == ["1.0.0", "1.1.0", "1.2.0"]


def test_configured_default_versions():
    manager = WorkflowVersionManager(default_versions={"user_onboarding": "v1"})
    manager.register(_definition("1", "a"))
    manager.register(_definition("2", "a"))
    assert manager.latest("user_onboarding") == "1.0.0"


def test_deprecated_version_refused_for_new_but_resolves_pinned():
    manager = WorkflowVersionManager()
    manager.register(_definition("1", "a"))
    manager.register(_definition("2", "a"))
    manager.deprecate("user_onboarding", "2")

    assert manager.resolve("user_onboarding").version == "1.0.0"
    with pytest.raises(ValidationError):
        manager.resolve("user_onboarding", "2")
    assert manager.resolve_pinned(_execution("2.0.0", [])).version == "2.0.0"


def test_unknown_workflow_or_version():
    manager = WorkflowVersionManager()
    manager.register(_definition("1", "a"))
    with pytest.raises(NotFoundError):
        manager.resolve("billing")
    with pytest.raises(NotFoundError):
        manager.resolve("user_onboarding", "3")
    with pytest.raises(ValidationError):
        manager.resolve("user_onboarding", "not-a-version")


def test_missing_pinned_version_is_a_conflict_not_an_upgrade():
    manager = WorkflowVersionManager()
    manager.register(_definition("2", "a"))
    with pytest.raises(VersionConflictError):
        manager.resolve_pinned(_execution("1.0.0", []))


def test_compatibility_requires_major_and_step_prefix():
    manager = WorkflowVersionManager()
    manager.register(_definition("1", "validate", "send"))
    manager.register(_definition("1.1", "validate", "send", "track"))
    manager.register(_definition("1.2", "send", "validate"))
    manager.register(_definition("2", "validate", "send", "track"))

    assert manager.is_compatible("user_onboarding", "1", "1.1")
    assert not manager.is_compatible("user_onboarding", "1", "1.2")
    assert not manager.is_compatible("user_onboarding", "1", "2")


def test_redeploy_checks_in_flight_histories():
    manager = WorkflowVersionManager()
    manager.register(_definition("1", "validate", "send"))
    in_flight = [_execution("1.0.0", ["validate", "send"])]

    with pytest.raises(VersionConflictError):
        manager.register(_definition("1", "send", "validate"), in_flight=in_flight)

    # appending a step keeps recorded positions intact
    manager.register(_definition("1", "validate", "send", "track"), in_flight=in_flight)
    assert manager.resolve("user_onboarding").step_names == ["validate", "send", "track"]

    finished = [_execution("1.0.0", ["validate", "send"], ExecutionStatus.COMPLETED)]
    manager.register(_definition("1", "track"), in_flight=finished)
