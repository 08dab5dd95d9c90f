"""Registry resolving workflow types and versions to concrete definitions."""

from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional, Set, Tuple

from ..errors import NotFoundError, ValidationError, VersionConflictError
from ..persistence.models import WorkflowExecution
from .models import SemanticVersion, WorkflowDefinition, normalize_version

logger = logging.getLogger(__name__)


class WorkflowVersionManager:
    """Maps ``(workflow_type, version)`` to a :class:`WorkflowDefinition`.

    New executions run the default version (set explicitly or through the
    configured mapping) or else the highest registered one. Resumed
    executions always resolve the exact version they were pinned to at
    start; an in-flight execution is never upgraded implicitly.
    """

    def __init__(self, default_versions: Optional[Dict[str, str]] = None) -> None:
        self._definitions: Dict[Tuple[str, str], WorkflowDefinition] = {}
        self._defaults: Dict[str, str] = {
            wf_type: normalize_version(v) for wf_type, v in (default_versions or {}).items()
        }
        self._deprecated: Dict[str, Set[str]] = {}

    # ------------------------------------------------------------------
    # Registration
    def register(
        self,
        definition: WorkflowDefinition,
        default: bool = False,
        in_flight: Iterable[WorkflowExecution] = (),
    ) -> WorkflowDefinition:
        """Deploy ``definition``.

        Re-registering an existing ``(type, version)`` replaces its body only
        if every in-flight execution pinned to it still replays: each step
        recorded in their histories must sit at the same position.

        Raises:
            VersionConflictError: If the replacement removes or reorders
                steps already present in an in-flight history.
        """
        key = (definition.workflow_type, definition.version)
        if key in self._definitions:
            for execution in in_flight:
                if (execution.workflow_type, execution.version) != key:
                    continue
                if execution.status.is_terminal:
                    continue
                if not history_replays_on(definition, execution):
                    raise VersionConflictError(
                        definition.workflow_type,
                        f"version {definition.version} would remove or reorder steps "
                        f"recorded by execution {execution.execution_id}",
                    )
            logger.warning(
                f"Replacing workflow {definition.workflow_type} version {definition.version}"
            )
        else:
            logger.info(
                f"Registering workflow {definition.workflow_type} version {definition.version}"
            )

        self._definitions[key] = definition
        if default:
            self._defaults[definition.workflow_type] = definition.version
        return definition

    def deprecate(self, workflow_type: str, version: str) -> None:
        """Refuse new executions on ``version``; pinned executions still resolve."""
        version = normalize_version(version)
        if (workflow_type, version) not in self._definitions:
            raise NotFoundError(f"Workflow {workflow_type} version {version} not found")
        self._deprecated.setdefault(workflow_type, set()).add(version)
        if self._defaults.get(workflow_type) == version:
            del self._defaults[workflow_type]
        logger.info(f"Deprecated workflow {workflow_type} version {version}")

    # ------------------------------------------------------------------
    # Lookup
    def versions(self, workflow_type: str) -> List[str]:
        found = [v for (t, v) in self._definitions if t == workflow_type]
        return sorted(found, key=SemanticVersion.parse)

    def is_deprecated(self, workflow_type: str, version: str) -> bool:
        return normalize_version(version) in self._deprecated.get(workflow_type, set())

    def latest(self, workflow_type: str) -> str:
        default = self._defaults.get(workflow_type)
        if default is not None and (workflow_type, default) in self._definitions:
            return default
        candidates = [
            v for v in self.versions(workflow_type) if not self.is_deprecated(workflow_type, v)
        ]
        if not candidates:
            raise NotFoundError(f"No active version of workflow {workflow_type}")
        return candidates[-1]

    def resolve(
        self, workflow_type: str, requested_version: Optional[str] = None
    ) -> WorkflowDefinition:
        """Return the definition a new execution should run."""
        if requested_version is None:
            version = self.latest(workflow_type)
        else:
            try:
                version = normalize_version(requested_version)
            except ValueError as exc:
                raise ValidationError(str(exc)) from exc
            if self.is_deprecated(workflow_type, version):
                raise ValidationError(
                    f"Workflow {workflow_type} version {version} is deprecated"
                )
        definition = self._definitions.get((workflow_type, version))
        if definition is None:
            raise NotFoundError(f"Workflow {workflow_type} version {version} not found")
        return definition

    def resolve_pinned(self, execution: WorkflowExecution) -> WorkflowDefinition:
        """Return the exact definition ``execution`` was started on."""
        definition = self._definitions.get((execution.workflow_type, execution.version))
        if definition is None:
            raise VersionConflictError(
                execution.workflow_type,
                f"pinned version {execution.version} of execution "
                f"{execution.execution_id} is not registered",
            )
        return definition

    # ------------------------------------------------------------------
    # Compatibility
    def is_compatible(
        self, workflow_type: str, running_version: str, new_version: str
    ) -> bool:
        """Whether executions on ``running_version`` can move to ``new_version``.

        Compatible versions share a major version and the new step sequence
        keeps the old one as an ordered prefix.
        """
        running = self.resolve_version(workflow_type, running_version)
        new = self.resolve_version(workflow_type, new_version)
        if running.semantic_version.major != new.semantic_version.major:
            return False
        old_names = running.step_names
        return new.step_names[: len(old_names)] == old_names

    def resolve_version(self, workflow_type: str, version: str) -> WorkflowDefinition:
        definition = self._definitions.get((workflow_type, normalize_version(version)))
        if definition is None:
            raise NotFoundError(f"Workflow {workflow_type} version {version} not found")
        return definition


def history_replays_on(definition: WorkflowDefinition, execution: WorkflowExecution) -> bool:
    """Every recorded step still sits at its recorded position in ``definition``."""
    names = definition.step_names
    for record in execution.history:
        if record.step_index >= len(names):
            return False
        if names[record.step_index] != record.step_name:
            return False
    return True
