"""Per-service facade for submitting and observing workflow executions."""

from __future__ import annotations

import logging
from typing import Any, Optional

from .contracts import ExecutionOutcome, ExecutionStatus, TenantContext
from .engine import ExecutionSnapshot, WorkflowEngine
from .errors import AuthorizationError

logger = logging.getLogger(__name__)


class OrchestrationClient:
    """Client bound to the tenant of the calling service.

    Every operation is checked against that tenant, so a service can never
    submit work for, or look at executions of, another tenant.
    """

    def __init__(self, engine: WorkflowEngine, caller: TenantContext) -> None:
        self.engine = engine
        self.caller = caller

    async def submit(
        self,
        workflow_type: str,
        tenant_context: Optional[TenantContext] = None,
        input: Any = None,
        version: Optional[str] = None,
    ) -> str:
        tenant_context = tenant_context or self.caller
        if tenant_context.tenant_id != self.caller.tenant_id:
            raise AuthorizationError(
                f"Tenant {self.caller.tenant_id} cannot submit work for "
                f"tenant {tenant_context.tenant_id}"
            )
        snapshot = await self.engine.start(
            workflow_type, tenant_context, input=input, version=version
        )
        logger.info(f"Submitted {workflow_type} as execution_id={snapshot.execution_id}")
        return snapshot.execution_id

    async def await_result(
        self, execution_id: str, timeout: Optional[float] = None
    ) -> ExecutionOutcome:
        """Wait for ``execution_id`` to finish.

        A wait that runs out reports ``timed_out=True`` together with the
        current, non-terminal status; it does not affect the execution.
        """
        await self._owned(execution_id)
        return await self.engine.wait(execution_id, timeout)

    async def status(self, execution_id: str) -> ExecutionStatus:
        return (await self._owned(execution_id)).status

    async def snapshot(self, execution_id: str) -> ExecutionSnapshot:
        return await self._owned(execution_id)

    async def signal(self, execution_id: str, name: str, payload: Any = None) -> bool:
        await self._owned(execution_id)
        return await self.engine.signal(execution_id, name, payload)

    async def cancel(self, execution_id: str) -> bool:
        await self._owned(execution_id)
        return await self.engine.cancel(execution_id)

    async def _owned(self, execution_id: str) -> ExecutionSnapshot:
        snapshot = await self.engine.query(execution_id)
        if snapshot.tenant_id != self.caller.tenant_id:
            logger.warning(
                f"Tenant {self.caller.tenant_id} denied access to execution_id={execution_id}"
            )
            raise AuthorizationError(
                f"Execution {execution_id} does not belong to tenant {self.caller.tenant_id}"
            )
        return snapshot
