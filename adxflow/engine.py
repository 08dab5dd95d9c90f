"""Durable workflow execution engine."""

from __future__ import annotations

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from collections import defaultdict
from datetime import datetime
from typing import Any, AsyncIterator, Dict, List, Optional

from pydantic import BaseModel

from .config import EngineConfig
from .contracts import (
    ALLOWED_TRANSITIONS,
    TERMINAL_STATUSES,
    ActivityInvocation,
    ExecutionError,
    ExecutionEvent,
    ExecutionOutcome,
    ExecutionStatus,
    RetryPolicy,
    StepError,
    StepStatus,
    TenantContext,
    utcnow,
)
from .errors import (
    EngineFault,
    ErrorKind,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
    VersionConflictError,
    classify,
)
from .execute import ActivityExecutor
from .persistence import ExecutionRepository, InMemoryExecutionRepository
from .persistence.models import SignalRecord, StepRecord, WorkflowExecution
from .transports import BaseTransport
from .utils.retry import GiveUp, decide
from .versioning import (
    ActivityStep,
    SignalStep,
    StepContext,
    WorkflowDefinition,
    WorkflowVersionManager,
    history_replays_on,
)

logger = logging.getLogger(__name__)

OPERATOR_RESUME_POINT = "operator"
NON_TERMINAL_STATUSES = [s for s in ExecutionStatus if s not in TERMINAL_STATUSES]


class ExecutionSnapshot(BaseModel):
    """Read-only view of an execution returned by :meth:`WorkflowEngine.query`."""

    execution_id: str
    workflow_type: str
    version: str
    tenant_id: str
    status: ExecutionStatus
    current_step_index: int
    current_step: Optional[str] = None
    result: Any = None
    error: Optional[ExecutionError] = None
    resume_point: Optional[str] = None
    started_at: datetime
    updated_at: datetime
    history: List[StepRecord]


class WorkflowEngine:
    """Drives workflow executions as durable state machines.

    Each execution runs in its own asyncio task; its steps run strictly one
    after another. Every mutation is applied under the execution's lock to a
    copy that is persisted before it replaces the cached state, so readers
    only ever observe committed history. The engine also implements the
    step recorder the :class:`ActivityExecutor` reports attempts to; those
    callbacks are idempotent per ``(execution_id, step_name, attempt_count)``.
    """

    def __init__(
        self,
        versions: WorkflowVersionManager,
        executor: ActivityExecutor,
        repository: Optional[ExecutionRepository] = None,
        *,
        transport: Optional[BaseTransport] = None,
        config: Optional[EngineConfig] = None,
    ) -> None:
        self._versions = versions
        self._executor = executor
        self._repository = repository or InMemoryExecutionRepository()
        self._transport = transport
        self._config = config or EngineConfig()
        self._executions: Dict[str, WorkflowExecution] = {}
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._tasks: Dict[str, asyncio.Task] = {}
        self._wakeups: Dict[str, asyncio.Event] = defaultdict(asyncio.Event)
        self._cancel_events: Dict[str, asyncio.Event] = defaultdict(asyncio.Event)
        self._finished: Dict[str, asyncio.Event] = defaultdict(asyncio.Event)
        self._closing = False
        self._unsynced: set[str] = set()

    @property
    def versions(self) -> WorkflowVersionManager:
        return self._versions

    # ------------------------------------------------------------------
    # Lifecycle
    async def open(self) -> List[str]:
        """Open storage and resume every in-flight execution."""
        await self._store(self._repository.open)
        return await self.recover()

    async def close(self) -> None:
        """Stop drivers and close storage.

        In-flight executions keep their persisted state and are resumed by
        the next engine that opens the same storage.
        """
        self._closing = True
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        await self._repository.close()
        self._closing = False

    async def __aenter__(self) -> "WorkflowEngine":
        await self.open()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Public operations
    async def start(
        self,
        workflow_type: str,
        tenant_context: TenantContext,
        input: Any = None,
        version: Optional[str] = None,
        execution_id: Optional[str] = None,
    ) -> ExecutionSnapshot:
        """Create an execution pinned to the resolved version and start it."""
        definition = self._versions.resolve(workflow_type, version)
        execution_id = execution_id or str(uuid.uuid4())
        execution = WorkflowExecution(
            execution_id=execution_id,
            workflow_type=workflow_type,
            version=definition.version,
            tenant_id=tenant_context.tenant_id,
            tenant_context=tenant_context,
            input=input,
        )
        if execution_id in self._executions:
            raise ValidationError(f"Execution {execution_id} already exists")
        if await self._store(self._repository.get_execution, execution_id):
            raise ValidationError(f"Execution {execution_id} already exists")
        async with self._locks[execution_id]:
            if execution_id in self._executions:
                raise ValidationError(f"Execution {execution_id} already exists")
            await self._store(self._repository.create_execution, execution)
            self._executions[execution_id] = execution
            logger.info(
                f"Created execution {execution_id} of {workflow_type} "
                f"v{definition.version} for tenant {tenant_context.tenant_id}"
            )
            execution = await self._set_status(
                execution, ExecutionStatus.RUNNING, resume_point="step:0"
            )
        self._spawn(execution_id)
        return self._snapshot(execution)

    async def signal(self, execution_id: str, signal_name: str, payload: Any = None) -> bool:
        """Deliver an external event. Accepted only while running or suspended."""
        async with self._locked(execution_id) as current:
            if current.status not in (ExecutionStatus.RUNNING, ExecutionStatus.SUSPENDED):
                return False
            updated = current.model_copy(deep=True)
            updated.signals.append(SignalRecord(name=signal_name, payload=payload))
            if (
                current.status == ExecutionStatus.SUSPENDED
                and current.resume_point == f"signal:{signal_name}"
            ):
                await self._set_status(
                    updated,
                    ExecutionStatus.RUNNING,
                    resume_point=f"step:{current.current_step_index}",
                    _previous=current.status,
                )
            else:
                await self._commit(updated)
            self._wakeups[execution_id].set()
        logger.info(f"Signal {signal_name} delivered to execution_id={execution_id}")
        return True

    async def query(self, execution_id: str) -> ExecutionSnapshot:
        """Return a read-only snapshot; permitted in any state."""
        execution = self._executions.get(execution_id)
        if execution is None:
            execution = await self._store(self._repository.get_execution, execution_id)
        if execution is None:
            raise NotFoundError(f"Execution {execution_id} not found")
        return self._snapshot(execution)

    async def cancel(self, execution_id: str) -> bool:
        """Cancel cooperatively: no new step or attempt is scheduled afterwards.

        An activity already running finishes or times out on its own.
        """
        async with self._locked(execution_id) as current:
            if current.status.is_terminal:
                return False
            await self._set_status(current, ExecutionStatus.CANCELLED, resume_point=None)
            self._cancel_events[execution_id].set()
            self._wakeups[execution_id].set()
        return True

    async def wait(self, execution_id: str, timeout: Optional[float] = None) -> ExecutionOutcome:
        """Wait until the execution reaches a terminal status or ``timeout`` elapses."""
        snapshot = await self.query(execution_id)
        if not snapshot.status.is_terminal:
            try:
                await asyncio.wait_for(self._finished[execution_id].wait(), timeout)
            except asyncio.TimeoutError:
                pass
            finally:
                if execution_id not in self._executions:
                    self._finished.pop(execution_id, None)
            snapshot = await self.query(execution_id)
        return ExecutionOutcome(
            execution_id=execution_id,
            status=snapshot.status,
            result=snapshot.result,
            error=snapshot.error,
            timed_out=not snapshot.status.is_terminal,
        )

    async def deploy(
        self, definition: WorkflowDefinition, default: bool = False
    ) -> WorkflowDefinition:
        """Register ``definition``, checking it against in-flight histories."""
        in_flight: Dict[str, WorkflowExecution] = {
            e.execution_id: e
            for e in self._executions.values()
            if not e.status.is_terminal
        }
        rows = await self._store(
            self._repository.list_executions, None, NON_TERMINAL_STATUSES
        )
        for row in rows:
            if row.execution_id in in_flight:
                continue
            if (row.workflow_type, row.version) != (
                definition.workflow_type,
                definition.version,
            ):
                continue
            stored = await self._store(self._repository.get_execution, row.execution_id)
            if stored is not None:
                in_flight[stored.execution_id] = stored
        return self._versions.register(definition, default=default, in_flight=in_flight.values())

    async def migrate(self, execution_id: str, new_version: str) -> ExecutionSnapshot:
        """Move an in-flight execution to a compatible version.

        This is how an operator resolves an execution suspended on a version
        conflict.
        """
        async with self._locked(execution_id) as current:
            if current.status.is_terminal:
                raise ValidationError(f"Execution {execution_id} is {current.status.value}")
            target = self._versions.resolve_version(current.workflow_type, new_version)
            running_known = current.version in self._versions.versions(current.workflow_type)
            if running_known and not self._versions.is_compatible(
                current.workflow_type, current.version, target.version
            ):
                raise VersionConflictError(
                    current.workflow_type,
                    f"version {target.version} is not compatible with {current.version}",
                )
            if not history_replays_on(target, current):
                raise VersionConflictError(
                    current.workflow_type,
                    f"history of {execution_id} does not replay on version {target.version}",
                )
            updated = current.model_copy(deep=True, update={"version": target.version})
            resume = current.resume_point == OPERATOR_RESUME_POINT
            if resume:
                updated = await self._set_status(
                    updated,
                    ExecutionStatus.RUNNING,
                    error=None,
                    resume_point=f"step:{current.current_step_index}",
                    _previous=current.status,
                )
            else:
                updated = await self._commit(updated)
            logger.info(
                f"Migrated execution {execution_id} from v{current.version} to v{target.version}"
            )
        task = self._tasks.get(execution_id)
        if resume and (task is None or task.done()):
            self._spawn(execution_id)
        return self._snapshot(updated)

    async def recover(self) -> List[str]:
        """Rebuild in-flight executions from persisted history and resume them."""
        rows = await self._store(
            self._repository.list_executions, None, NON_TERMINAL_STATUSES
        )
        resumed: List[str] = []
        for row in rows:
            execution_id = row.execution_id
            if execution_id in self._tasks:
                continue
            execution = await self._store(self._repository.get_execution, execution_id)
            if execution is None:
                continue
            async with self._locks[execution_id]:
                self._executions[execution_id] = execution
                ready = await self._replay(execution)
            if ready:
                self._spawn(execution_id)
                resumed.append(execution_id)
        if resumed:
            logger.info(f"Resumed {len(resumed)} execution(s) from persisted history")
        return resumed

    # ------------------------------------------------------------------
    # Step recorder (called by the activity executor)
    async def record_attempt_scheduled(
        self,
        execution_id: str,
        step_name: str,
        step_index: int,
        attempt_count: int,
        idempotency_key: Optional[str] = None,
    ) -> bool:
        async with self._locks[execution_id]:
            current = await self._get(execution_id)
            if current.status.is_terminal:
                return False
            if current.find_attempt(step_name, attempt_count) is not None:
                return False
            record = StepRecord(
                execution_id=execution_id,
                sequence=len(current.history) + 1,
                step_name=step_name,
                step_index=step_index,
                attempt_count=attempt_count,
                idempotency_key=idempotency_key,
            )
            updated = current.model_copy(deep=True)
            updated.history.append(record)
            await self._store(self._repository.append_step, record)
            self._executions[execution_id] = updated
            return True

    async def record_attempt_started(
        self, execution_id: str, step_name: str, attempt_count: int
    ) -> bool:
        async with self._locks[execution_id]:
            current = await self._get(execution_id)
            record = current.find_attempt(step_name, attempt_count)
            if record is None or record.status != StepStatus.SCHEDULED:
                return False
            return await self._update_record(
                current, record, status=StepStatus.RUNNING, started_at=utcnow()
            )

    async def complete_attempt(
        self,
        execution_id: str,
        step_name: str,
        attempt_count: int,
        status: StepStatus,
        output: Any = None,
        error: Optional[StepError] = None,
    ) -> bool:
        """Record the outcome of an attempt. A repeated completion is a no-op."""
        if not status.is_finished:
            raise ValidationError(f"{status.value} is not a completion status")
        async with self._locks[execution_id]:
            current = await self._get(execution_id)
            record = current.find_attempt(step_name, attempt_count)
            if record is None:
                logger.warning(
                    f"Ignoring completion of unknown attempt {step_name}#{attempt_count} "
                    f"for execution_id={execution_id}"
                )
                return False
            if record.status.is_finished:
                logger.debug(
                    f"Duplicate completion of {step_name}#{attempt_count} "
                    f"for execution_id={execution_id}"
                )
                return False
            now = utcnow()
            return await self._update_record(
                current,
                record,
                status=status,
                output=output,
                last_error=error,
                started_at=record.started_at or now,
                completed_at=now,
            )

    # ------------------------------------------------------------------
    # Driver
    def _spawn(self, execution_id: str) -> None:
        task = asyncio.create_task(self._drive(execution_id), name=f"execution-{execution_id}")
        self._tasks[execution_id] = task

        def _done(finished: asyncio.Task) -> None:
            if self._tasks.get(execution_id) is finished:
                del self._tasks[execution_id]

        task.add_done_callback(_done)

    async def _drive(self, execution_id: str) -> None:
        try:
            await self._run(execution_id)
        except VersionConflictError as exc:
            try:
                async with self._locks[execution_id]:
                    await self._suspend_for_operator(self._executions[execution_id], exc)
            except EngineFault as fault:
                await self._fault(execution_id, fault)
        except EngineFault as exc:
            await self._fault(execution_id, exc)
        except asyncio.CancelledError:
            if self._closing:
                raise
            logger.error(f"Driver of execution_id={execution_id} was cancelled by an activity")
            await self._abort(execution_id, "driver cancelled outside engine shutdown")
        except Exception as exc:
            logger.exception(f"Driver of execution_id={execution_id} crashed")
            await self._abort(execution_id, f"{type(exc).__name__}: {exc}")
        finally:
            self._discard(execution_id, driver=True)

    async def _abort(self, execution_id: str, message: str) -> None:
        """Fail an execution whose driver hit an unexpected error."""
        current = self._executions.get(execution_id)
        if current is None:
            return
        step_name = None
        try:
            definition = self._versions.resolve_pinned(current)
        except VersionConflictError:
            pass
        else:
            step_name = _step_name(definition, current.current_step_index)
        try:
            await self._fail(
                execution_id,
                ExecutionError(step_name=step_name, kind=ErrorKind.INTERNAL, message=message),
            )
        except EngineFault as fault:
            await self._fault(execution_id, fault)

    async def _run(self, execution_id: str) -> None:
        while True:
            execution = self._executions[execution_id]
            if execution.status.is_terminal or execution.resume_point == OPERATOR_RESUME_POINT:
                return
            definition = self._versions.resolve_pinned(execution)
            if self._remaining(execution, definition) == 0:
                await self._time_out(execution_id)
                return

            step = None
            try:
                index = self._advance_index(definition, execution, execution.current_step_index)
                if index < len(definition.steps):
                    step = definition.steps[index]
                step_input = (
                    step.build_input(self._step_context(execution, index))
                    if isinstance(step, ActivityStep)
                    else None
                )
            except Exception as exc:
                logger.exception(f"Step graph evaluation failed for execution_id={execution_id}")
                await self._fail(
                    execution_id,
                    ExecutionError(
                        step_name=(
                            step.name
                            if step is not None
                            else _step_name(definition, execution.current_step_index)
                        ),
                        kind=classify(exc),
                        message=f"step graph evaluation failed: {exc}",
                    ),
                )
                return

            if step is None:
                await self._complete(execution_id)
                return
            if index != execution.current_step_index and not await self._move_to(
                execution_id, index
            ):
                return

            if isinstance(step, SignalStep):
                proceed = await self._await_signal(execution_id, definition, index, step)
            else:
                proceed = await self._run_activity(execution_id, index, step, step_input)
            if not proceed:
                return

    async def _run_activity(
        self, execution_id: str, index: int, step: ActivityStep, step_input: Any
    ) -> bool:
        policy = step.retry_policy or self._config.retry_policy_for(step.activity)
        first_attempt = await self._settle_interrupted(execution_id, index, step.name, policy)
        if first_attempt is None:
            return False

        execution = self._executions[execution_id]
        invocation = ActivityInvocation(
            activity_type=step.activity,
            tenant_context=execution.tenant_context,
            input=step_input,
            timeout=step.timeout or self._config.default_activity_timeout,
        )
        result = await self._executor.execute(
            invocation,
            policy,
            execution_id=execution_id,
            step_name=step.name,
            step_index=index,
            expected_tenant_id=execution.tenant_id,
            recorder=self,
            first_attempt=first_attempt,
            cancelled=self._cancel_events[execution_id],
        )

        async with self._locks[execution_id]:
            current = self._executions[execution_id]
            if current.status.is_terminal:
                return False
            if result.succeeded:
                await self._commit(
                    current.model_copy(
                        deep=True,
                        update={
                            "current_step_index": index + 1,
                            "resume_point": f"step:{index + 1}",
                        },
                    )
                )
                return True

        error = result.error or StepError(kind=ErrorKind.INTERNAL, message="activity failed")
        await self._fail(
            execution_id,
            ExecutionError(
                step_name=step.name,
                kind=error.kind,
                message=error.message,
                attempts=result.attempts,
            ),
        )
        return False

    async def _settle_interrupted(
        self, execution_id: str, index: int, step_name: str, policy: RetryPolicy
    ) -> Optional[int]:
        """Return the next attempt number, finishing an attempt cut short by a crash."""
        attempts = self._executions[execution_id].attempts_for(index)
        if not attempts:
            return 1
        last = attempts[-1]
        if last.status in (StepStatus.SCHEDULED, StepStatus.RUNNING):
            error = StepError(
                kind=ErrorKind.TIMEOUT, message="attempt interrupted by engine restart"
            )
            if isinstance(decide(error.kind, last.attempt_count, policy), GiveUp):
                await self.complete_attempt(
                    execution_id, step_name, last.attempt_count, StepStatus.FAILED, error=error
                )
                await self._fail(
                    execution_id,
                    ExecutionError(
                        step_name=step_name,
                        kind=error.kind,
                        message=error.message,
                        attempts=last.attempt_count,
                    ),
                )
                return None
            await self.complete_attempt(
                execution_id, step_name, last.attempt_count, StepStatus.RETRYING, error=error
            )
        elif last.status == StepStatus.FAILED:
            error = last.last_error or StepError(kind=ErrorKind.INTERNAL)
            await self._fail(
                execution_id,
                ExecutionError(
                    step_name=step_name,
                    kind=error.kind,
                    message=error.message,
                    attempts=last.attempt_count,
                ),
            )
            return None
        return last.attempt_count + 1

    async def _await_signal(
        self,
        execution_id: str,
        definition: WorkflowDefinition,
        index: int,
        step: SignalStep,
    ) -> bool:
        while True:
            async with self._locks[execution_id]:
                current = self._executions[execution_id]
                if current.status.is_terminal:
                    return False
                pending = next(
                    (
                        position
                        for position, signal in enumerate(current.signals)
                        if signal.name == step.signal and signal.consumed_by is None
                    ),
                    None,
                )
                if pending is not None:
                    await self._consume_signal(current, index, step, pending)
                    return True
                if current.status != ExecutionStatus.SUSPENDED:
                    current = await self._set_status(
                        current, ExecutionStatus.SUSPENDED, resume_point=f"signal:{step.signal}"
                    )
                wakeup = self._wakeups[execution_id]
                wakeup.clear()

            remaining = self._remaining(current, definition)
            if remaining == 0:
                await self._time_out(execution_id)
                return False
            try:
                await asyncio.wait_for(wakeup.wait(), remaining)
            except asyncio.TimeoutError:
                continue

    async def _consume_signal(
        self, current: WorkflowExecution, index: int, step: SignalStep, position: int
    ) -> None:
        now = utcnow()
        record = StepRecord(
            execution_id=current.execution_id,
            sequence=len(current.history) + 1,
            step_name=step.name,
            step_index=index,
            status=StepStatus.SUCCEEDED,
            output=current.signals[position].payload,
            started_at=now,
            completed_at=now,
        )
        updated = current.model_copy(deep=True)
        updated.signals[position].consumed_by = record.sequence
        updated.history.append(record)
        updated.current_step_index = index + 1
        await self._store(self._repository.append_step, record)
        if updated.status == ExecutionStatus.SUSPENDED:
            await self._set_status(
                updated,
                ExecutionStatus.RUNNING,
                resume_point=f"step:{index + 1}",
                _previous=current.status,
            )
        else:
            updated.resume_point = f"step:{index + 1}"
            await self._commit(updated)

    # ------------------------------------------------------------------
    # Replay
    def _step_context(self, execution: WorkflowExecution, index: int) -> StepContext:
        outputs = {
            r.step_name: r.output
            for r in execution.history
            if r.status == StepStatus.SUCCEEDED and r.step_index < index
        }
        return StepContext(
            execution_id=execution.execution_id,
            input=execution.input,
            outputs=outputs,
            tenant=execution.tenant_context,
        )

    def _advance_index(
        self, definition: WorkflowDefinition, execution: WorkflowExecution, start: int
    ) -> int:
        """First step at or after ``start`` that has neither succeeded nor been skipped."""
        succeeded = execution.succeeded_indexes()
        index = start
        while index < len(definition.steps):
            step = definition.steps[index]
            if index in succeeded:
                index += 1
                continue
            if step.condition is not None and not step.condition(
                self._step_context(execution, index)
            ):
                index += 1
                continue
            break
        return index

    async def _replay(self, execution: WorkflowExecution) -> bool:
        """Check that persisted history replays on the pinned definition.

        Returns ``True`` when the execution can be resumed by a driver.
        """
        try:
            definition = self._versions.resolve_pinned(execution)
        except VersionConflictError as exc:
            await self._suspend_for_operator(execution, exc)
            return False
        if execution.resume_point == OPERATOR_RESUME_POINT:
            return False

        try:
            replayed = self._advance_index(definition, execution, 0)
            persisted = self._advance_index(definition, execution, execution.current_step_index)
        except Exception as exc:
            logger.exception(f"Replay of execution_id={execution.execution_id} failed")
            await self._suspend_for_operator(
                execution, VersionConflictError(execution.workflow_type, f"replay failed: {exc}")
            )
            return False
        if not history_replays_on(definition, execution) or replayed != persisted:
            await self._suspend_for_operator(
                execution,
                VersionConflictError(
                    execution.workflow_type,
                    f"history of {execution.execution_id} diverges from "
                    f"version {execution.version}",
                ),
            )
            return False

        if execution.status == ExecutionStatus.PENDING:
            await self._set_status(
                execution,
                ExecutionStatus.RUNNING,
                current_step_index=replayed,
                resume_point=f"step:{replayed}",
            )
        elif replayed != execution.current_step_index:
            await self._commit(
                execution.model_copy(deep=True, update={"current_step_index": replayed})
            )
        return True

    # ------------------------------------------------------------------
    # Transitions (callers hold the execution lock unless noted)
    async def _set_status(
        self,
        current: WorkflowExecution,
        status: ExecutionStatus,
        _previous: Optional[ExecutionStatus] = None,
        **changes: Any,
    ) -> WorkflowExecution:
        previous = _previous or current.status
        if status != previous and status not in ALLOWED_TRANSITIONS[previous]:
            raise InvalidTransitionError(
                f"Execution {current.execution_id}: {previous.value} -> {status.value}"
            )
        updated = current.model_copy(deep=True, update={"status": status, **changes})
        updated = await self._commit(updated)
        if status != previous:
            logger.info(
                f"Execution {current.execution_id}: {previous.value} -> {status.value}"
            )
            await self._publish(updated)
        if status.is_terminal:
            self._finished[current.execution_id].set()
        return updated

    async def _commit(self, updated: WorkflowExecution) -> WorkflowExecution:
        updated.updated_at = utcnow()
        await self._store(self._repository.update_execution, updated)
        self._executions[updated.execution_id] = updated
        return updated

    async def _update_record(
        self, current: WorkflowExecution, record: StepRecord, **changes: Any
    ) -> bool:
        updated = current.model_copy(deep=True)
        position = updated.history.index(record)
        new_record = record.model_copy(update=changes)
        updated.history[position] = new_record
        await self._store(self._repository.update_step, new_record)
        self._executions[current.execution_id] = updated
        return True

    async def _move_to(self, execution_id: str, index: int) -> bool:
        async with self._locks[execution_id]:
            current = self._executions[execution_id]
            if current.status.is_terminal:
                return False
            await self._commit(
                current.model_copy(
                    deep=True,
                    update={"current_step_index": index, "resume_point": f"step:{index}"},
                )
            )
            return True

    async def _complete(self, execution_id: str) -> None:
        async with self._locks[execution_id]:
            current = self._executions[execution_id]
            if current.status.is_terminal:
                return
            await self._set_status(
                current,
                ExecutionStatus.COMPLETED,
                result=current.step_outputs(),
                resume_point=None,
            )

    async def _fail(self, execution_id: str, error: ExecutionError) -> None:
        async with self._locks[execution_id]:
            current = self._executions[execution_id]
            if current.status.is_terminal:
                return
            logger.warning(
                f"Execution {execution_id} failed at step {error.step_name}: "
                f"{error.kind.value} after {error.attempts} attempt(s)"
            )
            await self._set_status(
                current, ExecutionStatus.FAILED, error=error, resume_point=None
            )

    async def _time_out(self, execution_id: str) -> None:
        async with self._locks[execution_id]:
            current = self._executions[execution_id]
            if current.status.is_terminal:
                return
            definition = self._versions.resolve_pinned(current)
            step_name = _step_name(definition, current.current_step_index)
            await self._set_status(
                current,
                ExecutionStatus.TIMED_OUT,
                error=ExecutionError(
                    step_name=step_name,
                    kind=ErrorKind.TIMEOUT,
                    message=f"execution exceeded {definition.execution_timeout}s",
                ),
                resume_point=None,
            )

    async def _suspend_for_operator(
        self, current: WorkflowExecution, exc: VersionConflictError
    ) -> None:
        logger.error(f"Execution {current.execution_id} needs operator attention: {exc}")
        if current.status.is_terminal:
            return
        if current.status == ExecutionStatus.PENDING:
            current = await self._set_status(current, ExecutionStatus.RUNNING)
        await self._set_status(
            current,
            ExecutionStatus.SUSPENDED,
            error=ExecutionError(kind=exc.kind, message=str(exc)),
            resume_point=OPERATOR_RESUME_POINT,
        )

    async def _fault(self, execution_id: str, exc: EngineFault) -> None:
        """Surface a storage failure on the execution; it makes no further progress."""
        logger.error(f"Storage failure for execution_id={execution_id}: {exc}")
        current = self._executions.get(execution_id)
        if current is None or current.status.is_terminal:
            return
        failed = current.model_copy(
            deep=True,
            update={
                "status": ExecutionStatus.FAILED,
                "error": ExecutionError(kind=ErrorKind.ENGINE_FAULT, message=str(exc)),
                "resume_point": None,
                "updated_at": utcnow(),
            },
        )
        self._executions[execution_id] = failed
        try:
            await self._repository.update_execution(failed)
        except Exception as persist_exc:
            self._unsynced.add(execution_id)
            logger.error(
                f"Could not persist fault for execution_id={execution_id}: {persist_exc}"
            )
        self._finished[execution_id].set()

    # ------------------------------------------------------------------
    # Helpers
    @asynccontextmanager
    async def _locked(self, execution_id: str) -> AsyncIterator[WorkflowExecution]:
        """Hold the lock of an existing execution and yield its current state."""
        await self._get(execution_id)
        try:
            async with self._locks[execution_id]:
                yield await self._get(execution_id)
        finally:
            self._discard(execution_id)

    def _discard(self, execution_id: str, driver: bool = False) -> None:
        """Forget a finished execution; storage stays the source of truth."""
        current = self._executions.get(execution_id)
        if current is not None and not current.status.is_terminal:
            return
        if execution_id in self._unsynced:
            return
        task = self._tasks.get(execution_id)
        if not driver and task is not None and not task.done():
            return
        lock = self._locks.get(execution_id)
        if lock is not None and lock.locked():
            return
        for state in (
            self._executions,
            self._locks,
            self._wakeups,
            self._cancel_events,
            self._finished,
        ):
            state.pop(execution_id, None)

    async def _get(self, execution_id: str) -> WorkflowExecution:
        execution = self._executions.get(execution_id)
        if execution is None:
            execution = await self._store(self._repository.get_execution, execution_id)
            if execution is None:
                raise NotFoundError(f"Execution {execution_id} not found")
            self._executions[execution_id] = execution
        return execution

    async def _store(self, operation, *args: Any) -> Any:
        try:
            return await operation(*args)
        except EngineFault:
            raise
        except Exception as exc:
            name = getattr(operation, "__name__", "storage operation")
            raise EngineFault(f"{name} failed: {exc}") from exc

    async def _publish(self, execution: WorkflowExecution) -> None:
        if self._transport is None:
            return
        event = ExecutionEvent(
            execution_id=execution.execution_id,
            tenant_id=execution.tenant_id,
            workflow_type=execution.workflow_type,
            status=execution.status,
            current_step_index=execution.current_step_index,
        )
        try:
            await self._transport.publish_event(event)
        except Exception:
            logger.exception(
                f"Failed to publish {execution.status.value} event "
                f"for execution_id={execution.execution_id}"
            )

    @staticmethod
    def _remaining(
        execution: WorkflowExecution, definition: WorkflowDefinition
    ) -> Optional[float]:
        if definition.execution_timeout is None:
            return None
        elapsed = (utcnow() - execution.started_at).total_seconds()
        return max(0.0, definition.execution_timeout - elapsed)

    def _snapshot(self, execution: WorkflowExecution) -> ExecutionSnapshot:
        current_step = None
        try:
            definition = self._versions.resolve_pinned(execution)
        except VersionConflictError:
            pass
        else:
            current_step = _step_name(definition, execution.current_step_index)
        return ExecutionSnapshot(
            execution_id=execution.execution_id,
            workflow_type=execution.workflow_type,
            version=execution.version,
            tenant_id=execution.tenant_id,
            status=execution.status,
            current_step_index=execution.current_step_index,
            current_step=current_step,
            result=execution.result,
            error=execution.error,
            resume_point=execution.resume_point,
            started_at=execution.started_at,
            updated_at=execution.updated_at,
            history=[r.model_copy(deep=True) for r in execution.history],
        )


def _step_name(definition: WorkflowDefinition, index: int) -> Optional[str]:
    if index < len(definition.steps):
        return definition.steps[index].name
    return None
