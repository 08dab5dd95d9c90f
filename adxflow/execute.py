"""Activity execution for adxflow workflows."""

from __future__ import annotations

import asyncio
import inspect
import logging
import random
import uuid
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol, Union

from .constants import IDEMPOTENCY_NAMESPACE
from .contracts import (
    ActivityInvocation,
    ActivityResult,
    RetryPolicy,
    StepError,
    StepStatus,
    TenantContext,
)
from .errors import ErrorKind, classify
from .utils.retry import GiveUp, decide, schedule_retry

logger = logging.getLogger(__name__)


def idempotency_key(execution_id: str, step_name: str) -> str:
    """Key for external side effects, identical for every attempt of a step."""
    return str(uuid.uuid5(IDEMPOTENCY_NAMESPACE, f"{execution_id}:{step_name}:1"))


class ActivityContext:
    """Runtime information handed to an activity body."""

    def __init__(
        self,
        tenant: TenantContext,
        execution_id: str,
        step_name: str,
        attempt: int,
        cancelled: Optional[asyncio.Event] = None,
    ) -> None:
        self.tenant = tenant
        self.execution_id = execution_id
        self.step_name = step_name
        self.attempt = attempt
        self.idempotency_key = idempotency_key(execution_id, step_name)
        self._cancelled = cancelled

    @property
    def cancel_requested(self) -> bool:
        """Cooperative cancellation flag for long-running activities."""
        return self._cancelled is not None and self._cancelled.is_set()


ActivityFunction = Callable[[ActivityContext, Any], Union[Awaitable[Any], Any]]


class StepRecorder(Protocol):
    """Receives attempt transitions; implemented by the execution engine."""

    async def record_attempt_scheduled(
        self,
        execution_id: str,
        step_name: str,
        step_index: int,
        attempt_count: int,
        idempotency_key: Optional[str] = None,
    ) -> bool: ...

    async def record_attempt_started(
        self, execution_id: str, step_name: str, attempt_count: int
    ) -> bool: ...

    async def complete_attempt(
        self,
        execution_id: str,
        step_name: str,
        attempt_count: int,
        status: StepStatus,
        output: Any = None,
        error: Optional[StepError] = None,
    ) -> bool: ...


class ActivityExecutor:
    """Runs named activities with a timeout, retries and attempt recording."""

    def __init__(
        self,
        activities: Optional[Dict[str, ActivityFunction]] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._activities: Dict[str, ActivityFunction] = dict(activities or {})
        self._rng = rng

    def register(self, name: Optional[str] = None, fn: Optional[ActivityFunction] = None):
        """Register an activity, directly or as a decorator."""

        def _register(func: ActivityFunction) -> ActivityFunction:
            activity_type = name or func.__name__
            if activity_type in self._activities:
                raise ValueError(f"Activity {activity_type} already registered")
            self._activities[activity_type] = func
            return func

        if fn is not None:
            return _register(fn)
        return _register

    def has_activity(self, activity_type: str) -> bool:
        return activity_type in self._activities

    async def execute(
        self,
        invocation: ActivityInvocation,
        policy: RetryPolicy,
        *,
        execution_id: str,
        step_name: str,
        step_index: int = 0,
        expected_tenant_id: Optional[str] = None,
        recorder: Optional[StepRecorder] = None,
        first_attempt: int = 1,
        cancelled: Optional[asyncio.Event] = None,
    ) -> ActivityResult:
        """Run ``invocation`` until it succeeds or the retry policy gives up.

        Failures are returned as typed results, never raised. Errors raised
        by ``recorder`` (storage faults) propagate to the caller.
        """
        fn = self._activities.get(invocation.activity_type)
        refusal: Optional[StepError] = None
        if fn is None:
            refusal = StepError(
                kind=ErrorKind.NOT_FOUND,
                message=f"Activity {invocation.activity_type} is not registered",
            )
        elif (
            expected_tenant_id is not None
            and invocation.tenant_context.tenant_id != expected_tenant_id
        ):
            refusal = StepError(
                kind=ErrorKind.AUTHORIZATION,
                message=(
                    f"Activity tenant {invocation.tenant_context.tenant_id} does not "
                    f"match execution tenant {expected_tenant_id}"
                ),
            )

        attempt = first_attempt
        while True:
            if (cancelled is not None and cancelled.is_set()) or not await self._scheduled(
                recorder, execution_id, step_name, step_index, attempt
            ):
                logger.info(
                    f"Not scheduling {step_name}#{attempt} for execution_id={execution_id}: "
                    "execution no longer accepts attempts"
                )
                return ActivityResult(
                    activity_type=invocation.activity_type,
                    succeeded=False,
                    error=StepError(kind=ErrorKind.INTERNAL, message="execution cancelled"),
                    attempts=attempt - 1,
                    cancelled=True,
                )
            if refusal is not None:
                logger.error(f"Refusing {step_name} for execution_id={execution_id}: {refusal.message}")
                await self._finished(
                    recorder, execution_id, step_name, attempt, StepStatus.FAILED, error=refusal
                )
                return ActivityResult(
                    activity_type=invocation.activity_type,
                    succeeded=False,
                    error=refusal,
                    attempts=attempt,
                )

            if recorder is not None:
                await recorder.record_attempt_started(execution_id, step_name, attempt)
            context = ActivityContext(
                tenant=invocation.tenant_context,
                execution_id=execution_id,
                step_name=step_name,
                attempt=attempt,
                cancelled=cancelled,
            )
            try:
                output = await asyncio.wait_for(
                    self._call(fn, context, invocation.input), timeout=invocation.timeout
                )
            except Exception as exc:
                kind = classify(exc)
                error = StepError(kind=kind, message=str(exc) or type(exc).__name__)
            else:
                await self._finished(
                    recorder, execution_id, step_name, attempt, StepStatus.SUCCEEDED, output=output
                )
                logger.info(
                    f"Activity {invocation.activity_type} succeeded on attempt {attempt} "
                    f"for execution_id={execution_id}"
                )
                return ActivityResult(
                    activity_type=invocation.activity_type,
                    succeeded=True,
                    output=output,
                    attempts=attempt,
                )

            is_cancelled = cancelled is not None and cancelled.is_set()
            decision = decide(error.kind, attempt, policy, self._rng)
            if isinstance(decision, GiveUp) or is_cancelled:
                await self._finished(
                    recorder, execution_id, step_name, attempt, StepStatus.FAILED, error=error
                )
                logger.warning(
                    f"Activity {invocation.activity_type} failed for "
                    f"execution_id={execution_id} after {attempt} attempt(s): "
                    f"{error.kind.value}: {error.message}"
                )
                return ActivityResult(
                    activity_type=invocation.activity_type,
                    succeeded=False,
                    error=error,
                    attempts=attempt,
                    cancelled=is_cancelled,
                )

            await self._finished(
                recorder, execution_id, step_name, attempt, StepStatus.RETRYING, error=error
            )
            logger.info(
                f"Retrying activity {invocation.activity_type} for execution_id={execution_id} "
                f"in {decision.after:.3f}s (attempt {attempt} failed: {error.kind.value})"
            )
            if not await schedule_retry(decision.after, cancelled):
                return ActivityResult(
                    activity_type=invocation.activity_type,
                    succeeded=False,
                    error=error,
                    attempts=attempt,
                    cancelled=True,
                )
            attempt += 1

    @staticmethod
    async def _call(fn: ActivityFunction, context: ActivityContext, payload: Any) -> Any:
        if inspect.iscoroutinefunction(fn) or inspect.iscoroutinefunction(
            getattr(fn, "__call__", None)
        ):
            return await fn(context, payload)
        result = await asyncio.to_thread(fn, context, payload)
        if inspect.isawaitable(result):
            return await result
        return result

    @staticmethod
    async def _scheduled(
        recorder: Optional[StepRecorder],
        execution_id: str,
        step_name: str,
        step_index: int,
        attempt: int,
    ) -> bool:
        if recorder is None:
            return True
        return await recorder.record_attempt_scheduled(
            execution_id,
            step_name,
            step_index,
            attempt,
            idempotency_key(execution_id, step_name),
        )

    @staticmethod
    async def _finished(
        recorder: Optional[StepRecorder],
        execution_id: str,
        step_name: str,
        attempt: int,
        status: StepStatus,
        output: Any = None,
        error: Optional[StepError] = None,
    ) -> None:
        if recorder is None:
            return
        await recorder.complete_attempt(
            execution_id, step_name, attempt, status, output=output, error=error
        )
