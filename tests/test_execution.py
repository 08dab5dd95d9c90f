"""Activity execution tests."""

import asyncio
import functools
import threading

import pytest

from adxflow import ActivityExecutor
from adxflow.contracts import ActivityInvocation, RetryPolicy, StepStatus
from adxflow.errors import ErrorKind, TransientError, ValidationError
from adxflow.execute import idempotency_key


class RecordingRecorder:
    """Collects attempt transitions the way the engine would persist them."""

    def __init__(self, refuse_after=None):
        self.events = []
        self.refuse_after = refuse_after

    async def record_attempt_scheduled(
        self, execution_id, step_name, step_index, attempt_count, idempotency_key=None
    ):
        if self.refuse_after is not None and attempt_count > self.refuse_after:
            return False
        self.events.append((step_name, attempt_count, StepStatus.SCHEDULED))
        return True

    async def record_attempt_started(self, execution_id, step_name, attempt_count):
        self.events.append((step_name, attempt_count, StepStatus.RUNNING))
        return True

    async def complete_attempt(
        self, execution_id, step_name, attempt_count, status, output=None, error=None
    ):
        self.events.append((step_name, attempt_count, status))
        return True


def _invocation(tenant, activity_type="work", timeout=1.0, payload=None):
    return ActivityInvocation(
        activity_type=activity_type, tenant_context=tenant, input=payload, timeout=timeout
    )


@pytest.mark.asyncio
async def test_retry_then_success_records_every_attempt(acme, fast_retry):
    executor = ActivityExecutor()
    keys = []

    @executor.register("work")
    async def work(ctx, payload):
        keys.append(ctx.idempotency_key)
        if ctx.attempt < 3:
            raise TransientError("flaky upstream")
        return {"tenant": ctx.tenant.tenant_id, "echo": payload}

    recorder = RecordingRecorder()
    result = await executor.execute(
        _invocation(acme, payload={"n": 1}),
        fast_retry,
        execution_id="exec-1",
        step_name="work",
        recorder=recorder,
    )

    assert result.succeeded
    assert result.attempts == 3
    assert result.output == {"tenant": "acme", "echo": {"n": 1}}
    assert [status for _, _, status in recorder.events] == [
        StepStatus.SCHEDULED,
        StepStatus.RUNNING,
        StepStatus.RETRYING,
        StepStatus.SCHEDULED,
        StepStatus.RUNNING,
        StepStatus.RETRYING,
        StepStatus.SCHEDULED,
        StepStatus.RUNNING,
        StepStatus.SUCCEEDED,
    ]
    assert set(keys) == {idempotency_key("exec-1", "work")}


@pytest.mark.asyncio
async def test_timeout_is_classified_and_retried(acme, fast_retry):
    executor = ActivityExecutor()

    @executor.register("slow")
    async def slow(ctx, payload):
        if ctx.attempt == 1:
            await asyncio.sleep(1)
        return "done"

    result = await executor.execute(
        _invocation(acme, "slow", timeout=0.05),
        fast_retry,
        execution_id="exec-1",
        step_name="slow",
    )
    assert result.succeeded
    assert result.attempts == 2


@pytest.mark.asyncio
async def test_terminal_error_is_not_retried(acme, fast_retry):
    executor = ActivityExecutor()
    calls = []

    @executor.register("validate")
    def validate(ctx, payload):
        calls.append(ctx.attempt)
        raise ValidationError("email is malformed")

    result = await executor.execute(
        _invocation(acme, "validate"), fast_retry, execution_id="e", step_name="validate"
    )
    assert not result.succeeded
    assert result.error.kind == ErrorKind.VALIDATION
    assert result.error.message == "email is malformed"
    assert calls == [1]


@pytest.mark.asyncio
async def test_unknown_exception_is_internal_and_terminal(acme, fast_retry):
    executor = ActivityExecutor()

    @executor.register("buggy")
    async def buggy(ctx, payload):
        raise KeyError("missing")

    result = await executor.execute(
        _invocation(acme, "buggy"), fast_retry, execution_id="e", step_name="buggy"
    )
    assert result.error.kind == ErrorKind.INTERNAL
    assert result.attempts == 1


@pytest.mark.asyncio
async def test_sync_activities_run_off_the_event_loop(acme, fast_retry):
    executor = ActivityExecutor()
    loop_thread = threading.get_ident()

    @executor.register("blocking")
    def blocking(ctx, payload):
        return threading.get_ident()

    result = await executor.execute(
        _invocation(acme, "blocking"), fast_retry, execution_id="e", step_name="blocking"
    )
    assert result.succeeded
    assert result.output != loop_thread


@pytest.mark.asyncio
async def test_tenant_mismatch_is_refused_without_running(acme, fast_retry):
    executor = ActivityExecutor()
    calls = []

    @executor.register("work")
    async def work(ctx, payload):
        calls.append(ctx.tenant.tenant_id)

    recorder = RecordingRecorder()
    result = await executor.execute(
        _invocation(acme),
        fast_retry,
        execution_id="e",
        step_name="work",
        expected_tenant_id="globex",
        recorder=recorder,
    )
    assert not result.succeeded
    assert result.error.kind == ErrorKind.AUTHORIZATION
    assert calls == []
    assert recorder.events == [
        ("work", 1, StepStatus.SCHEDULED),
        ("work", 1, StepStatus.FAILED),
    ]


@pytest.mark.asyncio
async def test_unregistered_activity_is_not_found(acme, fast_retry):
    result = await ActivityExecutor().execute(
        _invocation(acme, "missing"), fast_retry, execution_id="e", step_name="missing"
    )
    assert result.error.kind == ErrorKind.NOT_FOUND
    assert result.attempts == 1


@pytest.mark.asyncio
async def test_cancel_during_backoff_stops_retrying(acme):
    executor = ActivityExecutor()

    @executor.register("work")
    async def work(ctx, payload):
        raise TransientError("down", kind=ErrorKind.DEPENDENCY_UNAVAILABLE)

    cancelled = asyncio.Event()
    asyncio.get_running_loop().call_later(0.05, cancelled.set)
    recorder = RecordingRecorder()
    result = await executor.execute(
        _invocation(acme),
        RetryPolicy(max_attempts=5, initial_backoff=10.0, max_backoff=10.0),
        execution_id="e",
        step_name="work",
        recorder=recorder,
        cancelled=cancelled,
    )
    assert result.cancelled
    assert result.attempts == 1
    # the attempt that failed before the cancel keeps its retrying record
    assert recorder.events[-1] == ("work", 1, StepStatus.RETRYING)


@pytest.mark.asyncio
async def test_refused_schedule_stops_execution(acme, fast_retry):
    executor = ActivityExecutor()

    @executor.register("work")
    async def work(ctx, payload):
        raise TransientError("flaky")

    result = await executor.execute(
        _invocation(acme),
        fast_retry,
        execution_id="e",
        step_name="work",
        recorder=RecordingRecorder(refuse_after=1),
    )
    assert result.cancelled
    assert result.attempts == 1


@pytest.mark.asyncio
async def test_attempt_numbering_continues_from_first_attempt(acme, fast_retry):
    executor = ActivityExecutor()

    @executor.register("work")
    async def work(ctx, payload):
        raise TransientError("flaky")

    result = await executor.execute(
        _invocation(acme), fast_retry, execution_id="e", step_name="work", first_attempt=3
    )
    # attempt 3 of 3 exhausts the policy
    assert result.attempts == 3
    assert result.error.kind == ErrorKind.TRANSIENT_IO


def test_register_rejects_duplicates():
    executor = ActivityExecutor()
    executor.register("work", lambda ctx, payload: None)
    assert executor.has_activity("work")
    with pytest.raises(ValueError):
        executor.register("work", lambda ctx, payload: None)


@pytest.mark.asyncio
async def test_retry_loop_handles_large_attempt_numbers(acme):
    executor = ActivityExecutor()

    @executor.register("work")
    async def work(ctx, payload):
        raise TransientError("flaky")

    policy = RetryPolicy(max_attempts=1102, initial_backoff=0.001, max_backoff=0.002)
    result = await executor.execute(
        _invocation(acme), policy, execution_id="e", step_name="work", first_attempt=1100
    )
    assert result.attempts == 1102
    assert result.error.kind == ErrorKind.TRANSIENT_IO


class AsyncCallable:
    async def __call__(self, ctx, payload):
        return {"attempt": ctx.attempt, "payload": payload}


@pytest.mark.asyncio
async def test_async_callables_and_partials_are_awaited(acme, fast_retry):
    async def greet(greeting, ctx, payload):
        return f"{greeting} {payload}"

    def deferred(ctx, payload):
        return greet("hi", ctx, payload)

    executor = ActivityExecutor()
    executor.register("callable", AsyncCallable())
    executor.register("partial", functools.partial(greet, "hello"))
    executor.register("deferred", deferred)

    outputs = {}
    for activity in ("callable", "partial", "deferred"):
        result = await executor.execute(
            _invocation(acme, activity, payload="dana"),
            fast_retry,
            execution_id="e",
            step_name=activity,
        )
        assert result.succeeded
        outputs[activity] = result.output

    assert outputs == {
        "callable": {"attempt": 1, "payload": "dana"},
        "partial": "hello dana",
        "deferred": "hi dana",
    }
