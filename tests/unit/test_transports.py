"""Transport tests."""

import pytest

from adxflow.contracts import ExecutionEvent, ExecutionStatus
from adxflow.transports.inmemory import InMemoryTransport


def _event(status=ExecutionStatus.RUNNING) -> ExecutionEvent:
    return ExecutionEvent(
        execution_id="exec-123",
        tenant_id="acme",
        workflow_type="user_onboarding",
        status=status,
    )


@pytest.mark.asyncio
async def test_inmemory_transport_basic():
    """Test basic InMemoryTransport publish/subscribe."""
    transport = InMemoryTransport()
    await transport.publish("executions.acme", _event())

    event_received = False
    async for raw_msg, received in transport.subscribe("executions.acme"):
        assert received.execution_id == "exec-123"
        assert received.status == ExecutionStatus.RUNNING
        await transport.ack(raw_msg)
        event_received = True
        break

    assert event_received
    assert transport.pending("executions.acme") == []


@pytest.mark.asyncio
async def test_inmemory_topics_are_isolated():
    transport = InMemoryTransport()
    await transport.publish("executions.acme", _event())
    await transport.publish("executions.acme", _event(ExecutionStatus.COMPLETED))

    assert transport.pending("executions.globex") == []
    assert [e.status for e in transport.pending("executions.acme")] == [
        ExecutionStatus.RUNNING,
        ExecutionStatus.COMPLETED,
    ]

    received = []
    async for _, event in transport.subscribe("executions.globex", lifespan=0.05):
        received.append(event)
    assert received == []


def test_event_json_round_trip():
    event = _event(ExecutionStatus.SUSPENDED)
    assert ExecutionEvent.from_json(event.to_json()) == event


@pytest.mark.asyncio
async def test_redis_transport_import():
    """Redis transport can be constructed without a server."""
    from adxflow.transports.redis import RedisTransport

    transport = RedisTransport(host="localhost", port=6379)
    assert transport.host == "localhost"


@pytest.mark.asyncio
async def test_events_are_published_on_their_tenant_topic():
    transport = InMemoryTransport()
    assert transport.tenant_topic("acme") == "executions.acme"

    topic = await transport.publish_event(_event(ExecutionStatus.COMPLETED))
    assert topic == "executions.acme"
    assert transport.pending("executions.globex") == []

    received = [event async for event in transport.tenant_events("acme", lifespan=0.05)]
    assert [e.status for e in received] == [ExecutionStatus.COMPLETED]
    assert transport.pending("executions.acme") == []


def test_tenant_topic_requires_tenant():
    with pytest.raises(ValueError):
        InMemoryTransport().tenant_topic("")


def test_unknown_backend_is_rejected():
    from adxflow.config import AdxflowConfig
    from adxflow.transports import get_transport

    with pytest.raises(ValueError):
        get_transport("carrier-pigeon", AdxflowConfig())
