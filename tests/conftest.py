"""Shared fixtures for adxflow tests."""

import asyncio

import pytest

from adxflow.contracts import RetryPolicy, TenantContext

FAST_RETRY = RetryPolicy(
    max_attempts=3, initial_backoff=0.01, backoff_multiplier=2.0, max_backoff=0.05
)


async def _eventually(predicate, timeout: float = 3.0, interval: float = 0.01):
    """Await ``predicate()`` until it returns a truthy value."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        value = await predicate()
        if value:
            return value
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(interval)


@pytest.fixture
def eventually():
    return _eventually


@pytest.fixture
def fast_retry():
    return FAST_RETRY


@pytest.fixture
def acme():
    return TenantContext(
        tenant_id="acme",
        tenant_name="Acme Corp",
        subscription_tier="enterprise",
        features=frozenset({"priority_support"}),
    )


@pytest.fixture
def globex():
    return TenantContext(tenant_id="globex", tenant_name="Globex")
