from __future__ import annotations

import asyncio
import logging
import math
import random
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from ..contracts import RetryPolicy
from ..errors import ErrorKind

logger = logging.getLogger(__name__)

JITTER_RANGE = (0.5, 1.0)


class Retry(BaseModel):
    """Run the step again after ``after`` seconds."""

    model_config = ConfigDict(frozen=True)

    after: float = Field(ge=0)


class GiveUp(BaseModel):
    """Stop retrying; the failure is final."""

    model_config = ConfigDict(frozen=True)

    reason: str


RetryDecision = Union[Retry, GiveUp]


def compute_backoff(attempt: int, policy: RetryPolicy) -> float:
    """Exponential backoff for ``attempt`` without jitter, capped at ``max_backoff``."""
    if attempt < 1:
        return 0.0
    initial, multiplier, cap = (
        policy.initial_backoff,
        policy.backoff_multiplier,
        policy.max_backoff,
    )
    if initial >= cap:
        return cap
    if initial == 0 or multiplier == 1:
        return initial
    # past this exponent the delay is pinned at the cap; never raise to it
    if attempt - 1 >= math.log(cap / initial, multiplier):
        return cap
    try:
        return min(cap, initial * multiplier ** (attempt - 1))
    except OverflowError:
        return cap


def apply_jitter(delay: float, rng: Optional[random.Random] = None) -> float:
    """Scale ``delay`` by a uniform factor so tenants sharing infrastructure
    do not retry in lockstep."""
    low, high = JITTER_RANGE
    factor = (rng or random).uniform(low, high)
    return delay * factor


def decide(
    error_kind: ErrorKind,
    attempt_count: int,
    policy: RetryPolicy,
    rng: Optional[random.Random] = None,
) -> RetryDecision:
    """Decide whether a failed attempt is retried.

    Only the error classification is consulted, never the message.
    """
    if error_kind not in policy.retryable_error_kinds:
        logger.debug(f"Error kind {error_kind.value} is not retryable")
        return GiveUp(reason=f"{error_kind.value} is not retryable")
    if attempt_count >= policy.max_attempts:
        logger.debug(
            f"Max retry attempts exceeded: attempt={attempt_count} "
            f"max_attempts={policy.max_attempts}"
        )
        return GiveUp(reason=f"exhausted {policy.max_attempts} attempts")
    return Retry(after=apply_jitter(compute_backoff(attempt_count, policy), rng))


async def schedule_retry(delay: float, cancelled: Optional[asyncio.Event] = None) -> bool:
    """Sleep for ``delay`` seconds without blocking other executions.

    Returns ``False`` if ``cancelled`` was set before the delay elapsed.
    """
    if cancelled is None:
        await asyncio.sleep(delay)
        return True
    try:
        await asyncio.wait_for(cancelled.wait(), timeout=delay)
    except asyncio.TimeoutError:
        return True
    return False
