"""Helpers shared across adxflow components."""

from .retry import GiveUp, Retry, RetryDecision, compute_backoff, decide, schedule_retry

__all__ = ["GiveUp", "Retry", "RetryDecision", "compute_backoff", "decide", "schedule_retry"]
