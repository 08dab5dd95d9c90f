"""Error taxonomy shared by every orchestration component."""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Classification consumed by the retry policy engine."""

    TIMEOUT = "timeout"
    TRANSIENT_IO = "transient_io"
    DEPENDENCY_UNAVAILABLE = "dependency_unavailable"
    VALIDATION = "validation"
    AUTHORIZATION = "authorization"
    NOT_FOUND = "not_found"
    VERSION_CONFLICT = "version_conflict"
    ENGINE_FAULT = "engine_fault"
    INTERNAL = "internal"

    @property
    def is_retryable(self) -> bool:
        return self in RETRYABLE_KINDS


RETRYABLE_KINDS = frozenset(
    {ErrorKind.TIMEOUT, ErrorKind.TRANSIENT_IO, ErrorKind.DEPENDENCY_UNAVAILABLE}
)


class AdxflowError(Exception):
    """Base class for errors raised by adxflow."""

    kind: ErrorKind = ErrorKind.INTERNAL

    def __init__(self, message: str = "", kind: Optional[ErrorKind] = None) -> None:
        super().__init__(message)
        self.message = message
        if kind is not None:
            self.kind = kind


class ValidationError(AdxflowError):
    """Bad input. Never retried."""

    kind = ErrorKind.VALIDATION


class AuthorizationError(AdxflowError):
    """Tenant or permission mismatch. Never retried."""

    kind = ErrorKind.AUTHORIZATION


class NotFoundError(AdxflowError):
    kind = ErrorKind.NOT_FOUND


class TransientError(AdxflowError):
    """Timeouts, transient I/O and unavailable dependencies."""

    kind = ErrorKind.TRANSIENT_IO

    def __init__(
        self, message: str = "", kind: ErrorKind = ErrorKind.TRANSIENT_IO
    ) -> None:
        if not kind.is_retryable:
            raise ValueError(f"{kind.value} is not a transient error kind")
        super().__init__(message, kind)


class VersionConflictError(AdxflowError):
    """Incompatible workflow redeploy or a history that no longer replays."""

    kind = ErrorKind.VERSION_CONFLICT

    def __init__(self, workflow_type: str, message: str) -> None:
        super().__init__(f"{workflow_type}: {message}")
        self.workflow_type = workflow_type


class EngineFault(AdxflowError):
    """Persistence or storage failure."""

    kind = ErrorKind.ENGINE_FAULT


class InvalidTransitionError(AdxflowError):
    """A status change that is not an edge of the execution state machine."""

    kind = ErrorKind.INTERNAL


def classify(exc: BaseException) -> ErrorKind:
    """Return the :class:`ErrorKind` for ``exc``."""
    if isinstance(exc, AdxflowError):
        return exc.kind
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return ErrorKind.TIMEOUT
    if isinstance(exc, (ConnectionError, OSError)):
        return ErrorKind.TRANSIENT_IO
    return ErrorKind.INTERNAL


__all__ = [
    "ErrorKind",
    "RETRYABLE_KINDS",
    "AdxflowError",
    "ValidationError",
    "AuthorizationError",
    "NotFoundError",
    "TransientError",
    "VersionConflictError",
    "EngineFault",
    "InvalidTransitionError",
    "classify",
]
