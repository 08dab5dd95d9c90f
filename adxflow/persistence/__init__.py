"""Persistence layer for adxflow executions."""

from __future__ import annotations

import os
from typing import Optional

from ..config import AdxflowConfig, load_config
from .inmemory import InMemoryExecutionRepository
from .models import SignalRecord, StepRecord, WorkflowExecution
from .repository import ExecutionRepository
from .sqlite import SQLiteExecutionRepository


def get_repository(
    database_url: Optional[str] = None, config: Optional[AdxflowConfig] = None
) -> ExecutionRepository:
    """Factory function to build an execution repository.

    The backend is selected from ``database_url``, which can be given
    explicitly, through ``ADXFLOW_DATABASE_URL`` or ``DATABASE_URL``, or by
    the loaded configuration. Without a database an in-memory repository is
    returned. The caller owns the repository and must ``open`` it.
    """

    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("ADXFLOW_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or config.database_url
    )

    if not database_url:
        return InMemoryExecutionRepository()

    if database_url.startswith("sqlite://"):
        return SQLiteExecutionRepository(database_url.replace("sqlite://", "", 1))
    if database_url.startswith(("postgres://", "postgresql://")):
        from .postgres import PostgresExecutionRepository

        return PostgresExecutionRepository(database_url)
    raise ValueError(f"Unsupported database backend: {database_url}")


__all__ = [
    "SignalRecord",
    "StepRecord",
    "WorkflowExecution",
    "ExecutionRepository",
    "InMemoryExecutionRepository",
    "SQLiteExecutionRepository",
    "get_repository",
]
