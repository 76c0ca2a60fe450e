"""Persistence layer for voltflow execution history."""

from __future__ import annotations

import os
from typing import Optional

from ..config import VoltflowConfig, load_config
from .inmemory import InMemoryWorkflowStorage
from .models import (
    WorkflowHistoryEntry,
    WorkflowStats,
    WorkflowStepHistoryEntry,
    WorkflowSuspensionCheckpoint,
    WorkflowTimelineEvent,
)
from .repository import WorkflowStorage
from .sqlite import SQLiteWorkflowStorage


def get_storage(
    database_url: Optional[str] = None, config: Optional[VoltflowConfig] = None
) -> WorkflowStorage:
    """Build the history storage backend named by configuration.

    ``database_url`` wins over ``VOLTFLOW_DATABASE_URL`` and the loaded
    configuration. ``sqlite://<path>`` selects the SQLite backend; without any
    database setting the ``storage`` section decides, which defaults to the
    in-memory backend. Nothing is written to disk unless SQLite is asked for.
    """

    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("VOLTFLOW_DATABASE_URL")
        or config.database_url
    )

    if not database_url:
        if config.storage.backend == "sqlite":
            return SQLiteWorkflowStorage(config.storage.path)
        return InMemoryWorkflowStorage()

    if database_url.startswith("sqlite://"):
        path = database_url.replace("sqlite://", "", 1)
        return SQLiteWorkflowStorage(path)
    if database_url in ("memory://", "inmemory"):
        return InMemoryWorkflowStorage()
    raise ValueError(f"Unsupported database backend: {database_url}")


__all__ = [
    "WorkflowHistoryEntry",
    "WorkflowStats",
    "WorkflowStepHistoryEntry",
    "WorkflowSuspensionCheckpoint",
    "WorkflowTimelineEvent",
    "WorkflowStorage",
    "InMemoryWorkflowStorage",
    "SQLiteWorkflowStorage",
    "get_storage",
]
