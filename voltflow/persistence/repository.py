"""Storage abstraction for workflow execution history."""

from __future__ import annotations

from typing import Any, Protocol

from .models import (
    WorkflowHistoryEntry,
    WorkflowStepHistoryEntry,
    WorkflowTimelineEvent,
)


class WorkflowStorage(Protocol):
    """Protocol for workflow history persistence backends.

    Every call may fail independently; callers in the engine and registry
    treat failures as warnings.
    """

    async def create_execution(self, entry: WorkflowHistoryEntry) -> None:
        """Persist a new execution row."""

    async def update_execution(
        self, execution_id: str, updates: dict[str, Any]
    ) -> WorkflowHistoryEntry | None:
        """Apply ``updates`` to an execution and return the stored row."""

    async def get_execution(self, execution_id: str) -> WorkflowHistoryEntry | None:
        """Return the execution without its steps and events."""

    async def get_execution_with_details(
        self, execution_id: str
    ) -> WorkflowHistoryEntry | None:
        """Return the execution including steps and timeline events."""

    async def get_executions_by_workflow(
        self, workflow_id: str
    ) -> list[WorkflowHistoryEntry]:
        """Return every execution of ``workflow_id``, oldest first."""

    async def record_step_start(self, step: WorkflowStepHistoryEntry) -> None:
        """Persist a running step."""

    async def record_step_end(
        self, step_id: str, updates: dict[str, Any]
    ) -> WorkflowStepHistoryEntry | None:
        """Apply terminal ``updates`` to a step."""

    async def get_workflow_steps(
        self, execution_id: str
    ) -> list[WorkflowStepHistoryEntry]:
        """Return the steps of an execution ordered by start."""

    async def record_timeline_event(
        self, execution_id: str, event: WorkflowTimelineEvent
    ) -> None:
        """Append a lifecycle event to an execution."""

    async def delete_execution(self, execution_id: str) -> None:
        """Remove an execution with its steps and events."""

    async def get_all_workflow_ids(self) -> list[str]:
        """Return every workflow id that has persisted executions."""
