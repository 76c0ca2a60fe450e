"""In-memory implementation of the workflow history storage."""

from __future__ import annotations

from typing import Any, Dict, List

from .models import (
    WorkflowHistoryEntry,
    WorkflowStepHistoryEntry,
    WorkflowTimelineEvent,
    utcnow,
)
from .repository import WorkflowStorage


class InMemoryWorkflowStorage(WorkflowStorage):
    """Store workflow history in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts.
    """

    def __init__(self) -> None:
        self._executions: Dict[str, WorkflowHistoryEntry] = {}
        self._steps: Dict[str, List[WorkflowStepHistoryEntry]] = {}
        self._events: Dict[str, List[WorkflowTimelineEvent]] = {}

    # ------------------------------------------------------------------
    async def create_execution(self, entry: WorkflowHistoryEntry) -> None:
        self._executions[entry.id] = entry.model_copy(
            update={"steps": [], "events": []}, deep=True
        )
        self._steps.setdefault(entry.id, [])
        self._events.setdefault(entry.id, [])

    async def update_execution(
        self, execution_id: str, updates: dict[str, Any]
    ) -> WorkflowHistoryEntry | None:
        current = self._executions.get(execution_id)
        if current is None:
            return None
        updated = current.model_copy(update={**updates, "updated_at": utcnow()})
        self._executions[execution_id] = updated
        return updated.model_copy(deep=True)

    async def get_execution(self, execution_id: str) -> WorkflowHistoryEntry | None:
        entry = self._executions.get(execution_id)
        return entry.model_copy(deep=True) if entry else None

    async def get_execution_with_details(
        self, execution_id: str
    ) -> WorkflowHistoryEntry | None:
        entry = self._executions.get(execution_id)
        if entry is None:
            return None
        return entry.model_copy(
            update={
                "steps": list(self._steps.get(execution_id, [])),
                "events": list(self._events.get(execution_id, [])),
            },
            deep=True,
        )

    async def get_executions_by_workflow(
        self, workflow_id: str
    ) -> list[WorkflowHistoryEntry]:
        return [
            entry.model_copy(deep=True)
            for entry in self._executions.values()
            if entry.workflow_id == workflow_id
        ]

    async def record_step_start(self, step: WorkflowStepHistoryEntry) -> None:
        self._steps.setdefault(step.workflow_history_id, []).append(
            step.model_copy(deep=True)
        )

    async def record_step_end(
        self, step_id: str, updates: dict[str, Any]
    ) -> WorkflowStepHistoryEntry | None:
        for steps in self._steps.values():
            for index, step in enumerate(steps):
                if step.id == step_id:
                    steps[index] = step.model_copy(update=updates)
                    return steps[index].model_copy(deep=True)
        return None

    async def get_workflow_steps(
        self, execution_id: str
    ) -> list[WorkflowStepHistoryEntry]:
        return [s.model_copy(deep=True) for s in self._steps.get(execution_id, [])]

    async def record_timeline_event(
        self, execution_id: str, event: WorkflowTimelineEvent
    ) -> None:
        self._events.setdefault(execution_id, []).append(event.model_copy(deep=True))

    async def delete_execution(self, execution_id: str) -> None:
        self._executions.pop(execution_id, None)
        self._steps.pop(execution_id, None)
        self._events.pop(execution_id, None)

    async def get_all_workflow_ids(self) -> list[str]:
        return sorted({entry.workflow_id for entry in self._executions.values()})
