"""Per-workflow persistence facade over a ``WorkflowStorage`` backend."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from .persistence.models import (
    WorkflowHistoryEntry,
    WorkflowStats,
    WorkflowStepHistoryEntry,
    WorkflowTimelineEvent,
)
from .persistence.repository import WorkflowStorage

logger = logging.getLogger(__name__)


class WorkflowHistoryManager:
    """Reads and writes the execution history of a single workflow.

    Without a storage backend every write is skipped and every read returns
    nothing. Storage errors propagate; the registry decides what is
    best-effort.
    """

    def __init__(self, workflow_id: str, storage: Optional[WorkflowStorage] = None):
        self.workflow_id = workflow_id
        self.storage = storage

    @property
    def is_storage_configured(self) -> bool:
        return self.storage is not None

    async def create_execution(self, entry: WorkflowHistoryEntry) -> None:
        if self.storage is None:
            return
        await self.storage.create_execution(entry)
        logger.debug(f"Execution {entry.id} of {self.workflow_id} persisted")

    async def update_execution(
        self, execution_id: str, updates: Dict[str, Any]
    ) -> Optional[WorkflowHistoryEntry]:
        if self.storage is None:
            return None
        return await self.storage.update_execution(execution_id, updates)

    async def record_step_start(self, step: WorkflowStepHistoryEntry) -> None:
        if self.storage is None:
            return
        await self.storage.record_step_start(step)

    async def record_step_end(
        self, execution_id: str, step_index: int, updates: Dict[str, Any]
    ) -> Optional[WorkflowStepHistoryEntry]:
        """Close the most recent running step at ``step_index``."""
        if self.storage is None:
            return None
        steps = await self.storage.get_workflow_steps(execution_id)
        matching = [
            s for s in steps if s.step_index == step_index and s.status == "running"
        ]
        if not matching:
            logger.warning(
                f"No running step {step_index} found for execution {execution_id}"
            )
            return None
        return await self.storage.record_step_end(matching[-1].id, updates)

    async def persist_timeline_event(
        self, execution_id: str, event: WorkflowTimelineEvent
    ) -> Optional[WorkflowHistoryEntry]:
        """Store ``event`` and return the refreshed execution."""
        if self.storage is None:
            logger.debug(f"No storage configured, skipping event {event.name}")
            return None
        if event.trace_id is None:
            event = event.model_copy(update={"trace_id": execution_id})
        await self.storage.record_timeline_event(execution_id, event)
        logger.debug(f"Event persisted: {event.name} for execution {execution_id}")
        return await self.storage.get_execution_with_details(execution_id)

    async def get_executions(self) -> List[WorkflowHistoryEntry]:
        if self.storage is None:
            return []
        basic = await self.storage.get_executions_by_workflow(self.workflow_id)
        detailed = []
        for execution in basic:
            entry = await self.storage.get_execution_with_details(execution.id)
            if entry is not None:
                detailed.append(entry)
        return detailed

    async def get_execution_with_details(
        self, execution_id: str
    ) -> Optional[WorkflowHistoryEntry]:
        if self.storage is None:
            return None
        return await self.storage.get_execution_with_details(execution_id)

    async def get_workflow_stats(self) -> WorkflowStats:
        if self.storage is None:
            return WorkflowStats()
        executions = await self.storage.get_executions_by_workflow(self.workflow_id)
        if not executions:
            return WorkflowStats()

        durations = [
            (e.end_time - e.start_time).total_seconds() * 1000
            for e in executions
            if e.end_time is not None
        ]
        return WorkflowStats(
            total_executions=len(executions),
            successful_executions=sum(1 for e in executions if e.status == "completed"),
            failed_executions=sum(1 for e in executions if e.status == "error"),
            average_execution_time=sum(durations) / len(durations) if durations else 0.0,
            last_execution_time=max(e.start_time for e in executions),
        )

    async def delete_executions(self) -> int:
        if self.storage is None:
            return 0
        executions = await self.storage.get_executions_by_workflow(self.workflow_id)
        for execution in executions:
            await self.storage.delete_execution(execution.id)
        return len(executions)

