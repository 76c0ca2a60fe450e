"""Data models for persisted workflow history."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

ExecutionStatus = Literal["running", "completed", "error", "cancelled", "suspended"]
StepStatus = Literal["pending", "running", "completed", "error", "skipped", "suspended"]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class WorkflowTimelineEvent(BaseModel):
    """A lifecycle event recorded against one execution."""

    id: str = Field(default_factory=new_id)
    event_id: str
    name: str
    type: Literal["workflow", "workflow-step"]
    start_time: datetime
    end_time: Optional[datetime] = None
    status: str
    level: str = "INFO"
    input: Any = None
    output: Any = None
    status_message: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    trace_id: Optional[str] = None
    parent_event_id: Optional[str] = None


class WorkflowStepHistoryEntry(BaseModel):
    """Record of an individual step execution."""

    id: str = Field(default_factory=new_id)
    workflow_history_id: str
    step_index: int
    step_type: str
    step_name: str
    step_id: Optional[str] = None
    status: StepStatus = "running"
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    input: Any = None
    output: Any = None
    error_message: Optional[str] = None
    agent_execution_id: Optional[str] = None
    parallel_index: Optional[int] = None
    parent_step_id: Optional[str] = None


class WorkflowSuspensionCheckpoint(BaseModel):
    """Everything needed to continue a suspended execution later.

    ``step_index`` is the step that asked to suspend; resuming re-runs it with
    ``data`` as its input.
    """

    execution_id: str
    workflow_id: str
    step_index: int
    data: Any = None
    reason: Optional[str] = None
    suspend_data: Any = None
    suspended_at: datetime = Field(default_factory=utcnow)


class WorkflowHistoryEntry(BaseModel):
    """Persisted record of one workflow execution."""

    id: str
    workflow_id: str
    workflow_name: str
    status: ExecutionStatus = "running"
    start_time: datetime = Field(default_factory=utcnow)
    end_time: Optional[datetime] = None
    input: Any = None
    output: Any = None
    error_message: Optional[str] = None
    user_id: Optional[str] = None
    conversation_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    steps: List[WorkflowStepHistoryEntry] = Field(default_factory=list)
    events: List[WorkflowTimelineEvent] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def suspension(self) -> Optional[WorkflowSuspensionCheckpoint]:
        raw = self.metadata.get("suspension")
        if raw is None:
            return None
        return WorkflowSuspensionCheckpoint.model_validate(raw)


class WorkflowStats(BaseModel):
    """Aggregate numbers over the persisted executions of one workflow."""

    total_executions: int = 0
    successful_executions: int = 0
    failed_executions: int = 0
    average_execution_time: float = 0.0
    last_execution_time: Optional[datetime] = None
