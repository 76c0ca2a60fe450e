"""Workflow-level state and its transitions."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Any, Generic, Literal, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field

from .persistence.models import utcnow

logger = logging.getLogger(__name__)

DataT = TypeVar("DataT")
ResultT = TypeVar("ResultT")

WorkflowStatus = Literal["pending", "running", "completed", "failed", "suspended"]


class WorkflowState(BaseModel, Generic[DataT, ResultT]):
    """State of one run as seen by hooks."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    execution_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    active: bool = False
    start_at: datetime = Field(default_factory=utcnow)
    end_at: Optional[datetime] = None
    status: WorkflowStatus = "pending"
    data: Optional[DataT] = None
    result: Optional[ResultT] = None
    error: Optional[BaseException] = None


class IllegalStateTransition(RuntimeError):
    pass


class WorkflowStateManager(Generic[DataT, ResultT]):
    """Drives a ``WorkflowState`` from pending to a terminal status."""

    def __init__(self, execution_id: Optional[str] = None) -> None:
        self._state: WorkflowState[Any, Any] = WorkflowState(
            execution_id=execution_id or str(uuid.uuid4())
        )

    @property
    def state(self) -> WorkflowState[Any, Any]:
        return self._state

    def start(self, data: DataT) -> WorkflowState[Any, Any]:
        self._require("start", "pending", "suspended")
        self._state = self._state.model_copy(
            update={
                "active": True,
                "status": "running",
                "start_at": utcnow(),
                "end_at": None,
                "data": data,
                "result": None,
                "error": None,
            }
        )
        return self._state

    def update(self, **changes: Any) -> WorkflowState[Any, Any]:
        self._require("update", "running")
        unknown = set(changes) - {"data", "result"}
        if unknown:
            raise ValueError(f"Cannot update state fields: {sorted(unknown)}")
        self._state = self._state.model_copy(update=changes)
        return self._state

    def finish(self) -> WorkflowState[Any, Any]:
        return self._terminate("completed")

    def fail(self, error: BaseException) -> WorkflowState[Any, Any]:
        return self._terminate("failed", error=error)

    def suspend(self) -> WorkflowState[Any, Any]:
        return self._terminate("suspended")

    def _terminate(
        self, status: WorkflowStatus, error: Optional[BaseException] = None
    ) -> WorkflowState[Any, Any]:
        self._require(status, "running")
        self._state = self._state.model_copy(
            update={
                "active": False,
                "status": status,
                "end_at": utcnow(),
                "error": error,
            }
        )
        logger.debug(f"Execution {self._state.execution_id} -> {status}")
        return self._state

    def _require(self, action: str, *allowed: str) -> None:
        if self._state.status not in allowed:
            raise IllegalStateTransition(
                f"Cannot {action} execution {self._state.execution_id} "
                f"in status {self._state.status}"
            )
