"""Per-run execution context handed to every step."""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any, Dict, NoReturn, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, SkipValidation

from .errors import WorkflowCancelledError, WorkflowSuspendedError
from .persistence.models import WorkflowHistoryEntry, WorkflowStepHistoryEntry, utcnow


class CancellationToken:
    """Cooperative cancellation flag shared by one run.

    Nothing is interrupted when ``cancel`` is called; loop constructs and
    steps that check the token raise ``WorkflowCancelledError`` at their next
    checkpoint.
    """

    def __init__(self) -> None:
        self._cancelled = False
        self._reason: Optional[str] = None
        self._event: Optional[asyncio.Event] = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def cancel(self, reason: Optional[str] = None) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        self._reason = reason
        if self._event is not None:
            self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise WorkflowCancelledError(self._reason)

    async def wait(self) -> None:
        """Block until ``cancel`` is called."""
        if self._cancelled:
            return
        if self._event is None:
            self._event = asyncio.Event()
        await self._event.wait()


def throw_if_cancelled(signal: Optional[CancellationToken]) -> None:
    """Raise ``WorkflowCancelledError`` if ``signal`` has been cancelled."""
    if signal is not None:
        signal.raise_if_cancelled()


class StepProgress(BaseModel):
    """Immutable snapshot of how far a run has progressed."""

    model_config = ConfigDict(frozen=True)

    current_step_index: int = 0
    steps: Tuple[WorkflowStepHistoryEntry, ...] = ()

    def begin(self, index: int, entry: WorkflowStepHistoryEntry) -> "StepProgress":
        return StepProgress(current_step_index=index, steps=self.steps + (entry,))

    def complete(self, entry: WorkflowStepHistoryEntry) -> "StepProgress":
        steps = tuple(entry if s.id == entry.id else s for s in self.steps)
        return StepProgress(current_step_index=self.current_step_index, steps=steps)


class WorkflowExecutionContext(BaseModel):
    """Identity, user context and progress of one in-flight execution.

    Owned by the engine for the lifetime of a single run and never shared
    across runs. Progress is replaced wholesale through ``advance``.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    workflow_id: str
    execution_id: str
    workflow_name: str
    user_context: SkipValidation[Dict[str, Any]] = Field(default_factory=dict)
    is_active: bool = True
    start_time: datetime = Field(default_factory=utcnow)
    signal: Optional[CancellationToken] = None
    history_entry: Optional[WorkflowHistoryEntry] = None
    progress: StepProgress = StepProgress()

    @property
    def current_step_index(self) -> int:
        return self.progress.current_step_index

    @property
    def steps(self) -> list[WorkflowStepHistoryEntry]:
        return list(self.progress.steps)

    def advance(self, progress: StepProgress) -> StepProgress:
        self.progress = progress
        return progress


class StepContext(BaseModel):
    """Read-only view of the run passed to ``step.execute(data, ctx)``."""

    model_config = ConfigDict(arbitrary_types_allowed=True, frozen=True)

    execution_id: str
    workflow_id: str
    workflow_name: str
    status: str = "running"
    active: bool = True
    start_at: datetime = Field(default_factory=utcnow)
    end_at: Optional[datetime] = None
    error: Optional[BaseException] = None
    step_index: int = 0
    user_context: SkipValidation[Dict[str, Any]] = Field(default_factory=dict)
    user_id: Optional[str] = None
    conversation_id: Optional[str] = None
    signal: Optional[CancellationToken] = None
    workflow_context: Optional[WorkflowExecutionContext] = None
    resume_data: Any = None

    def suspend(self, reason: Optional[str] = None, data: Any = None) -> NoReturn:
        """Stop the run here; it can later be resumed from this step."""
        raise WorkflowSuspendedError(reason, data)

    def raise_if_cancelled(self) -> None:
        throw_if_cancelled(self.signal)

    def for_child(self) -> "StepContext":
        """Context for steps nested inside a loop, without the parent's workflow context."""
        return self.model_copy(update={"workflow_context": None})
