"""Exception hierarchy for voltflow workflows."""

from __future__ import annotations

from typing import Any, Optional


class VoltflowError(Exception):
    """Base class for all voltflow errors."""


class WorkflowConfigurationError(VoltflowError, ValueError):
    """Raised before any step runs when a workflow is misconfigured."""


class WorkflowNotRegisteredError(WorkflowConfigurationError):
    """Raised when an execution is recorded for an unknown workflow id."""

    def __init__(self, workflow_id: str) -> None:
        super().__init__(f"Workflow not registered: {workflow_id}")
        self.workflow_id = workflow_id


class LoopConfigurationError(WorkflowConfigurationError):
    """Raised when a loop step is built without any inner step."""


class InvalidStepError(WorkflowConfigurationError, TypeError):
    """Raised when something that is neither a step nor a callable is composed."""


class WorkflowCancelledError(VoltflowError):
    """Raised at a cancellation checkpoint once the run's token is cancelled."""

    def __init__(self, reason: Optional[str] = None) -> None:
        super().__init__(reason or "Workflow execution was cancelled")
        self.reason = reason


class WorkflowSuspendedError(VoltflowError):
    """Raised by ``StepContext.suspend`` to stop a run at a resumable point."""

    def __init__(self, reason: Optional[str] = None, suspend_data: Any = None) -> None:
        super().__init__(reason or "Workflow execution was suspended")
        self.reason = reason
        self.suspend_data = suspend_data


def describe_error(error: BaseException) -> str:
    """Message stored for a failure; bare cancellations carry no text."""
    return str(error) or type(error).__name__


__all__ = [
    "VoltflowError",
    "WorkflowConfigurationError",
    "WorkflowNotRegisteredError",
    "LoopConfigurationError",
    "InvalidStepError",
    "WorkflowCancelledError",
    "WorkflowSuspendedError",
    "describe_error",
]
