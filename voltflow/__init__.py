"""voltflow: compose agents and async functions into observable workflows."""

from .context import CancellationToken, StepContext, WorkflowExecutionContext
from .errors import (
    InvalidStepError,
    LoopConfigurationError,
    VoltflowError,
    WorkflowCancelledError,
    WorkflowConfigurationError,
    WorkflowNotRegisteredError,
    WorkflowSuspendedError,
)
from .events import WorkflowEventQueue, WorkflowStreamEvent
from .pattern import ANY, one_of
from .persistence import get_storage
from .registry import RegisteredWorkflow, WorkflowRegistry, get_registry
from .state import WorkflowState, WorkflowStateManager
from .steps import (
    PydanticAIAgent,
    and_agent,
    and_all,
    and_branch,
    and_do_until,
    and_do_while,
    and_for_each,
    and_race,
    and_sleep,
    and_sleep_until,
    and_then,
    and_when,
    and_with,
)
from .workflow import (
    Workflow,
    WorkflowChain,
    WorkflowConfig,
    WorkflowHooks,
    WorkflowRunResult,
    WorkflowStream,
    create_workflow,
    create_workflow_chain,
)

__version__ = "0.1.0"
__all__ = [
    "ANY",
    "CancellationToken",
    "InvalidStepError",
    "LoopConfigurationError",
    "PydanticAIAgent",
    "RegisteredWorkflow",
    "StepContext",
    "VoltflowError",
    "Workflow",
    "WorkflowCancelledError",
    "WorkflowChain",
    "WorkflowConfig",
    "WorkflowConfigurationError",
    "WorkflowEventQueue",
    "WorkflowExecutionContext",
    "WorkflowHooks",
    "WorkflowNotRegisteredError",
    "WorkflowRegistry",
    "WorkflowRunResult",
    "WorkflowState",
    "WorkflowStateManager",
    "WorkflowStream",
    "WorkflowStreamEvent",
    "WorkflowSuspendedError",
    "and_agent",
    "and_all",
    "and_branch",
    "and_do_until",
    "and_do_while",
    "and_for_each",
    "and_race",
    "and_sleep",
    "and_sleep_until",
    "and_then",
    "and_when",
    "and_with",
    "create_workflow",
    "create_workflow_chain",
    "get_registry",
    "get_storage",
    "one_of",
]
