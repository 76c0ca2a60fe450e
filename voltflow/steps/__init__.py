"""Workflow steps and the ``and_*`` combinators that build them."""

from .agent import AgentCapability, AgentStep, PydanticAIAgent, StructuredOutput, and_agent
from .base import (
    FuncStep,
    StepInput,
    StepType,
    WorkflowStep,
    and_then,
    call_step_function,
    create_func_step,
    match_step,
)
from .conditional import (
    BranchStep,
    ConditionalWhenStep,
    ConditionalWithStep,
    and_branch,
    and_when,
    and_with,
)
from .loop import ForEachStep, LoopStep, and_do_until, and_do_while, and_for_each
from .parallel import ParallelAllStep, ParallelRaceStep, and_all, and_race
from .sleep import SleepStep, and_sleep, and_sleep_until

__all__ = [
    "AgentCapability",
    "AgentStep",
    "BranchStep",
    "ConditionalWhenStep",
    "ConditionalWithStep",
    "ForEachStep",
    "FuncStep",
    "LoopStep",
    "ParallelAllStep",
    "ParallelRaceStep",
    "PydanticAIAgent",
    "SleepStep",
    "StepInput",
    "StepType",
    "StructuredOutput",
    "WorkflowStep",
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
    "call_step_function",
    "create_func_step",
    "match_step",
]
