from __future__ import annotations

import asyncio
from typing import Any, Callable, List, Literal, Optional, Sequence, Tuple

from ..context import StepContext
from ..pattern import matches
from .base import StepInput, StepType, WorkflowStep, call_step_function, match_step


class ConditionalWhenStep(WorkflowStep):
    """Runs ``step`` only when ``condition`` holds; otherwise passes data through."""

    type: Literal[StepType.CONDITIONAL_WHEN] = StepType.CONDITIONAL_WHEN
    condition: Callable[..., Any]
    step: WorkflowStep

    async def execute(self, data: Any, ctx: StepContext) -> Any:
        if await call_step_function(self.condition, data, ctx):
            return await self.step.execute(data, ctx)
        return data


class ConditionalWithStep(WorkflowStep):
    """Runs ``step`` only when the data matches ``pattern``."""

    type: Literal[StepType.CONDITIONAL_WITH] = StepType.CONDITIONAL_WITH
    pattern: Any
    step: WorkflowStep

    async def execute(self, data: Any, ctx: StepContext) -> Any:
        if matches(self.pattern, data):
            return await self.step.execute(data, ctx)
        return data


class BranchStep(WorkflowStep):
    """Evaluates every branch condition and runs the matching branches together.

    The result has one slot per branch in declaration order; branches whose
    condition did not hold leave ``None`` in their slot.
    """

    type: Literal[StepType.BRANCH] = StepType.BRANCH
    branches: Tuple[Tuple[Callable[..., Any], WorkflowStep], ...]

    async def execute(self, data: Any, ctx: StepContext) -> List[Any]:
        async def run_branch(condition: Callable[..., Any], step: WorkflowStep) -> Any:
            if await call_step_function(condition, data, ctx):
                return await step.execute(data, ctx)
            return None

        return list(
            await asyncio.gather(
                *(run_branch(condition, step) for condition, step in self.branches)
            )
        )


def and_when(
    condition: Callable[..., Any],
    step: StepInput,
    *,
    id: Optional[str] = None,
    name: Optional[str] = None,
    purpose: Optional[str] = None,
) -> ConditionalWhenStep:
    """Run ``step`` when ``condition(data)`` is truthy.

    Errors raised by the condition propagate and fail the step.
    """
    return ConditionalWhenStep(
        condition=condition, step=match_step(step), id=id, name=name, purpose=purpose
    )


def and_with(
    pattern: Any,
    step: StepInput,
    *,
    id: Optional[str] = None,
    name: Optional[str] = None,
    purpose: Optional[str] = None,
) -> ConditionalWithStep:
    """Run ``step`` when the data structurally matches ``pattern``.

    See ``voltflow.pattern`` for the matching rules.
    """
    return ConditionalWithStep(
        pattern=pattern, step=match_step(step), id=id, name=name, purpose=purpose
    )


def and_branch(
    branches: Sequence[Tuple[Callable[..., Any], StepInput]],
    *,
    id: Optional[str] = None,
    name: Optional[str] = None,
    purpose: Optional[str] = None,
) -> BranchStep:
    return BranchStep(
        branches=tuple((condition, match_step(step)) for condition, step in branches),
        id=id,
        name=name,
        purpose=purpose,
    )
