"""Repetition steps: do-while / do-until loops and for-each mapping."""

from __future__ import annotations

import logging
from typing import Any, Callable, List, Literal, Optional, Sequence, Tuple

from ..context import StepContext, throw_if_cancelled
from ..errors import LoopConfigurationError
from .base import StepInput, StepType, WorkflowStep, call_step_function, match_step

logger = logging.getLogger(__name__)

LoopType = Literal["dowhile", "dountil"]


class LoopStep(WorkflowStep):
    """Runs ``steps`` in order, then decides from ``condition`` whether to go again.

    The body always runs at least once. ``dowhile`` repeats while the
    condition holds, ``dountil`` repeats until it holds. The cancellation
    token is checked at the start of each pass, before every inner step and
    before the condition.
    """

    type: Literal[StepType.LOOP] = StepType.LOOP
    loop_type: LoopType
    steps: Tuple[WorkflowStep, ...]
    condition: Callable[..., Any]

    async def execute(self, data: Any, ctx: StepContext) -> Any:
        child_ctx = ctx.for_child()
        current = data
        iteration = 0
        while True:
            throw_if_cancelled(ctx.signal)
            for step in self.steps:
                throw_if_cancelled(ctx.signal)
                current = await step.execute(current, child_ctx)
            iteration += 1

            throw_if_cancelled(ctx.signal)
            outcome = bool(await call_step_function(self.condition, current, ctx))
            keep_going = outcome if self.loop_type == "dowhile" else not outcome
            if not keep_going:
                logger.debug(
                    f"Loop {self.display_name} finished after {iteration} iteration(s)"
                )
                return current


class ForEachStep(WorkflowStep):
    """Runs ``step`` once per item of a list input and collects the outputs."""

    type: Literal[StepType.FOREACH] = StepType.FOREACH
    step: WorkflowStep

    async def execute(self, data: Any, ctx: StepContext) -> List[Any]:
        if isinstance(data, (str, bytes)) or not isinstance(data, Sequence):
            raise TypeError(
                f"and_for_each expects a list input, got {type(data).__name__}"
            )
        child_ctx = ctx.for_child()
        results = []
        for item in data:
            throw_if_cancelled(ctx.signal)
            results.append(await self.step.execute(item, child_ctx))
        return results


def _loop_body(
    step: Optional[StepInput], steps: Optional[Sequence[StepInput]], kind: str
) -> Tuple[WorkflowStep, ...]:
    if step is not None and steps is not None:
        raise LoopConfigurationError(f"{kind} takes either step or steps, not both")
    body = [step] if step is not None else list(steps or [])
    if not body:
        raise LoopConfigurationError(f"{kind} requires at least one step")
    return tuple(match_step(s) for s in body)


def and_do_while(
    step: Optional[StepInput] = None,
    *,
    condition: Callable[..., Any],
    steps: Optional[Sequence[StepInput]] = None,
    id: Optional[str] = None,
    name: Optional[str] = None,
    purpose: Optional[str] = None,
) -> LoopStep:
    """Repeat the body while ``condition`` holds after each pass.

    Example:
        >>> and_do_while(
        ...     steps=[lambda data: {"counter": data["counter"] + 1}],
        ...     condition=lambda data: data["counter"] < 3,
        ... )
    """
    return LoopStep(
        loop_type="dowhile",
        steps=_loop_body(step, steps, "and_do_while"),
        condition=condition,
        id=id,
        name=name,
        purpose=purpose,
    )


def and_do_until(
    step: Optional[StepInput] = None,
    *,
    condition: Callable[..., Any],
    steps: Optional[Sequence[StepInput]] = None,
    id: Optional[str] = None,
    name: Optional[str] = None,
    purpose: Optional[str] = None,
) -> LoopStep:
    """Repeat the body until ``condition`` holds after a pass."""
    return LoopStep(
        loop_type="dountil",
        steps=_loop_body(step, steps, "and_do_until"),
        condition=condition,
        id=id,
        name=name,
        purpose=purpose,
    )


def and_for_each(
    step: StepInput,
    *,
    id: Optional[str] = None,
    name: Optional[str] = None,
    purpose: Optional[str] = None,
) -> ForEachStep:
    return ForEachStep(step=match_step(step), id=id, name=name, purpose=purpose)
