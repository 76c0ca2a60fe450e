"""Concurrent fan-out steps.

Both kinds schedule every inner step as a task on the running event loop
against the same input. ``ParallelAllStep`` waits for all of them,
``ParallelRaceStep`` only for the first one to settle.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, List, Literal, Optional, Sequence, Tuple

from ..context import StepContext
from ..errors import WorkflowConfigurationError
from .base import StepInput, StepType, WorkflowStep, match_step

logger = logging.getLogger(__name__)


def _cancel_pending(tasks: Sequence[asyncio.Task]) -> None:
    for task in tasks:
        if not task.done():
            task.cancel()


class ParallelAllStep(WorkflowStep):
    type: Literal[StepType.PARALLEL_ALL] = StepType.PARALLEL_ALL
    steps: Tuple[WorkflowStep, ...]

    async def execute(self, data: Any, ctx: StepContext) -> List[Any]:
        tasks = [asyncio.ensure_future(step.execute(data, ctx)) for step in self.steps]
        try:
            return list(await asyncio.gather(*tasks))
        except BaseException:
            _cancel_pending(tasks)
            raise


class ParallelRaceStep(WorkflowStep):
    type: Literal[StepType.PARALLEL_RACE] = StepType.PARALLEL_RACE
    steps: Tuple[WorkflowStep, ...]

    async def execute(self, data: Any, ctx: StepContext) -> Any:
        tasks = [asyncio.ensure_future(step.execute(data, ctx)) for step in self.steps]
        try:
            done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        finally:
            _cancel_pending(tasks)

        # several tasks may settle in the same loop iteration; lowest index wins
        winner = next(task for task in tasks if task in done)
        for task in done:
            if task is not winner and not task.cancelled() and task.exception():
                logger.debug(f"Discarding race loser error: {task.exception()!r}")
        return winner.result()


def _resolve(steps: Sequence[StepInput], kind: str) -> Tuple[WorkflowStep, ...]:
    if not steps:
        raise WorkflowConfigurationError(f"{kind} requires at least one step")
    return tuple(match_step(step) for step in steps)


def and_all(
    steps: Sequence[StepInput],
    *,
    id: Optional[str] = None,
    name: Optional[str] = None,
    purpose: Optional[str] = None,
) -> ParallelAllStep:
    """Run ``steps`` concurrently; the result is their outputs in step order.

    If any step fails the remaining ones are cancelled and the error
    propagates. No partial list is returned. An empty group yields ``[]``.
    """
    return ParallelAllStep(
        steps=tuple(match_step(step) for step in steps), id=id, name=name, purpose=purpose
    )


def and_race(
    steps: Sequence[StepInput],
    *,
    id: Optional[str] = None,
    name: Optional[str] = None,
    purpose: Optional[str] = None,
) -> ParallelRaceStep:
    """Run ``steps`` concurrently and settle with the first outcome.

    The first step to finish decides the result, whether it returned or
    raised. The slower steps are cancelled.
    """
    return ParallelRaceStep(
        steps=_resolve(steps, "and_race"), id=id, name=name, purpose=purpose
    )
