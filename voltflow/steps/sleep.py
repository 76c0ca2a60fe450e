from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any, Callable, Literal, Optional, Union

from ..context import StepContext, throw_if_cancelled
from .base import StepType, WorkflowStep, call_step_function

Duration = Union[float, Callable[..., Any]]


class SleepStep(WorkflowStep):
    """Pauses the run and passes the data through unchanged.

    Either ``duration`` (seconds, or a function of the data returning
    seconds) or ``until`` (an aware datetime, or a function returning one) is
    set. Cancelling the run's token cuts the pause short with
    ``WorkflowCancelledError``.
    """

    type: Literal[StepType.SLEEP] = StepType.SLEEP
    duration: Optional[Duration] = None
    until: Optional[Union[datetime, Callable[..., Any]]] = None

    async def _seconds(self, data: Any, ctx: StepContext) -> float:
        if self.until is not None:
            target = self.until
            if callable(target):
                target = await call_step_function(target, data, ctx)
            if target.tzinfo is None:
                target = target.replace(tzinfo=timezone.utc)
            return (target - datetime.now(timezone.utc)).total_seconds()
        duration = self.duration or 0
        if callable(duration):
            duration = await call_step_function(duration, data, ctx)
        return float(duration)

    async def execute(self, data: Any, ctx: StepContext) -> Any:
        throw_if_cancelled(ctx.signal)
        seconds = await self._seconds(data, ctx)
        if seconds <= 0:
            return data
        if ctx.signal is None:
            await asyncio.sleep(seconds)
            return data
        try:
            await asyncio.wait_for(ctx.signal.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return data
        throw_if_cancelled(ctx.signal)
        return data


def and_sleep(
    duration: Duration,
    *,
    id: Optional[str] = None,
    name: Optional[str] = None,
    purpose: Optional[str] = None,
) -> SleepStep:
    return SleepStep(duration=duration, id=id, name=name, purpose=purpose)


def and_sleep_until(
    until: Union[datetime, Callable[..., Any]],
    *,
    id: Optional[str] = None,
    name: Optional[str] = None,
    purpose: Optional[str] = None,
) -> SleepStep:
    return SleepStep(until=until, id=id, name=name, purpose=purpose)
