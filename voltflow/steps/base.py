"""Step base types and the helpers every combinator builds on."""

from __future__ import annotations

import abc
import inspect
from enum import Enum
from typing import Any, Callable, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict

from ..context import StepContext
from ..errors import InvalidStepError


class StepType(str, Enum):
    AGENT = "agent"
    FUNC = "func"
    CONDITIONAL_WHEN = "conditional-when"
    CONDITIONAL_WITH = "conditional-with"
    PARALLEL_ALL = "parallel-all"
    PARALLEL_RACE = "parallel-race"
    LOOP = "loop"
    SLEEP = "sleep"
    FOREACH = "foreach"
    BRANCH = "branch"


class WorkflowStep(BaseModel, abc.ABC):
    """A single unit of work in a workflow.

    Steps are frozen: a step only reads its input and the ``StepContext`` it
    is given and returns the new workflow data.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True, frozen=True)

    type: StepType
    id: Optional[str] = None
    name: Optional[str] = None
    purpose: Optional[str] = None

    @abc.abstractmethod
    async def execute(self, data: Any, ctx: StepContext) -> Any:
        """Run the step against ``data`` and return the new data."""

    @property
    def display_name(self) -> str:
        return self.name or self.id or self.type.value


StepFunction = Callable[..., Any]
StepInput = Union[WorkflowStep, StepFunction]


def accepts_context(fn: Callable[..., Any]) -> bool:
    """Whether ``fn`` takes ``(data, ctx)`` rather than just ``(data)``.

    Positional parameters with a default belong to the caller and are left
    alone, unless the second one is named ``ctx``.
    """
    try:
        signature = inspect.signature(fn)
    except (TypeError, ValueError):
        return True
    positional = []
    for param in signature.parameters.values():
        if param.kind is inspect.Parameter.VAR_POSITIONAL:
            return True
        if param.kind in (
            inspect.Parameter.POSITIONAL_ONLY,
            inspect.Parameter.POSITIONAL_OR_KEYWORD,
        ):
            positional.append(param)
    if len(positional) < 2:
        return False
    second = positional[1]
    return second.name == "ctx" or second.default is inspect.Parameter.empty


async def call_step_function(fn: Callable[..., Any], data: Any, ctx: StepContext) -> Any:
    """Call a user function that may be sync or async, with or without ``ctx``."""
    result = fn(data, ctx) if accepts_context(fn) else fn(data)
    if inspect.isawaitable(result):
        result = await result
    return result


class FuncStep(WorkflowStep):
    """Runs a plain function; its return value becomes the new data."""

    type: Literal[StepType.FUNC] = StepType.FUNC
    fn: Callable[..., Any]

    async def execute(self, data: Any, ctx: StepContext) -> Any:
        return await call_step_function(self.fn, data, ctx)


def create_func_step(
    fn: StepFunction,
    *,
    id: Optional[str] = None,
    name: Optional[str] = None,
    purpose: Optional[str] = None,
) -> FuncStep:
    if not callable(fn):
        raise InvalidStepError(f"Expected a callable, got {type(fn).__name__}")
    return FuncStep(fn=fn, id=id, name=name, purpose=purpose)


def match_step(step_or_fn: StepInput) -> WorkflowStep:
    """Normalise a step or a plain function into a ``WorkflowStep``."""
    if isinstance(step_or_fn, WorkflowStep):
        return step_or_fn
    if callable(step_or_fn):
        return create_func_step(step_or_fn)
    raise InvalidStepError(f"Invalid step: {step_or_fn!r}")


def and_then(
    fn: StepInput,
    *,
    id: Optional[str] = None,
    name: Optional[str] = None,
    purpose: Optional[str] = None,
) -> WorkflowStep:
    """Create a sequential step from a function.

    Example:
        >>> async def greet(data):
        ...     return {**data, "greeting": f"Hello {data['name']}"}
        >>> step = and_then(greet, name="Greet")

    The function receives the current data, and optionally the
    ``StepContext`` as a second argument. Passing an existing step returns
    it unchanged.
    """
    if isinstance(fn, WorkflowStep):
        return fn
    return create_func_step(fn, id=id, name=name, purpose=purpose)
