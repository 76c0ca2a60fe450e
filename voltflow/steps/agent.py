from __future__ import annotations

import json
import logging
from typing import (
    Any,
    Callable,
    Generic,
    Literal,
    Optional,
    Protocol,
    TypeVar,
    Union,
    runtime_checkable,
)

from pydantic import BaseModel
from pydantic_ai import Agent
from pydantic_core import to_jsonable_python

from ..context import StepContext
from .base import StepType, WorkflowStep, call_step_function

logger = logging.getLogger(__name__)

T = TypeVar("T")


class StructuredOutput(BaseModel, Generic[T]):
    """Envelope returned by an agent capability."""

    object: T


@runtime_checkable
class AgentCapability(Protocol):
    """What an agent step needs from the model layer."""

    async def generate_structured_output(
        self, prompt: str, output_schema: Any
    ) -> StructuredOutput[Any]:
        ...


class PydanticAIAgent:
    """Adapts a ``pydantic_ai.Agent`` to ``AgentCapability``."""

    def __init__(self, agent: Agent, deps: Any = None):
        self.agent = agent
        self.deps = deps

    @property
    def name(self) -> Optional[str]:
        return getattr(self.agent, "name", None)

    async def generate_structured_output(
        self, prompt: str, output_schema: Any
    ) -> StructuredOutput[Any]:
        logger.debug(f"Running agent {self.name} with output type {output_schema}")
        result = await self.agent.run(prompt, output_type=output_schema, deps=self.deps)
        return StructuredOutput[Any](object=result.output)


def default_prompt(data: Any) -> str:
    """Prompt used when an agent step has no task of its own."""
    rendered = json.dumps(to_jsonable_python(data, fallback=str), indent=2)
    rendered = rendered.replace("\n", "\n  ")
    return (
        "# Input Data\n"
        "Based on your assigned task, use the following input in the <input> tag "
        "to generate a response:\n"
        "<input>\n"
        f"  {rendered}\n"
        "</input>"
    )


class AgentStep(WorkflowStep):
    """Asks an agent for structured output and returns the parsed object."""

    type: Literal[StepType.AGENT] = StepType.AGENT
    agent: Any
    output_schema: Any = str
    task: Optional[Union[str, Callable[..., Any]]] = None

    async def _prompt(self, data: Any, ctx: StepContext) -> str:
        if self.task is None:
            return default_prompt(data)
        if isinstance(self.task, str):
            return self.task
        return await call_step_function(self.task, data, ctx)

    async def execute(self, data: Any, ctx: StepContext) -> Any:
        prompt = await self._prompt(data, ctx)
        output = await self.agent.generate_structured_output(prompt, self.output_schema)
        return output.object


def and_agent(
    agent: Union[AgentCapability, Agent],
    schema: Any = str,
    *,
    task: Optional[Union[str, Callable[..., Any]]] = None,
    id: Optional[str] = None,
    name: Optional[str] = None,
    purpose: Optional[str] = None,
) -> AgentStep:
    """Create an agent step.

    Args:
        agent: Anything with ``generate_structured_output``; a pydantic-ai
            ``Agent`` is wrapped in ``PydanticAIAgent``.
        schema: Output type the agent must produce.
        task: Prompt text, or ``(data, ctx) -> str``. Defaults to a prompt
            that embeds the step input as JSON.
    """
    if isinstance(agent, Agent):
        agent = PydanticAIAgent(agent)
    if name is None:
        name = getattr(agent, "name", None)
    return AgentStep(
        agent=agent, output_schema=schema, task=task, id=id, name=name, purpose=purpose
    )
