"""Workflow definition and the engine that drives its steps.

Example:
    >>> workflow = create_workflow(
    ...     WorkflowConfig(id="greeter", name="Greeter"),
    ...     and_then(lambda data: {**data, "name": data["name"] + " john"}),
    ...     and_then(lambda data: {**data, "name": data["name"] + " doe"}),
    ...     registry=registry,
    ... )
    >>> registry.register_workflow(workflow)
    >>> result = await workflow.run({"name": "Who is"})
    >>> result.result
    {'name': 'Who is john doe'}
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from datetime import datetime
from typing import (
    Any,
    AsyncIterator,
    Awaitable,
    Callable,
    Dict,
    List,
    Literal,
    Mapping,
    Optional,
    Sequence,
    Tuple,
    Union,
)

from pydantic import BaseModel, ConfigDict, TypeAdapter, ValidationError

from .context import CancellationToken, StepContext, WorkflowExecutionContext
from .errors import (
    WorkflowCancelledError,
    WorkflowConfigurationError,
    WorkflowSuspendedError,
    describe_error,
)
from .events import WorkflowStreamEvent, timeline_event
from .persistence.models import (
    WorkflowStepHistoryEntry,
    WorkflowSuspensionCheckpoint,
    WorkflowTimelineEvent,
    new_id,
    utcnow,
)
from .registry import WorkflowRegistry
from .state import WorkflowState, WorkflowStateManager
from .steps import (
    StepInput,
    WorkflowStep,
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
    match_step,
)

logger = logging.getLogger(__name__)

Hook = Callable[[WorkflowState[Any, Any]], Any]
Emit = Callable[[WorkflowStreamEvent], None]

_STREAM_DONE = object()


class WorkflowHooks(BaseModel):
    """Optional callbacks around a run; each receives the current ``WorkflowState``."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    on_start: Optional[Hook] = None
    on_step_start: Optional[Hook] = None
    on_step_end: Optional[Hook] = None
    on_end: Optional[Hook] = None


class WorkflowConfig(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    id: str
    name: str
    purpose: str = "No purpose provided"
    input_schema: Any = None
    result_schema: Any = None
    hooks: WorkflowHooks = WorkflowHooks()


class WorkflowRunResult(BaseModel):
    """Outcome of a run that completed or suspended."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    execution_id: str
    workflow_id: str
    start_at: datetime
    end_at: Optional[datetime] = None
    status: Literal["completed", "suspended"]
    result: Any = None
    suspension: Optional[WorkflowSuspensionCheckpoint] = None


async def _call_hook(hook: Optional[Hook], state: WorkflowState[Any, Any]) -> None:
    if hook is None:
        return
    outcome = hook(state)
    if inspect.isawaitable(outcome):
        await outcome


class WorkflowStream:
    """Lazy, single-pass view of a run.

    Iterating yields ``WorkflowStreamEvent`` objects as the run progresses.
    ``await stream.result()`` resolves or raises exactly like
    ``Workflow.run``. The run starts on first iteration or first
    ``result()`` call, whichever comes first.
    """

    def __init__(self, start: Callable[[Emit], Awaitable[WorkflowRunResult]]):
        self._start = start
        self._queue: Optional[asyncio.Queue] = None
        self._task: Optional[asyncio.Future] = None
        self._iterated = False

    def _ensure_started(self) -> asyncio.Future:
        if self._task is None:
            self._queue = asyncio.Queue()
            self._task = asyncio.ensure_future(self._drive())
        return self._task

    async def _drive(self) -> WorkflowRunResult:
        try:
            return await self._start(self._queue.put_nowait)
        finally:
            self._queue.put_nowait(_STREAM_DONE)

    def __aiter__(self) -> AsyncIterator[WorkflowStreamEvent]:
        if self._iterated:
            raise RuntimeError("WorkflowStream can only be iterated once")
        self._iterated = True
        self._ensure_started()
        return self._events()

    async def _events(self) -> AsyncIterator[WorkflowStreamEvent]:
        while True:
            event = await self._queue.get()
            if event is _STREAM_DONE:
                return
            yield event

    async def result(self) -> WorkflowRunResult:
        return await self._ensure_started()


class Workflow:
    """An ordered list of steps plus the configuration needed to run them."""

    def __init__(
        self,
        config: WorkflowConfig,
        steps: Tuple[WorkflowStep, ...],
        registry: Optional[WorkflowRegistry] = None,
    ):
        self.config = config
        self.steps = steps
        self.registry = registry

    @property
    def id(self) -> str:
        return self.config.id

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def purpose(self) -> str:
        return self.config.purpose

    @property
    def input_schema(self) -> Any:
        return self.config.input_schema

    @property
    def hooks(self) -> WorkflowHooks:
        return self.config.hooks

    def __repr__(self) -> str:
        return f"Workflow(id={self.id!r}, steps={len(self.steps)})"

    # ------------------------------------------------------------------
    # Public API
    async def run(
        self,
        input: Any,
        *,
        signal: Optional[CancellationToken] = None,
        user_context: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None,
        conversation_id: Optional[str] = None,
    ) -> WorkflowRunResult:
        """Run every step in order and return the final result.

        Step errors are re-raised unchanged after the failure has been
        recorded. A step that calls ``ctx.suspend()`` ends the run with
        status ``suspended`` and a checkpoint usable with ``resume``.
        """
        return await self._execute(
            input,
            signal=signal,
            user_context=user_context,
            user_id=user_id,
            conversation_id=conversation_id,
        )

    def stream(
        self,
        input: Any,
        *,
        signal: Optional[CancellationToken] = None,
        user_context: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None,
        conversation_id: Optional[str] = None,
    ) -> WorkflowStream:
        return WorkflowStream(
            lambda emit: self._execute(
                input,
                signal=signal,
                user_context=user_context,
                user_id=user_id,
                conversation_id=conversation_id,
                emit=emit,
            )
        )

    async def resume(
        self,
        checkpoint: Union[WorkflowSuspensionCheckpoint, Mapping[str, Any]],
        resume_data: Any = None,
        *,
        signal: Optional[CancellationToken] = None,
        user_context: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None,
        conversation_id: Optional[str] = None,
    ) -> WorkflowRunResult:
        """Continue a suspended execution from the step that suspended it.

        That step runs again with the checkpoint's data as input and
        ``resume_data`` available as ``ctx.resume_data``.
        """
        checkpoint = WorkflowSuspensionCheckpoint.model_validate(checkpoint)
        if checkpoint.workflow_id != self.id:
            raise WorkflowConfigurationError(
                f"Checkpoint belongs to workflow {checkpoint.workflow_id}, not {self.id}"
            )
        if not 0 <= checkpoint.step_index < len(self.steps):
            raise WorkflowConfigurationError(
                f"Checkpoint step index {checkpoint.step_index} is out of range"
            )
        return await self._execute(
            checkpoint.data,
            signal=signal,
            user_context=user_context,
            user_id=user_id,
            conversation_id=conversation_id,
            checkpoint=checkpoint,
            resume_data=resume_data,
        )

    # ------------------------------------------------------------------
    # Engine
    def _validate_input(self, input: Any) -> None:
        if self.config.input_schema is None:
            return
        try:
            TypeAdapter(self.config.input_schema).validate_python(input)
        except ValidationError as exc:
            raise WorkflowConfigurationError(
                f"Invalid input for workflow {self.id}: {exc}"
            ) from exc

    async def _open_execution(
        self,
        input: Any,
        user_context: Optional[Dict[str, Any]],
        user_id: Optional[str],
        conversation_id: Optional[str],
    ) -> Tuple[str, Any]:
        if self.registry is None:
            logger.debug(f"Workflow {self.id} has no registry, running without history")
            return new_id(), None
        try:
            entry = await self.registry.record_workflow_execution_start(
                self.id,
                self.name,
                input,
                user_id=user_id,
                conversation_id=conversation_id,
                user_context=user_context,
            )
        except Exception as exc:
            logger.warning(
                f"Workflow {self.id} not registered, proceeding without history tracking: {exc}"
            )
            return new_id(), None
        return entry.id, entry

    def _publish(
        self, tracked: bool, execution_id: str, event: WorkflowTimelineEvent
    ) -> None:
        if not tracked:
            return
        try:
            self.registry.publish_timeline_event(self.id, execution_id, event)
        except Exception as exc:
            logger.warning(f"Failed to publish {event.name} event: {exc}")

    def _step_metadata(
        self, context: WorkflowExecutionContext, index: int, step: WorkflowStep
    ) -> Dict[str, Any]:
        return {
            "workflow_id": self.id,
            "workflow_name": self.name,
            "execution_id": context.execution_id,
            "step_index": index,
            "step_type": step.type.value,
            "step_name": step.name or f"Step {index + 1}",
            "step_id": step.id,
        }

    async def _execute(
        self,
        input: Any,
        *,
        signal: Optional[CancellationToken],
        user_context: Optional[Dict[str, Any]],
        user_id: Optional[str],
        conversation_id: Optional[str],
        emit: Optional[Emit] = None,
        checkpoint: Optional[WorkflowSuspensionCheckpoint] = None,
        resume_data: Any = None,
    ) -> WorkflowRunResult:
        if checkpoint is None:
            self._validate_input(input)
            execution_id, history_entry = await self._open_execution(
                input, user_context, user_id, conversation_id
            )
            tracked = history_entry is not None
            start_index = 0
        else:
            execution_id, history_entry = checkpoint.execution_id, None
            tracked = self.registry is not None and self.registry.is_workflow_registered(
                self.id
            )
            if tracked:
                self.registry.record_workflow_execution_resumed(self.id, execution_id)
            start_index = checkpoint.step_index

        context = WorkflowExecutionContext(
            workflow_id=self.id,
            execution_id=execution_id,
            workflow_name=self.name,
            user_context=dict(user_context or {}),
            signal=signal,
            history_entry=history_entry,
        )
        state_manager: WorkflowStateManager[Any, Any] = WorkflowStateManager(execution_id)
        state_manager.start(input)

        def stream_event(kind: str, **fields: Any) -> None:
            if emit is not None:
                emit(
                    WorkflowStreamEvent(
                        type=kind, execution_id=execution_id, workflow_id=self.id, **fields
                    )
                )

        workflow_metadata = {
            "workflow_id": self.id,
            "workflow_name": self.name,
            "execution_id": execution_id,
        }
        start_event = timeline_event(
            "workflow-start", status="running", input=input, metadata=workflow_metadata
        )
        self._publish(tracked, execution_id, start_event)
        stream_event("workflow-start", input=input)

        try:
            await _call_hook(self.hooks.on_start, state_manager.state)
            for index in range(start_index, len(self.steps)):
                await self._run_step(
                    index,
                    context,
                    state_manager,
                    tracked=tracked,
                    parent_event_id=start_event.event_id,
                    stream_event=stream_event,
                    user_id=user_id,
                    conversation_id=conversation_id,
                    resume_data=resume_data if index == start_index else None,
                )
            if self.config.result_schema is not None:
                result = TypeAdapter(self.config.result_schema).validate_python(
                    state_manager.state.result
                )
                state_manager.update(result=result)
        except WorkflowSuspendedError as suspension:
            checkpoint = WorkflowSuspensionCheckpoint(
                execution_id=execution_id,
                workflow_id=self.id,
                step_index=context.current_step_index,
                data=state_manager.state.data,
                reason=suspension.reason,
                suspend_data=suspension.suspend_data,
            )
            final = state_manager.suspend()
            self._publish(
                tracked,
                execution_id,
                timeline_event(
                    "workflow-suspended",
                    status="suspended",
                    output=checkpoint.model_dump(mode="json"),
                    status_message=suspension.reason,
                    parent_event_id=start_event.event_id,
                    metadata=workflow_metadata,
                    start_time=start_event.start_time,
                ),
            )
            stream_event(
                "workflow-suspended",
                step_index=checkpoint.step_index,
                output=checkpoint.suspend_data,
            )
            if tracked:
                self.registry.record_workflow_execution_suspended(self.id, checkpoint)
            logger.info(
                f"Workflow {self.id} execution {execution_id} suspended at step "
                f"{checkpoint.step_index}"
            )
            await _call_hook(self.hooks.on_end, final)
            return WorkflowRunResult(
                execution_id=execution_id,
                workflow_id=self.id,
                start_at=final.start_at,
                end_at=final.end_at,
                status="suspended",
                suspension=checkpoint,
            )
        except (Exception, asyncio.CancelledError) as error:
            # CancelledError is not an Exception; the run still has to be closed.
            status = (
                "cancelled"
                if isinstance(error, (WorkflowCancelledError, asyncio.CancelledError))
                else "error"
            )
            message = describe_error(error)
            self._publish(
                tracked,
                execution_id,
                timeline_event(
                    "workflow-error",
                    status=status,
                    status_message=message,
                    parent_event_id=start_event.event_id,
                    metadata=workflow_metadata,
                    start_time=start_event.start_time,
                ),
            )
            stream_event("workflow-error", error=message)
            if tracked:
                self.registry.record_workflow_execution_end(
                    self.id, execution_id, status, error=error
                )
            final = state_manager.fail(error)
            logger.warning(f"Workflow {self.id} execution {execution_id} {status}: {message}")
            await _call_hook(self.hooks.on_end, final)
            raise

        final = state_manager.finish()
        self._publish(
            tracked,
            execution_id,
            timeline_event(
                "workflow-success",
                status="completed",
                output=final.result,
                parent_event_id=start_event.event_id,
                metadata=workflow_metadata,
                start_time=start_event.start_time,
            ),
        )
        stream_event("workflow-complete", output=final.result)
        if tracked:
            self.registry.record_workflow_execution_end(
                self.id, execution_id, "completed", output=final.result
            )
        logger.info(f"Workflow {self.id} execution {execution_id} completed")
        await _call_hook(self.hooks.on_end, final)
        return WorkflowRunResult(
            execution_id=execution_id,
            workflow_id=self.id,
            start_at=final.start_at,
            end_at=final.end_at,
            status="completed",
            result=final.result,
        )

    async def _run_step(
        self,
        index: int,
        context: WorkflowExecutionContext,
        state_manager: WorkflowStateManager[Any, Any],
        *,
        tracked: bool,
        parent_event_id: str,
        stream_event: Callable[..., None],
        user_id: Optional[str],
        conversation_id: Optional[str],
        resume_data: Any,
    ) -> None:
        step = self.steps[index]
        step_name = step.name or f"Step {index + 1}"
        data = state_manager.state.data
        metadata = self._step_metadata(context, index, step)
        stream_fields = {
            "step_index": index,
            "step_id": step.id,
            "step_name": step_name,
            "step_type": step.type.value,
        }

        await _call_hook(self.hooks.on_step_start, state_manager.state)
        if tracked:
            entry = self.registry.record_workflow_step_start(
                self.id,
                context.execution_id,
                index,
                step.type.value,
                step_name,
                step.id,
                data,
            )
        else:
            entry = WorkflowStepHistoryEntry(
                workflow_history_id=context.execution_id,
                step_index=index,
                step_type=step.type.value,
                step_name=step_name,
                step_id=step.id,
                start_time=utcnow(),
                input=data,
            )
        context.advance(context.progress.begin(index, entry))

        start_event = timeline_event(
            "step-start",
            status="running",
            input=data,
            parent_event_id=parent_event_id,
            metadata=metadata,
        )
        self._publish(tracked, context.execution_id, start_event)
        stream_event("step-start", input=data, **stream_fields)

        state = state_manager.state
        step_ctx = StepContext(
            execution_id=context.execution_id,
            workflow_id=self.id,
            workflow_name=self.name,
            status=state.status,
            active=state.active,
            start_at=state.start_at,
            step_index=index,
            user_context=context.user_context,
            user_id=user_id,
            conversation_id=conversation_id,
            signal=context.signal,
            workflow_context=context,
            resume_data=resume_data,
        )
        try:
            result = await step.execute(data, step_ctx)
        except WorkflowSuspendedError as suspension:
            if tracked:
                self.registry.record_workflow_step_end(
                    self.id, context.execution_id, index, "suspended"
                )
            context.advance(
                context.progress.complete(entry.model_copy(update={"status": "suspended"}))
            )
            logger.debug(f"Step {step_name} suspended: {suspension}")
            raise
        except (Exception, asyncio.CancelledError) as error:
            message = describe_error(error)
            if tracked:
                self.registry.record_workflow_step_end(
                    self.id, context.execution_id, index, "error", error=error
                )
            context.advance(
                context.progress.complete(
                    entry.model_copy(
                        update={
                            "status": "error",
                            "end_time": utcnow(),
                            "error_message": message,
                        }
                    )
                )
            )
            self._publish(
                tracked,
                context.execution_id,
                timeline_event(
                    "step-error",
                    status="error",
                    input=data,
                    status_message=message,
                    parent_event_id=parent_event_id,
                    metadata=metadata,
                    start_time=start_event.start_time,
                ),
            )
            stream_event("step-error", input=data, error=message, **stream_fields)
            raise

        state_manager.update(data=result, result=result)
        if tracked:
            self.registry.record_workflow_step_end(
                self.id, context.execution_id, index, "completed", output=result
            )
        context.advance(
            context.progress.complete(
                entry.model_copy(
                    update={"status": "completed", "end_time": utcnow(), "output": result}
                )
            )
        )
        self._publish(
            tracked,
            context.execution_id,
            timeline_event(
                "step-success",
                status="completed",
                input=data,
                output=result,
                parent_event_id=parent_event_id,
                metadata=metadata,
                start_time=start_event.start_time,
            ),
        )
        stream_event("step-complete", input=data, output=result, **stream_fields)
        await _call_hook(self.hooks.on_step_end, state_manager.state)


def create_workflow(
    config: Union[WorkflowConfig, Mapping[str, Any]],
    *steps: StepInput,
    registry: Optional[WorkflowRegistry] = None,
) -> Workflow:
    """Build a ``Workflow`` from a config and its steps, in execution order.

    Plain functions are wrapped with ``and_then``. Pass ``registry`` (or
    register the workflow with one) to get execution history.
    """
    if not isinstance(config, WorkflowConfig):
        config = WorkflowConfig.model_validate(config)
    return Workflow(config, tuple(match_step(step) for step in steps), registry=registry)


class WorkflowChain:
    """Fluent builder for a workflow.

    Each ``and_*`` method appends the step built by the matching
    combinator and returns the chain, so a workflow reads top to bottom:

        >>> result = await (
        ...     create_workflow_chain({"id": "greeter", "name": "Greeter"})
        ...     .and_then(lambda data: {**data, "name": data["name"] + " john"})
        ...     .and_when(lambda data: data["vip"], lambda data: {**data, "badge": "gold"})
        ...     .run({"name": "Who is", "vip": True})
        ... )
    """

    def __init__(
        self,
        config: Union[WorkflowConfig, Mapping[str, Any]],
        registry: Optional[WorkflowRegistry] = None,
    ):
        if not isinstance(config, WorkflowConfig):
            config = WorkflowConfig.model_validate(config)
        self.config = config
        self.registry = registry
        self.steps: List[WorkflowStep] = []

    def __repr__(self) -> str:
        return f"WorkflowChain(id={self.config.id!r}, steps={len(self.steps)})"

    def _append(self, step: StepInput) -> WorkflowChain:
        self.steps.append(match_step(step))
        return self

    def and_then(self, fn: StepInput, **options: Any) -> WorkflowChain:
        return self._append(and_then(fn, **options))

    def and_when(
        self, condition: Callable[..., Any], step: StepInput, **options: Any
    ) -> WorkflowChain:
        return self._append(and_when(condition, step, **options))

    def and_with(self, pattern: Any, step: StepInput, **options: Any) -> WorkflowChain:
        return self._append(and_with(pattern, step, **options))

    def and_branch(
        self, branches: Sequence[Tuple[Callable[..., Any], StepInput]], **options: Any
    ) -> WorkflowChain:
        return self._append(and_branch(branches, **options))

    def and_all(self, steps: Sequence[StepInput], **options: Any) -> WorkflowChain:
        return self._append(and_all(steps, **options))

    def and_race(self, steps: Sequence[StepInput], **options: Any) -> WorkflowChain:
        return self._append(and_race(steps, **options))

    def and_do_while(
        self,
        step: Optional[StepInput] = None,
        *,
        condition: Callable[..., Any],
        **options: Any,
    ) -> WorkflowChain:
        return self._append(and_do_while(step, condition=condition, **options))

    def and_do_until(
        self,
        step: Optional[StepInput] = None,
        *,
        condition: Callable[..., Any],
        **options: Any,
    ) -> WorkflowChain:
        return self._append(and_do_until(step, condition=condition, **options))

    def and_for_each(self, step: StepInput, **options: Any) -> WorkflowChain:
        return self._append(and_for_each(step, **options))

    def and_sleep(self, duration: Any, **options: Any) -> WorkflowChain:
        return self._append(and_sleep(duration, **options))

    def and_sleep_until(self, until: Any, **options: Any) -> WorkflowChain:
        return self._append(and_sleep_until(until, **options))

    def and_agent(self, agent: Any, schema: Any = str, **options: Any) -> WorkflowChain:
        return self._append(and_agent(agent, schema, **options))

    def to_workflow(self) -> Workflow:
        """Snapshot the steps appended so far into a ``Workflow``."""
        return Workflow(self.config, tuple(self.steps), registry=self.registry)

    async def run(self, input: Any, **options: Any) -> WorkflowRunResult:
        return await self.to_workflow().run(input, **options)

    def stream(self, input: Any, **options: Any) -> WorkflowStream:
        return self.to_workflow().stream(input, **options)

    async def resume(
        self,
        checkpoint: Union[WorkflowSuspensionCheckpoint, Mapping[str, Any]],
        resume_data: Any = None,
        **options: Any,
    ) -> WorkflowRunResult:
        return await self.to_workflow().resume(checkpoint, resume_data, **options)


def create_workflow_chain(
    config: Union[WorkflowConfig, Mapping[str, Any]],
    registry: Optional[WorkflowRegistry] = None,
) -> WorkflowChain:
    return WorkflowChain(config, registry=registry)
