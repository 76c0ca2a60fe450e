"""Catalogue of workflow definitions and the bookkeeping of their executions.

A ``WorkflowRegistry`` is constructed explicitly and handed to whatever needs
it (workflows, the CLI, a server). It owns:

* the registered workflow definitions, keyed by workflow id;
* one lazily created ``WorkflowHistoryManager`` per workflow, all sharing the
  storage backend given at construction (or none, in which case nothing is
  persisted);
* the event queue whose sink persists timeline events;
* a small listener surface for observers such as a UI.

Execution start is awaited because its id is authoritative for the run. Every
other write is scheduled as a background task; failures are logged and never
reach the workflow. ``flush()`` waits for all of them.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import threading
from collections import defaultdict
from datetime import datetime
from functools import partial
from typing import (
    TYPE_CHECKING,
    Any,
    Awaitable,
    Callable,
    Dict,
    List,
    Literal,
    Optional,
    Set,
)

from pydantic import BaseModel, ConfigDict, Field

from .config import VoltflowConfig, load_config
from .errors import WorkflowNotRegisteredError, describe_error
from .events import QueuedEvent, WorkflowEventQueue
from .history import WorkflowHistoryManager
from .persistence import get_storage
from .persistence.models import (
    WorkflowHistoryEntry,
    WorkflowStats,
    WorkflowStepHistoryEntry,
    WorkflowSuspensionCheckpoint,
    WorkflowTimelineEvent,
    new_id,
    utcnow,
)
from .persistence.repository import WorkflowStorage
from .steps import (
    AgentStep,
    BranchStep,
    ConditionalWhenStep,
    ConditionalWithStep,
    ForEachStep,
    FuncStep,
    LoopStep,
    ParallelAllStep,
    ParallelRaceStep,
    SleepStep,
    WorkflowStep,
)

if TYPE_CHECKING:
    from .workflow import Workflow

logger = logging.getLogger(__name__)

RegistryEvent = Literal[
    "workflow_registered",
    "workflow_unregistered",
    "history_created",
    "history_update",
]
Listener = Callable[..., Any]


class RegisteredWorkflow(BaseModel):
    """A workflow definition together with its run counters."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    workflow: Any
    registered_at: datetime = Field(default_factory=utcnow)
    execution_count: int = 0
    last_executed_at: Optional[datetime] = None
    input_schema: Any = None


def workflow_step_node_id(
    step_type: str, index: int, workflow_id: str, parallel_index: Optional[int] = None
) -> str:
    node_id = f"workflow_{workflow_id}_{step_type}_{index}"
    if parallel_index is not None:
        node_id = f"{node_id}_{parallel_index}"
    return node_id


def _source(fn: Callable[..., Any]) -> str:
    try:
        return inspect.getsource(fn).strip()
    except (OSError, TypeError):
        return repr(fn)


def _sub_steps(steps: Any, index: int, workflow_id: str) -> List[Dict[str, Any]]:
    serialized = []
    for sub_index, sub_step in enumerate(steps):
        item = serialize_workflow_step(sub_step, sub_index, workflow_id)
        item["node_id"] = workflow_step_node_id(
            sub_step.type.value, index * 1000 + sub_index, workflow_id, sub_index
        )
        serialized.append(item)
    return serialized


def serialize_workflow_step(
    step: WorkflowStep, index: int, workflow_id: str
) -> Dict[str, Any]:
    """Describe ``step`` for display; functions are rendered as their source."""
    data: Dict[str, Any] = {
        "id": step.id,
        "name": step.name or f"Step {index + 1}",
        "purpose": step.purpose,
        "type": step.type.value,
        "step_index": index,
    }

    if isinstance(step, AgentStep):
        data["agent_name"] = getattr(step.agent, "name", None)
        if isinstance(step.task, str):
            data["task_string"] = step.task
        elif step.task is not None:
            data["task_function"] = _source(step.task)
    elif isinstance(step, FuncStep):
        data["execute_function"] = _source(step.fn)
    elif isinstance(step, ConditionalWhenStep):
        data["condition_function"] = _source(step.condition)
        data["nested_step"] = serialize_workflow_step(step.step, 0, workflow_id)
    elif isinstance(step, ConditionalWithStep):
        data["pattern"] = repr(step.pattern)
        data["nested_step"] = serialize_workflow_step(step.step, 0, workflow_id)
    elif isinstance(step, (ParallelAllStep, ParallelRaceStep)):
        data["sub_steps"] = _sub_steps(step.steps, index, workflow_id)
        data["sub_steps_count"] = len(step.steps)
    elif isinstance(step, LoopStep):
        data["loop_type"] = step.loop_type
        data["condition_function"] = _source(step.condition)
        data["sub_steps"] = _sub_steps(step.steps, index, workflow_id)
        data["sub_steps_count"] = len(step.steps)
    elif isinstance(step, ForEachStep):
        data["nested_step"] = serialize_workflow_step(step.step, 0, workflow_id)
    elif isinstance(step, BranchStep):
        data["branches"] = [
            {
                "condition_function": _source(condition),
                "step": serialize_workflow_step(branch, branch_index, workflow_id),
            }
            for branch_index, (condition, branch) in enumerate(step.branches)
        ]
    elif isinstance(step, SleepStep):
        if step.until is not None:
            data["until"] = (
                step.until.isoformat()
                if isinstance(step.until, datetime)
                else _source(step.until)
            )
        elif callable(step.duration):
            data["duration_function"] = _source(step.duration)
        else:
            data["duration"] = step.duration

    data["node_id"] = workflow_step_node_id(step.type.value, index, workflow_id)
    return data


class WorkflowRegistry:
    """Registered workflows, their execution history and change notifications."""

    def __init__(
        self,
        storage: Optional[WorkflowStorage] = None,
        event_queue: Optional[WorkflowEventQueue] = None,
    ) -> None:
        self.storage = storage
        self.event_queue = event_queue or WorkflowEventQueue()
        self.event_queue.add_sink(self._persist_queued_event)
        self._workflows: Dict[str, RegisteredWorkflow] = {}
        self._history_managers: Dict[str, WorkflowHistoryManager] = {}
        self._listeners: Dict[str, List[Listener]] = defaultdict(list)
        self._lock = threading.Lock()
        self._pending: Set[asyncio.Task] = set()
        self._write_lock: Optional[asyncio.Lock] = None
        self._write_lock_loop: Optional[asyncio.AbstractEventLoop] = None
        logger.debug(
            f"Workflow registry initialized with storage {type(storage).__name__}"
        )

    # ------------------------------------------------------------------
    # Listeners
    def on(self, event: RegistryEvent, listener: Listener) -> None:
        with self._lock:
            self._listeners[event].append(listener)

    def off(self, event: RegistryEvent, listener: Listener) -> None:
        with self._lock:
            if listener in self._listeners[event]:
                self._listeners[event].remove(listener)

    def emit(self, event: RegistryEvent, *args: Any) -> None:
        """Notify listeners of ``event``; a failing listener is only logged."""
        with self._lock:
            listeners = list(self._listeners[event])
        for listener in listeners:
            try:
                result = listener(*args)
            except Exception as exc:
                logger.warning(f"Listener for {event} failed: {exc}")
                continue
            if inspect.isawaitable(result):
                self._spawn(result, f"notify {event} listener", ordered=False)

    # ------------------------------------------------------------------
    # Definitions
    def register_workflow(self, workflow: "Workflow") -> RegisteredWorkflow:
        """Add or replace ``workflow``; registering an id twice overwrites it."""
        registered = RegisteredWorkflow(
            workflow=workflow, input_schema=getattr(workflow, "input_schema", None)
        )
        with self._lock:
            self._workflows[workflow.id] = registered
        if getattr(workflow, "registry", None) is None:
            workflow.registry = self
        logger.info(f"Registered workflow {workflow.id}")
        self.emit("workflow_registered", workflow.id, registered)
        return registered

    def unregister_workflow(self, workflow_id: str) -> None:
        with self._lock:
            removed = self._workflows.pop(workflow_id, None)
        if removed is not None:
            logger.info(f"Unregistered workflow {workflow_id}")
            self.emit("workflow_unregistered", workflow_id)

    def get_workflow(self, workflow_id: str) -> Optional[RegisteredWorkflow]:
        with self._lock:
            return self._workflows.get(workflow_id)

    def get_all_workflows(self) -> List[RegisteredWorkflow]:
        with self._lock:
            return list(self._workflows.values())

    def is_workflow_registered(self, workflow_id: str) -> bool:
        with self._lock:
            return workflow_id in self._workflows

    def get_all_workflow_ids(self) -> List[str]:
        with self._lock:
            return list(self._workflows)

    def get_workflow_count(self) -> int:
        with self._lock:
            return len(self._workflows)

    def get_total_execution_count(self) -> int:
        with self._lock:
            return sum(w.execution_count for w in self._workflows.values())

    def get_summary(self) -> Dict[str, Any]:
        return {
            "total_workflows": self.get_workflow_count(),
            "total_executions": self.get_total_execution_count(),
            "registered_workflow_ids": self.get_all_workflow_ids(),
        }

    def get_workflows_for_api(self) -> List[Dict[str, Any]]:
        return [
            {
                "id": registered.workflow.id,
                "name": registered.workflow.name,
                "purpose": registered.workflow.purpose,
                "steps_count": len(registered.workflow.steps),
                "status": "idle",
            }
            for registered in self.get_all_workflows()
        ]

    def get_workflow_detail_for_api(self, workflow_id: str) -> Optional[Dict[str, Any]]:
        registered = self.get_workflow(workflow_id)
        if registered is None:
            return None
        workflow = registered.workflow
        return {
            "id": workflow.id,
            "name": workflow.name,
            "purpose": workflow.purpose,
            "steps_count": len(workflow.steps),
            "status": "idle",
            "steps": [
                serialize_workflow_step(step, index, workflow.id)
                for index, step in enumerate(workflow.steps)
            ],
        }

    def get_workflow_history_manager(self, workflow_id: str) -> WorkflowHistoryManager:
        with self._lock:
            manager = self._history_managers.get(workflow_id)
            if manager is None:
                manager = WorkflowHistoryManager(workflow_id, self.storage)
                self._history_managers[workflow_id] = manager
            return manager

    # ------------------------------------------------------------------
    # Execution bookkeeping
    async def record_workflow_execution_start(
        self,
        workflow_id: str,
        workflow_name: str,
        input: Any,
        *,
        user_id: Optional[str] = None,
        conversation_id: Optional[str] = None,
        user_context: Optional[Dict[str, Any]] = None,
    ) -> WorkflowHistoryEntry:
        """Persist a new running execution and return its history entry.

        Raises:
            WorkflowNotRegisteredError: ``workflow_id`` is not registered.
        """
        registered = self.get_workflow(workflow_id)
        if registered is None:
            raise WorkflowNotRegisteredError(workflow_id)

        entry = WorkflowHistoryEntry(
            id=new_id(),
            workflow_id=workflow_id,
            workflow_name=workflow_name,
            input=input,
            user_id=user_id,
            conversation_id=conversation_id,
            metadata={"user_context": user_context} if user_context else {},
        )
        try:
            await self.get_workflow_history_manager(workflow_id).create_execution(entry)
        except Exception as exc:
            logger.warning(
                f"Failed to persist execution start for {workflow_id}, "
                f"continuing with id {entry.id}: {exc}"
            )

        with self._lock:
            registered.execution_count += 1
            registered.last_executed_at = utcnow()
        self.emit("history_created", entry)
        return entry

    def record_workflow_execution_end(
        self,
        workflow_id: str,
        execution_id: str,
        status: Literal["completed", "error", "cancelled"],
        output: Any = None,
        error: Optional[BaseException] = None,
    ) -> None:
        updates: Dict[str, Any] = {"status": status, "end_time": utcnow(), "output": output}
        if error is not None:
            updates["error_message"] = describe_error(error)
        manager = self.get_workflow_history_manager(workflow_id)
        self._spawn(
            manager.update_execution(execution_id, updates),
            f"record end of execution {execution_id}",
        )

    def record_workflow_execution_suspended(
        self, workflow_id: str, checkpoint: WorkflowSuspensionCheckpoint
    ) -> None:
        manager = self.get_workflow_history_manager(workflow_id)

        async def persist() -> None:
            current = await manager.get_execution_with_details(checkpoint.execution_id)
            metadata = dict(current.metadata) if current else {}
            metadata["suspension"] = checkpoint.model_dump(mode="json")
            await manager.update_execution(
                checkpoint.execution_id,
                {"status": "suspended", "end_time": utcnow(), "metadata": metadata},
            )

        self._spawn(persist(), f"record suspension of {checkpoint.execution_id}")

    def record_workflow_execution_resumed(self, workflow_id: str, execution_id: str) -> None:
        manager = self.get_workflow_history_manager(workflow_id)

        async def persist() -> None:
            current = await manager.get_execution_with_details(execution_id)
            metadata = dict(current.metadata) if current else {}
            metadata.pop("suspension", None)
            metadata["resumed_at"] = utcnow().isoformat()
            await manager.update_execution(
                execution_id,
                {"status": "running", "end_time": None, "metadata": metadata},
            )

        self._spawn(persist(), f"record resume of {execution_id}")

    def record_workflow_step_start(
        self,
        workflow_id: str,
        execution_id: str,
        step_index: int,
        step_type: str,
        step_name: str,
        step_id: Optional[str] = None,
        input: Any = None,
    ) -> WorkflowStepHistoryEntry:
        step = WorkflowStepHistoryEntry(
            workflow_history_id=execution_id,
            step_index=step_index,
            step_type=step_type,
            step_name=step_name,
            step_id=step_id or f"step-{step_index}",
            start_time=utcnow(),
            input=input,
        )
        manager = self.get_workflow_history_manager(workflow_id)
        self._spawn(
            manager.record_step_start(step),
            f"record start of step {step_index} in {execution_id}",
        )
        return step

    def record_workflow_step_end(
        self,
        workflow_id: str,
        execution_id: str,
        step_index: int,
        status: Literal["completed", "error", "skipped", "suspended"],
        output: Any = None,
        error: Optional[BaseException] = None,
    ) -> None:
        updates: Dict[str, Any] = {"status": status, "end_time": utcnow(), "output": output}
        if error is not None:
            updates["error_message"] = describe_error(error)
        manager = self.get_workflow_history_manager(workflow_id)
        self._spawn(
            manager.record_step_end(execution_id, step_index, updates),
            f"record end of step {step_index} in {execution_id}",
        )

    def publish_timeline_event(
        self, workflow_id: str, execution_id: str, event: WorkflowTimelineEvent
    ) -> None:
        """Queue ``event`` for persistence; never blocks the caller."""
        self.event_queue.publish(
            QueuedEvent(execution_id=execution_id, workflow_id=workflow_id, event=event)
        )

    async def persist_workflow_timeline_event(
        self, workflow_id: str, execution_id: str, event: WorkflowTimelineEvent
    ) -> None:
        manager = self.get_workflow_history_manager(workflow_id)
        updated = await manager.persist_timeline_event(execution_id, event)
        if updated is not None:
            self.emit("history_update", execution_id, updated)

    async def _persist_queued_event(self, queued: QueuedEvent) -> None:
        await self.persist_workflow_timeline_event(
            queued.workflow_id, queued.execution_id, queued.event
        )

    # ------------------------------------------------------------------
    # Queries
    async def get_workflow_executions(self, workflow_id: str) -> List[WorkflowHistoryEntry]:
        return await self.get_workflow_history_manager(workflow_id).get_executions()

    async def get_workflow_execution(
        self, execution_id: str
    ) -> Optional[WorkflowHistoryEntry]:
        if self.storage is None:
            return None
        return await self.storage.get_execution_with_details(execution_id)

    async def get_workflow_stats(self, workflow_id: str) -> WorkflowStats:
        return await self.get_workflow_history_manager(workflow_id).get_workflow_stats()

    # ------------------------------------------------------------------
    # Lifecycle
    def clear_all(self) -> None:
        """Forget every workflow definition; persisted history is kept."""
        with self._lock:
            self._workflows.clear()
            self._history_managers.clear()

    async def clear_all_async(self) -> None:
        """Forget every workflow definition and delete all persisted history."""
        await self.flush()
        self.clear_all()
        if self.storage is None:
            return
        for workflow_id in await self.storage.get_all_workflow_ids():
            deleted = await self.get_workflow_history_manager(workflow_id).delete_executions()
            logger.debug(f"Deleted {deleted} executions of {workflow_id}")

    async def flush(self) -> None:
        """Wait for every background write and queued event to settle."""
        loop = asyncio.get_running_loop()
        while True:
            pending = [
                task
                for task in self._pending
                if task.get_loop() is loop and not task.done()
            ]
            if not pending:
                break
            await asyncio.gather(*pending, return_exceptions=True)
        await self.event_queue.flush()

    def _write_lock_for(self, loop: asyncio.AbstractEventLoop) -> asyncio.Lock:
        if self._write_lock is None or self._write_lock_loop is not loop:
            self._write_lock = asyncio.Lock()
            self._write_lock_loop = loop
        return self._write_lock

    def _spawn(
        self, coro: Awaitable[Any], description: str, ordered: bool = True
    ) -> Optional[asyncio.Task]:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            if inspect.iscoroutine(coro):
                coro.close()
            logger.warning(f"No running event loop, skipped: {description}")
            return None

        if ordered:
            # writes land in the order they were issued
            lock = self._write_lock_for(loop)

            async def run() -> Any:
                async with lock:
                    return await coro

            task = loop.create_task(run())
        else:
            task = asyncio.ensure_future(coro)
        self._pending.add(task)
        task.add_done_callback(partial(self._background_done, description))
        return task

    def _background_done(self, description: str, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning(f"Failed to {description}: {exc}")


def get_registry(
    config: Optional[VoltflowConfig] = None, database_url: Optional[str] = None
) -> WorkflowRegistry:
    """Build a registry whose storage and event queue follow configuration."""
    config = config or load_config()
    return WorkflowRegistry(
        storage=get_storage(database_url, config),
        event_queue=WorkflowEventQueue.from_config(config.events),
    )
