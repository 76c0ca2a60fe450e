"""Lifecycle events: timeline records, stream events and the delivery queue."""

from __future__ import annotations

import asyncio
import logging
import random
from collections import deque
from datetime import datetime
from typing import Any, Awaitable, Callable, Deque, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from .config import EventQueueConfig
from .persistence.models import WorkflowTimelineEvent, new_id, utcnow

logger = logging.getLogger(__name__)

TimelineEventName = Literal[
    "workflow-start",
    "workflow-success",
    "workflow-error",
    "workflow-suspended",
    "step-start",
    "step-success",
    "step-error",
]

StreamEventType = Literal[
    "workflow-start",
    "step-start",
    "step-complete",
    "step-error",
    "workflow-complete",
    "workflow-error",
    "workflow-suspended",
]


def timeline_event(
    name: TimelineEventName,
    *,
    status: str,
    input: Any = None,
    output: Any = None,
    status_message: Optional[str] = None,
    parent_event_id: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
    start_time: Optional[datetime] = None,
) -> WorkflowTimelineEvent:
    """Build a timeline record for one lifecycle phase.

    Workflow-level phases get type ``workflow``; step phases get
    ``workflow-step`` and are linked to the run's start event through
    ``parent_event_id``. Terminal phases are stamped with an end time.
    """
    now = utcnow()
    terminal = not name.endswith("-start")
    return WorkflowTimelineEvent(
        event_id=new_id(),
        name=name,
        type="workflow-step" if name.startswith("step-") else "workflow",
        start_time=start_time or now,
        end_time=now if terminal else None,
        status=status,
        level="ERROR" if name.endswith("-error") else "INFO",
        input=input,
        output=output,
        status_message=status_message,
        metadata=metadata or {},
        parent_event_id=parent_event_id,
    )


class QueuedEvent(BaseModel):
    """A timeline event waiting for delivery to the event sinks."""

    execution_id: str
    workflow_id: str
    event: WorkflowTimelineEvent


class WorkflowStreamEvent(BaseModel):
    """Event yielded by ``Workflow.stream`` as a run progresses."""

    type: StreamEventType
    execution_id: str
    workflow_id: str
    step_index: Optional[int] = None
    step_id: Optional[str] = None
    step_name: Optional[str] = None
    step_type: Optional[str] = None
    input: Any = None
    output: Any = None
    error: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)


EventSink = Callable[[QueuedEvent], Awaitable[None]]


def compute_backoff(attempt: int, base: float = 1.5, jitter: float = 0.5) -> float:
    """Compute exponential backoff with jitter."""
    delay = base ** attempt
    return delay + random.uniform(0, jitter)


class WorkflowEventQueue:
    """Bounded queue of timeline events drained by a single consumer task.

    ``publish`` never blocks and never raises: when the queue is full the
    oldest event is dropped. The consumer delivers each event to every sink,
    retrying failed deliveries with exponential backoff before logging and
    giving up on that sink.
    """

    def __init__(
        self,
        max_size: int = 1000,
        max_retries: int = 3,
        backoff_base: float = 1.5,
        jitter: float = 0.5,
        sinks: Optional[List[EventSink]] = None,
    ) -> None:
        self._events: Deque[QueuedEvent] = deque(maxlen=max_size)
        self._sinks: List[EventSink] = list(sinks or [])
        self._drain_task: Optional[asyncio.Task] = None
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.jitter = jitter
        self.dropped = 0

    @classmethod
    def from_config(cls, config: EventQueueConfig) -> "WorkflowEventQueue":
        return cls(
            max_size=config.max_size,
            max_retries=config.max_retries,
            backoff_base=config.backoff_base,
            jitter=config.jitter,
        )

    def __len__(self) -> int:
        return len(self._events)

    def add_sink(self, sink: EventSink) -> None:
        self._sinks.append(sink)

    def remove_sink(self, sink: EventSink) -> None:
        if sink in self._sinks:
            self._sinks.remove(sink)

    def publish(self, event: QueuedEvent) -> None:
        if len(self._events) == self._events.maxlen:
            self.dropped += 1
            logger.warning(
                f"Event queue full, dropping oldest event "
                f"{self._events[0].event.name} for execution {self._events[0].execution_id}"
            )
        self._events.append(event)
        self._ensure_drain()

    def _ensure_drain(self) -> Optional[asyncio.Task]:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # delivered by the next flush() on a running loop
            return None
        task = self._drain_task
        if task is None or task.done() or task.get_loop() is not loop:
            task = loop.create_task(self._drain())
            self._drain_task = task
        return task

    async def _drain(self) -> None:
        while self._events:
            await self._deliver(self._events.popleft())

    async def _deliver(self, queued: QueuedEvent) -> None:
        for sink in list(self._sinks):
            attempt = 0
            while True:
                try:
                    await sink(queued)
                    break
                except Exception as exc:
                    attempt += 1
                    if attempt > self.max_retries:
                        logger.warning(
                            f"Dropping event {queued.event.name} for execution "
                            f"{queued.execution_id} after {attempt} attempts: {exc}"
                        )
                        break
                    delay = compute_backoff(attempt, self.backoff_base, self.jitter)
                    logger.debug(
                        f"Delivery of {queued.event.name} failed ({exc}), "
                        f"retrying in {delay:.2f}s"
                    )
                    await asyncio.sleep(delay)

    async def flush(self) -> None:
        """Wait until every queued event has been delivered or dropped."""
        while self._events or (
            self._drain_task is not None and not self._drain_task.done()
        ):
            task = self._ensure_drain()
            if task is None:
                return
            await task
