import asyncio

import pytest

from voltflow.context import (
    CancellationToken,
    StepContext,
    StepProgress,
    WorkflowExecutionContext,
    throw_if_cancelled,
)
from voltflow.errors import WorkflowCancelledError, WorkflowSuspendedError
from voltflow.persistence.models import WorkflowStepHistoryEntry


def _entry(index: int) -> WorkflowStepHistoryEntry:
    return WorkflowStepHistoryEntry(
        workflow_history_id="exec-1", step_index=index, step_type="func", step_name=f"s{index}"
    )


def test_cancellation_token():
    token = CancellationToken()
    throw_if_cancelled(token)
    throw_if_cancelled(None)

    token.cancel("user abort")
    token.cancel("second reason is ignored")
    assert token.cancelled
    with pytest.raises(WorkflowCancelledError, match="user abort"):
        throw_if_cancelled(token)


@pytest.mark.asyncio
async def test_cancellation_token_wait_wakes_up():
    token = CancellationToken()
    waiter = asyncio.create_task(token.wait())
    await asyncio.sleep(0)
    assert not waiter.done()

    token.cancel()
    await asyncio.wait_for(waiter, timeout=1)


def test_progress_snapshots_are_immutable():
    first = _entry(0)
    initial = StepProgress()
    begun = initial.begin(0, first)
    done = begun.complete(first.model_copy(update={"status": "completed"}))

    assert initial.steps == ()
    assert begun.steps[0].status == "running"
    assert done.steps[0].status == "completed"
    assert done.current_step_index == 0


def test_execution_context_advances_progress():
    context = WorkflowExecutionContext(
        workflow_id="wf", execution_id="exec-1", workflow_name="Test"
    )
    context.advance(context.progress.begin(0, _entry(0)))
    context.advance(context.progress.begin(1, _entry(1)))

    assert context.current_step_index == 1
    assert [s.step_index for s in context.steps] == [0, 1]


def test_step_context_suspend_and_child():
    user_context = {"tenant": "acme"}
    ctx = StepContext(
        execution_id="exec-1",
        workflow_id="wf",
        workflow_name="Test",
        user_context=user_context,
        workflow_context=WorkflowExecutionContext(
            workflow_id="wf", execution_id="exec-1", workflow_name="Test"
        ),
    )

    assert ctx.user_context is user_context
    assert ctx.for_child().workflow_context is None
    assert ctx.workflow_context is not None

    with pytest.raises(WorkflowSuspendedError) as exc_info:
        ctx.suspend("needs approval", {"amount": 10})
    assert exc_info.value.reason == "needs approval"
    assert exc_info.value.suspend_data == {"amount": 10}
