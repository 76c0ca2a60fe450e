import asyncio
import logging
from datetime import datetime, timedelta, timezone

import pytest
from pydantic import BaseModel, ValidationError
from pydantic_ai import Agent
from pydantic_ai.models.test import TestModel

from voltflow import (
    CancellationToken,
    WorkflowCancelledError,
    WorkflowChain,
    WorkflowConfig,
    WorkflowConfigurationError,
    WorkflowHooks,
    WorkflowRegistry,
    and_do_while,
    and_then,
    create_workflow,
    create_workflow_chain,
)
from voltflow.persistence import InMemoryWorkflowStorage


class Counter(BaseModel):
    counter: int


def add_one(data):
    return {**data, "counter": data["counter"] + 1}


def _tracked(*steps, **config):
    registry = WorkflowRegistry(storage=InMemoryWorkflowStorage())
    workflow = create_workflow(
        WorkflowConfig(id="counter", name="Counter", **config), *steps, registry=registry
    )
    registry.register_workflow(workflow)
    return workflow, registry


@pytest.mark.asyncio
async def test_run_without_registry():
    workflow = create_workflow({"id": "plain", "name": "Plain"}, add_one, add_one)

    result = await workflow.run({"counter": 0})

    assert result.status == "completed"
    assert result.result == {"counter": 2}
    assert result.workflow_id == "plain"
    assert result.end_at >= result.start_at


@pytest.mark.asyncio
async def test_empty_workflow_returns_no_result():
    workflow = create_workflow({"id": "empty", "name": "Empty"})
    result = await workflow.run({"counter": 0})
    assert result.status == "completed"
    assert result.result is None


@pytest.mark.asyncio
async def test_hooks_fire_in_order():
    calls = []

    async def on_start(state):
        calls.append(("start", state.data))

    hooks = WorkflowHooks(
        on_start=on_start,
        on_step_start=lambda state: calls.append(("step_start", state.data)),
        on_step_end=lambda state: calls.append(("step_end", state.result)),
        on_end=lambda state: calls.append(("end", state.status)),
    )
    workflow = create_workflow(
        WorkflowConfig(id="hooks", name="Hooks", hooks=hooks), add_one, add_one
    )

    await workflow.run({"counter": 0})

    assert calls == [
        ("start", {"counter": 0}),
        ("step_start", {"counter": 0}),
        ("step_end", {"counter": 1}),
        ("step_start", {"counter": 1}),
        ("step_end", {"counter": 2}),
        ("end", "completed"),
    ]


@pytest.mark.asyncio
async def test_step_error_is_reraised_and_recorded():
    class PaymentDeclined(Exception):
        pass

    def decline(data):
        raise PaymentDeclined("card declined")

    ended = []
    workflow, registry = _tracked(
        add_one, decline, hooks=WorkflowHooks(on_end=lambda state: ended.append(state))
    )

    with pytest.raises(PaymentDeclined, match="card declined"):
        await workflow.run({"counter": 0})
    await registry.flush()

    assert ended[0].status == "failed"
    assert isinstance(ended[0].error, PaymentDeclined)
    [execution] = await registry.get_workflow_executions("counter")
    assert execution.status == "error"
    assert execution.error_message == "card declined"
    assert [(s.step_index, s.status) for s in execution.steps] == [
        (0, "completed"),
        (1, "error"),
    ]
    assert [e.name for e in execution.events] == [
        "workflow-start",
        "step-start",
        "step-success",
        "step-start",
        "step-error",
        "workflow-error",
    ]


@pytest.mark.asyncio
async def test_cancelled_run_is_recorded_as_cancelled():
    signal = CancellationToken()
    signal.cancel("stop")
    workflow, registry = _tracked(
        and_do_while(add_one, condition=lambda data: data["counter"] < 10)
    )

    with pytest.raises(WorkflowCancelledError):
        await workflow.run({"counter": 0}, signal=signal)
    await registry.flush()

    [execution] = await registry.get_workflow_executions("counter")
    assert execution.status == "cancelled"


@pytest.mark.asyncio
async def test_cancel_stops_a_long_loop():
    signal = CancellationToken()
    seen = []

    async def tick(data):
        seen.append(data["counter"])
        if data["counter"] == 2:
            signal.cancel()
        await asyncio.sleep(0)
        return {"counter": data["counter"] + 1}

    workflow = create_workflow(
        {"id": "ticker", "name": "Ticker"},
        and_do_while(tick, condition=lambda data: True),
    )

    with pytest.raises(WorkflowCancelledError):
        await workflow.run({"counter": 0}, signal=signal)
    assert seen == [0, 1, 2]


@pytest.mark.asyncio
async def test_input_schema_rejects_bad_input():
    workflow, registry = _tracked(add_one, input_schema=Counter)

    with pytest.raises(WorkflowConfigurationError):
        await workflow.run({"counter": "not a number"})

    assert registry.get_workflow("counter").execution_count == 0


@pytest.mark.asyncio
async def test_result_schema_validates_final_result():
    workflow = create_workflow(
        WorkflowConfig(id="typed", name="Typed", result_schema=Counter), add_one
    )
    result = await workflow.run({"counter": 0})
    assert result.result == Counter(counter=1)

    broken = create_workflow(
        WorkflowConfig(id="broken", name="Broken", result_schema=Counter),
        lambda data: {"unexpected": True},
    )
    with pytest.raises(ValidationError):
        await broken.run({})


@pytest.mark.asyncio
async def test_user_context_is_shared_by_steps():
    def remember(data, ctx):
        ctx.user_context["seen"] = ctx.user_context.get("seen", 0) + 1
        return {**data, "tenant": ctx.user_context["tenant"], "user": ctx.user_id}

    def check(data, ctx):
        return {**data, "seen": ctx.user_context["seen"], "index": ctx.step_index}

    workflow = create_workflow({"id": "ctx", "name": "Ctx"}, remember, check)
    result = await workflow.run({}, user_context={"tenant": "acme"}, user_id="u1")

    assert result.result == {"tenant": "acme", "user": "u1", "seen": 1, "index": 1}


@pytest.mark.asyncio
async def test_unregistered_workflow_runs_without_history(caplog):
    registry = WorkflowRegistry(storage=InMemoryWorkflowStorage())
    workflow = create_workflow({"id": "ghost", "name": "Ghost"}, add_one, registry=registry)

    result = await workflow.run({"counter": 0})
    await registry.flush()

    assert result.result == {"counter": 1}
    assert "proceeding without history tracking" in caplog.text
    assert await registry.get_workflow_executions("ghost") == []


@pytest.mark.asyncio
async def test_execution_count_increments_per_run():
    workflow, registry = _tracked(add_one)
    await workflow.run({"counter": 0})
    await workflow.run({"counter": 5})
    await registry.flush()

    assert registry.get_workflow("counter").execution_count == 2
    executions = await registry.get_workflow_executions("counter")
    assert [e.output for e in executions] == [{"counter": 1}, {"counter": 6}]


@pytest.mark.asyncio
async def test_execution_count_includes_failed_and_cancelled_runs():
    def fail(data):
        raise RuntimeError("boom")

    failing, failing_registry = _tracked(fail)
    with pytest.raises(RuntimeError):
        await failing.run({"counter": 0})
    assert failing_registry.get_workflow("counter").execution_count == 1

    signal = CancellationToken()
    signal.cancel()
    looping, looping_registry = _tracked(
        and_do_while(add_one, condition=lambda data: True)
    )
    with pytest.raises(WorkflowCancelledError):
        await looping.run({"counter": 0}, signal=signal)
    assert looping_registry.get_workflow("counter").execution_count == 1


@pytest.mark.asyncio
async def test_task_cancellation_closes_the_execution():
    ended = []

    async def slow(data):
        await asyncio.sleep(10)
        return data

    workflow, registry = _tracked(
        add_one, slow, hooks=WorkflowHooks(on_end=lambda state: ended.append(state))
    )

    task = asyncio.ensure_future(workflow.run({"counter": 0}))
    await asyncio.sleep(0.05)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    await registry.flush()

    [execution] = await registry.get_workflow_executions("counter")
    assert execution.status == "cancelled"
    assert execution.end_time is not None
    assert [(s.step_index, s.status) for s in execution.steps] == [
        (0, "completed"),
        (1, "error"),
    ]
    assert [e.name for e in execution.events][-2:] == ["step-error", "workflow-error"]
    assert ended[0].status == "failed"
    assert registry.get_workflow("counter").execution_count == 1


@pytest.mark.asyncio
async def test_run_without_registry_does_not_warn(caplog):
    caplog.set_level(logging.WARNING)
    workflow = create_workflow({"id": "plain", "name": "Plain"}, add_one)

    await workflow.run({"counter": 0})

    assert [r for r in caplog.records if r.levelno >= logging.WARNING] == []


@pytest.mark.asyncio
async def test_stream_yields_lifecycle_events_in_order():
    workflow, registry = _tracked(add_one, add_one)

    stream = workflow.stream({"counter": 0})
    events = [event async for event in stream]
    result = await stream.result()

    assert [(e.type, e.step_index) for e in events] == [
        ("workflow-start", None),
        ("step-start", 0),
        ("step-complete", 0),
        ("step-start", 1),
        ("step-complete", 1),
        ("workflow-complete", None),
    ]
    assert events[-1].output == result.result == {"counter": 2}
    assert {e.execution_id for e in events} == {result.execution_id}

    with pytest.raises(RuntimeError):
        async for _ in stream:
            pass


@pytest.mark.asyncio
async def test_stream_result_raises_like_run():
    def explode(data):
        raise ValueError("boom")

    workflow = create_workflow({"id": "boom", "name": "Boom"}, explode)
    stream = workflow.stream({})

    events = [event async for event in stream]
    assert [e.type for e in events] == [
        "workflow-start",
        "step-start",
        "step-error",
        "workflow-error",
    ]
    assert events[-1].error == "boom"
    with pytest.raises(ValueError, match="boom"):
        await stream.result()


@pytest.mark.asyncio
async def test_suspend_and_resume():
    def approve(data, ctx):
        if ctx.resume_data is None:
            ctx.suspend("needs approval", {"amount": data["counter"]})
        return {**data, "approved_by": ctx.resume_data["by"]}

    workflow, registry = _tracked(add_one, approve, add_one)

    suspended = await workflow.run({"counter": 0})
    await registry.flush()

    assert suspended.status == "suspended"
    checkpoint = suspended.suspension
    assert checkpoint.step_index == 1
    assert checkpoint.data == {"counter": 1}
    assert checkpoint.suspend_data == {"amount": 1}
    stored = await registry.get_workflow_execution(suspended.execution_id)
    assert stored.status == "suspended"
    assert stored.suspension == checkpoint

    resumed = await workflow.resume(checkpoint.model_dump(mode="json"), {"by": "alice"})
    await registry.flush()

    assert resumed.status == "completed"
    assert resumed.execution_id == suspended.execution_id
    assert resumed.result == {"counter": 2, "approved_by": "alice"}
    stored = await registry.get_workflow_execution(suspended.execution_id)
    assert stored.status == "completed"
    assert registry.get_workflow("counter").execution_count == 1


@pytest.mark.asyncio
async def test_resume_rejects_foreign_checkpoint():
    workflow, _ = _tracked(add_one)
    with pytest.raises(WorkflowConfigurationError):
        await workflow.resume(
            {"execution_id": "x", "workflow_id": "other", "step_index": 0, "data": {}}
        )
    with pytest.raises(WorkflowConfigurationError):
        await workflow.resume(
            {"execution_id": "x", "workflow_id": "counter", "step_index": 4, "data": {}}
        )


@pytest.mark.asyncio
async def test_workflow_chain_appends_steps_in_order():
    registry = WorkflowRegistry(storage=InMemoryWorkflowStorage())
    chain = create_workflow_chain(
        {"id": "orders", "name": "Orders", "purpose": "Prices an order"}, registry=registry
    )

    returned = (
        chain.and_then(lambda data: {**data, "discount": 0}, name="Load")
        .and_when(lambda data: data["vip"], lambda data: {**data, "discount": 10})
        .and_with({"vip": True}, lambda data: {**data, "priority": "high"})
        .and_do_while(add_one, condition=lambda data: data["counter"] < 3)
        .and_do_until(add_one, condition=lambda data: data["counter"] >= 5)
        .and_sleep(0)
        .and_sleep_until(datetime.now(timezone.utc) - timedelta(seconds=1))
        .and_all([lambda data: data["counter"], lambda data: data["discount"]])
        .and_race([lambda items: items])
        .and_for_each(lambda item: item * 2)
        .and_branch(
            [
                (lambda items: items[0] > 5, lambda items: sum(items)),
                (lambda items: False, lambda items: 0),
            ]
        )
        .and_then(lambda slots: {"total": slots[0]})
        .and_agent(Agent(TestModel(), name="writer"), task="Write a receipt")
    )
    assert returned is chain
    assert isinstance(chain, WorkflowChain)

    workflow = chain.to_workflow()
    assert workflow.id == "orders"
    assert workflow.purpose == "Prices an order"
    assert workflow.registry is registry
    assert [step.type.value for step in workflow.steps] == [
        "func",
        "conditional-when",
        "conditional-with",
        "loop",
        "loop",
        "sleep",
        "sleep",
        "parallel-all",
        "parallel-race",
        "foreach",
        "branch",
        "func",
        "agent",
    ]
    registry.register_workflow(workflow)

    result = await chain.run({"counter": 0, "vip": True})
    await registry.flush()

    assert result.status == "completed"
    assert isinstance(result.result, str)
    execution = await registry.get_workflow_execution(result.execution_id)
    outputs = [step.output for step in execution.steps]
    assert outputs[2] == {"counter": 0, "vip": True, "discount": 10, "priority": "high"}
    assert outputs[4]["counter"] == 5
    assert outputs[7:12] == [[5, 10], [5, 10], [10, 20], [30, None], {"total": 30}]
    assert registry.get_workflow("orders").execution_count == 1


@pytest.mark.asyncio
async def test_workflow_chain_streams_like_a_workflow():
    chain = create_workflow_chain({"id": "chain", "name": "Chain"}).and_then(
        and_then(lambda data: data + 1)
    )
    chain.and_then(lambda data: data * 3)

    stream = chain.stream(1)
    outputs = [e.output async for e in stream if e.type == "step-complete"]

    assert outputs == [2, 6]
    assert (await stream.result()).result == 6
