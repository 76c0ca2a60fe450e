import uuid

import pytest

from voltflow.config import StorageConfig, VoltflowConfig
from voltflow.events import timeline_event
from voltflow.persistence import (
    InMemoryWorkflowStorage,
    SQLiteWorkflowStorage,
    WorkflowHistoryEntry,
    WorkflowStepHistoryEntry,
    WorkflowSuspensionCheckpoint,
    get_storage,
)


@pytest.fixture(params=["inmemory", "sqlite"])
def storage(request, tmp_path):
    if request.param == "sqlite":
        backend = SQLiteWorkflowStorage(tmp_path / "history.db")
        yield backend
        backend.close()
    else:
        yield InMemoryWorkflowStorage()


def _execution(workflow_id: str = "wf") -> WorkflowHistoryEntry:
    return WorkflowHistoryEntry(
        id=str(uuid.uuid4()),
        workflow_id=workflow_id,
        workflow_name="Test",
        input={"counter": 0},
        user_id="user-1",
        metadata={"user_context": {"tenant": "acme"}},
    )


@pytest.mark.asyncio
async def test_execution_crud(storage):
    entry = _execution()
    await storage.create_execution(entry)

    updated = await storage.update_execution(
        entry.id, {"status": "completed", "output": {"counter": 3}}
    )
    assert updated is not None
    assert updated.status == "completed"

    stored = await storage.get_execution(entry.id)
    assert stored.workflow_id == "wf"
    assert stored.input == {"counter": 0}
    assert stored.output == {"counter": 3}
    assert stored.user_id == "user-1"
    assert stored.metadata == {"user_context": {"tenant": "acme"}}

    assert await storage.get_execution("missing") is None
    assert await storage.update_execution("missing", {"status": "error"}) is None


@pytest.mark.asyncio
async def test_steps_and_events_are_returned_with_details(storage):
    entry = _execution()
    await storage.create_execution(entry)

    step = WorkflowStepHistoryEntry(
        workflow_history_id=entry.id,
        step_index=0,
        step_type="func",
        step_name="Step 1",
        input={"counter": 0},
    )
    await storage.record_step_start(step)
    ended = await storage.record_step_end(
        step.id, {"status": "completed", "output": {"counter": 1}}
    )
    assert ended.status == "completed"

    event = timeline_event("step-start", status="running", metadata={"step_index": 0})
    await storage.record_timeline_event(entry.id, event)

    detailed = await storage.get_execution_with_details(entry.id)
    assert [s.output for s in detailed.steps] == [{"counter": 1}]
    assert [e.name for e in detailed.events] == ["step-start"]
    assert detailed.events[0].metadata == {"step_index": 0}

    plain = await storage.get_execution(entry.id)
    assert plain.steps == []


@pytest.mark.asyncio
async def test_listing_and_deletion(storage):
    first, second, other = _execution("wf-a"), _execution("wf-a"), _execution("wf-b")
    for entry in (first, second, other):
        await storage.create_execution(entry)

    assert await storage.get_all_workflow_ids() == ["wf-a", "wf-b"]
    listed = await storage.get_executions_by_workflow("wf-a")
    assert [e.id for e in listed] == [first.id, second.id]

    await storage.delete_execution(first.id)
    assert await storage.get_execution(first.id) is None
    assert [e.id for e in await storage.get_executions_by_workflow("wf-a")] == [second.id]


@pytest.mark.asyncio
async def test_suspension_checkpoint_round_trips(storage):
    entry = _execution()
    await storage.create_execution(entry)
    checkpoint = WorkflowSuspensionCheckpoint(
        execution_id=entry.id,
        workflow_id="wf",
        step_index=2,
        data={"counter": 2, "items": [1, 2]},
        reason="approval",
        suspend_data={"amount": 10},
    )

    await storage.update_execution(
        entry.id,
        {"status": "suspended", "metadata": {"suspension": checkpoint.model_dump(mode="json")}},
    )

    stored = await storage.get_execution(entry.id)
    assert stored.status == "suspended"
    assert stored.suspension == checkpoint


@pytest.mark.asyncio
async def test_sqlite_storage_survives_reopen(tmp_path):
    path = tmp_path / "history.db"
    entry = _execution()
    first = SQLiteWorkflowStorage(path)
    await first.create_execution(entry)
    first.close()

    reopened = SQLiteWorkflowStorage(path)
    stored = await reopened.get_execution(entry.id)
    reopened.close()
    assert stored is not None
    assert stored.start_time == entry.start_time


def test_get_storage_selects_backend(tmp_path, monkeypatch):
    monkeypatch.delenv("VOLTFLOW_DATABASE_URL", raising=False)
    assert isinstance(get_storage(config=VoltflowConfig()), InMemoryWorkflowStorage)
    assert isinstance(get_storage("memory://", VoltflowConfig()), InMemoryWorkflowStorage)

    sqlite_storage = get_storage(f"sqlite://{tmp_path / 'a.db'}", VoltflowConfig())
    assert isinstance(sqlite_storage, SQLiteWorkflowStorage)
    sqlite_storage.close()

    config = VoltflowConfig(storage=StorageConfig(backend="sqlite", path=str(tmp_path / "b.db")))
    configured = get_storage(config=config)
    assert isinstance(configured, SQLiteWorkflowStorage)
    configured.close()

    with pytest.raises(ValueError):
        get_storage("postgres://localhost/db", VoltflowConfig())
