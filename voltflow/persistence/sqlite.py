"""SQLite implementation of the workflow history storage."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable

from pydantic_core import to_jsonable_python

from .models import (
    WorkflowHistoryEntry,
    WorkflowStepHistoryEntry,
    WorkflowTimelineEvent,
    utcnow,
)
from .repository import WorkflowStorage

_EXECUTION_COLUMNS = (
    "id",
    "workflow_id",
    "workflow_name",
    "status",
    "start_time",
    "end_time",
    "input",
    "output",
    "error_message",
    "user_id",
    "conversation_id",
    "metadata",
    "created_at",
    "updated_at",
)
_STEP_COLUMNS = (
    "id",
    "workflow_history_id",
    "step_index",
    "step_type",
    "step_name",
    "step_id",
    "status",
    "start_time",
    "end_time",
    "input",
    "output",
    "error_message",
    "agent_execution_id",
    "parallel_index",
    "parent_step_id",
)
_EVENT_COLUMNS = (
    "id",
    "event_id",
    "name",
    "type",
    "start_time",
    "end_time",
    "status",
    "level",
    "input",
    "output",
    "status_message",
    "metadata",
    "trace_id",
    "parent_event_id",
)
_JSON_COLUMNS = {"input", "output", "metadata"}


def _to_column(name: str, value: Any) -> Any:
    if name in _JSON_COLUMNS:
        return json.dumps(to_jsonable_python(value, fallback=str))
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def _from_row(row: sqlite3.Row) -> dict[str, Any]:
    data = dict(row)
    for name in _JSON_COLUMNS & data.keys():
        if data[name] is not None:
            data[name] = json.loads(data[name])
    return {key: value for key, value in data.items() if value is not None}


class SQLiteWorkflowStorage(WorkflowStorage):
    """Persist workflow history using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_history (
                id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                workflow_name TEXT NOT NULL,
                status TEXT NOT NULL,
                start_time TEXT NOT NULL,
                end_time TEXT,
                input TEXT,
                output TEXT,
                error_message TEXT,
                user_id TEXT,
                conversation_id TEXT,
                metadata TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_steps (
                id TEXT PRIMARY KEY,
                workflow_history_id TEXT NOT NULL,
                step_index INTEGER NOT NULL,
                step_type TEXT NOT NULL,
                step_name TEXT NOT NULL,
                step_id TEXT,
                status TEXT NOT NULL,
                start_time TEXT,
                end_time TEXT,
                input TEXT,
                output TEXT,
                error_message TEXT,
                agent_execution_id TEXT,
                parallel_index INTEGER,
                parent_step_id TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_timeline_events (
                id TEXT PRIMARY KEY,
                execution_id TEXT NOT NULL,
                event_id TEXT NOT NULL,
                name TEXT NOT NULL,
                type TEXT NOT NULL,
                start_time TEXT NOT NULL,
                end_time TEXT,
                status TEXT NOT NULL,
                level TEXT,
                input TEXT,
                output TEXT,
                status_message TEXT,
                metadata TEXT,
                trace_id TEXT,
                parent_event_id TEXT
            )
            """
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            self._conn.commit()

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchall()

    async def _insert(
        self, table: str, columns: Iterable[str], values: dict[str, Any]
    ) -> None:
        columns = tuple(columns)
        placeholders = ", ".join("?" for _ in columns)
        await asyncio.to_thread(
            self._execute,
            f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders})",
            *(_to_column(name, values.get(name)) for name in columns),
        )

    async def _update(
        self, table: str, allowed: Iterable[str], row_id: str, updates: dict[str, Any]
    ) -> None:
        fields = [name for name in updates if name in allowed and name != "id"]
        if not fields:
            return
        assignments = ", ".join(f"{name} = ?" for name in fields)
        await asyncio.to_thread(
            self._execute,
            f"UPDATE {table} SET {assignments} WHERE id = ?",
            *(_to_column(name, updates[name]) for name in fields),
            row_id,
        )

    # ------------------------------------------------------------------
    # Storage API
    async def create_execution(self, entry: WorkflowHistoryEntry) -> None:
        await self._insert(
            "workflow_history", _EXECUTION_COLUMNS, dict(entry)
        )

    async def update_execution(
        self, execution_id: str, updates: dict[str, Any]
    ) -> WorkflowHistoryEntry | None:
        await self._update(
            "workflow_history",
            _EXECUTION_COLUMNS,
            execution_id,
            {**updates, "updated_at": utcnow()},
        )
        return await self.get_execution(execution_id)

    async def get_execution(self, execution_id: str) -> WorkflowHistoryEntry | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT * FROM workflow_history WHERE id = ?",
            execution_id,
        )
        if not row:
            return None
        return WorkflowHistoryEntry.model_validate(_from_row(row))

    async def get_execution_with_details(
        self, execution_id: str
    ) -> WorkflowHistoryEntry | None:
        entry = await self.get_execution(execution_id)
        if entry is None:
            return None
        event_rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT * FROM workflow_timeline_events WHERE execution_id = ? ORDER BY rowid",
            execution_id,
        )
        entry.steps = await self.get_workflow_steps(execution_id)
        entry.events = [
            WorkflowTimelineEvent.model_validate(_from_row(r)) for r in event_rows
        ]
        return entry

    async def get_executions_by_workflow(
        self, workflow_id: str
    ) -> list[WorkflowHistoryEntry]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT * FROM workflow_history WHERE workflow_id = ? ORDER BY rowid",
            workflow_id,
        )
        return [WorkflowHistoryEntry.model_validate(_from_row(r)) for r in rows]

    async def record_step_start(self, step: WorkflowStepHistoryEntry) -> None:
        await self._insert("workflow_steps", _STEP_COLUMNS, dict(step))

    async def record_step_end(
        self, step_id: str, updates: dict[str, Any]
    ) -> WorkflowStepHistoryEntry | None:
        await self._update("workflow_steps", _STEP_COLUMNS, step_id, updates)
        row = await asyncio.to_thread(
            self._fetchone, "SELECT * FROM workflow_steps WHERE id = ?", step_id
        )
        return WorkflowStepHistoryEntry.model_validate(_from_row(row)) if row else None

    async def get_workflow_steps(
        self, execution_id: str
    ) -> list[WorkflowStepHistoryEntry]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT * FROM workflow_steps WHERE workflow_history_id = ? ORDER BY rowid",
            execution_id,
        )
        return [WorkflowStepHistoryEntry.model_validate(_from_row(r)) for r in rows]

    async def record_timeline_event(
        self, execution_id: str, event: WorkflowTimelineEvent
    ) -> None:
        await self._insert(
            "workflow_timeline_events",
            ("execution_id",) + _EVENT_COLUMNS,
            {**dict(event), "execution_id": execution_id},
        )

    async def delete_execution(self, execution_id: str) -> None:
        await asyncio.to_thread(
            self._execute,
            "DELETE FROM workflow_timeline_events WHERE execution_id = ?",
            execution_id,
        )
        await asyncio.to_thread(
            self._execute,
            "DELETE FROM workflow_steps WHERE workflow_history_id = ?",
            execution_id,
        )
        await asyncio.to_thread(
            self._execute, "DELETE FROM workflow_history WHERE id = ?", execution_id
        )

    async def get_all_workflow_ids(self) -> list[str]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT DISTINCT workflow_id FROM workflow_history ORDER BY workflow_id",
        )
        return [row["workflow_id"] for row in rows]

    def close(self) -> None:
        self._conn.close()
