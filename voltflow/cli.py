"""Command line interface for running workflows and inspecting their history."""

from __future__ import annotations

import asyncio
import importlib
import json
import logging
import sys
from pathlib import Path
from typing import Any, Optional

import typer
from pydantic_core import to_jsonable_python

from voltflow.config import load_config
from voltflow.history import WorkflowHistoryManager
from voltflow.persistence import WorkflowStorage, get_storage
from voltflow.registry import get_registry
from voltflow.workflow import Workflow, WorkflowChain

app = typer.Typer(help="CLI for voltflow workflows")

# Command groups
workflow_app = typer.Typer(help="Commands for running workflows")
execution_app = typer.Typer(help="Commands for inspecting persisted executions")

app.add_typer(workflow_app, name="workflow")
app.add_typer(execution_app, name="execution")


@app.callback()
def main() -> None:
    """voltflow CLI entry point."""
    config = load_config()
    logging.basicConfig(level=config.log_level)


def _dump(value: Any) -> str:
    return json.dumps(to_jsonable_python(value, fallback=str), indent=2)


def _close(storage: WorkflowStorage) -> None:
    close = getattr(storage, "close", None)
    if close is not None:
        close()


def _load_workflow(target: str) -> Workflow:
    """Import ``module:attribute`` and return the workflow it names."""
    module_name, _, attribute = target.partition(":")
    if not module_name or not attribute:
        typer.secho("Expected MODULE:ATTRIBUTE, e.g. flows.greeting:workflow", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    cwd = str(Path.cwd())
    if cwd not in sys.path:
        sys.path.insert(0, cwd)
    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        typer.secho(f"Cannot import {module_name}: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    except Exception as exc:
        typer.secho(
            f"Error while importing {module_name}: {type(exc).__name__}: {exc}",
            fg=typer.colors.RED,
        )
        raise typer.Exit(code=1)

    workflow = getattr(module, attribute, None)
    if isinstance(workflow, WorkflowChain):
        workflow = workflow.to_workflow()
    if not isinstance(workflow, Workflow):
        typer.secho(f"{target} is not a workflow", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    return workflow


@workflow_app.command("run")
def workflow_run(
    target: str,
    input: str = typer.Option("{}", "--input", "-i", help="Workflow input as JSON"),
    database_url: Optional[str] = typer.Option(
        None, help="History storage, e.g. sqlite://voltflow.db"
    ),
) -> None:
    """
    Run a workflow once and print its result.

    Args:
        target: Workflow to run as MODULE:ATTRIBUTE
        input: JSON document passed as the workflow input

    Example:
        voltflow workflow run flows.greeting:workflow --input '{"name": "Who is"}'
        # Output: Execution 1b9d...: completed
        #         {"name": "Who is john doe"}
    """
    workflow = _load_workflow(target)
    try:
        data = json.loads(input)
    except json.JSONDecodeError as exc:
        typer.secho(f"Invalid JSON input: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    registry = get_registry(load_config(), database_url)
    registry.register_workflow(workflow)
    workflow.registry = registry

    async def _run() -> Any:
        try:
            return await workflow.run(data)
        finally:
            await registry.flush()

    try:
        result = asyncio.run(_run())
    except Exception as exc:
        typer.secho(f"Workflow {workflow.id} failed: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    finally:
        if registry.storage is not None:
            _close(registry.storage)

    typer.echo(f"Execution {result.execution_id}: {result.status}")
    if result.status == "suspended":
        typer.echo(_dump(result.suspension))
    else:
        typer.echo(_dump(result.result))


@workflow_app.command("describe")
def workflow_describe(target: str) -> None:
    """Print the steps of a workflow as JSON."""
    workflow = _load_workflow(target)
    registry = get_registry(load_config(), "memory://")
    registry.register_workflow(workflow)
    typer.echo(_dump(registry.get_workflow_detail_for_api(workflow.id)))


@execution_app.command("list")
def execution_list(
    workflow_id: Optional[str] = typer.Argument(None),
    database_url: Optional[str] = typer.Option(None),
) -> None:
    """
    List persisted executions, optionally for one workflow only.

    Example:
        voltflow execution list greeter
        # Output: 1b9d...    greeter    completed
    """
    storage = get_storage(database_url, load_config())

    async def _collect() -> list:
        workflow_ids = [workflow_id] if workflow_id else await storage.get_all_workflow_ids()
        executions = []
        for wid in workflow_ids:
            executions.extend(await storage.get_executions_by_workflow(wid))
        return executions

    try:
        executions = asyncio.run(_collect())
    finally:
        _close(storage)
    if not executions:
        typer.echo("No executions found")
        return
    for execution in executions:
        typer.echo(f"{execution.id}\t{execution.workflow_id}\t{execution.status}")


@execution_app.command("show")
def execution_show(
    execution_id: str,
    database_url: Optional[str] = typer.Option(None),
) -> None:
    """Show an execution with its steps and timeline events."""
    storage = get_storage(database_url, load_config())
    try:
        execution = asyncio.run(storage.get_execution_with_details(execution_id))
    finally:
        _close(storage)
    if execution is None:
        typer.echo("Execution not found")
        raise typer.Exit(code=1)

    typer.echo(f"Execution {execution.id} ({execution.workflow_id}): {execution.status}")
    typer.echo(f"Input: {_dump(execution.input)}")
    if execution.output is not None:
        typer.echo(f"Output: {_dump(execution.output)}")
    if execution.error_message:
        typer.echo(f"Error: {execution.error_message}")
    for step in execution.steps:
        typer.echo(
            f"- [{step.step_index}] {step.step_name} ({step.step_type}): {step.status}"
            + (f" - {step.error_message}" if step.error_message else "")
        )
    for event in execution.events:
        typer.echo(f"  {event.start_time.isoformat()} {event.name} {event.status}")


@execution_app.command("stats")
def execution_stats(
    workflow_id: str,
    database_url: Optional[str] = typer.Option(None),
) -> None:
    """Print aggregate execution numbers for a workflow."""
    storage = get_storage(database_url, load_config())
    manager = WorkflowHistoryManager(workflow_id, storage)
    try:
        stats = asyncio.run(manager.get_workflow_stats())
    finally:
        _close(storage)
    typer.echo(f"Total: {stats.total_executions}")
    typer.echo(f"Successful: {stats.successful_executions}")
    typer.echo(f"Failed: {stats.failed_executions}")
    typer.echo(f"Average time (ms): {stats.average_execution_time:.1f}")
    if stats.last_execution_time is not None:
        typer.echo(f"Last execution: {stats.last_execution_time.isoformat()}")


if __name__ == "__main__":  # pragma: no cover - manual execution
    app()
