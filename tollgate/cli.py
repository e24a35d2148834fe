"""Command line interface for operating Tollgate workflows."""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Dict, Optional, TypeVar

import typer

from tollgate import WorkflowEngine, get_event_bus, get_repository, load_config
from tollgate.errors import WorkflowError
from tollgate.models import InstanceStatus, WorkflowInstance
from tollgate.registry import WorkflowDefinitionRegistry

T = TypeVar("T")

app = typer.Typer(help="CLI for Tollgate workflows")

# Command groups
definition_app = typer.Typer(help="Commands for managing workflow definitions")
instance_app = typer.Typer(help="Commands for driving workflow instances")
engine_app = typer.Typer(help="Commands for running the workflow engine")

app.add_typer(definition_app, name="definition")
app.add_typer(instance_app, name="instance")
app.add_typer(engine_app, name="engine")


@app.callback()
def main() -> None:
    """Tollgate CLI entry point."""
    config = load_config()
    logging.basicConfig(level=config.log_level.upper())


def _run(coro: Awaitable[T]) -> T:
    """Run ``coro`` and turn workflow errors into a failing exit code."""
    try:
        return asyncio.run(coro)
    except WorkflowError as e:
        typer.secho(f"{e.kind}: {e.message}", fg=typer.colors.RED)
        raise typer.Exit(code=1)


def _parse_json(value: Optional[str], option: str) -> Any:
    if value is None:
        return None
    try:
        return json.loads(value)
    except json.JSONDecodeError as e:
        raise typer.BadParameter(f"invalid JSON: {e}", param_hint=option)


def _parse_object(value: Optional[str], option: str) -> Dict[str, Any]:
    parsed = _parse_json(value, option)
    if parsed is None:
        return {}
    if not isinstance(parsed, dict):
        raise typer.BadParameter("expected a JSON object", param_hint=option)
    return parsed


@asynccontextmanager
async def _engine_session() -> AsyncIterator[WorkflowEngine]:
    config = load_config()
    bus = get_event_bus(config=config)
    await bus.connect()
    try:
        engine = WorkflowEngine(get_repository(), bus=bus, config=config.engine)
        await engine.initialize()
        yield engine
    finally:
        await bus.disconnect()


def _echo_instance(instance: WorkflowInstance) -> None:
    typer.echo(f"Instance {instance.id}: {instance.status.value}")
    typer.echo(f"Workflow: {instance.workflow_id}@{instance.workflow_version}")
    typer.echo(f"Entity: {instance.entity_id}")
    typer.echo(f"State: {instance.current_state}")
    typer.echo(f"Data: {json.dumps(instance.data, sort_keys=True, default=str)}")
    if instance.status is InstanceStatus.COMPLETED:
        typer.echo(f"Result: {json.dumps(instance.result, sort_keys=True, default=str)}")
    if instance.status is InstanceStatus.CANCELLED:
        typer.echo(f"Cancel reason: {instance.cancel_reason or '-'}")


@definition_app.command("load")
def definition_load(path: Path) -> None:
    """
    Validate a YAML or JSON definition file and store it.

    Example:
        tollgate definition load ./workflows/approval.yaml
    """
    if not path.exists():
        typer.secho("Specified path does not exist", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    async def _load():
        registry = WorkflowDefinitionRegistry(get_repository())
        return await registry.register_file(path)

    for definition in _run(_load()):
        typer.echo(f"Loaded {definition.id}@{definition.version} - {definition.name}")


@definition_app.command("list")
def definition_list() -> None:
    """List the active workflow definitions in the repository."""

    async def _list():
        registry = WorkflowDefinitionRegistry(get_repository())
        report = await registry.load_definitions()
        return registry.list_definitions(), report

    definitions, report = _run(_list())
    if not definitions and not report.rejected:
        typer.echo("No workflow definitions found")
        return
    for definition in definitions:
        typer.echo(f"{definition.id}@{definition.version}\t{definition.name}")
    for label, reason in report.rejected.items():
        typer.secho(f"{label}\trejected: {reason}", fg=typer.colors.YELLOW)


@instance_app.command("start")
def instance_start(
    workflow_id: str,
    entity_id: str,
    data: Optional[str] = typer.Option(None, help="Initial instance data as JSON object"),
) -> None:
    """
    Start a new instance of a workflow for an entity.

    Example:
        tollgate instance start expense_approval expense-42 --data '{"amount": 250}'
    """
    initial_data = _parse_object(data, "--data")

    async def _start():
        async with _engine_session() as engine:
            return await engine.start_instance(workflow_id, entity_id, initial_data)

    instance = _run(_start())
    typer.echo(f"Started instance {instance.id} in state {instance.current_state}")
    typer.echo(f"Status: {instance.status.value}")


@instance_app.command("transition")
def instance_transition(
    instance_id: str,
    name: str,
    data: Optional[str] = typer.Option(None, help="Transition input as JSON object"),
) -> None:
    """Fire the named transition from the instance's current state."""
    input_data = _parse_object(data, "--data")

    async def _transition():
        async with _engine_session() as engine:
            return await engine.execute_transition(instance_id, name, input_data)

    instance = _run(_transition())
    typer.echo(f"Instance {instance.id} is now in state {instance.current_state}")
    typer.echo(f"Status: {instance.status.value}")


@instance_app.command("complete")
def instance_complete(
    instance_id: str,
    result: Optional[str] = typer.Option(None, help="Completion result as JSON"),
) -> None:
    """Mark an active instance as completed."""
    parsed = _parse_json(result, "--result")

    async def _complete():
        async with _engine_session() as engine:
            return await engine.complete_instance(instance_id, parsed)

    instance = _run(_complete())
    typer.echo(f"Instance {instance.id} completed in state {instance.current_state}")


@instance_app.command("cancel")
def instance_cancel(
    instance_id: str,
    reason: str = typer.Option("", help="Why the instance is cancelled"),
) -> None:
    """Cancel an active instance."""

    async def _cancel():
        async with _engine_session() as engine:
            return await engine.cancel_instance(instance_id, reason)

    instance = _run(_cancel())
    typer.echo(f"Instance {instance.id} cancelled in state {instance.current_state}")


@instance_app.command("show")
def instance_show(instance_id: str) -> None:
    """
    Show an instance with its full state history.

    Example:
        tollgate instance show 2f0c...
        # Output: Instance 2f0c...: active
        #         Workflow: expense_approval@1
        #         ...
        #         - submitted (2024-01-01T10:00:00+00:00)
        #         - approved via approve (2024-01-01T10:05:00+00:00)
    """

    async def _show():
        async with _engine_session() as engine:
            return await engine.get_instance(instance_id)

    instance = _run(_show())
    _echo_instance(instance)
    typer.echo("History:")
    for entry in instance.history:
        via = f" via {entry.transition_name}" if entry.transition_name else ""
        typer.echo(f"- {entry.state}{via} ({entry.timestamp.isoformat()})")
        for failure in entry.metadata.get("action_failures", []):
            typer.echo(f"    ! {failure['hook']}[{failure['index']}] {failure['cause']}")


@instance_app.command("list")
def instance_list(
    entity_id: str,
    status: Optional[InstanceStatus] = typer.Option(None, help="Only instances in this status"),
    workflow: Optional[str] = typer.Option(None, help="Only instances of this workflow"),
    limit: Optional[int] = typer.Option(None, min=0),
    offset: int = typer.Option(0, min=0),
) -> None:
    """List an entity's instances, newest first."""

    async def _list():
        async with _engine_session() as engine:
            return await engine.list_instances_for_entity(
                entity_id, status=status, workflow_id=workflow, limit=limit, offset=offset
            )

    instances = _run(_list())
    if not instances:
        typer.echo("No instances found")
        return
    for instance in instances:
        typer.echo(
            f"{instance.id}\t{instance.workflow_id}\t{instance.current_state}\t{instance.status.value}"
        )


@engine_app.command("listen")
def engine_listen(
    lifespan: Optional[float] = typer.Option(
        None, help="Seconds to keep listening (default: run indefinitely)"
    ),
) -> None:
    """
    Consume start/transition/complete/cancel commands from the event bus.

    Example:
        TOLLGATE_EVENT_BUS=redis tollgate engine listen --lifespan 300
    """

    async def _listen():
        async with _engine_session() as engine:
            return await engine.listen(lifespan=lifespan)

    typer.echo("Listening for workflow commands")
    handled = _run(_listen())
    typer.echo(f"Handled {handled} commands")


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
