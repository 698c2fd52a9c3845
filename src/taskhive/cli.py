"""CLI entry point for taskhive."""

from __future__ import annotations

import asyncio
import dataclasses
import json
import sys
from pathlib import Path
from typing import TYPE_CHECKING, Any

import click
from rich.console import Console
from rich.table import Table

from taskhive import __version__

if TYPE_CHECKING:
    from taskhive.config import HiveConfig
    from taskhive.events import EventRecorder

console = Console()


@click.group()
@click.version_option(version=__version__, prog_name="taskhive")
def main() -> None:
    """taskhive — agent task scheduling, dispatch and peer delegation."""


@main.command()
@click.option(
    "--path",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Where to write config.toml (default ~/.taskhive/config.toml)",
)
@click.option("--force", is_flag=True, help="Overwrite an existing file")
def init(config_path: Path | None, force: bool) -> None:
    """Write a default config.toml."""
    from taskhive.config import DEFAULT_CONFIG_PATH, render_default_config

    target = config_path or DEFAULT_CONFIG_PATH
    if target.exists() and not force:
        console.print(f"[yellow]Config already exists at {target}[/yellow] (use --force)")
        return

    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(render_default_config(), encoding="utf-8")
    console.print(f"[green]Config initialized at {target}[/green]")


def _read_tasks(path: Path) -> list[Any]:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise click.ClickException(f"{path} is not valid JSON: {exc}") from exc
    return data if isinstance(data, list) else [data]


@main.command()
@click.argument("file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def validate(file: Path) -> None:
    """Validate a JSON task (or a list of tasks)."""
    from taskhive.tasks.validator import validate_task

    tasks = _read_tasks(file)
    table = Table(title=f"Validation: {file.name}")
    table.add_column("#", style="dim")
    table.add_column("Action", style="cyan")
    table.add_column("Result")
    table.add_column("Errors", max_width=70)

    invalid = 0
    for index, raw in enumerate(tasks):
        result = validate_task(raw)
        action = str(raw.get("action", "?")) if isinstance(raw, dict) else "?"
        if result.valid:
            table.add_row(str(index), action, "[green]valid[/green]", "")
        else:
            invalid += 1
            table.add_row(str(index), action, "[red]invalid[/red]", "\n".join(result.errors))

    console.print(table)
    console.print(f"\nTasks: {len(tasks)} | Invalid: {invalid}")
    if invalid:
        sys.exit(1)


def _parse_agent(value: str) -> tuple[str, str]:
    agent_id, _, role = value.partition(":")
    if not agent_id:
        raise click.BadParameter(f"expected id[:role], got {value!r}")
    return agent_id, role or "builder"


@main.command()
@click.argument("file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option(
    "--agent",
    "agents",
    multiple=True,
    default=("npc-1:builder",),
    show_default=True,
    help="Agent to register, as id:role (repeatable)",
)
@click.option("--task-ms", default=300, show_default=True, help="Simulated task duration")
@click.option("--step-ms", default=50, show_default=True, help="Minimum gap between step updates")
@click.option("--timeout", default=60.0, show_default=True, help="Give up after this many seconds")
def simulate(file: Path, agents: tuple[str, ...], task_ms: int, step_ms: int, timeout: float) -> None:
    """Run tasks from FILE through the built-in simulation and print the event log."""
    parsed = [_parse_agent(a) for a in agents]
    tasks = _read_tasks(file)
    recorder, status = asyncio.run(_simulate(parsed, tasks, task_ms, step_ms, timeout))
    _print_events(recorder)

    counters = status["counters"]
    console.print(
        f"\nSubmitted: {counters['submitted']} | "
        f"Completed: {counters['completed']} | "
        f"Failed: {counters['failed']} | "
        f"Dropped: {counters['dropped']} | "
        f"Rejected: {counters['rejected']}"
    )


async def _simulate(
    agents: list[tuple[str, str]],
    tasks: list[Any],
    task_ms: int,
    step_ms: int,
    timeout: float,
) -> tuple[EventRecorder, dict[str, Any]]:
    from taskhive.config import SchedulerConfig
    from taskhive.engine.dispatcher import Dispatcher
    from taskhive.errors import QueueFull, ValidationFailed
    from taskhive.events import EventBus, EventRecorder

    bus = EventBus()
    recorder = EventRecorder(bus)
    config = dataclasses.replace(
        SchedulerConfig(), simulated_task_ms=task_ms, simulated_step_ms=step_ms
    )
    dispatcher = Dispatcher(config, bus)
    for agent_id, role in agents:
        dispatcher.register_agent(agent_id, role=role)

    for raw in tasks:
        try:
            dispatcher.submit(raw if isinstance(raw, dict) else {}, sender="cli")
        except (ValidationFailed, QueueFull) as exc:
            console.print(f"[red]Rejected:[/red] {exc}")

    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    try:
        while dispatcher.registry.list_working() or dispatcher.queue:
            if loop.time() > deadline:
                console.print("[yellow]Timed out waiting for the simulation to go idle[/yellow]")
                break
            await asyncio.sleep(0.02)
        return recorder, dispatcher.status()
    finally:
        await dispatcher.shutdown()


def _describe(name: str, payload: dict[str, Any]) -> str:
    if name == "task_progress":
        return f"{payload.get('progress') or 0:.0f}% {payload.get('message') or ''}".strip()
    if name == "task_completed":
        outcome = "success" if payload.get("success") else "failed"
        error = payload.get("error") or {}
        return f"{outcome} {error.get('message', '')}".strip()
    if name == "task_queued":
        return f"position {payload.get('position')}"
    if name in ("task_invalid", "task_rejected"):
        return "; ".join(payload.get("errors") or []) or str(payload.get("error", ""))
    return ""


def _print_events(recorder: EventRecorder) -> None:
    table = Table(title="Event Log")
    table.add_column("#", style="dim")
    table.add_column("Event", style="cyan")
    table.add_column("Agent", style="green")
    table.add_column("Task")
    table.add_column("Detail", max_width=50)

    for index, (name, payload) in enumerate(recorder.events):
        task = payload.get("task")
        task_id = task.get("id") if isinstance(task, dict) else payload.get("task_id")
        table.add_row(
            str(index),
            name,
            str(payload.get("agent_id") or ""),
            str(task_id or "")[:8],
            _describe(name, payload),
        )

    console.print(table)


@main.command()
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Config file (default ~/.taskhive/config.toml)",
)
@click.option("--port", type=int, default=None, help="Override node.listen_port")
@click.option("--log-level", default=None, help="Override TASKHIVE_LOG_LEVEL")
def serve(config_path: Path | None, port: int | None, log_level: str | None) -> None:
    """Run a scheduler node until interrupted."""
    from taskhive.config import load_config
    from taskhive.log_config import setup_logging

    setup_logging(level=log_level)
    try:
        config = load_config(config_path)
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc
    if port is not None:
        config.node.listen_port = port

    console.print(
        f"[bold cyan]Serving[/bold cyan] {config.node.node_name} on "
        f"{config.node.listen_host}:{config.node.listen_port} "
        f"({len(config.node.peers)} peer(s))"
    )
    try:
        asyncio.run(_serve(config))
    except KeyboardInterrupt:
        console.print("[dim]Stopped.[/dim]")


async def _serve(config: HiveConfig) -> None:
    from taskhive.node import SchedulerNode

    node = SchedulerNode(config)
    await node.start()
    try:
        await asyncio.Event().wait()
    finally:
        await node.shutdown()
