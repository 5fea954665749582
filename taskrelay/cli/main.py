"""Main CLI entry point using Typer."""

import importlib
import json
from pathlib import Path
from typing import Any

import anyio
import typer
from pydantic import TypeAdapter, ValidationError
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from taskrelay import __version__
from taskrelay.core.config import get_settings
from taskrelay.core.errors import TaskRelayError
from taskrelay.core.log_config import configure_logging
from taskrelay.core.models import MessageType, Task
from taskrelay.core.orchestrator import ExecutionOrchestrator
from taskrelay.execution.executors import ExecutorRegistry, create_dry_run_registry
from taskrelay.monitoring.health_check import HealthChecker

app = typer.Typer(
    name="taskrelay",
    help="TaskRelay - task execution and durable coordination",
    add_completion=True,
    rich_markup_mode="rich",
)

console = Console()

STATUS_COLORS = {
    "healthy": "green",
    "degraded": "yellow",
    "unhealthy": "red",
    "unknown": "dim",
    "completed": "green",
    "running": "cyan",
    "pending": "yellow",
    "failed": "red",
}


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"[bold blue]TaskRelay[/bold blue] version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool | None = typer.Option(
        None,
        "--version",
        "-v",
        help="Show version and exit.",
        callback=version_callback,
        is_eager=True,
    ),
) -> None:
    """
    TaskRelay - run tasks concurrently with timeouts, checkpoints and
    durable progress.
    """
    pass


# =============================================================================
# HELPERS
# =============================================================================


def load_tasks(path: Path) -> list[Task]:
    """Read a JSON array of task documents."""
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise typer.BadParameter(f"Cannot read tasks from {path}: {e}") from e

    if isinstance(raw, dict):
        raw = raw.get("tasks", [])
    try:
        return TypeAdapter(list[Task]).validate_python(raw)
    except ValidationError as e:
        raise typer.BadParameter(f"Invalid tasks in {path}: {e}") from e


def load_executors(import_path: str | None, dry_run_delay_ms: int) -> ExecutorRegistry:
    """Executor registry from ``module:attr``, or dry-run executors."""
    if not import_path:
        return create_dry_run_registry(delay_ms=dry_run_delay_ms)

    module_name, _, attr = import_path.partition(":")
    if not module_name or not attr:
        raise typer.BadParameter("Expected --executors in the form 'module:attr'")

    target: Any = getattr(importlib.import_module(module_name), attr)
    registry = target if isinstance(target, ExecutorRegistry) else target()
    if not isinstance(registry, ExecutorRegistry):
        raise typer.BadParameter(f"{import_path} did not produce an ExecutorRegistry")
    return registry


def build_orchestrator(executors: ExecutorRegistry | None = None) -> ExecutionOrchestrator:
    settings = get_settings()
    configure_logging(settings)
    return ExecutionOrchestrator(executors or ExecutorRegistry(), settings=settings)


def fail(message: str) -> None:
    console.print(f"[bold red]{message}[/bold red]")
    raise typer.Exit(code=1)


# =============================================================================
# COMMANDS
# =============================================================================


@app.command()
def run(
    tasks_file: Path = typer.Argument(..., help="JSON file with a list of tasks"),
    executors: str | None = typer.Option(
        None,
        "--executors",
        "-e",
        help="Executor registry as 'module:attr' (defaults to dry-run executors)",
    ),
    dry_run_delay_ms: int = typer.Option(
        100,
        "--dry-run-delay",
        help="Simulated work time per task for dry-run executors",
    ),
) -> None:
    """
    Run a task list as one workflow.

    Example:
        taskrelay run tasks.json
        taskrelay run tasks.json --executors myapp.executors:build_registry
    """
    tasks = load_tasks(tasks_file)
    registry = load_executors(executors, dry_run_delay_ms)

    async def execute() -> None:
        orchestrator = await ExecutionOrchestrator.create(registry, settings=get_settings())
        plan = orchestrator.plan(tasks)
        console.print(
            Panel(
                f"[bold]Tasks:[/bold] {plan.total_tasks}\n"
                f"[bold]Parallel groups:[/bold] {len(plan.parallel_groups)}\n"
                f"[bold]Sequential tasks:[/bold] {len(plan.sequential_tasks)}\n"
                f"[bold]Estimated:[/bold] {plan.estimated_duration_ms}ms",
                title="[bold blue]TaskRelay[/bold blue]",
                border_style="blue",
            )
        )

        try:
            results = await orchestrator.run_workflow(tasks)
        except TaskRelayError as e:
            fail(f"Workflow aborted: {e}")
        finally:
            await orchestrator.shutdown()

        table = Table(title="Results")
        table.add_column("Task", style="bold")
        table.add_column("Status")
        table.add_column("Duration", justify="right")
        table.add_column("Error")

        for result in results:
            status = "completed" if result.success else "failed"
            color = STATUS_COLORS[status]
            table.add_row(
                result.task_id,
                f"[{color}]{status}[/{color}]",
                f"{result.duration_ms}ms",
                (result.error or "-")[:60],
            )

        console.print(table)
        if not all(r.success for r in results):
            raise typer.Exit(code=1)

    configure_logging(get_settings())
    anyio.run(execute)


@app.command()
def status(
    task_id: str | None = typer.Argument(None, help="Task or async handle id"),
) -> None:
    """
    Show the status of one task, or of all active tasks.
    """

    async def show() -> None:
        orchestrator = build_orchestrator()

        if task_id:
            record = await orchestrator.tracker.get(task_id)
            if record is None:
                fail(f"No status record for {task_id}")
            color = STATUS_COLORS.get(record.status.value, "white")
            console.print(f"[bold]{task_id}[/bold]: [{color}]{record.status.value}[/{color}]")
            console.print(f"  progress: {record.progress}%")
            if record.error:
                console.print(f"  error: {record.error}")
            result = await orchestrator.channel.load_task_result(task_id)
            if result is not None:
                console.print(f"  result: {json.dumps(result.data, default=str)[:200]}")
            return

        active = await orchestrator.tracker.list_active()
        table = Table(title="Active Tasks")
        table.add_column("Task", style="bold")
        table.add_column("Status")
        table.add_column("Progress", justify="right")

        for record in active:
            color = STATUS_COLORS.get(record.status.value, "white")
            table.add_row(
                record.task_id,
                f"[{color}]{record.status.value}[/{color}]",
                f"{record.progress}%",
            )

        console.print(table)
        summary = await orchestrator.get_execution_status()
        console.print(f"[dim]{json.dumps(summary['parallel'])}[/dim]")

    anyio.run(show)


@app.command()
def messages(
    to: str | None = typer.Option(None, "--to", help="Recipient (broadcasts included)"),
    message_type: MessageType | None = typer.Option(None, "--type", "-t", help="Message type"),
    limit: int = typer.Option(20, "--limit", "-n", help="Show the most recent N messages"),
) -> None:
    """
    Show mailbox messages, oldest first.
    """

    async def show() -> None:
        orchestrator = build_orchestrator()
        found = await orchestrator.channel.read_messages(to, message_type)

        table = Table(title="Messages")
        table.add_column("Time", style="dim")
        table.add_column("Type", style="cyan")
        table.add_column("From")
        table.add_column("To")
        table.add_column("Data")

        for message in found[-limit:]:
            table.add_row(
                str(message.timestamp_ms),
                message.type.value,
                message.sender,
                message.to or "*",
                json.dumps(message.data, default=str)[:80],
            )

        console.print(table)

    anyio.run(show)


@app.command()
def maintenance() -> None:
    """
    Sweep expired intermediate results and aged records.
    """

    async def sweep() -> None:
        orchestrator = build_orchestrator()
        removed = await orchestrator.maintenance()
        for name, count in removed.items():
            console.print(f"  {name}: [bold]{count}[/bold] removed")

    anyio.run(sweep)


@app.command()
def recover() -> None:
    """
    Mark tasks left running by a previous process as failed.
    """

    async def do_recover() -> None:
        orchestrator = build_orchestrator()
        recovered = await orchestrator.recover()
        if not recovered:
            console.print("[green]No interrupted tasks[/green]")
            return
        for task_id in recovered:
            console.print(f"  [yellow]{task_id}[/yellow] marked failed")

    anyio.run(do_recover)


@app.command()
def resume(
    task_id: str = typer.Argument(..., help="Id of a decomposed task"),
    checkpoint: str | None = typer.Option(None, "--checkpoint", "-c", help="Checkpoint label"),
    tasks_file: Path | None = typer.Option(
        None,
        "--tasks",
        help="Tasks file containing the task; continues its remaining subtasks",
    ),
    executors: str | None = typer.Option(
        None,
        "--executors",
        "-e",
        help="Executor registry as 'module:attr' (defaults to dry-run executors)",
    ),
) -> None:
    """
    Show the last checkpoint of a task, or continue it with --tasks.
    """
    task = None
    registry = None
    if tasks_file is not None:
        task = next((t for t in load_tasks(tasks_file) if t.id == task_id), None)
        if task is None:
            raise typer.BadParameter(f"Task {task_id} not found in {tasks_file}")
        registry = load_executors(executors, 100)

    async def do_resume() -> None:
        orchestrator = build_orchestrator(registry)
        try:
            if task is not None:
                result = await orchestrator.decomposer.continue_from_checkpoint(task)
            else:
                result = await orchestrator.decomposer.resume_from_checkpoint(task_id, checkpoint)
        except TaskRelayError as e:
            fail(str(e))

        color = "green" if result.success else "red"
        console.print(
            Panel(
                json.dumps(result.data, indent=2, default=str)[:2000]
                if result.success
                else result.error or "",
                title=f"[bold {color}]{task_id}[/bold {color}]",
                border_style=color,
            )
        )
        if not result.success:
            raise typer.Exit(code=1)

    anyio.run(do_resume)


@app.command()
def checkpoints(
    task_id: str = typer.Argument(..., help="Id of a decomposed task"),
) -> None:
    """
    List the checkpoints of a decomposed task in subtask order.
    """

    async def show() -> None:
        orchestrator = build_orchestrator()
        labels = await orchestrator.decomposer.list_checkpoints(task_id)
        if not labels:
            console.print(f"[dim]No checkpoints for {task_id}[/dim]")
            return
        for index, label in enumerate(labels, start=1):
            console.print(f"  {index}. {label}")

    anyio.run(show)


@app.command()
def health() -> None:
    """
    Check storage, stale tasks and the async registry.
    """
    console.print("[bold]Running health checks...[/bold]\n")

    async def do_health_check() -> None:
        orchestrator = build_orchestrator()
        checker = HealthChecker(
            orchestrator.store,
            orchestrator.tracker,
            orchestrator.registry,
            settings=orchestrator.settings,
        )
        result = await checker.check_all()

        overall = result["status"]
        color = STATUS_COLORS.get(overall, "white")
        console.print(f"Overall Status: [{color}]{overall.upper()}[/{color}]\n")

        for check in result["checks"]:
            name = check["name"]
            check_status = check["status"]
            message = check["message"]
            color = STATUS_COLORS.get(check_status, "white")
            console.print(f"  {name}: [{color}]{check_status}[/{color}] - {message}")

        if overall == "unhealthy":
            raise typer.Exit(code=1)

    anyio.run(do_health_check)


if __name__ == "__main__":
    app()
