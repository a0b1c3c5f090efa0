"""Main CLI entry point using Typer."""

import importlib
from collections.abc import Callable
from pathlib import Path
from typing import Any

import anyio
import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from strata import __version__
from strata.core.config import Settings, get_settings
from strata.core.exceptions import CycleError, LayerFailedError, OrchestrationError
from strata.core.logging import configure_logging
from strata.core.state_manager import StateManager
from strata.decomposition.executor import (
    ExecutionReport,
    ExecutionRunner,
    dry_run_execute,
    dry_run_review,
)
from strata.decomposition.models import ExecutionPlan, SpecSource
from strata.decomposition.plan import (
    build_plan,
    load_plan,
    load_tasks,
    save_plan,
    spec_source_from_file,
)

app = typer.Typer(
    name="strata",
    help="Strata - layered task orchestration engine",
    add_completion=True,
    rich_markup_mode="rich",
)

console = Console()


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"[bold blue]Strata[/bold blue] version {__version__}")
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
    Strata - run interdependent tasks in safe parallel layers.

    Builds a layered plan from task descriptors, executes it through
    pluggable execute/review callbacks and resumes after crashes.
    """
    pass


# =============================================================================
# HELPERS
# =============================================================================


def load_callback(target: str) -> Callable[..., Any]:
    """
    Import a callback given as ``package.module:function``.

    Raises:
        typer.BadParameter: If the target cannot be imported.
    """
    module_name, _, attr = target.partition(":")
    if not module_name or not attr:
        raise typer.BadParameter(f"Expected 'module:function', got {target!r}")

    try:
        module = importlib.import_module(module_name)
        callback = getattr(module, attr)
    except (ImportError, AttributeError) as e:
        raise typer.BadParameter(f"Cannot load {target}: {e}") from e

    if not callable(callback):
        raise typer.BadParameter(f"{target} is not callable")
    return callback


def _settings_with(
    state_dir: Path | None = None,
    max_concurrent: int | None = None,
) -> Settings:
    settings = get_settings()
    updates: dict[str, Any] = {}
    if state_dir is not None:
        updates["strata_state_dir"] = str(state_dir)
    if max_concurrent is not None:
        updates["strata_max_concurrent"] = max_concurrent
    return settings.model_copy(update=updates) if updates else settings


def print_plan(plan: ExecutionPlan) -> None:
    """Render a plan's layers and metadata."""
    table = Table(title=f"Execution Plan {plan.id}")
    table.add_column("Layer", style="cyan")
    table.add_column("Task", style="bold")
    table.add_column("Name")
    table.add_column("Type")
    table.add_column("Dependencies")
    table.add_column("Resources", style="dim")

    for index in range(plan.total_layers):
        for task in plan.get_layer_tasks(index):
            deps = ", ".join(task.dependencies) or "-"
            resources = ", ".join(ref.key for ref in task.resources.refs()) or "-"
            table.add_row(
                str(index),
                task.id,
                task.name,
                task.type.value,
                deps[:30] + "..." if len(deps) > 30 else deps,
                resources[:40] + "..." if len(resources) > 40 else resources,
            )

    console.print(table)

    meta = plan.metadata
    console.print(
        Panel(
            f"[bold]Tasks:[/bold] {meta.total_tasks}\n"
            f"[bold]Layers:[/bold] {meta.total_layers}\n"
            f"[bold]Max parallelism:[/bold] {meta.max_parallelism}\n"
            f"[bold]Parallelization:[/bold] {meta.parallelization_potential:.0%}\n"
            f"[bold]Estimated time:[/bold] ~{meta.estimated_minutes} min\n"
            f"[bold]Implicit dependencies:[/bold] {len(plan.implicit_dependencies)}",
            title=f"[bold blue]{plan.source.name}[/bold blue]",
            border_style="blue",
        )
    )


def print_report(report: ExecutionReport) -> None:
    """Render an execution report."""
    stats = report.stats
    if report.resumed_from_layer is not None:
        console.print(
            f"[dim]Resumed at layer {report.resumed_from_layer} "
            f"({len(report.restored_tasks)} tasks restored)[/dim]"
        )

    table = Table(title="Execution Summary")
    table.add_column("Metric")
    table.add_column("Value")

    table.add_row("Session", report.session_id)
    table.add_row("Tasks Completed", f"{stats.completed_tasks}/{stats.total_tasks}")
    table.add_row("Layers Executed", str(stats.layers_executed))
    table.add_row("Max Parallelism", str(stats.max_parallelism))
    table.add_row("Lock Contention", str(stats.lock_contention_incidents))
    table.add_row(
        "Reviews",
        f"{stats.review_approvals} approved / {stats.review_rejections} rejected",
    )
    table.add_row("Context Reduction", f"{stats.context_reduction_percentage:.0f}%")
    table.add_row("Total Duration", f"{stats.total_duration_seconds:.1f}s")

    console.print(table)


def execute_with_runner(
    runner: ExecutionRunner,
    plan: ExecutionPlan,
    plan_path: Path,
    executor: str | None,
    reviewer: str | None,
) -> None:
    """Run a plan to completion, exiting non-zero on failure."""
    execute_task = load_callback(executor) if executor else dry_run_execute
    review_task = load_callback(reviewer) if reviewer else dry_run_review

    async def execute() -> ExecutionReport:
        return await runner.execute_plan(
            plan,
            execute_task,
            review_task,
            plan_path=str(plan_path.resolve()),
        )

    try:
        report = anyio.run(execute)
    except LayerFailedError as e:
        console.print(f"\n[bold red]{e}[/bold red]")
        for failure in e.failures:
            console.print(f"  [red]{failure.task_id}[/red]: {failure.error}")
        console.print("[dim]Progress is checkpointed; run the plan again to resume.[/dim]")
        raise typer.Exit(code=1) from e
    except OrchestrationError as e:
        console.print(f"\n[bold red]Execution failed: {e}[/bold red]")
        raise typer.Exit(code=1) from e
    finally:
        runner.state.close()

    console.print("\n[bold green]Plan completed successfully![/bold green]")
    print_report(report)


# =============================================================================
# COMMANDS
# =============================================================================


@app.command()
def plan(
    tasks_file: Path = typer.Argument(..., help="JSON file with task descriptors"),
    spec: Path | None = typer.Option(
        None,
        "--spec",
        "-s",
        help="Specification the tasks were derived from (enables staleness checks)",
    ),
    name: str | None = typer.Option(
        None,
        "--name",
        "-n",
        help="Plan name (defaults to the spec or task file name)",
    ),
    output: Path = typer.Option(
        Path("plan.json"),
        "--output",
        "-o",
        help="Output file for the plan",
    ),
) -> None:
    """
    Build an execution plan from task descriptors.

    Example:
        strata plan tasks.json --spec feature.md -o plan.json
    """
    try:
        tasks = load_tasks(tasks_file)
        source = (
            spec_source_from_file(spec, name=name)
            if spec
            else SpecSource(name=name or tasks_file.stem)
        )
        execution_plan = build_plan(tasks, source)
    except CycleError as e:
        console.print(f"[bold red]{e}[/bold red]")
        for cycle in e.cycles:
            console.print(f"  [red]{' -> '.join(cycle)}[/red]")
        raise typer.Exit(code=1) from e
    except OrchestrationError as e:
        console.print(f"[bold red]Could not build plan: {e}[/bold red]")
        raise typer.Exit(code=1) from e

    print_plan(execution_plan)
    save_plan(execution_plan, output)
    console.print(f"[green]Saved to {output}[/green]")


@app.command()
def show(
    plan_file: Path = typer.Argument(..., help="Plan document to display"),
) -> None:
    """
    Display the layers of a saved plan.
    """
    try:
        execution_plan = load_plan(plan_file)
    except OrchestrationError as e:
        console.print(f"[bold red]{e}[/bold red]")
        raise typer.Exit(code=1) from e

    print_plan(execution_plan)


@app.command()
def run(
    plan_file: Path = typer.Argument(..., help="Plan document to execute"),
    executor: str | None = typer.Option(
        None,
        "--executor",
        "-e",
        help="Execute callback as module:function (default: dry run)",
    ),
    reviewer: str | None = typer.Option(
        None,
        "--reviewer",
        "-r",
        help="Review callback as module:function (default: approve all)",
    ),
    state_dir: Path | None = typer.Option(
        None,
        "--state-dir",
        help="Directory for sessions, events and checkpoints",
    ),
    max_concurrent: int | None = typer.Option(
        None,
        "--max-concurrent",
        "-c",
        help="Maximum tasks running at once within a layer",
    ),
) -> None:
    """
    Execute a plan layer by layer.

    Re-running a plan that failed resumes from its checkpoint.

    Example:
        strata run plan.json --executor myproject.agents:execute
    """
    settings = _settings_with(state_dir, max_concurrent)
    configure_logging(settings)

    try:
        execution_plan = load_plan(plan_file)
    except OrchestrationError as e:
        console.print(f"[bold red]{e}[/bold red]")
        raise typer.Exit(code=1) from e

    console.print(
        Panel(
            f"[bold]Plan:[/bold] {execution_plan.id}\n"
            f"[bold]Tasks:[/bold] {execution_plan.metadata.total_tasks} "
            f"in {execution_plan.total_layers} layers",
            title=f"[bold blue]Strata - {execution_plan.source.name}[/bold blue]",
            border_style="blue",
        )
    )

    runner = ExecutionRunner(state_manager=StateManager(settings.state_path), settings=settings)
    execute_with_runner(runner, execution_plan, plan_file, executor, reviewer)


@app.command()
def resume(
    executor: str | None = typer.Option(
        None,
        "--executor",
        "-e",
        help="Execute callback as module:function (default: dry run)",
    ),
    reviewer: str | None = typer.Option(
        None,
        "--reviewer",
        "-r",
        help="Review callback as module:function (default: approve all)",
    ),
    state_dir: Path | None = typer.Option(
        None,
        "--state-dir",
        help="Directory for sessions, events and checkpoints",
    ),
) -> None:
    """
    Resume a session interrupted by a crash.
    """
    settings = _settings_with(state_dir)
    configure_logging(settings)

    crashed = StateManager.detect_crashed_session(settings.state_path)
    if crashed is None:
        console.print("[yellow]No interrupted session found[/yellow]")
        return

    session_path, session = crashed
    if not session.plan_path:
        console.print(f"[bold red]Session {session.session_id} has no plan path[/bold red]")
        raise typer.Exit(code=1)

    console.print(
        f"Resuming session [bold]{session.session_id}[/bold] "
        f"(plan {session.plan_id}, layer {session.current_layer}/{session.total_layers})"
    )

    try:
        execution_plan = load_plan(session.plan_path)
        manager = StateManager.load_session(session_path)
    except OrchestrationError as e:
        console.print(f"[bold red]{e}[/bold red]")
        raise typer.Exit(code=1) from e

    runner = ExecutionRunner(state_manager=manager, settings=settings)
    execute_with_runner(runner, execution_plan, Path(session.plan_path), executor, reviewer)


# Registers the query commands on ``app``
from strata.cli import commands  # noqa: E402,F401

if __name__ == "__main__":
    app()
