"""Query commands for Strata: status, blockers, events, logs and config."""

from pathlib import Path

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from strata.cli.main import app
from strata.core.config import get_settings
from strata.core.state import Session, TaskStatus
from strata.core.state_manager import read_active_session, read_event_log, session_blockers

console = Console()

STATUS_COLORS = {
    TaskStatus.PENDING: "dim",
    TaskStatus.READY: "cyan",
    TaskStatus.EXECUTING: "yellow",
    TaskStatus.REVIEWING: "magenta",
    TaskStatus.COMPLETED: "green",
    TaskStatus.FAILED: "red",
}


def _state_path(state_dir: Path | None) -> Path:
    return state_dir if state_dir is not None else get_settings().state_path


def _load_active(state_dir: Path | None) -> tuple[Path, Session] | None:
    active = read_active_session(_state_path(state_dir))
    if active is None:
        console.print("[yellow]No session found[/yellow]")
    return active


@app.command()
def status(
    state_dir: Path | None = typer.Option(
        None,
        "--state-dir",
        help="Directory for sessions, events and checkpoints",
    ),
) -> None:
    """
    Show progress of the most recent session.
    """
    active = _load_active(state_dir)
    if active is None:
        return
    _, session = active

    color = {"completed": "green", "failed": "red"}.get(session.status.value, "yellow")
    console.print(
        Panel(
            f"[bold]Plan:[/bold] {session.plan_id}\n"
            f"[bold]Status:[/bold] [{color}]{session.status.value}[/{color}]\n"
            f"[bold]Layer:[/bold] {session.current_layer + 1}/{session.total_layers}\n"
            f"[bold]Progress:[/bold] {session.progress:.0f}%\n"
            f"[bold]Active locks:[/bold] {len(session.locks)}",
            title=f"[bold blue]Session {session.session_id}[/bold blue]",
            border_style="blue",
        )
    )

    table = Table(title="Tasks")
    table.add_column("Layer", style="cyan")
    table.add_column("Task", style="bold")
    table.add_column("Status")
    table.add_column("Duration")
    table.add_column("Error", style="red")

    for task in sorted(session.tasks.values(), key=lambda t: (t.layer, t.id)):
        task_color = STATUS_COLORS[task.status]
        duration = f"{task.duration_seconds:.1f}s" if task.duration_seconds is not None else "-"
        table.add_row(
            str(task.layer),
            task.id,
            f"[{task_color}]{task.status.value}[/{task_color}]",
            duration,
            (task.error or "")[:60],
        )

    console.print(table)

    if session.error:
        console.print(f"[red]{session.error}[/red]")


@app.command()
def blockers(
    state_dir: Path | None = typer.Option(
        None,
        "--state-dir",
        help="Directory for sessions, events and checkpoints",
    ),
) -> None:
    """
    List tasks that cannot proceed and what they wait on.
    """
    active = _load_active(state_dir)
    if active is None:
        return
    _, session = active

    blocked = session_blockers(session)
    if not blocked:
        console.print("[green]No blocked tasks[/green]")
        return

    table = Table(title=f"Blocked Tasks ({len(blocked)})")
    table.add_column("Task", style="bold")
    table.add_column("Status")
    table.add_column("Waiting On Tasks")
    table.add_column("Waiting On Locks")
    table.add_column("Error", style="red")

    for entry in blocked:
        table.add_row(
            entry["task_id"],
            entry["status"],
            ", ".join(entry["waiting_on_tasks"]) or "-",
            ", ".join(entry["waiting_on_locks"]) or "-",
            (entry["error"] or "")[:60],
        )

    console.print(table)


@app.command()
def events(
    tail: int = typer.Option(
        20,
        "--tail",
        "-n",
        help="Number of events to show",
    ),
    state_dir: Path | None = typer.Option(
        None,
        "--state-dir",
        help="Directory for sessions, events and checkpoints",
    ),
) -> None:
    """
    Show the most recent entries of the session event log.
    """
    active = _load_active(state_dir)
    if active is None:
        return
    session_path, session = active

    records = read_event_log(session_path / "events.ndjson", limit=tail)

    table = Table(title=f"Events for {session.session_id}")
    table.add_column("Time", style="dim", no_wrap=True)
    table.add_column("Event", style="cyan", no_wrap=True)
    table.add_column("Task", no_wrap=True)
    table.add_column("Details", style="dim")

    for event in records:
        data = dict(event.data)
        task_id = data.pop("task_id", "-")
        details = ", ".join(f"{k}={v}" for k, v in data.items())
        table.add_row(
            event.timestamp.strftime("%H:%M:%S"),
            event.type.value,
            str(task_id),
            details[:80],
        )

    console.print(table)


@app.command()
def logs(
    tail: int = typer.Option(
        50,
        "--tail",
        "-n",
        help="Number of lines to show",
    ),
) -> None:
    """
    View logs from Strata execution.
    """
    log_dir = Path(get_settings().strata_log_dir)

    if not log_dir.exists():
        console.print("[yellow]No logs directory found[/yellow]")
        return

    log_files = sorted(log_dir.glob("strata_*.log"), reverse=True)

    if not log_files:
        console.print("[yellow]No log files found[/yellow]")
        return

    latest_log = log_files[0]
    console.print(f"[dim]Reading from {latest_log}[/dim]\n")

    with open(latest_log, encoding="utf-8") as f:
        lines = f.readlines()
        for line in lines[-tail:]:
            console.print(line.rstrip(), markup=False)


@app.command()
def config() -> None:
    """
    Show current configuration.
    """
    settings = get_settings()

    table = Table(title="Current Configuration")
    table.add_column("Setting")
    table.add_column("Value")

    table.add_row("Log Level", settings.strata_log_level)
    table.add_row("Debug Mode", str(settings.strata_debug))
    table.add_row("State Dir", str(settings.state_path))
    table.add_row("Max Concurrent", str(settings.strata_max_concurrent))
    table.add_row("Lock Poll Interval", f"{settings.strata_lock_poll_interval}s")
    table.add_row("Lock Max Wait", f"{settings.strata_lock_max_wait}s")
    table.add_row("Checkpoint Frequency", settings.strata_checkpoint_frequency)
    table.add_row("Context Depth", str(settings.strata_context_depth))
    table.add_row("Resource Locking", str(settings.strata_enable_resource_locking))
    table.add_row("Context Slicing", str(settings.strata_enable_context_slicing))
    table.add_row("Reviews", str(settings.strata_enable_reviews))

    console.print(table)
