"""CLI commands for schedule management.

These work on the schedule store directly and apply the same rules as the
bot commands. Stop the server first: a running server keeps its own copy of
the schedules and overwrites the file on its next write. Changes made while
it is stopped are picked up when it starts.
"""

from __future__ import annotations

import typer
from rich.console import Console
from rich.table import Table

app = typer.Typer(
    name="schedules",
    help=(
        "Inspect and manage scheduled prompts and payments. "
        "Stop the server before pause, resume or delete; a running server overwrites them."
    ),
    no_args_is_help=True,
)
console = Console()


def _get_store(path=None):
    """Create a ScheduleStore (works without a running server)."""
    from tempo.config.settings import get_settings
    from tempo.scheduler.store import ScheduleStore

    return ScheduleStore(path=path or get_settings().schedules_path)


def _get_engine(store):
    """An engine over the store whose scheduler is never started.

    Registrations stay pending in memory; the server registers every active
    schedule again when it starts.
    """
    from tempo.config.settings import get_settings
    from tempo.scheduler.engine import SchedulerEngine

    return SchedulerEngine(get_settings(), store)


def _run(action, record):
    """Run an owner action as the schedule's creator; errors exit with status 1."""
    from tempo.core.errors import TempoError

    try:
        return action(record.id, record.creator_id)
    except TempoError as exc:
        console.print(f"[red]{exc.user_message}[/red]")
        raise typer.Exit(1) from exc


def _describe(record) -> str:
    from tempo.scheduler.models import MessagePayload

    payload = record.payload
    if isinstance(payload, MessagePayload):
        text = payload.prompt
        return text[:40] + ("..." if len(text) > 40 else "")
    return f"{payload.display_amount} → @{payload.recipient_username}"


def _find(store, record_id: str):
    record = store.get(record_id)
    if record is None or record.is_deleted:
        console.print(f"[red]Schedule '{record_id}' not found.[/red]")
        raise typer.Exit(1)
    return record


@app.command("list")
def list_schedules(
    group: int | None = typer.Option(None, "--group", "-g", help="Only this group's schedules"),
    show_all: bool = typer.Option(
        False, "--all", "-a", help="Include deleted and finished schedules"
    ),
):
    """List scheduled prompts and payments."""
    store = _get_store()
    records = [
        r
        for r in store.all()
        if (group is None or r.group_id == group)
        and (show_all or not (r.is_deleted or r.is_finished))
    ]

    if not records:
        console.print("[dim]No schedules found.[/dim]")
        raise typer.Exit()

    table = Table(title="Schedules", show_lines=False)
    table.add_column("ID", style="dim", max_width=12)
    table.add_column("Kind")
    table.add_column("Group", style="dim")
    table.add_column("Repeat")
    table.add_column("Status")
    table.add_column("Next run (UTC)")
    table.add_column("Runs", justify="right")
    table.add_column("What", max_width=40)

    for record in records:
        if record.is_deleted:
            status = "[red]deleted[/red]"
        elif record.active:
            status = "[green]active[/green]"
        elif record.is_finished:
            status = "[dim]finished[/dim]"
        else:
            status = "[yellow]paused[/yellow]"
        next_run = record.next_run_at.strftime("%Y-%m-%d %H:%M") if record.next_run_at else "-"
        table.add_row(
            record.id,
            record.kind.value,
            str(record.group_id),
            record.repeat.label,
            status,
            next_run,
            str(record.run_count),
            _describe(record),
        )

    console.print(table)
    console.print(f"\n  [dim]{len(records)} schedules total.[/dim]\n")


@app.command("pause")
def pause_schedule(
    record_id: str = typer.Argument(help="Schedule ID to pause"),
):
    """Pause a schedule without deleting it."""
    store = _get_store()
    record = _find(store, record_id)

    if not record.active:
        console.print(f"[dim]Schedule '{record_id}' is already paused.[/dim]")
        raise typer.Exit()

    _run(_get_engine(store).pause, record)
    console.print(f"  [green]✓[/green] Paused [bold]{record_id}[/bold].")
    console.print(f"  [dim]Use 'tempo schedules resume {record_id}' to re-enable.[/dim]")


@app.command("resume")
def resume_schedule(
    record_id: str = typer.Argument(help="Schedule ID to resume"),
):
    """Resume a paused schedule. Counts toward the group's quota."""
    store = _get_store()
    record = _find(store, record_id)

    if record.active:
        console.print(f"[dim]Schedule '{record_id}' is already active.[/dim]")
        raise typer.Exit()

    updated = _run(_get_engine(store).resume, record)
    console.print(f"  [green]✓[/green] Resumed [bold]{record_id}[/bold].")
    console.print(f"  [dim]Next run: {updated.next_run_at:%Y-%m-%d %H:%M} UTC[/dim]")


@app.command("delete")
def delete_schedule(
    record_id: str = typer.Argument(help="Schedule ID to delete"),
):
    """Delete a schedule. It stops running on the next server start."""
    store = _get_store()
    record = _find(store, record_id)
    _run(_get_engine(store).delete, record)
    console.print(f"  [green]✓[/green] Deleted schedule [bold]{record_id}[/bold].")
