"""Tempo CLI — the main entry point."""

from __future__ import annotations

import logging

import typer
from rich.console import Console

from tempo import __version__
from tempo.cli.schedule_commands import app as schedules_app

app = typer.Typer(
    name="tempo",
    help="Scheduled prompts and payments for Telegram groups.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)
app.add_typer(schedules_app, name="schedules")
console = Console()


@app.callback(invoke_without_command=True)
def version_callback(
    version: bool = typer.Option(False, "--version", "-v", help="Show version"),
):
    if version:
        console.print(f"  [bold]tempo[/bold] [dim]v{__version__}[/dim]")
        raise typer.Exit()


@app.command()
def start():
    """Start the API server, the scheduler and the Telegram bot."""
    from tempo.config.settings import get_settings

    settings = get_settings()
    if settings.telegram.enabled and not settings.telegram.bot_token:
        console.print(
            "[yellow]Telegram is enabled but TELEGRAM_BOT_TOKEN is not set.[/yellow] "
            "The bot will not receive updates."
        )

    _show_status(settings, server_running=True)
    _start_server_foreground(settings)


@app.command()
def status():
    """Show current configuration and schedule counts."""
    from tempo.config.settings import get_settings

    _show_status(get_settings())


def _show_status(settings, server_running: bool = False) -> None:
    """Print current config summary."""
    from tempo.scheduler.store import ScheduleStore

    store = ScheduleStore(settings.schedules_path)
    records = [r for r in store.all() if not r.is_deleted and not r.is_finished]
    active = sum(1 for r in records if r.active)

    telegram = "disabled"
    if settings.telegram.enabled:
        mode = "webhook" if settings.telegram.webhook_url else "polling"
        telegram = mode if settings.telegram.bot_token else "[red]no bot token[/red]"

    console.print()
    console.print(f"  [bold]Bot:[/bold]       {settings.bot_name}")
    model = f"{settings.model.provider} / {settings.model.model_id}"
    console.print(f"  [bold]Model:[/bold]     {model}")
    console.print(f"  [bold]Telegram:[/bold]  {telegram}")
    payments = settings.payments.api_url if settings.payments.enabled else "disabled"
    console.print(f"  [bold]Payments:[/bold]  {payments}")
    console.print(f"  [bold]Data:[/bold]      {settings.data_dir}")
    console.print(
        f"  [bold]Schedules:[/bold] {active} active, {len(records) - active} paused"
    )
    if server_running:
        host = settings.server.host
        port = settings.server.port
        console.print(f"  [bold]Server:[/bold]    [green]starting[/green] at http://{host}:{port}")
    console.print()


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
    )
    # APScheduler logs every job submission at INFO
    logging.getLogger("apscheduler").setLevel(logging.WARNING)


def _start_server_foreground(settings) -> None:
    """Launch the FastAPI server in the foreground."""
    import uvicorn

    from tempo.server.app import create_app

    _configure_logging(settings.log_level)
    uvicorn.run(
        create_app(settings),
        host=settings.server.host,
        port=settings.server.port,
        access_log=False,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    app()
