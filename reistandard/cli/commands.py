"""ReiStandard CLI commands for running and operating the service."""

from __future__ import annotations

import asyncio

import typer
from rich.console import Console
from rich.table import Table

app = typer.Typer(help="ReiStandard scheduled notification service", no_args_is_help=True)
console = Console()


def _async_run(coro):
    """Run an async coroutine."""
    return asyncio.run(coro)


@app.command()
def serve() -> None:
    """Start the API server."""
    from reistandard.main import main

    main()


@app.command("init-db")
def init_db() -> None:
    """Create the database tables."""
    from reistandard.database import close_db, init_db as _init_db

    async def _run() -> None:
        await _init_db()
        await close_db()

    _async_run(_run())
    console.print("[green]✓[/green] Database initialized")


@app.command()
def dispatch() -> None:
    """Run one delivery pass and print the report."""
    from reistandard.database import close_db, init_db as _init_db
    from reistandard.errors import ConfigurationError
    from reistandard.logging_config import setup_logging
    from reistandard.modules.scheduler.dispatcher import Dispatcher

    setup_logging()

    async def _run():
        await _init_db()
        try:
            return await Dispatcher.from_settings().run()
        finally:
            await close_db()

    try:
        report = _async_run(_run())
    except ConfigurationError as exc:
        console.print(f"[red]✗ {exc.code}:[/red] {exc.message}")
        if exc.missing:
            console.print(f"  Missing: {', '.join(exc.missing)}")
        raise typer.Exit(1)

    summary = Table(title="Delivery pass")
    summary.add_column("Metric", style="cyan")
    summary.add_column("Value", justify="right")
    summary.add_row("Total tasks", str(report.total_tasks))
    summary.add_row("Delivered", str(report.success_count))
    summary.add_row("Failed", str(report.failed_count))
    summary.add_row("One-off deleted", str(report.deleted_once_off_tasks))
    summary.add_row("Recurring rescheduled", str(report.updated_recurring_tasks))
    summary.add_row("Execution time", f"{report.execution_ms} ms")
    console.print(summary)

    if report.failed_tasks:
        failures = Table(title="Failed tasks")
        failures.add_column("Task", justify="right")
        failures.add_column("Retries", justify="right")
        failures.add_column("Next retry / status")
        failures.add_column("Reason")
        for record in report.failed_tasks:
            data = record.to_dict()
            failures.add_row(
                str(record.task_id),
                str(record.retry_count),
                data.get("nextRetryAt") or data.get("status", "-"),
                record.reason,
            )
        console.print(failures)


@app.command("derive-key")
def derive_key(user_id: str = typer.Argument(..., help="User identifier")) -> None:
    """Print the hex key derived for a user (for client debugging)."""
    from reistandard.config import get_settings
    from reistandard.errors import ConfigurationError
    from reistandard.security.encryption import derive_user_key

    try:
        key = derive_user_key(get_settings().encryption_key, user_id)
    except ConfigurationError as exc:
        console.print(f"[red]✗ {exc.code}:[/red] {exc.message}")
        raise typer.Exit(1)
    console.print(key.hex())


if __name__ == "__main__":
    app()
