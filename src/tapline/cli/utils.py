"""
CLI utility helpers: output formatting and store access.
"""

from __future__ import annotations

import json
from typing import Any, NoReturn

import typer
from rich.console import Console
from rich.table import Table

from tapline.core.database import connect
from tapline.core.models import ExecutionRecord, Schedule
from tapline.core.schema import create_tables
from tapline.core.settings import TaplineSettings, get_settings

console = Console()
err_console = Console(stderr=True)


# ── Settings / connection helpers ────────────────────────────────────────


def load_settings(database: str | None = None) -> TaplineSettings:
    """Effective settings, with ``--database`` taking precedence."""
    settings = get_settings()
    if database:
        settings = settings.model_copy(update={"database_path": database})
    return settings


def open_database(settings: TaplineSettings) -> Any:
    """Open the capture database with the schema applied."""
    conn = connect(settings.database_path)
    create_tables(conn)
    return conn


# ── Output helpers ───────────────────────────────────────────────────────


def fail(message: str, code: int = 1) -> NoReturn:
    err_console.print(f"[bold red]Error[/bold red]: {message}")
    raise typer.Exit(code=code)


def print_json(payload: Any) -> None:
    console.print_json(json.dumps(payload, default=str))


def print_record(record: ExecutionRecord) -> None:
    """Render an ExecutionRecord summary."""
    status = "[green]success[/green]" if record.success else "[red]failed[/red]"
    console.print(f"Execution [bold]{record.id}[/bold]: {status}")
    data = record.execution_data or {}
    if data:
        console.print(
            f"  contexts: {data.get('processed', 0)} "
            f"({data.get('successful', 0)} ok, {data.get('failed', 0)} failed, "
            f"{data.get('success_rate', '0.0%')}), captured: {data.get('captured', 0)}"
        )
    if record.error_message:
        console.print(f"  error: {record.error_message}")
    for line in record.logs:
        console.print(f"  [dim]{line}[/dim]")


def print_schedules(schedules: list[Schedule], title: str = "Upcoming") -> None:
    table = Table(title=title)
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Name")
    table.add_column("Kind")
    table.add_column("Next run")
    table.add_column("Qty", justify="right")

    for s in schedules:
        table.add_row(
            s.id,
            s.name or "-",
            s.kind.value,
            s.next_run.isoformat() if s.next_run else "-",
            str(s.quantity),
        )
    console.print(table)
