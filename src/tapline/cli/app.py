"""
Root Typer application for the tapline CLI.

Commands:
    init-db     create the capture tables
    run         start the orchestrator until SIGINT/SIGTERM
    trigger     fire one schedule now and print its ExecutionRecord
    upcoming    list the next schedules to fire
    settings    print the effective configuration
"""

from __future__ import annotations

import asyncio
import contextlib
import signal
from collections.abc import AsyncIterator

import typer
from rich.markup import escape
from typer import Typer

from tapline.core.logging import configure_logging
from tapline.core.repository import SqliteCaptureStore
from tapline.core.settings import TaplineSettings
from tapline.sandbox.protocol import SandboxPlatform
from tapline.scheduling import clock, create_orchestrator

from .utils import (
    console,
    fail,
    load_settings,
    open_database,
    print_json,
    print_record,
    print_schedules,
)

app = Typer(
    name="tapline",
    help="tapline: scheduled network interception orchestrator.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

PLATFORMS = ("playwright", "memory")


# ── Version callback ─────────────────────────────────────────────────────


def _version_callback(value: bool) -> None:
    if value:
        from tapline import __version__

        typer.echo(f"tapline {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool | None = typer.Option(  # noqa: UP007
        None,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
) -> None:
    """tapline CLI: run the orchestrator, trigger schedules, inspect upcoming runs."""


# ── Platform helpers ─────────────────────────────────────────────────────


@contextlib.asynccontextmanager
async def platform_session(name: str, settings: TaplineSettings) -> AsyncIterator[SandboxPlatform]:
    """Open the named sandbox platform for the duration of a command."""
    if name == "memory":
        from tapline.sandbox.memory import MemorySandboxPlatform

        yield MemorySandboxPlatform()
        return

    from tapline.sandbox.playwright_platform import PlaywrightSandboxPlatform

    async with PlaywrightSandboxPlatform(headless=settings.headless, browser=settings.browser) as platform:
        yield platform


def _check_platform(name: str) -> None:
    if name not in PLATFORMS:
        fail(f"Unknown platform {name!r}; choose one of: {', '.join(PLATFORMS)}")


def _setup_logging(settings: TaplineSettings) -> None:
    configure_logging(level=settings.log_level, json_format=settings.log_format == "json")


# ── Commands ─────────────────────────────────────────────────────────────


@app.command("init-db")
def init_db(
    database: str | None = typer.Option(None, "--database", "-d", help="SQLite file path."),
) -> None:
    """Create the capture tables (idempotent)."""
    settings = load_settings(database)
    conn = open_database(settings)
    conn.close()
    console.print(f"[green]Initialized[/green] {settings.database_path}")


@app.command("run")
def run(
    database: str | None = typer.Option(None, "--database", "-d", help="SQLite file path."),
    platform: str = typer.Option("playwright", "--platform", "-p", help="playwright | memory"),
) -> None:
    """Start the orchestrator and tick until interrupted."""
    _check_platform(platform)
    settings = load_settings(database)
    _setup_logging(settings)
    asyncio.run(_run(settings, platform))


async def _run(settings: TaplineSettings, platform_name: str) -> None:
    conn = open_database(settings)
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop.set)

    try:
        async with platform_session(platform_name, settings) as platform:
            orchestrator = create_orchestrator(conn, platform, settings)
            orchestrator.start()
            console.print(
                f"[green]tapline running[/green] on {platform.name} "
                f"(tick every {settings.tick_interval_seconds}s). Ctrl-C to stop."
            )
            await stop.wait()
            await orchestrator.stop()
    finally:
        conn.close()


@app.command("trigger")
def trigger(
    schedule_id: str = typer.Argument(..., help="Schedule to fire now."),
    database: str | None = typer.Option(None, "--database", "-d", help="SQLite file path."),
    platform: str = typer.Option("playwright", "--platform", "-p", help="playwright | memory"),
    as_json: bool = typer.Option(False, "--json", help="Print the record as JSON."),
) -> None:
    """Fire a schedule once regardless of its due time."""
    _check_platform(platform)
    settings = load_settings(database)
    _setup_logging(settings)

    try:
        record = asyncio.run(_trigger(settings, platform, schedule_id))
    except KeyError:
        fail(f"Schedule not found: {schedule_id}")

    if record is None:
        fail(f"Schedule {schedule_id} is already firing")

    if as_json:
        print_json(record.to_dict())
    else:
        print_record(record)
    if not record.success:
        raise typer.Exit(code=1)


async def _trigger(settings: TaplineSettings, platform_name: str, schedule_id: str):
    conn = open_database(settings)
    try:
        async with platform_session(platform_name, settings) as platform:
            orchestrator = create_orchestrator(conn, platform, settings)
            return await orchestrator.trigger(schedule_id)
    finally:
        conn.close()


@app.command("upcoming")
def upcoming(
    count: int = typer.Option(10, "--count", "-n", min=1, help="How many schedules to show."),
    database: str | None = typer.Option(None, "--database", "-d", help="SQLite file path."),
    as_json: bool = typer.Option(False, "--json", help="Print as JSON."),
) -> None:
    """List the next enabled schedules to fire."""
    settings = load_settings(database)
    conn = open_database(settings)
    try:
        store = SqliteCaptureStore(conn, settings.max_captured_exchanges)
        schedules = clock.upcoming(store.list_enabled_schedules(), count)
    finally:
        conn.close()

    if as_json:
        print_json(
            [
                {
                    "id": s.id,
                    "name": s.name,
                    "kind": s.kind.value,
                    "next_run": s.next_run.isoformat() if s.next_run else None,
                    "quantity": s.quantity,
                }
                for s in schedules
            ]
        )
        return
    if not schedules:
        console.print("[dim]No upcoming schedules.[/dim]")
        return
    print_schedules(schedules)


@app.command("settings")
def show_settings(
    as_json: bool = typer.Option(False, "--json", help="Print as JSON."),
) -> None:
    """Print the effective configuration."""
    settings = load_settings()
    data = settings.model_dump()
    if as_json:
        print_json(data)
        return
    for key, value in data.items():
        console.print(f"[cyan]{key}[/cyan] = {escape(str(value))}")
