"""
tapline.scheduling -- due-time engine and orchestrator.

Tags:
    tapline, scheduling, cron, interval, once, orchestrator

Doc-Types:
    api-reference

Architecture::

    clock.py            compute_next_run / is_due / upcoming (croniter)
    protocol.py         SchedulerBackend protocol + BackendHealth
    asyncio_backend.py  AsyncioSchedulerBackend (event-loop tick task)
    state.py            OrchestratorState (claims + worker-context registry)
    service.py          Orchestrator (tick, fire, batches, finalize, advance)

Usage::

    from tapline.core.database import connect
    from tapline.core.schema import create_tables
    from tapline.sandbox import MemorySandboxPlatform
    from tapline.scheduling import create_orchestrator

    conn = connect(":memory:")
    create_tables(conn)
    orchestrator = create_orchestrator(conn, MemorySandboxPlatform())
    orchestrator.start()
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime

from tapline.core.protocols import Connection
from tapline.core.repository import SqliteCaptureStore
from tapline.core.settings import TaplineSettings, get_settings
from tapline.interception.bridge import InterceptionBridge
from tapline.interception.matching import UrlMatcher
from tapline.sandbox.protocol import SandboxPlatform
from tapline.sandbox.worker import WorkerContextManager

from .asyncio_backend import AsyncioSchedulerBackend
from .clock import compute_next_run, is_due, upcoming
from .protocol import BackendHealth, SchedulerBackend
from .service import Orchestrator, OrchestratorHealth, OrchestratorStats, build_execution_summary
from .state import ClaimState, OrchestratorState

__all__ = [
    # Clock
    "compute_next_run",
    "is_due",
    "upcoming",
    # Protocol
    "SchedulerBackend",
    "BackendHealth",
    # Backends
    "AsyncioSchedulerBackend",
    # State
    "ClaimState",
    "OrchestratorState",
    # Service
    "Orchestrator",
    "OrchestratorHealth",
    "OrchestratorStats",
    "build_execution_summary",
    "create_orchestrator",
]


def create_orchestrator(
    conn: Connection,
    platform: SandboxPlatform,
    settings: TaplineSettings | None = None,
    backend: SchedulerBackend | None = None,
    clock_fn: Callable[[], datetime] | None = None,
) -> Orchestrator:
    """Factory function to create a fully wired orchestrator.

    Args:
        conn: Database connection with the capture schema applied
        platform: Sandbox platform (Playwright in production, memory in tests)
        settings: Runtime configuration (default: ``get_settings()``)
        backend: Timing backend (default: AsyncioSchedulerBackend)
        clock_fn: Source of "now" (default: UTC wall clock)

    Returns:
        Configured Orchestrator

    Example:
        >>> orchestrator = create_orchestrator(conn, platform)
        >>> orchestrator.start()
    """
    settings = settings or get_settings()
    repository = SqliteCaptureStore(conn, max_exchanges_per_schedule=settings.max_captured_exchanges)
    state = OrchestratorState()
    bridge = InterceptionBridge(
        repository,
        UrlMatcher(settings.url_pattern, tuple(settings.alternate_patterns)),
        settings.extraction_path,
        dedup_window_seconds=settings.dedup_window_seconds,
    )
    workers = WorkerContextManager(platform, bridge, state, settings)

    return Orchestrator(
        backend=backend or AsyncioSchedulerBackend(),
        repository=repository,
        workers=workers,
        state=state,
        settings=settings,
        clock_fn=clock_fn,
    )
