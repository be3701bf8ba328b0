"""Scheduler backend protocol.

┌──────────────────────────────────────────────────────────────────────────────┐
│  SCHEDULER BACKEND PROTOCOL                                                   │
│                                                                               │
│  The orchestrator runs "beat-as-poller": a backend decides WHEN a tick        │
│  happens, the Orchestrator decides WHAT a tick does.                          │
│                                                                               │
│   ┌─────────────────────┐      tick()      ┌──────────────────────────┐      │
│   │  AsyncioScheduler   │ ───────────────► │  Orchestrator            │      │
│   │  Backend            │                  │  - load enabled          │      │
│   │  (event-loop task)  │                  │  - claim due schedules   │      │
│   └─────────────────────┘                  │  - spawn firings         │      │
│                                            └──────────────────────────┘      │
│                                                                               │
│  The backend runs on the same event loop as the sandbox platform, so a       │
│  tick never blocks on a firing; firings are tasks the tick spawns.           │
└──────────────────────────────────────────────────────────────────────────────┘
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

TickCallback = Callable[[], Awaitable[Any]]


@runtime_checkable
class SchedulerBackend(Protocol):
    """Protocol for pluggable scheduler timing backends.

    A backend is responsible ONLY for timing: calling the tick callback
    at the specified interval. All schedule evaluation lives in the
    Orchestrator.

    Example (custom backend):
        >>> class ManualBackend:
        ...     name = "manual"
        ...
        ...     def start(self, tick_callback, interval_seconds=30.0):
        ...         self._callback = tick_callback
        ...
        ...     async def stop(self):
        ...         pass
        ...
        ...     def health(self) -> dict:
        ...         return {"healthy": True, "backend": "manual"}
    """

    name: str

    def start(
        self,
        tick_callback: TickCallback,
        interval_seconds: float = 30.0,
    ) -> None:
        """Start the tick loop. Must be called with an event loop running."""
        ...

    async def stop(self) -> None:
        """Stop the tick loop, waiting for the current tick to finish."""
        ...

    def health(self) -> dict[str, Any]:
        """Return backend health status.

        Returns:
            dict with at least:
                - healthy: bool
                - backend: str
                - tick_count: int
                - last_tick: str | None
        """
        ...


@dataclass
class BackendHealth:
    """Structured backend health response."""

    healthy: bool
    backend: str
    tick_count: int = 0
    last_tick: datetime | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "healthy": self.healthy,
            "backend": self.backend,
            "tick_count": self.tick_count,
            "last_tick": self.last_tick.isoformat() if self.last_tick else None,
            **self.extra,
        }
