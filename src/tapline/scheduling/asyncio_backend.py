"""Event-loop scheduler backend.

The sandbox platform (Playwright) lives on one asyncio event loop, so the
tick loop must live there too. This backend runs as a task on the running
loop: it ticks once immediately, then every ``interval_seconds`` until
stopped. A tick that raises is logged and the loop carries on.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from datetime import UTC, datetime
from typing import Any

from .protocol import BackendHealth, TickCallback

logger = logging.getLogger(__name__)


class AsyncioSchedulerBackend:
    """Asyncio-task scheduler backend.

    Example:
        >>> backend = AsyncioSchedulerBackend()
        >>>
        >>> async def my_tick():
        ...     print("Tick!")
        ...
        >>> backend.start(my_tick, interval_seconds=5.0)
        >>> # ... later ...
        >>> await backend.stop()
    """

    name = "asyncio"

    def __init__(self) -> None:
        self._stop_event: asyncio.Event | None = None
        self._task: asyncio.Task | None = None
        self._tick_count = 0
        self._last_tick: datetime | None = None
        self._interval: float = 30.0
        self._started = False

    def start(
        self,
        tick_callback: TickCallback,
        interval_seconds: float = 30.0,
    ) -> None:
        """Start the tick loop as a task on the running event loop.

        Args:
            tick_callback: Async function to call on each tick.
            interval_seconds: How often to tick (default: 30s).

        Raises:
            RuntimeError: If no event loop is running.
        """
        if self._started:
            logger.warning("AsyncioSchedulerBackend already started")
            return

        loop = asyncio.get_running_loop()
        self._interval = interval_seconds
        self._stop_event = asyncio.Event()
        self._task = loop.create_task(self._loop(tick_callback), name="tapline-scheduler")
        self._started = True

    async def _loop(self, tick_callback: TickCallback) -> None:
        assert self._stop_event is not None
        logger.info(f"AsyncioSchedulerBackend started (interval={self._interval}s)")

        while not self._stop_event.is_set():
            self._tick_count += 1
            self._last_tick = datetime.now(UTC)
            try:
                await tick_callback()
            except Exception as e:
                logger.exception(f"Tick failed: {e}")

            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._interval)

        logger.info("AsyncioSchedulerBackend stopped")

    async def stop(self) -> None:
        """Stop the tick loop, letting the current tick finish."""
        if not self._started:
            return

        assert self._stop_event is not None
        self._stop_event.set()
        if self._task is not None:
            await self._task
            self._task = None

        self._started = False
        logger.info("AsyncioSchedulerBackend shutdown complete")

    def health(self) -> dict[str, Any]:
        return self.get_health().to_dict()

    def get_health(self) -> BackendHealth:
        """Return structured health status."""
        return BackendHealth(
            healthy=self.is_running,
            backend=self.name,
            tick_count=self._tick_count,
            last_tick=self._last_tick,
            extra={"interval_seconds": self._interval},
        )

    @property
    def is_running(self) -> bool:
        """Check if backend is currently running."""
        return self._started and self._task is not None and not self._task.done()

    @property
    def tick_count(self) -> int:
        """Get number of ticks executed."""
        return self._tick_count

    @property
    def last_tick(self) -> datetime | None:
        """Get timestamp of last tick."""
        return self._last_tick
