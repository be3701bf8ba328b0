"""
Retry strategies.

Injection into a freshly created sandbox races the page's own loading, so
the worker manager retries it on a fixed, escalating schedule rather than
with exponential backoff. ``StepBackoff`` expresses that schedule as
absolute attempt offsets; ``RetryContext`` runs an async callable against
any strategy and keeps the failure history for logging.

Example:
    >>> ctx = RetryContext(StepBackoff((0.0, 2.0, 5.0)))
    >>> await ctx.run_async(inject_hooks, sandbox)
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from tapline.core.errors import is_retryable


def utcnow() -> datetime:
    """Return timezone-aware UTC datetime."""
    return datetime.now(UTC)


class RetryStrategy(ABC):
    """Abstract base for retry strategies."""

    @abstractmethod
    def next_delay(self, attempt: int) -> float:
        """Calculate delay before the next attempt.

        Args:
            attempt: Number of attempts made so far (1 = first attempt failed)

        Returns:
            Delay in seconds before next attempt
        """
        ...

    @abstractmethod
    def should_retry(self, attempt: int, error: Exception | None = None) -> bool:
        """Determine if another attempt is allowed after ``attempt`` failures."""
        ...


@dataclass
class StepBackoff(RetryStrategy):
    """Attempts at fixed offsets from the first attempt.

    ``StepBackoff((0, 2, 5))`` makes three attempts: immediately, 2s after
    the first, and 5s after the first. Delays are the gaps between offsets.
    """

    offsets: Sequence[float] = (0.0, 2.0, 5.0)

    def __post_init__(self) -> None:
        if not self.offsets:
            raise ValueError("StepBackoff needs at least one offset")

    @property
    def max_attempts(self) -> int:
        return len(self.offsets)

    @property
    def initial_delay(self) -> float:
        return float(self.offsets[0])

    def next_delay(self, attempt: int) -> float:
        if attempt >= len(self.offsets):
            return 0.0
        return max(0.0, float(self.offsets[attempt]) - float(self.offsets[attempt - 1]))

    def should_retry(self, attempt: int, error: Exception | None = None) -> bool:
        return attempt < len(self.offsets)


@dataclass
class RetryContext:
    """Tracks attempts and runs an async callable under a strategy.

    An error is retried when it is one of ``retry_on`` and ``is_retryable``
    says so; anything else propagates on the spot. When attempts run out
    the last error is raised.
    """

    strategy: RetryStrategy
    retry_on: tuple[type[BaseException], ...] = (Exception,)
    on_retry: Callable[[int, Exception, float], None] | None = None
    attempt: int = field(default=0, init=False)
    last_error: Exception | None = field(default=None, init=False)
    started_at: datetime = field(default_factory=utcnow, init=False)
    errors: list[tuple[int, Exception, datetime]] = field(default_factory=list, init=False)

    @property
    def attempts(self) -> int:
        """Number of attempts made."""
        return self.attempt

    @property
    def elapsed_seconds(self) -> float:
        """Total elapsed time since the context was created."""
        return (utcnow() - self.started_at).total_seconds()

    async def run_async(self, func: Callable[..., Awaitable[Any]], *args: Any, **kwargs: Any) -> Any:
        """Execute an async function with retry logic.

        Raises:
            The last retryable exception once the strategy gives up, or
            the first non-retryable exception immediately.
        """
        initial = getattr(self.strategy, "initial_delay", 0.0)
        if initial > 0:
            await asyncio.sleep(initial)

        while True:
            self.attempt += 1
            try:
                return await func(*args, **kwargs)
            except self.retry_on as e:  # type: ignore[misc]
                self.last_error = e
                self.errors.append((self.attempt, e, utcnow()))

                if not is_retryable(e) or not self.strategy.should_retry(self.attempt, e):
                    raise

                delay = self.strategy.next_delay(self.attempt)
                if self.on_retry:
                    self.on_retry(self.attempt, e, delay)
                await asyncio.sleep(delay)
