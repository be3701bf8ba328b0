"""Schedule clock: pure due-time computation.

Three schedule kinds are supported:

    cron       croniter evaluates the 5-field expression strictly after ``now``
    interval   ``now + interval_minutes``
    once       the fixed ``fire_at`` timestamp (the caller disables it after firing)

Nothing here touches storage or mutates a schedule. Misconfiguration is
reported synchronously as ``ScheduleConfigError`` so the orchestrator can
log it and skip the schedule for that tick.

Example:
    >>> from datetime import UTC, datetime
    >>> s = Schedule(id="s1", target_id="t1", kind=ScheduleKind.INTERVAL, interval_minutes=15)
    >>> compute_next_run(s, datetime(2025, 1, 1, tzinfo=UTC))
    datetime.datetime(2025, 1, 1, 0, 15, tzinfo=datetime.timezone.utc)
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import UTC, datetime, timedelta

from croniter import croniter

from tapline.core.errors import ScheduleConfigError
from tapline.core.models import Schedule, ScheduleKind


def _aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def validate_schedule(schedule: Schedule) -> None:
    """Raise ``ScheduleConfigError`` if the kind-specific parameter is unusable."""
    if schedule.quantity is None or schedule.quantity < 1:
        raise ScheduleConfigError(
            f"Quantity must be at least 1, got {schedule.quantity}", schedule_id=schedule.id
        )

    kind = schedule.kind
    if kind == ScheduleKind.CRON:
        if not schedule.cron_expression or not schedule.cron_expression.strip():
            raise ScheduleConfigError(
                "Cron expression is required for cron type", schedule_id=schedule.id
            )
        if not croniter.is_valid(schedule.cron_expression):
            raise ScheduleConfigError(
                f"Invalid cron expression: {schedule.cron_expression!r}", schedule_id=schedule.id
            )
    elif kind == ScheduleKind.INTERVAL:
        if schedule.interval_minutes is None:
            raise ScheduleConfigError(
                "Interval minutes is required for interval type", schedule_id=schedule.id
            )
        if schedule.interval_minutes <= 0:
            raise ScheduleConfigError(
                f"Interval minutes must be positive, got {schedule.interval_minutes}",
                schedule_id=schedule.id,
            )
    elif kind == ScheduleKind.ONCE:
        if schedule.fire_at is None:
            raise ScheduleConfigError(
                "Fire-at time is required for once type", schedule_id=schedule.id
            )
    else:
        raise ScheduleConfigError(f"Unknown schedule kind: {kind!r}", schedule_id=schedule.id)


def compute_next_run(schedule: Schedule, now: datetime) -> datetime:
    """Compute the next run time for ``schedule`` relative to ``now``.

    Args:
        schedule: Schedule definition
        now: Reference time (naive values are treated as UTC)

    Returns:
        Timezone-aware UTC timestamp

    Raises:
        ScheduleConfigError: Bad cron expression, missing or invalid parameter
    """
    validate_schedule(schedule)
    now = _aware(now)

    if schedule.kind == ScheduleKind.CRON:
        cron = croniter(schedule.cron_expression, now)
        return _aware(cron.get_next(datetime)).astimezone(UTC)

    if schedule.kind == ScheduleKind.INTERVAL:
        return now + timedelta(minutes=schedule.interval_minutes)  # type: ignore[arg-type]

    return _aware(schedule.fire_at).astimezone(UTC)  # type: ignore[arg-type]


def is_due(schedule: Schedule, now: datetime) -> bool:
    """True iff the schedule is enabled and its next run is at or before ``now``."""
    if not schedule.enabled or schedule.next_run is None:
        return False
    return _aware(schedule.next_run) <= _aware(now)


def upcoming(schedules: Iterable[Schedule], count: int = 10) -> list[Schedule]:
    """Next ``count`` enabled schedules with a computed next run, soonest first."""
    pending = [s for s in schedules if s.enabled and s.next_run is not None]
    pending.sort(key=lambda s: _aware(s.next_run))  # type: ignore[arg-type]
    return pending[:count]


__all__ = ["compute_next_run", "is_due", "upcoming", "validate_schedule"]
