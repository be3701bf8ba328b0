"""
Persisted data model.

Targets and schedules are authored by collaborators through the capture
store; execution records and captured exchanges are produced only by the
orchestrator during a firing. All timestamps are timezone-aware UTC.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

# ---------------------------------------------------------------------------
# capture_targets
# ---------------------------------------------------------------------------


@dataclass
class Target:
    """A monitored resource (``capture_targets``)."""

    id: str
    name: str
    url: str
    enabled: bool = True
    created_at: datetime | None = None


# ---------------------------------------------------------------------------
# capture_schedules
# ---------------------------------------------------------------------------


class ScheduleKind(str, Enum):
    """How a schedule's next run is computed."""

    CRON = "cron"
    INTERVAL = "interval"
    ONCE = "once"


@dataclass
class Schedule:
    """Schedule definition row (``capture_schedules``).

    Only the parameter matching ``kind`` is meaningful: ``cron_expression``
    for cron, ``interval_minutes`` for interval, ``fire_at`` for once.
    ``quantity`` is the number of worker contexts spawned per firing.
    """

    id: str
    target_id: str
    name: str = ""
    kind: ScheduleKind = ScheduleKind.CRON
    cron_expression: str | None = None
    interval_minutes: int | None = None
    fire_at: datetime | None = None
    quantity: int = 1
    enabled: bool = True
    next_run: datetime | None = None
    last_run: datetime | None = None
    created_at: datetime | None = None


# ---------------------------------------------------------------------------
# capture_executions
# ---------------------------------------------------------------------------


@dataclass
class ExecutionRecord:
    """One firing of a schedule (``capture_executions``).

    ``end_time`` is None while the firing is still running.
    """

    id: str
    target_id: str
    schedule_id: str
    start_time: datetime
    end_time: datetime | None = None
    success: bool = False
    error_message: str | None = None
    logs: list[str] = field(default_factory=list)
    execution_data: dict[str, Any] | None = None

    @property
    def is_running(self) -> bool:
        return self.end_time is None

    def to_dict(self) -> dict[str, Any]:
        """Serialise for logging / CLI output."""
        return {
            "id": self.id,
            "target_id": self.target_id,
            "schedule_id": self.schedule_id,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "success": self.success,
            "error_message": self.error_message,
            "logs": list(self.logs),
            "execution_data": self.execution_data,
        }


# ---------------------------------------------------------------------------
# capture_exchanges
# ---------------------------------------------------------------------------


@dataclass
class CapturedExchange:
    """A correlated request/response pair captured inside a sandbox.

    ``extracted`` holds the payload found at the configured extraction
    path, or None when the body had nothing there. ``layer`` records which
    hook saw the exchange (``network`` or ``page``).
    """

    id: str
    schedule_id: str
    sandbox_id: str
    url: str
    method: str = "GET"
    request_headers: dict[str, str] = field(default_factory=dict)
    request_body: str | None = None
    response_status: int | None = None
    response_status_text: str | None = None
    response_headers: dict[str, str] = field(default_factory=dict)
    response_body: str | None = None
    extracted: Any = None
    captured_at: datetime | None = None
    complete: bool = False
    layer: str = "page"

    def to_dict(self) -> dict[str, Any]:
        """Serialise without the bodies (kept small for execution payloads)."""
        return {
            "id": self.id,
            "sandbox_id": self.sandbox_id,
            "url": self.url,
            "method": self.method,
            "status": self.response_status,
            "layer": self.layer,
            "captured_at": self.captured_at.isoformat() if self.captured_at else None,
            "has_payload": self.extracted is not None,
        }
