"""
Capture store: the repository contract between the orchestrator and its
collaborators, plus the SQLite implementation.

The orchestrator only needs the operations on ``CaptureStore``; the UI side
(out of scope here) authors targets and schedules through the helpers on
``SqliteCaptureStore`` and reads execution records and exchanges back.

┌──────────────────────────────────────────────────────────────────────────┐
│  CaptureStore contract                                                    │
│                                                                           │
│   list_enabled_schedules()                  → [Schedule]                  │
│   get_schedule(id) / get_target(id)         → Schedule | Target | None    │
│   create_execution_record(record)           → id                          │
│   update_execution_record(id, partial)                                    │
│   list_unfinished_executions()              → [ExecutionRecord]           │
│   append_captured_exchange(schedule_id, ex)   (capped, oldest evicted)    │
│   list_captured_exchanges(schedule_id)      → [CapturedExchange]          │
│   update_schedule_next_run(id, ts)                                        │
│   disable_schedule(id)                                                    │
└──────────────────────────────────────────────────────────────────────────┘
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Protocol, runtime_checkable
from uuid import uuid4

from .errors import StorageError
from .models import CapturedExchange, ExecutionRecord, Schedule, ScheduleKind, Target
from .protocols import Connection

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Create/Update DTOs
# ---------------------------------------------------------------------------


@dataclass
class TargetCreate:
    """DTO for creating a new target."""

    name: str
    url: str
    enabled: bool = True


@dataclass
class ScheduleCreate:
    """DTO for creating a new schedule."""

    target_id: str
    kind: ScheduleKind | str = ScheduleKind.CRON
    name: str = ""
    cron_expression: str | None = None
    interval_minutes: int | None = None
    fire_at: datetime | None = None
    quantity: int = 1
    enabled: bool = True


@dataclass
class ExecutionRecordUpdate:
    """Partial update for an execution record. None fields are left alone."""

    end_time: datetime | None = None
    success: bool | None = None
    error_message: str | None = None
    logs: list[str] | None = None
    execution_data: dict[str, Any] | None = None


# ---------------------------------------------------------------------------
# Contract
# ---------------------------------------------------------------------------


@runtime_checkable
class CaptureStore(Protocol):
    """Repository operations the orchestrator consumes and produces."""

    def list_enabled_schedules(self) -> list[Schedule]: ...

    def get_schedule(self, schedule_id: str) -> Schedule | None: ...

    def get_target(self, target_id: str) -> Target | None: ...

    def create_execution_record(self, record: ExecutionRecord) -> str: ...

    def update_execution_record(self, record_id: str, update: ExecutionRecordUpdate) -> None: ...

    def list_unfinished_executions(self) -> list[ExecutionRecord]: ...

    def append_captured_exchange(self, schedule_id: str, exchange: CapturedExchange) -> None: ...

    def list_captured_exchanges(self, schedule_id: str) -> list[CapturedExchange]: ...

    def update_schedule_next_run(
        self, schedule_id: str, next_run: datetime | None, last_run: datetime | None = None
    ) -> None: ...

    def disable_schedule(self, schedule_id: str) -> None: ...


# ---------------------------------------------------------------------------
# SQLite implementation
# ---------------------------------------------------------------------------


def _iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat()


def _parse(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


class SqliteCaptureStore:
    """Capture store over a ``sqlite3`` connection.

    Example:
        >>> store = SqliteCaptureStore(conn, max_exchanges_per_schedule=1000)
        >>> target = store.create_target(TargetCreate(name="pdp", url="https://shop/item/1"))
        >>> schedule = store.create_schedule(ScheduleCreate(
        ...     target_id=target.id, kind="interval", interval_minutes=15, quantity=3,
        ... ))
        >>> store.list_enabled_schedules()
    """

    _SCHEDULE_COLUMNS = [
        "id",
        "target_id",
        "name",
        "kind",
        "cron_expression",
        "interval_minutes",
        "fire_at",
        "quantity",
        "enabled",
        "next_run",
        "last_run",
        "created_at",
    ]
    _EXECUTION_COLUMNS = [
        "id",
        "target_id",
        "schedule_id",
        "start_time",
        "end_time",
        "success",
        "error_message",
        "logs",
        "execution_data",
    ]
    _EXCHANGE_COLUMNS = [
        "id",
        "schedule_id",
        "sandbox_id",
        "url",
        "method",
        "request_headers",
        "request_body",
        "response_status",
        "response_status_text",
        "response_headers",
        "response_body",
        "extracted",
        "captured_at",
        "complete",
        "layer",
    ]

    def __init__(self, conn: Connection, max_exchanges_per_schedule: int = 1000) -> None:
        """Initialize store with database connection.

        Args:
            conn: Database connection with the capture schema applied
            max_exchanges_per_schedule: Cap on stored exchanges per schedule
        """
        if max_exchanges_per_schedule < 1:
            raise ValueError("max_exchanges_per_schedule must be >= 1")
        self.conn = conn
        self.max_exchanges = max_exchanges_per_schedule

    # === Targets ===

    def create_target(self, payload: TargetCreate) -> Target:
        target = Target(
            id=str(uuid4()),
            name=payload.name,
            url=payload.url,
            enabled=payload.enabled,
            created_at=datetime.now(UTC),
        )
        self.conn.execute(
            "INSERT INTO capture_targets (id, name, url, enabled, created_at) VALUES (?, ?, ?, ?, ?)",
            (target.id, target.name, target.url, 1 if target.enabled else 0, _iso(target.created_at)),
        )
        self.conn.commit()
        return target

    def get_target(self, target_id: str) -> Target | None:
        row = self.conn.execute(
            "SELECT id, name, url, enabled, created_at FROM capture_targets WHERE id = ?",
            (target_id,),
        ).fetchone()
        if not row:
            return None
        return Target(
            id=row[0],
            name=row[1],
            url=row[2],
            enabled=bool(row[3]),
            created_at=_parse(row[4]),
        )

    # === Schedules ===

    def create_schedule(self, payload: ScheduleCreate, now: datetime | None = None) -> Schedule:
        """Create a schedule with its initial ``next_run`` computed.

        Raises:
            ScheduleConfigError: If the kind-specific parameter is missing or invalid
        """
        from tapline.scheduling.clock import compute_next_run

        now = now or datetime.now(UTC)
        schedule = Schedule(
            id=str(uuid4()),
            target_id=payload.target_id,
            name=payload.name,
            kind=ScheduleKind(payload.kind),
            cron_expression=payload.cron_expression,
            interval_minutes=payload.interval_minutes,
            fire_at=payload.fire_at,
            quantity=payload.quantity,
            enabled=payload.enabled,
            created_at=now,
        )
        schedule.next_run = compute_next_run(schedule, now)

        self.conn.execute(
            f"INSERT INTO capture_schedules ({', '.join(self._SCHEDULE_COLUMNS)}) "
            f"VALUES ({', '.join('?' * len(self._SCHEDULE_COLUMNS))})",
            (
                schedule.id,
                schedule.target_id,
                schedule.name,
                schedule.kind.value,
                schedule.cron_expression,
                schedule.interval_minutes,
                _iso(schedule.fire_at),
                schedule.quantity,
                1 if schedule.enabled else 0,
                _iso(schedule.next_run),
                None,
                _iso(schedule.created_at),
            ),
        )
        self.conn.commit()
        return schedule

    def get_schedule(self, schedule_id: str) -> Schedule | None:
        row = self.conn.execute(
            f"SELECT {', '.join(self._SCHEDULE_COLUMNS)} FROM capture_schedules WHERE id = ?",
            (schedule_id,),
        ).fetchone()
        return self._row_to_schedule(row) if row else None

    def list_schedules(self) -> list[Schedule]:
        cursor = self.conn.execute(
            f"SELECT {', '.join(self._SCHEDULE_COLUMNS)} FROM capture_schedules ORDER BY created_at"
        )
        return [self._row_to_schedule(row) for row in cursor.fetchall()]

    def list_enabled_schedules(self) -> list[Schedule]:
        cursor = self.conn.execute(
            f"SELECT {', '.join(self._SCHEDULE_COLUMNS)} FROM capture_schedules "
            "WHERE enabled = 1 ORDER BY created_at"
        )
        return [self._row_to_schedule(row) for row in cursor.fetchall()]

    def update_schedule_next_run(
        self, schedule_id: str, next_run: datetime | None, last_run: datetime | None = None
    ) -> None:
        if last_run is None:
            self.conn.execute(
                "UPDATE capture_schedules SET next_run = ? WHERE id = ?",
                (_iso(next_run), schedule_id),
            )
        else:
            self.conn.execute(
                "UPDATE capture_schedules SET next_run = ?, last_run = ? WHERE id = ?",
                (_iso(next_run), _iso(last_run), schedule_id),
            )
        self.conn.commit()

    def disable_schedule(self, schedule_id: str) -> None:
        self.conn.execute(
            "UPDATE capture_schedules SET enabled = 0 WHERE id = ?",
            (schedule_id,),
        )
        self.conn.commit()

    # === Execution records ===

    def create_execution_record(self, record: ExecutionRecord) -> str:
        self.conn.execute(
            f"INSERT INTO capture_executions ({', '.join(self._EXECUTION_COLUMNS)}) "
            f"VALUES ({', '.join('?' * len(self._EXECUTION_COLUMNS))})",
            (
                record.id,
                record.target_id,
                record.schedule_id,
                _iso(record.start_time),
                _iso(record.end_time),
                1 if record.success else 0,
                record.error_message,
                json.dumps(record.logs),
                json.dumps(record.execution_data) if record.execution_data is not None else None,
            ),
        )
        self.conn.commit()
        return record.id

    def update_execution_record(self, record_id: str, update: ExecutionRecordUpdate) -> None:
        set_parts: list[str] = []
        params: list[Any] = []

        if update.end_time is not None:
            set_parts.append("end_time = ?")
            params.append(_iso(update.end_time))
        if update.success is not None:
            set_parts.append("success = ?")
            params.append(1 if update.success else 0)
        if update.error_message is not None:
            set_parts.append("error_message = ?")
            params.append(update.error_message)
        if update.logs is not None:
            set_parts.append("logs = ?")
            params.append(json.dumps(update.logs))
        if update.execution_data is not None:
            set_parts.append("execution_data = ?")
            params.append(json.dumps(update.execution_data, default=str))

        if not set_parts:
            return

        params.append(record_id)
        cursor = self.conn.execute(
            f"UPDATE capture_executions SET {', '.join(set_parts)} WHERE id = ?",
            params,
        )
        self.conn.commit()
        if cursor.rowcount == 0:
            raise StorageError(f"Execution record not found: {record_id}")

    def get_execution_record(self, record_id: str) -> ExecutionRecord | None:
        row = self.conn.execute(
            f"SELECT {', '.join(self._EXECUTION_COLUMNS)} FROM capture_executions WHERE id = ?",
            (record_id,),
        ).fetchone()
        return self._row_to_execution(row) if row else None

    def list_execution_records(self, schedule_id: str, limit: int = 50) -> list[ExecutionRecord]:
        """Most recent first."""
        cursor = self.conn.execute(
            f"SELECT {', '.join(self._EXECUTION_COLUMNS)} FROM capture_executions "
            "WHERE schedule_id = ? ORDER BY start_time DESC LIMIT ?",
            (schedule_id, limit),
        )
        return [self._row_to_execution(row) for row in cursor.fetchall()]

    def list_unfinished_executions(self) -> list[ExecutionRecord]:
        cursor = self.conn.execute(
            f"SELECT {', '.join(self._EXECUTION_COLUMNS)} FROM capture_executions "
            "WHERE end_time IS NULL ORDER BY start_time"
        )
        return [self._row_to_execution(row) for row in cursor.fetchall()]

    # === Captured exchanges ===

    def append_captured_exchange(self, schedule_id: str, exchange: CapturedExchange) -> None:
        """Append an exchange, then evict the oldest beyond the cap."""
        self.conn.execute(
            f"INSERT INTO capture_exchanges ({', '.join(self._EXCHANGE_COLUMNS)}) "
            f"VALUES ({', '.join('?' * len(self._EXCHANGE_COLUMNS))})",
            (
                exchange.id,
                schedule_id,
                exchange.sandbox_id,
                exchange.url,
                exchange.method,
                json.dumps(exchange.request_headers),
                exchange.request_body,
                exchange.response_status,
                exchange.response_status_text,
                json.dumps(exchange.response_headers),
                exchange.response_body,
                json.dumps(exchange.extracted) if exchange.extracted is not None else None,
                _iso(exchange.captured_at or datetime.now(UTC)),
                1 if exchange.complete else 0,
                exchange.layer,
            ),
        )
        cursor = self.conn.execute(
            """
            DELETE FROM capture_exchanges
            WHERE schedule_id = ? AND seq NOT IN (
                SELECT seq FROM capture_exchanges
                WHERE schedule_id = ?
                ORDER BY seq DESC
                LIMIT ?
            )
            """,
            (schedule_id, schedule_id, self.max_exchanges),
        )
        self.conn.commit()
        if cursor.rowcount:
            logger.debug(f"Evicted {cursor.rowcount} exchange(s) for schedule {schedule_id}")

    def list_captured_exchanges(self, schedule_id: str) -> list[CapturedExchange]:
        """Oldest first."""
        cursor = self.conn.execute(
            f"SELECT {', '.join(self._EXCHANGE_COLUMNS)} FROM capture_exchanges "
            "WHERE schedule_id = ? ORDER BY seq",
            (schedule_id,),
        )
        return [self._row_to_exchange(row) for row in cursor.fetchall()]

    # === Private Helpers ===

    def _row_to_schedule(self, row: tuple) -> Schedule:
        data = dict(zip(self._SCHEDULE_COLUMNS, row, strict=True))
        return Schedule(
            id=data["id"],
            target_id=data["target_id"],
            name=data["name"],
            kind=ScheduleKind(data["kind"]),
            cron_expression=data["cron_expression"],
            interval_minutes=data["interval_minutes"],
            fire_at=_parse(data["fire_at"]),
            quantity=data["quantity"],
            enabled=bool(data["enabled"]),
            next_run=_parse(data["next_run"]),
            last_run=_parse(data["last_run"]),
            created_at=_parse(data["created_at"]),
        )

    def _row_to_execution(self, row: tuple) -> ExecutionRecord:
        data = dict(zip(self._EXECUTION_COLUMNS, row, strict=True))
        return ExecutionRecord(
            id=data["id"],
            target_id=data["target_id"],
            schedule_id=data["schedule_id"],
            start_time=_parse(data["start_time"]),  # type: ignore[arg-type]
            end_time=_parse(data["end_time"]),
            success=bool(data["success"]),
            error_message=data["error_message"],
            logs=json.loads(data["logs"]) if data["logs"] else [],
            execution_data=json.loads(data["execution_data"]) if data["execution_data"] else None,
        )

    def _row_to_exchange(self, row: tuple) -> CapturedExchange:
        data = dict(zip(self._EXCHANGE_COLUMNS, row, strict=True))
        return CapturedExchange(
            id=data["id"],
            schedule_id=data["schedule_id"],
            sandbox_id=data["sandbox_id"],
            url=data["url"],
            method=data["method"],
            request_headers=json.loads(data["request_headers"]),
            request_body=data["request_body"],
            response_status=data["response_status"],
            response_status_text=data["response_status_text"],
            response_headers=json.loads(data["response_headers"]),
            response_body=data["response_body"],
            extracted=json.loads(data["extracted"]) if data["extracted"] is not None else None,
            captured_at=_parse(data["captured_at"]),
            complete=bool(data["complete"]),
            layer=data["layer"],
        )
