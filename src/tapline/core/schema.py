"""
Capture store schema.

Four tables back the capture store:

    capture_targets     monitored resources (collaborator-authored)
    capture_schedules   cron / interval / once schedules per target
    capture_executions  one row per firing; end_time NULL while running
    capture_exchanges   append-only captured request/response pairs

JSON columns (``logs``, ``*_headers``, ``execution_data``, ``extracted``)
are stored as TEXT. ``capture_exchanges.seq`` is the insertion order used
for oldest-first eviction, since capture timestamps can tie.

Examples:
    >>> from tapline.core.schema import create_tables
    >>> create_tables(conn)
"""

from __future__ import annotations

from .protocols import Connection

CAPTURE_TABLES = {
    "targets": "capture_targets",
    "schedules": "capture_schedules",
    "executions": "capture_executions",
    "exchanges": "capture_exchanges",
}

CAPTURE_DDL = {
    "targets": """
        CREATE TABLE IF NOT EXISTS capture_targets (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            url TEXT NOT NULL,
            enabled INTEGER NOT NULL DEFAULT 1,
            created_at TEXT NOT NULL
        )
    """,
    "schedules": """
        CREATE TABLE IF NOT EXISTS capture_schedules (
            id TEXT PRIMARY KEY,
            target_id TEXT NOT NULL,
            name TEXT NOT NULL DEFAULT '',
            kind TEXT NOT NULL,              -- cron, interval, once
            cron_expression TEXT,
            interval_minutes INTEGER,
            fire_at TEXT,
            quantity INTEGER NOT NULL DEFAULT 1,
            enabled INTEGER NOT NULL DEFAULT 1,
            next_run TEXT,
            last_run TEXT,
            created_at TEXT NOT NULL
        )
    """,
    "schedules_idx_enabled": """
        CREATE INDEX IF NOT EXISTS idx_capture_schedules_enabled
        ON capture_schedules(enabled, next_run)
    """,
    "executions": """
        CREATE TABLE IF NOT EXISTS capture_executions (
            id TEXT PRIMARY KEY,
            target_id TEXT NOT NULL,
            schedule_id TEXT NOT NULL,
            start_time TEXT NOT NULL,
            end_time TEXT,                   -- NULL while running
            success INTEGER NOT NULL DEFAULT 0,
            error_message TEXT,
            logs TEXT NOT NULL DEFAULT '[]',
            execution_data TEXT
        )
    """,
    "executions_idx_schedule": """
        CREATE INDEX IF NOT EXISTS idx_capture_executions_schedule
        ON capture_executions(schedule_id, start_time)
    """,
    "exchanges": """
        CREATE TABLE IF NOT EXISTS capture_exchanges (
            seq INTEGER PRIMARY KEY AUTOINCREMENT,
            id TEXT NOT NULL UNIQUE,
            schedule_id TEXT NOT NULL,
            sandbox_id TEXT NOT NULL,
            url TEXT NOT NULL,
            method TEXT NOT NULL,
            request_headers TEXT NOT NULL DEFAULT '{}',
            request_body TEXT,
            response_status INTEGER,
            response_status_text TEXT,
            response_headers TEXT NOT NULL DEFAULT '{}',
            response_body TEXT,
            extracted TEXT,
            captured_at TEXT NOT NULL,
            complete INTEGER NOT NULL DEFAULT 0,
            layer TEXT NOT NULL DEFAULT 'page'
        )
    """,
    "exchanges_idx_schedule": """
        CREATE INDEX IF NOT EXISTS idx_capture_exchanges_schedule
        ON capture_exchanges(schedule_id, seq)
    """,
}


def create_tables(conn: Connection) -> None:
    """
    Create all capture tables.

    Safe to call multiple times (CREATE IF NOT EXISTS).
    """
    for _name, ddl in CAPTURE_DDL.items():
        conn.execute(ddl)
    conn.commit()
