"""
Protocol definitions shared across tapline.

``Connection`` is the single definition of the synchronous database
interface the capture store needs; ``sqlite3.Connection`` satisfies it
natively.
"""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable


@runtime_checkable
class Connection(Protocol):
    """
    Minimal SYNCHRONOUS connection interface for database operations.

    Architecture:
        ::

            Connection Protocol:
            ┌────────────────────────────────────────────────────────┐
            │ execute(sql, params)   → Execute single statement      │
            │ executemany(sql, list) → Execute for multiple params   │
            │ commit()               → Commit transaction            │
            │ rollback()             → Rollback transaction          │
            └────────────────────────────────────────────────────────┘

    Examples:
        >>> cursor = conn.execute("SELECT id FROM capture_targets WHERE id = ?", ("t1",))
        >>> cursor.fetchone()
    """

    def execute(self, sql: str, params: tuple | list | dict = ()) -> Any:
        """Execute a single SQL statement and return a cursor."""
        ...

    def executemany(self, sql: str, params: list[tuple] | list[dict]) -> Any:
        """Execute SQL for each parameter set."""
        ...

    def commit(self) -> None:
        """Commit the current transaction."""
        ...

    def rollback(self) -> None:
        """Roll back the current transaction."""
        ...
