"""SQLite connection helper."""

from __future__ import annotations

import sqlite3
from pathlib import Path


def connect(database_path: str) -> sqlite3.Connection:
    """Open the capture database, creating its parent directory.

    ``":memory:"`` opens a private in-memory database.
    """
    if database_path != ":memory:":
        Path(database_path).expanduser().parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(database_path)
    conn.execute("PRAGMA foreign_keys = ON")
    return conn
