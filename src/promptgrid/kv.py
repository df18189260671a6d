# Copyright (c) Syntropy Systems
"""Key-value media backing the snapshot store.

Two implementations share the ``get``/``set``/``delete``/``keys`` contract:
an in-memory dict for sessions and tests, and SQLite in WAL mode for
snapshots that must survive restarts. Both raise ``StorageError`` when the
medium rejects an operation; callers decide whether that is fatal.
"""

from __future__ import annotations

import sqlite3
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from pathlib import Path

# SQL schema for the snapshot database
SCHEMA = """
CREATE TABLE IF NOT EXISTS kv (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TEXT DEFAULT (datetime('now'))
);
"""


class StorageError(Exception):
    """The key-value medium rejected a read, write or delete."""


class KeyValueStore(Protocol):
    """Durable string-to-string medium."""

    def get(self, key: str) -> str | None:
        ...

    def set(self, key: str, value: str) -> None:
        ...

    def delete(self, key: str) -> None:
        ...

    def keys(self, prefix: str = "") -> list[str]:
        ...


class MemoryKeyValueStore:
    """Dict-backed medium. Lives only as long as the process."""

    def __init__(self, initial: dict[str, str] | None = None) -> None:
        self._data: dict[str, str] = dict(initial or {})

    def get(self, key: str) -> str | None:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def delete(self, key: str) -> None:
        _ = self._data.pop(key, None)

    def keys(self, prefix: str = "") -> list[str]:
        return sorted(k for k in self._data if k.startswith(prefix))


def get_connection(db_path: Path) -> sqlite3.Connection:
    """
    Get a database connection with proper settings for concurrent access.

    - isolation_level=None for autocommit of single statements
    - WAL mode so a CLI reader never blocks a writer
    - busy_timeout to wait for locks instead of failing immediately
    - Row factory for dict-like access
    """
    conn = sqlite3.connect(str(db_path), timeout=5.0, isolation_level=None)
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA busy_timeout=5000")
    conn.row_factory = sqlite3.Row
    return conn


def init_db(db_path: Path) -> None:
    """Initialize the database with the schema."""
    conn = get_connection(db_path)
    try:
        conn.executescript(SCHEMA)
    finally:
        conn.close()


def _utcnow() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class SQLiteKeyValueStore:
    """SQLite-backed medium. One short-lived connection per operation."""

    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        try:
            init_db(db_path)
        except sqlite3.Error as e:
            msg = f"Cannot open snapshot database {db_path}: {e}"
            raise StorageError(msg) from e

    def _execute(self, sql: str, params: tuple[str, ...] = ()) -> list[sqlite3.Row]:
        try:
            conn = get_connection(self.db_path)
        except sqlite3.Error as e:
            raise StorageError(str(e)) from e
        try:
            return conn.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise StorageError(str(e)) from e
        finally:
            conn.close()

    def get(self, key: str) -> str | None:
        rows = self._execute("SELECT value FROM kv WHERE key = ?", (key,))
        if not rows:
            return None
        return rows[0]["value"]

    def set(self, key: str, value: str) -> None:
        _ = self._execute(
            """
            INSERT INTO kv (key, value, updated_at) VALUES (?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET
                value = excluded.value,
                updated_at = excluded.updated_at
            """,
            (key, value, _utcnow()),
        )

    def delete(self, key: str) -> None:
        _ = self._execute("DELETE FROM kv WHERE key = ?", (key,))

    def keys(self, prefix: str = "") -> list[str]:
        rows = self._execute(
            "SELECT key FROM kv WHERE substr(key, 1, length(?)) = ? ORDER BY key",
            (prefix, prefix),
        )
        return [row["key"] for row in rows]
