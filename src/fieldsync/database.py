"""Durable client state for fieldsync.

All offline client state lives in one SQLite file: the outbound queue,
the outbox of intercepted requests, recorded conflicts and a small
key-value table for sync bookkeeping such as the feed cursor. The file is
opened at process start, written on every mutation and read back on the
next start, so nothing is held only in memory.

Every mutation runs inside transaction(), which takes the write lock up
front (BEGIN IMMEDIATE) and rolls back on any exception.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Union

logger = logging.getLogger(__name__)

__all__ = ["Database", "CLIENT_TABLES"]

CLIENT_TABLES = ("queue_items", "outbox_requests", "conflicts", "sync_state")

_SCHEMA = """
CREATE TABLE IF NOT EXISTS queue_items (
    id              TEXT    PRIMARY KEY,
    seq             INTEGER NOT NULL,
    type            TEXT    NOT NULL,
    priority        TEXT    NOT NULL,
    priority_rank   INTEGER NOT NULL,
    payload         TEXT    NOT NULL,
    attempts        INTEGER NOT NULL DEFAULT 0,
    max_attempts    INTEGER NOT NULL,
    last_attempt    REAL,
    next_retry_at   REAL,
    error           TEXT,
    created_at      REAL    NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_queue_order
    ON queue_items(priority_rank, created_at, seq);

CREATE TABLE IF NOT EXISTS outbox_requests (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    method      TEXT    NOT NULL,
    url         TEXT    NOT NULL,
    headers     TEXT    NOT NULL DEFAULT '{}',
    body        TEXT,
    timestamp   REAL    NOT NULL
);

CREATE TABLE IF NOT EXISTS conflicts (
    id                  TEXT    PRIMARY KEY,
    record_id           TEXT    NOT NULL,
    type                TEXT    NOT NULL,
    local_version       TEXT    NOT NULL,
    remote_version      TEXT    NOT NULL,
    local_timestamp     REAL    NOT NULL,
    remote_timestamp    REAL    NOT NULL,
    conflicting_field   TEXT    NOT NULL,
    resolution          TEXT,
    strategy            TEXT,
    resolved_value      TEXT,
    resolved_at         REAL,
    created_at          REAL    NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_conflicts_resolution
    ON conflicts(resolution, resolved_at);

CREATE TABLE IF NOT EXISTS sync_state (
    key     TEXT PRIMARY KEY,
    value   TEXT
);
"""


class Database:
    """SQLite-backed store for the offline client.

    Components (queue, outbox, conflict resolver, sync client) receive the
    same Database instance and own their own tables within it.
    """

    def __init__(self, db_path: Union[Path, str]) -> None:
        """Open (or create) the client database.

        Args:
            db_path: Path to the SQLite database file, or ':memory:' for in-memory
        """
        self.db_path = str(db_path)
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        # Autocommit mode; transaction() issues BEGIN/COMMIT explicitly
        self._conn = sqlite3.connect(
            self.db_path, check_same_thread=False, isolation_level=None
        )
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        if self.db_path != ":memory:":
            self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA synchronous=FULL")
        self._conn.executescript(_SCHEMA)
        logger.info(f"Opened client database at {self.db_path}")

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run a block as one atomic write transaction."""
        with self._lock:
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                yield self._conn
            except BaseException:
                self._conn.execute("ROLLBACK")
                raise
            else:
                self._conn.execute("COMMIT")

    def query(self, sql: str, params: tuple = ()) -> List[sqlite3.Row]:
        """Run a read-only query and return all rows."""
        with self._lock:
            return self._conn.execute(sql, params).fetchall()

    def query_one(self, sql: str, params: tuple = ()) -> Optional[sqlite3.Row]:
        """Run a read-only query and return the first row, if any."""
        with self._lock:
            return self._conn.execute(sql, params).fetchone()

    # ===== Key-value sync state =====

    def get_state(self, key: str, default: Optional[str] = None) -> Optional[str]:
        """Get a sync bookkeeping value."""
        row = self.query_one("SELECT value FROM sync_state WHERE key = ?", (key,))
        if row is None or row["value"] is None:
            return default
        return row["value"]

    def set_state(self, key: str, value: Optional[str]) -> None:
        """Set a sync bookkeeping value. None deletes the key."""
        with self.transaction() as conn:
            if value is None:
                conn.execute("DELETE FROM sync_state WHERE key = ?", (key,))
            else:
                conn.execute(
                    "INSERT INTO sync_state (key, value) VALUES (?, ?) "
                    "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                    (key, value),
                )

    # ===== Maintenance =====

    def count_rows(self) -> Dict[str, int]:
        """Get row counts for every client table."""
        return {
            table: self.query_one(f"SELECT COUNT(*) AS n FROM {table}")["n"]
            for table in CLIENT_TABLES
        }

    def file_size_bytes(self) -> int:
        """Get the size of the database in bytes (page_count * page_size)."""
        page_count = self.query_one("PRAGMA page_count")[0]
        page_size = self.query_one("PRAGMA page_size")[0]
        return int(page_count) * int(page_size)

    def wipe(self) -> None:
        """Delete every row from every client table."""
        with self.transaction() as conn:
            for table in CLIENT_TABLES:
                conn.execute(f"DELETE FROM {table}")
        logger.warning(f"Wiped all client state in {self.db_path}")

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._conn.close()
