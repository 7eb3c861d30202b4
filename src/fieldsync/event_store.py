"""Server-side append-only event log for fieldsync.

Events are stored in SQLite and keyed by an opaque ID plus a
server-assigned created_at. The ID gives uniqueness only. created_at is
the ordering key. All events of one batch share a tick, and each later
batch of an owner gets a strictly greater tick, even if the wall clock
steps backwards. A cursor that has passed a tick never misses an event
appended afterwards.

Appends for all owners are serialized through one lock and one
BEGIN IMMEDIATE transaction.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Union

from uuid6 import uuid7

from .models import BatchResult, Pivot, SyncEvent
from .timestamp_utils import (
    SERVER_TIMESTAMP_FORMAT,
    format_server_timestamp,
    normalize_server_timestamp,
)
from .validation import (
    ValidationError,
    validate_event_input,
    validate_event_type,
    validate_idempotency_key,
    validate_owner_id,
    validate_payload,
    validate_timestamp,
)

logger = logging.getLogger(__name__)

__all__ = ["EventStore"]

_SCHEMA = """
CREATE TABLE IF NOT EXISTS sync_events (
    id          TEXT    PRIMARY KEY,
    owner_id    TEXT    NOT NULL,
    type        TEXT    NOT NULL,
    payload     TEXT    NOT NULL,
    occurred_at TEXT    NOT NULL,
    created_at  TEXT    NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_sync_events_feed
    ON sync_events(owner_id, created_at, id);

CREATE TABLE IF NOT EXISTS ingest_keys (
    owner_id    TEXT    NOT NULL,
    key         TEXT    NOT NULL,
    inserted    INTEGER NOT NULL,
    created_at  TEXT    NOT NULL,
    PRIMARY KEY (owner_id, key)
);
"""


def _default_id() -> str:
    return uuid7().hex


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _row_to_event(row: sqlite3.Row) -> SyncEvent:
    return SyncEvent(
        id=row["id"],
        owner_id=row["owner_id"],
        type=row["type"],
        payload=row["payload"],
        occurred_at=row["occurred_at"],
        created_at=row["created_at"],
    )


class EventStore:
    """Durable append-only log of sync events."""

    def __init__(
        self,
        db_path: Union[Path, str],
        id_factory: Callable[[], str] = _default_id,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        """Open (or create) the event store.

        Args:
            db_path: Path to the SQLite database file, or ':memory:'
            id_factory: Generates event IDs when the caller supplies none
            clock: Returns the current time; created_at is derived from it
        """
        self.db_path = str(db_path)
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(
            self.db_path, check_same_thread=False, isolation_level=None
        )
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._id_factory = id_factory
        self._clock = clock
        if self.db_path != ":memory:":
            self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.executescript(_SCHEMA)
        logger.info(f"Opened event store at {self.db_path}")

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                yield self._conn
            except BaseException:
                self._conn.execute("ROLLBACK")
                raise
            else:
                self._conn.execute("COMMIT")

    def _next_created_at(self, conn: sqlite3.Connection, owner_id: str) -> str:
        """Pick created_at for the next insert: now, but always after the owner's latest.

        A behind or stalled clock gets the latest tick plus one microsecond,
        so a later transaction never shares a tick with an earlier one.
        """
        now = format_server_timestamp(self._clock())
        row = conn.execute(
            "SELECT MAX(created_at) AS latest FROM sync_events WHERE owner_id = ?",
            (owner_id,),
        ).fetchone()
        latest = row["latest"] if row else None
        if latest is not None and latest >= now:
            bumped = datetime.strptime(latest, SERVER_TIMESTAMP_FORMAT) + timedelta(microseconds=1)
            if latest > now:
                logger.warning(
                    f"Clock behind latest event for owner {owner_id} "
                    f"({now} < {latest}); stepping past latest timestamp"
                )
            return format_server_timestamp(bumped)
        return now

    def append(
        self,
        owner_id: str,
        event_type: str,
        payload: str,
        occurred_at: str,
        event_id: Optional[str] = None,
    ) -> SyncEvent:
        """Append a single event.

        Args:
            owner_id: Owner (worker) whose stream receives the event
            event_type: Domain event type
            payload: Opaque payload string
            occurred_at: Client-claimed ISO 8601 time of the event
            event_id: Optional caller-supplied ID (generated if omitted)

        Returns:
            The stored SyncEvent with id and created_at assigned.

        Raises:
            ValidationError: On invalid input or if event_id already exists
        """
        owner_id = validate_owner_id(owner_id)
        event_type = validate_event_type(event_type)
        payload = validate_payload(payload)
        validate_timestamp(occurred_at)

        with self._transaction() as conn:
            new_id = event_id or self._id_factory()
            if self._event_exists(conn, new_id):
                raise ValidationError("id", f"event {new_id} already exists")
            created_at = self._next_created_at(conn, owner_id)
            conn.execute(
                "INSERT INTO sync_events (id, owner_id, type, payload, occurred_at, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (new_id, owner_id, event_type, payload, occurred_at, created_at),
            )

        logger.debug(f"Appended {event_type} event {new_id} for owner {owner_id}")
        return SyncEvent(
            id=new_id,
            owner_id=owner_id,
            type=event_type,
            payload=payload,
            occurred_at=occurred_at,
            created_at=created_at,
        )

    def append_batch(
        self,
        owner_id: str,
        events: Sequence[Dict[str, Any]],
        idempotency_key: Optional[str] = None,
    ) -> BatchResult:
        """Append a batch of events as one atomic unit.

        All events of a batch share one created_at. Events whose
        caller-supplied id is already stored are skipped. A repeated
        idempotency key inserts nothing and reports the original count.

        Args:
            owner_id: Owner (worker) whose stream receives the events
            events: Dicts with type, payload, occurred_at and optional id
            idempotency_key: Optional key deduplicating retried batches

        Returns:
            BatchResult with the number of events inserted

        Raises:
            ValidationError: If the batch is empty or any event is invalid
        """
        owner_id = validate_owner_id(owner_id)
        idempotency_key = validate_idempotency_key(idempotency_key)
        if not isinstance(events, (list, tuple)) or not events:
            raise ValidationError("events", "must be a non-empty list")
        validated = [validate_event_input(e, i) for i, e in enumerate(events)]

        with self._transaction() as conn:
            if idempotency_key is not None:
                row = conn.execute(
                    "SELECT inserted FROM ingest_keys WHERE owner_id = ? AND key = ?",
                    (owner_id, idempotency_key),
                ).fetchone()
                if row is not None:
                    logger.info(
                        f"Duplicate batch for owner {owner_id} "
                        f"(Idempotency-Key {idempotency_key}); nothing inserted"
                    )
                    return BatchResult(inserted=int(row["inserted"]), duplicate=True)

            created_at = self._next_created_at(conn, owner_id)
            inserted = 0
            seen_ids = set()
            for event in validated:
                event_id = event.get("id")
                if event_id is not None:
                    if event_id in seen_ids or self._event_exists(conn, event_id):
                        logger.debug(f"Skipping already stored event {event_id}")
                        continue
                else:
                    event_id = self._id_factory()
                seen_ids.add(event_id)
                conn.execute(
                    "INSERT INTO sync_events (id, owner_id, type, payload, occurred_at, created_at) "
                    "VALUES (?, ?, ?, ?, ?, ?)",
                    (event_id, owner_id, event["type"], event["payload"],
                     event["occurred_at"], created_at),
                )
                inserted += 1

            if idempotency_key is not None:
                conn.execute(
                    "INSERT INTO ingest_keys (owner_id, key, inserted, created_at) "
                    "VALUES (?, ?, ?, ?)",
                    (owner_id, idempotency_key, inserted, created_at),
                )

        logger.info(f"Ingested {inserted}/{len(validated)} events for owner {owner_id}")
        return BatchResult(inserted=inserted)

    @staticmethod
    def _event_exists(conn: sqlite3.Connection, event_id: str) -> bool:
        row = conn.execute("SELECT 1 FROM sync_events WHERE id = ?", (event_id,)).fetchone()
        return row is not None

    def get_event(self, owner_id: str, event_id: str) -> Optional[SyncEvent]:
        """Get one event of an owner by ID."""
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM sync_events WHERE owner_id = ? AND id = ?",
                (owner_id, event_id),
            ).fetchone()
        return _row_to_event(row) if row else None

    def find_pivot_at(self, owner_id: str, created_at: str) -> Optional[Pivot]:
        """Get the last event (greatest id) of an owner at exactly created_at."""
        normalized = normalize_server_timestamp(created_at)
        if normalized is None:
            return None
        with self._lock:
            row = self._conn.execute(
                "SELECT created_at, id FROM sync_events "
                "WHERE owner_id = ? AND created_at = ? ORDER BY id DESC LIMIT 1",
                (owner_id, normalized),
            ).fetchone()
        return Pivot(created_at=row["created_at"], id=row["id"]) if row else None

    def list_events(
        self, owner_id: str, after: Optional[Pivot] = None, limit: int = 100
    ) -> List[SyncEvent]:
        """List an owner's events in (created_at, id) order.

        Args:
            owner_id: Owner whose stream to read
            after: Only events strictly after this pivot (tuple comparison)
            limit: Maximum number of events

        Returns:
            Ordered list of events
        """
        if after is None:
            sql = (
                "SELECT * FROM sync_events WHERE owner_id = ? "
                "ORDER BY created_at ASC, id ASC LIMIT ?"
            )
            params: tuple = (owner_id, limit)
        else:
            sql = (
                "SELECT * FROM sync_events WHERE owner_id = ? "
                "AND (created_at > ? OR (created_at = ? AND id > ?)) "
                "ORDER BY created_at ASC, id ASC LIMIT ?"
            )
            params = (owner_id, after.created_at, after.created_at, after.id, limit)
        with self._lock:
            rows = self._conn.execute(sql, params).fetchall()
        return [_row_to_event(row) for row in rows]

    def count(self, owner_id: Optional[str] = None) -> int:
        """Count stored events, optionally for one owner."""
        with self._lock:
            if owner_id is None:
                row = self._conn.execute("SELECT COUNT(*) FROM sync_events").fetchone()
            else:
                row = self._conn.execute(
                    "SELECT COUNT(*) FROM sync_events WHERE owner_id = ?", (owner_id,)
                ).fetchone()
        return int(row[0])

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._conn.close()
