"""Local durable queue of outbound events.

Every domain action that must reach the server is enqueued here first and
persisted in the client database before anything is sent. An item leaves
the queue only through complete(), after the server acknowledged it. A
crash between the acknowledgement and complete() leaves the item in place
and it is sent again; the server skips event IDs it already stored.

Retry bookkeeping (attempts, next_retry_at) changes only through fail().
Once attempts reaches the item's max_attempts the item is terminal: it is
kept for inspection but never offered by peek_ready() again.
"""

from __future__ import annotations

import logging
import sqlite3
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Union

from uuid6 import uuid7

from .database import Database
from .models import Priority, QueueItem, SyncProgress
from .validation import validate_event_type, validate_payload, validate_priority

logger = logging.getLogger(__name__)

__all__ = ["RetryPolicy", "SyncQueue", "DEFAULT_MAX_ATTEMPTS", "MS_PER_ITEM"]

DEFAULT_MAX_ATTEMPTS: Dict[str, int] = {"high": 10, "medium": 5, "low": 3}

# Progress estimate when no throughput figure is available
MS_PER_ITEM = 500

_COMPLETED_KEY = "queue.completed"

_ORDER_BY = "ORDER BY priority_rank ASC, created_at ASC, seq ASC"


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff with a cap and per-priority attempt ceilings."""

    base_delay: float = 1.0
    max_delay: float = 60.0
    max_attempts: Dict[str, int] = field(default_factory=lambda: dict(DEFAULT_MAX_ATTEMPTS))

    def backoff_delay(self, attempts: int) -> float:
        """Delay in seconds before the next try after `attempts` failures."""
        if attempts < 1:
            return 0.0
        # Cap the exponent too, 2**attempts overflows a float long before it matters
        exponent = min(attempts - 1, 64)
        return min(self.max_delay, self.base_delay * (2 ** exponent))

    def attempts_for(self, priority: Priority) -> int:
        return int(self.max_attempts.get(priority.value, DEFAULT_MAX_ATTEMPTS[priority.value]))

    @classmethod
    def from_config(cls, config: Any) -> "RetryPolicy":
        """Build a policy from a Config instance's sync section."""
        return cls(
            base_delay=float(config.get_sync_value("base_retry_delay")),
            max_delay=float(config.get_sync_value("max_retry_delay")),
            max_attempts=config.get_max_attempts(),
        )


def _row_to_item(row: sqlite3.Row) -> QueueItem:
    return QueueItem(
        id=row["id"],
        type=row["type"],
        priority=Priority(row["priority"]),
        payload=row["payload"],
        attempts=row["attempts"],
        max_attempts=row["max_attempts"],
        created_at=row["created_at"],
        last_attempt=row["last_attempt"],
        next_retry_at=row["next_retry_at"],
        error=row["error"],
    )


class SyncQueue:
    """Priority-ordered, durable queue of outbound events."""

    def __init__(
        self,
        db: Database,
        policy: Optional[RetryPolicy] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the queue over an open client database.

        Items persisted by an earlier process are visible immediately.

        Args:
            db: Client database
            policy: Retry policy (default backoff 1s doubling to 60s)
            clock: Returns the current time in epoch seconds
        """
        self.db = db
        self.policy = policy or RetryPolicy()
        self.clock = clock
        count = self.size()
        if count:
            logger.info(f"Restored {count} queued items from {db.db_path}")

    def enqueue(
        self,
        event_type: str,
        payload: str,
        priority: Union[Priority, str] = Priority.MEDIUM,
    ) -> str:
        """Add an event to the queue.

        Args:
            event_type: Domain event type
            payload: Opaque payload string
            priority: Priority class (default MEDIUM)

        Returns:
            ID of the new queue item, also used as the server event ID
        """
        event_type = validate_event_type(event_type)
        payload = validate_payload(payload)
        priority = validate_priority(priority)
        item_id = uuid7().hex
        now = self.clock()

        with self.db.transaction() as conn:
            seq = conn.execute("SELECT COALESCE(MAX(seq), 0) + 1 FROM queue_items").fetchone()[0]
            conn.execute(
                "INSERT INTO queue_items "
                "(id, seq, type, priority, priority_rank, payload, attempts, max_attempts, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?, 0, ?, ?)",
                (item_id, seq, event_type, priority.value, priority.rank, payload,
                 self.policy.attempts_for(priority), now),
            )

        logger.info(f"Enqueued {event_type} item {item_id} ({priority.value})")
        return item_id

    def peek_ready(self, now: Optional[float] = None) -> Optional[QueueItem]:
        """Get the next item eligible for an attempt, without removing it.

        Eligible means not terminal and either never attempted or past its
        next_retry_at. Higher priority first, then oldest first.
        """
        now = self.clock() if now is None else now
        row = self.db.query_one(
            "SELECT * FROM queue_items WHERE attempts < max_attempts "
            "AND (attempts = 0 OR next_retry_at IS NULL OR next_retry_at <= ?) "
            f"{_ORDER_BY} LIMIT 1",
            (now,),
        )
        return _row_to_item(row) if row else None

    def list_ready(self, now: Optional[float] = None) -> List[QueueItem]:
        """Get all items currently eligible for an attempt, in drain order."""
        now = self.clock() if now is None else now
        rows = self.db.query(
            "SELECT * FROM queue_items WHERE attempts < max_attempts "
            "AND (attempts = 0 OR next_retry_at IS NULL OR next_retry_at <= ?) "
            f"{_ORDER_BY}",
            (now,),
        )
        return [_row_to_item(row) for row in rows]

    def complete(self, item_id: str) -> bool:
        """Remove an item the server has acknowledged.

        Returns:
            True if the item was removed, False if it was not queued
        """
        with self.db.transaction() as conn:
            cursor = conn.execute("DELETE FROM queue_items WHERE id = ?", (item_id,))
            if cursor.rowcount == 0:
                logger.debug(f"complete() for unknown queue item {item_id}")
                return False
            conn.execute(
                "INSERT INTO sync_state (key, value) VALUES (?, '1') "
                "ON CONFLICT(key) DO UPDATE SET value = CAST(value AS INTEGER) + 1",
                (_COMPLETED_KEY,),
            )
        logger.info(f"Completed queue item {item_id}")
        return True

    def fail(self, item_id: str, error: str) -> Optional[QueueItem]:
        """Record a failed attempt and schedule the next one.

        attempts grows by exactly one. The item becomes terminal once
        attempts reaches max_attempts; otherwise next_retry_at is set from
        the backoff policy.

        Returns:
            The updated item, or None if the item was not queued
        """
        now = self.clock()
        with self.db.transaction() as conn:
            row = conn.execute("SELECT * FROM queue_items WHERE id = ?", (item_id,)).fetchone()
            if row is None:
                logger.debug(f"fail() for unknown queue item {item_id}")
                return None
            attempts = row["attempts"] + 1
            if attempts >= row["max_attempts"]:
                next_retry_at = None
            else:
                next_retry_at = now + self.policy.backoff_delay(attempts)
            conn.execute(
                "UPDATE queue_items SET attempts = ?, last_attempt = ?, next_retry_at = ?, error = ? "
                "WHERE id = ?",
                (attempts, now, next_retry_at, error, item_id),
            )
            updated = conn.execute("SELECT * FROM queue_items WHERE id = ?", (item_id,)).fetchone()

        item = _row_to_item(updated)
        if item.is_terminal:
            logger.error(
                f"Queue item {item_id} ({item.type}) failed permanently "
                f"after {item.attempts} attempts: {error}"
            )
        else:
            logger.warning(
                f"Queue item {item_id} failed (attempt {item.attempts}/{item.max_attempts}), "
                f"retrying in {next_retry_at - now:.1f}s: {error}"
            )
        return item

    def get(self, item_id: str) -> Optional[QueueItem]:
        """Get a queue item by ID."""
        row = self.db.query_one("SELECT * FROM queue_items WHERE id = ?", (item_id,))
        return _row_to_item(row) if row else None

    def list_all(self) -> List[QueueItem]:
        """Get every queued item in drain order, terminal ones included."""
        return [_row_to_item(row) for row in self.db.query(f"SELECT * FROM queue_items {_ORDER_BY}")]

    def list_failed(self) -> List[QueueItem]:
        """Get items in terminal failure."""
        rows = self.db.query(
            f"SELECT * FROM queue_items WHERE attempts >= max_attempts {_ORDER_BY}"
        )
        return [_row_to_item(row) for row in rows]

    def list_by_priority(self, priority: Union[Priority, str]) -> List[QueueItem]:
        """Get items of one priority class."""
        priority = validate_priority(priority)
        rows = self.db.query(
            f"SELECT * FROM queue_items WHERE priority = ? {_ORDER_BY}", (priority.value,)
        )
        return [_row_to_item(row) for row in rows]

    def clear_failed(self) -> int:
        """Delete items in terminal failure. Returns the number deleted."""
        with self.db.transaction() as conn:
            cursor = conn.execute("DELETE FROM queue_items WHERE attempts >= max_attempts")
            removed = cursor.rowcount
        if removed:
            logger.info(f"Cleared {removed} failed queue items")
        return removed

    def clear(self) -> int:
        """Delete every item and reset the completed counter."""
        with self.db.transaction() as conn:
            removed = conn.execute("DELETE FROM queue_items").rowcount
            conn.execute("DELETE FROM sync_state WHERE key = ?", (_COMPLETED_KEY,))
        logger.info(f"Cleared {removed} queue items")
        return removed

    def size(self) -> int:
        """Number of items in the queue, terminal ones included."""
        return int(self.db.query_one("SELECT COUNT(*) FROM queue_items")[0])

    def is_empty(self) -> bool:
        return self.size() == 0

    def progress(self, items_per_second: Optional[float] = None) -> SyncProgress:
        """Summarize queue progress.

        Args:
            items_per_second: Expected throughput; if omitted the estimate
                assumes 500 ms per pending item

        Returns:
            SyncProgress with counts and an estimated time to drain
        """
        queued = self.size()
        failed = int(
            self.db.query_one("SELECT COUNT(*) FROM queue_items WHERE attempts >= max_attempts")[0]
        )
        completed = int(self.db.get_state(_COMPLETED_KEY, "0"))
        pending = queued - failed

        if items_per_second is None:
            estimated = pending * MS_PER_ITEM
        elif items_per_second <= 0:
            estimated = 0 if pending == 0 else -1
        else:
            estimated = int(pending / items_per_second * 1000)

        return SyncProgress(
            total=queued + completed,
            completed=completed,
            failed=failed,
            pending=pending,
            estimated_time_ms=estimated,
        )
