"""Storage steward for the client database.

Watches how much of the storage quota the client database uses, evicts
stale data, and wipes everything on explicit request. Eviction only ever
touches data nobody will send again: queue items in terminal failure,
outbox requests and settled conflicts older than the retention window.
Items still eligible for a retry are never evicted.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict

from .database import CLIENT_TABLES, Database

logger = logging.getLogger(__name__)

__all__ = ["StorageInfo", "CleanupResult", "StorageSteward", "format_bytes"]

SECONDS_PER_DAY = 24 * 60 * 60

# (table, condition selecting stale rows older than the cutoff)
_EVICTION_RULES = (
    ("queue_items", "attempts >= max_attempts AND created_at < ?"),
    ("outbox_requests", "timestamp < ?"),
    ("conflicts", "resolved_at IS NOT NULL AND resolved_at < ?"),
)


@dataclass(frozen=True)
class StorageInfo:
    """Storage usage against the quota, in bytes."""

    usage: int
    quota: int
    usage_percent: float
    available: int


@dataclass(frozen=True)
class CleanupResult:
    items_removed: int
    bytes_freed: int


def format_bytes(num_bytes: float) -> str:
    """Format a byte count for display, e.g. "1.5 KB"."""
    if num_bytes <= 0:
        return "0 Bytes"
    sizes = ["Bytes", "KB", "MB", "GB"]
    value = float(num_bytes)
    i = 0
    while value >= 1024 and i < len(sizes) - 1:
        value /= 1024
        i += 1
    return f"{round(value, 2):g} {sizes[i]}"


def _row_size(row) -> int:
    return len(json.dumps(dict(row), default=str).encode("utf-8"))


class StorageSteward:
    """Quota monitoring and cleanup for the client database."""

    def __init__(
        self,
        db: Database,
        quota_bytes: int = 50 * 1024 * 1024,
        low_threshold: float = 0.8,
        retention_days: int = 30,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the steward.

        Args:
            db: Client database to watch
            quota_bytes: Storage budget for the database
            low_threshold: Fraction of the quota above which storage counts as low
            retention_days: Stale data older than this is evicted
            clock: Returns the current time in epoch seconds
        """
        self.db = db
        self.quota_bytes = int(quota_bytes)
        self.low_threshold = low_threshold
        self.retention_days = retention_days
        self.clock = clock

    def get_storage_info(self) -> StorageInfo:
        usage = self.db.file_size_bytes()
        quota = self.quota_bytes
        usage_percent = (usage / quota) * 100 if quota > 0 else 0.0
        return StorageInfo(
            usage=usage,
            quota=quota,
            usage_percent=usage_percent,
            available=max(0, quota - usage),
        )

    def is_storage_low(self) -> bool:
        return self.get_storage_info().usage_percent > self.low_threshold * 100

    def evict_stale(self) -> CleanupResult:
        """Delete stale data older than the retention window.

        Returns:
            CleanupResult with rows removed and their estimated size
        """
        cutoff = self.clock() - self.retention_days * SECONDS_PER_DAY
        items_removed = 0
        bytes_freed = 0
        with self.db.transaction() as conn:
            for table, condition in _EVICTION_RULES:
                rows = conn.execute(f"SELECT * FROM {table} WHERE {condition}", (cutoff,)).fetchall()
                if not rows:
                    continue
                bytes_freed += sum(_row_size(row) for row in rows)
                items_removed += conn.execute(f"DELETE FROM {table} WHERE {condition}", (cutoff,)).rowcount

        logger.info(f"Cleaned up {items_removed} old items, freed {format_bytes(bytes_freed)}")
        return CleanupResult(items_removed=items_removed, bytes_freed=bytes_freed)

    def size_breakdown(self) -> Dict[str, int]:
        """Estimated bytes used by each client table."""
        breakdown = {
            table: sum(_row_size(row) for row in self.db.query(f"SELECT * FROM {table}"))
            for table in CLIENT_TABLES
        }
        logger.debug(
            "Storage breakdown: "
            + ", ".join(f"{name}: {format_bytes(size)}" for name, size in breakdown.items())
        )
        return breakdown

    def wipe(self) -> None:
        """Delete all client state. Only ever called on explicit user request."""
        self.db.wipe()

    def check(self) -> StorageInfo:
        """Warn when storage is low and evict stale data first.

        Returns:
            StorageInfo after any eviction
        """
        info = self.get_storage_info()
        if info.usage_percent > self.low_threshold * 100:
            logger.warning(
                f"Storage low: {format_bytes(info.usage)} of {format_bytes(info.quota)} "
                f"({info.usage_percent:.1f}%); evicting stale data"
            )
            self.evict_stale()
            info = self.get_storage_info()
        return info
