"""Conflict detection and resolution for fieldsync.

When the feed delivers a record the client has also changed locally, the
two versions are compared here. Records are plain dicts; their
bookkeeping fields (id, created_at, updated_at and the camelCase forms)
are never treated as conflicting.

Strategies:
- last-write-wins: the version with the greater timestamp wins, ties keep local
- local-wins / remote-wins: one side always wins
- manual: nothing is applied until a user supplies the value

Critical data (attendance, signoff, payroll) always needs a manual
decision. Every resolution is persisted in the client database, so the
history and any pending manual decisions survive restarts.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import time
from dataclasses import replace
from typing import Any, Callable, Dict, Iterable, List, Optional

from uuid6 import uuid7

from .database import Database
from .models import ConflictRecord, ConflictStrategy, Resolution
from .timestamp_utils import to_epoch_seconds

logger = logging.getLogger(__name__)

__all__ = [
    "ConflictNotFoundError",
    "ConflictResolver",
    "DEFAULT_CRITICAL_FIELDS",
    "DEFAULT_TYPE_STRATEGIES",
]

DEFAULT_CRITICAL_FIELDS = frozenset(["attendances", "signoff", "payroll_calcs", "payrollCalcs"])

DEFAULT_TYPE_STRATEGIES: Dict[str, ConflictStrategy] = {
    "attendance": ConflictStrategy.MANUAL,
    "signoff": ConflictStrategy.MANUAL,
    "payroll": ConflictStrategy.MANUAL,
    "task": ConflictStrategy.LAST_WRITE_WINS,
    "photo": ConflictStrategy.LAST_WRITE_WINS,
    "incident": ConflictStrategy.LAST_WRITE_WINS,
}

_BOOKKEEPING_FIELDS = frozenset(["id", "created_at", "updated_at", "createdAt", "updatedAt"])


class ConflictNotFoundError(ValueError):
    """Raised when no pending manual conflict matches the given ID."""


def _record_timestamp(data: Dict[str, Any]) -> float:
    """Last-modified time of a record: updated_at, else created_at, else 0."""
    for key in ("updated_at", "updatedAt", "created_at", "createdAt"):
        value = data.get(key)
        if value:
            return to_epoch_seconds(value)
    return 0.0


def _canonical(value: Any) -> str:
    return json.dumps(value, sort_keys=True, default=str)


def _conflicting_fields(local: Dict[str, Any], remote: Dict[str, Any]) -> List[str]:
    """Fields whose values differ, local key order first, then remote-only keys."""
    keys = list(local.keys()) + [k for k in remote.keys() if k not in local]
    return [
        key for key in keys
        if key not in _BOOKKEEPING_FIELDS
        and _canonical(local.get(key)) != _canonical(remote.get(key))
    ]


def _dumps(value: Any) -> str:
    return json.dumps(value, default=str)


def _row_to_conflict(row: sqlite3.Row) -> ConflictRecord:
    return ConflictRecord(
        id=row["id"],
        record_id=row["record_id"],
        type=row["type"],
        local_version=json.loads(row["local_version"]),
        remote_version=json.loads(row["remote_version"]),
        local_timestamp=row["local_timestamp"],
        remote_timestamp=row["remote_timestamp"],
        conflicting_field=row["conflicting_field"],
        created_at=row["created_at"],
        resolution=Resolution(row["resolution"]) if row["resolution"] else None,
        strategy=ConflictStrategy(row["strategy"]) if row["strategy"] else None,
        resolved_value=json.loads(row["resolved_value"]) if row["resolved_value"] is not None else None,
        resolved_at=row["resolved_at"],
    )


class ConflictResolver:
    """Detects, resolves and records conflicts between local and remote records."""

    def __init__(
        self,
        db: Database,
        critical_fields: Optional[Iterable[str]] = None,
        type_strategies: Optional[Dict[str, ConflictStrategy]] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the resolver.

        Args:
            db: Client database holding the conflict history
            critical_fields: Field names that always need a manual decision
            type_strategies: Strategy per record type; unlisted types use last-write-wins
            clock: Returns the current time in epoch seconds
        """
        self.db = db
        self.critical_fields = frozenset(
            critical_fields if critical_fields is not None else DEFAULT_CRITICAL_FIELDS
        )
        self.type_strategies = dict(
            type_strategies if type_strategies is not None else DEFAULT_TYPE_STRATEGIES
        )
        self.clock = clock

    def detect(
        self,
        local: Optional[Dict[str, Any]],
        remote: Optional[Dict[str, Any]],
        record_type: str,
    ) -> Optional[ConflictRecord]:
        """Compare two versions of a record.

        Returns:
            ConflictRecord naming the first differing field, or None if
            either side is missing, both carry the same timestamp, or no
            non-bookkeeping field differs
        """
        if not local or not remote:
            return None

        local_ts = _record_timestamp(local)
        remote_ts = _record_timestamp(remote)
        if local_ts == remote_ts:
            return None

        fields = _conflicting_fields(local, remote)
        if not fields:
            return None

        return ConflictRecord(
            id=uuid7().hex,
            record_id=str(local.get("id") or remote.get("id") or ""),
            type=record_type,
            local_version=local,
            remote_version=remote,
            local_timestamp=local_ts,
            remote_timestamp=remote_ts,
            conflicting_field=fields[0],
            created_at=self.clock(),
        )

    def is_critical_field(self, field_name: Optional[str]) -> bool:
        return field_name is not None and field_name in self.critical_fields

    def critical_fields_in(self, conflict: ConflictRecord) -> List[str]:
        """Critical fields that differ anywhere between the two versions."""
        return [
            name
            for name in _conflicting_fields(conflict.local_version, conflict.remote_version)
            if self.is_critical_field(name)
        ]

    def policy_for(self, record_type: str, field_name: Optional[str] = None) -> ConflictStrategy:
        """Get the strategy for a record type, forcing manual for critical fields."""
        if self.is_critical_field(field_name):
            return ConflictStrategy.MANUAL
        return self.type_strategies.get(record_type, ConflictStrategy.LAST_WRITE_WINS)

    def resolve(
        self,
        conflict: ConflictRecord,
        strategy: Optional[ConflictStrategy] = None,
    ) -> ConflictRecord:
        """Resolve a conflict and record the outcome.

        Args:
            conflict: Conflict returned by detect()
            strategy: Strategy to apply (default: policy_for() the conflict).
                Ignored when any critical field differs.

        Returns:
            The recorded conflict. For manual strategy resolution is MANUAL
            and resolved_value stays empty until resolve_manually().
        """
        critical = self.critical_fields_in(conflict)
        if critical:
            if strategy not in (None, ConflictStrategy.MANUAL):
                logger.warning(
                    f"Ignoring {strategy.value} for {conflict.type} {conflict.record_id}: "
                    f"critical fields {critical} differ"
                )
            strategy = ConflictStrategy.MANUAL
        elif strategy is None:
            strategy = self.policy_for(conflict.type, conflict.conflicting_field)

        now = self.clock()
        if strategy == ConflictStrategy.MANUAL:
            resolved = replace(
                conflict, resolution=Resolution.MANUAL, strategy=strategy,
                resolved_value=None, resolved_at=None,
            )
        else:
            if strategy == ConflictStrategy.REMOTE_WINS:
                take_remote = True
            elif strategy == ConflictStrategy.LOCAL_WINS:
                take_remote = False
            else:
                take_remote = conflict.remote_timestamp > conflict.local_timestamp
            resolved = replace(
                conflict,
                resolution=Resolution.REMOTE if take_remote else Resolution.LOCAL,
                strategy=strategy,
                resolved_value=conflict.remote_version if take_remote else conflict.local_version,
                resolved_at=now,
            )

        self._save(resolved)
        if resolved.resolution == Resolution.MANUAL:
            logger.warning(
                f"Conflict on {conflict.type} {conflict.record_id} "
                f"(field '{conflict.conflicting_field}') needs manual resolution"
            )
        else:
            logger.info(
                f"Resolved conflict for {conflict.type} {conflict.record_id}: "
                f"{resolved.resolution.value} ({strategy.value})"
            )
        return resolved

    def _save(self, conflict: ConflictRecord) -> None:
        with self.db.transaction() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO conflicts "
                "(id, record_id, type, local_version, remote_version, local_timestamp, "
                "remote_timestamp, conflicting_field, resolution, strategy, resolved_value, "
                "resolved_at, created_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    conflict.id,
                    conflict.record_id,
                    conflict.type,
                    _dumps(conflict.local_version),
                    _dumps(conflict.remote_version),
                    conflict.local_timestamp,
                    conflict.remote_timestamp,
                    conflict.conflicting_field,
                    conflict.resolution.value if conflict.resolution else None,
                    conflict.strategy.value if conflict.strategy else None,
                    _dumps(conflict.resolved_value) if conflict.resolved_at is not None else None,
                    conflict.resolved_at,
                    conflict.created_at,
                ),
            )

    def reconcile(
        self,
        local: Optional[Dict[str, Any]],
        remote: Optional[Dict[str, Any]],
        record_type: str,
    ) -> Optional[Dict[str, Any]]:
        """Detect and resolve in one step.

        Returns:
            The version to apply locally, or None while a manual decision
            for this record is pending
        """
        conflict = self.detect(local, remote, record_type)
        if conflict is None:
            return remote if remote else local
        resolved = self.resolve(conflict)
        if resolved.is_pending:
            return None
        return resolved.resolved_value

    # ===== Manual resolution and history =====

    def pending_manual_conflicts(self) -> List[ConflictRecord]:
        """Get conflicts waiting for a user decision, oldest first."""
        rows = self.db.query(
            "SELECT * FROM conflicts WHERE resolution = ? AND resolved_at IS NULL "
            "ORDER BY created_at ASC, rowid ASC",
            (Resolution.MANUAL.value,),
        )
        return [_row_to_conflict(row) for row in rows]

    def is_blocked(self, record_id: str) -> bool:
        """Whether a record has a pending manual conflict."""
        row = self.db.query_one(
            "SELECT 1 FROM conflicts WHERE record_id = ? AND resolution = ? AND resolved_at IS NULL",
            (record_id, Resolution.MANUAL.value),
        )
        return row is not None

    def resolve_manually(self, conflict_id: str, resolved_value: Any) -> ConflictRecord:
        """Settle a pending manual conflict with a user-supplied value.

        Args:
            conflict_id: Conflict ID, or the record ID of a pending conflict

        Raises:
            ConflictNotFoundError: If no pending manual conflict matches
        """
        row = self.db.query_one(
            "SELECT * FROM conflicts WHERE (id = ? OR record_id = ?) "
            "AND resolution = ? AND resolved_at IS NULL "
            "ORDER BY created_at ASC, rowid ASC LIMIT 1",
            (conflict_id, conflict_id, Resolution.MANUAL.value),
        )
        if row is None:
            raise ConflictNotFoundError(f"No pending manual conflict found for {conflict_id}")

        resolved = replace(
            _row_to_conflict(row), resolved_value=resolved_value, resolved_at=self.clock()
        )
        self._save(resolved)
        logger.info(f"Manually resolved conflict {resolved.id} for {resolved.type} {resolved.record_id}")
        return resolved

    def get(self, conflict_id: str) -> Optional[ConflictRecord]:
        row = self.db.query_one("SELECT * FROM conflicts WHERE id = ?", (conflict_id,))
        return _row_to_conflict(row) if row else None

    def history(self) -> List[ConflictRecord]:
        """Get every recorded conflict, oldest first."""
        rows = self.db.query("SELECT * FROM conflicts ORDER BY created_at ASC, rowid ASC")
        return [_row_to_conflict(row) for row in rows]

    def clear_history(self) -> int:
        """Delete settled conflicts. Pending manual conflicts are kept.

        Returns:
            Number of conflicts deleted
        """
        with self.db.transaction() as conn:
            removed = conn.execute("DELETE FROM conflicts WHERE resolved_at IS NOT NULL").rowcount
        logger.info(f"Cleared {removed} resolved conflicts from history")
        return removed

    def get_unresolved_count(self) -> int:
        """Number of conflicts waiting for a manual decision."""
        row = self.db.query_one(
            "SELECT COUNT(*) FROM conflicts WHERE resolution = ? AND resolved_at IS NULL",
            (Resolution.MANUAL.value,),
        )
        return int(row[0])
