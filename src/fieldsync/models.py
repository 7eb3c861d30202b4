"""Data models for fieldsync.

This module defines the dataclasses shared by the server-side event log
and the offline client: SyncEvent, Pivot, QueueItem, ConflictRecord and
OutboxRequest, plus the enums that classify them.

Event IDs are opaque strings. They provide uniqueness only; ordering
always comes from the server-assigned created_at paired with the id.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class Priority(Enum):
    """Sync priority class for queued items. HIGH drains first."""

    HIGH = "high"  # Attendance, signoff
    MEDIUM = "medium"  # Photos, tasks
    LOW = "low"  # Notes, non-critical data

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {Priority.HIGH: 0, Priority.MEDIUM: 1, Priority.LOW: 2}


class ConflictStrategy(Enum):
    """How a detected conflict should be settled."""

    LAST_WRITE_WINS = "last-write-wins"
    MANUAL = "manual"
    REMOTE_WINS = "remote-wins"
    LOCAL_WINS = "local-wins"


class Resolution(Enum):
    """Which side a settled conflict kept."""

    LOCAL = "local"
    REMOTE = "remote"
    MANUAL = "manual"


@dataclass(frozen=True)
class SyncEvent:
    """A single event in the server's append-only log.

    Attributes:
        id: Opaque unique identifier (not chronologically sortable)
        owner_id: Worker/account whose stream the event belongs to
        type: Domain event type (e.g. "attendance", "photo")
        payload: Opaque payload string, never inspected by the sync layer
        occurred_at: Client-claimed event time (advisory only)
        created_at: Server-assigned insertion time, the ordering key
    """

    id: str
    owner_id: str
    type: str
    payload: str
    occurred_at: str
    created_at: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SyncEvent":
        return cls(
            id=data["id"],
            owner_id=data["owner_id"],
            type=data["type"],
            payload=data["payload"],
            occurred_at=data["occurred_at"],
            created_at=data["created_at"],
        )


@dataclass(frozen=True)
class Pivot:
    """The (created_at, id) pair a feed cursor resolves to."""

    created_at: str
    id: str


@dataclass(frozen=True)
class BatchResult:
    """Outcome of a batch append."""

    inserted: int
    duplicate: bool = False  # True if the idempotency key was already seen


@dataclass(frozen=True)
class QueueItem:
    """An outbound event waiting in the local durable queue.

    Times are epoch seconds. next_retry_at is None both for items that
    were never attempted and for items in terminal failure; the two are
    told apart by attempts.
    """

    id: str
    type: str
    priority: Priority
    payload: str
    attempts: int
    max_attempts: int
    created_at: float
    last_attempt: Optional[float] = None
    next_retry_at: Optional[float] = None
    error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.attempts >= self.max_attempts

    def is_ready(self, now: float) -> bool:
        """Whether the item may be attempted at time `now`."""
        if self.is_terminal:
            return False
        if self.attempts == 0 or self.next_retry_at is None:
            return True
        return now >= self.next_retry_at

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["priority"] = self.priority.value
        return data


@dataclass(frozen=True)
class ConflictRecord:
    """Divergent local/remote versions of one record.

    resolution is None until the resolver settles the conflict. Manual
    conflicts keep resolution=MANUAL and resolved_value=None until a user
    supplies the value.
    """

    id: str
    record_id: str
    type: str
    local_version: Dict[str, Any]
    remote_version: Dict[str, Any]
    local_timestamp: float
    remote_timestamp: float
    conflicting_field: str
    created_at: float
    resolution: Optional[Resolution] = None
    strategy: Optional[ConflictStrategy] = None
    resolved_value: Optional[Any] = None
    resolved_at: Optional[float] = None

    @property
    def is_pending(self) -> bool:
        return self.resolution == Resolution.MANUAL and self.resolved_at is None


@dataclass(frozen=True)
class OutboxRequest:
    """An intercepted write request awaiting verbatim replay."""

    id: int
    method: str
    url: str
    headers: Dict[str, str] = field(default_factory=dict)
    body: Optional[str] = None
    timestamp: float = 0.0


@dataclass(frozen=True)
class SyncProgress:
    """Queue progress summary shown to the user."""

    total: int
    completed: int
    failed: int
    pending: int
    estimated_time_ms: int = 0


# Event types whose records carry legal or financial weight
CRITICAL_EVENT_TYPES = frozenset(["attendance", "signoff", "payroll"])
