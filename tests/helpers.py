"""Test helper functions for fieldsync tests.

This module provides controllable clocks, deterministic ID factories and
small builders for incoming events.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterator, List, Optional


TEST_OWNER_ID = "worker-1"
OTHER_OWNER_ID = "worker-2"

# Fixed starting point for clocks
BASE_TIME = datetime(2024, 2, 1, 9, 0, 0, tzinfo=timezone.utc)
BASE_EPOCH = BASE_TIME.timestamp()


class FakeClock:
    """Epoch-seconds clock that only moves when told to."""

    def __init__(self, start: float = BASE_EPOCH) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeDatetimeClock:
    """Datetime clock for the event store; may be moved backwards."""

    def __init__(self, start: datetime = BASE_TIME) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


def scrambled_ids(ids: List[str]) -> Iterator[str]:
    """ID factory yielding the given IDs in order.

    Used to hand out IDs that do not sort in insertion order.
    """
    return iter(ids)


def id_factory(ids: List[str]):
    """Wrap a list of IDs as a zero-argument factory."""
    source = scrambled_ids(ids)
    return lambda: next(source)


def make_event(
    event_type: str = "task",
    payload: str = '{"job": 1}',
    occurred_at: str = "2024-02-01T08:59:00Z",
    event_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Build one incoming batch event."""
    event: Dict[str, Any] = {"type": event_type, "payload": payload, "occurred_at": occurred_at}
    if event_id is not None:
        event["id"] = event_id
    return event


def owner_headers(owner_id: str = TEST_OWNER_ID, key: Optional[str] = None) -> Dict[str, str]:
    """Request headers identifying the owner, plus an optional idempotency key."""
    headers = {"X-Owner-ID": owner_id}
    if key is not None:
        headers["Idempotency-Key"] = key
    return headers


def batch_body(*ids: str) -> Dict[str, List[Dict[str, Any]]]:
    """JSON body for POST /sync/batch with one event per ID."""
    return {"events": [make_event(payload=f'{{"n": "{event_id}"}}', event_id=event_id) for event_id in ids]}
