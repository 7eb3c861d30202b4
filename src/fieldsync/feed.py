"""Incremental feed over the event store.

A client remembers the last event it processed (its cursor) and asks for
everything after it. The cursor is resolved to a pivot (created_at, id)
and the feed returns events strictly greater than the pivot under tuple
comparison. Comparing on created_at alone would drop siblings that share
the pivot's timestamp, and comparing on id alone breaks because IDs do not
sort chronologically.

An unresolvable cursor yields an empty page. The caller decides whether
that means "caught up" or "resync" by checking resolve_cursor().
"""

from __future__ import annotations

import logging
from typing import List, Optional

from .event_store import EventStore
from .models import Pivot, SyncEvent
from .validation import validate_limit, validate_owner_id

logger = logging.getLogger(__name__)

__all__ = ["FeedService", "DEFAULT_FEED_LIMIT"]

DEFAULT_FEED_LIMIT = 100


class FeedService:
    """Serves each owner's events in a stable, resumable order."""

    def __init__(self, store: EventStore) -> None:
        self.store = store

    def resolve_cursor(self, owner_id: str, cursor: Optional[str]) -> Optional[Pivot]:
        """Resolve a cursor to the pivot it names.

        The cursor is tried as an event ID first, then as a created_at
        timestamp (the latest event at exactly that instant).

        A timestamp cursor stands for the whole tick, so it is only safe
        at a batch boundary. If a page ended inside a batch, the siblings
        after the page are skipped. Clients page with event IDs.

        Returns:
            Pivot, or None if the cursor does not name an event of this owner
        """
        if not cursor:
            return None
        event = self.store.get_event(owner_id, cursor)
        if event is not None:
            return Pivot(created_at=event.created_at, id=event.id)
        return self.store.find_pivot_at(owner_id, cursor)

    def feed(
        self,
        owner_id: str,
        cursor: Optional[str] = None,
        limit: int = DEFAULT_FEED_LIMIT,
    ) -> List[SyncEvent]:
        """Get the next page of an owner's events after a cursor.

        Args:
            owner_id: Owner whose stream to read
            cursor: ID (or created_at) of the last processed event, or None
            limit: Page size, clamped to [1, 1000]

        Returns:
            Events ordered by (created_at, id); empty if the cursor is stale
        """
        owner_id = validate_owner_id(owner_id)
        limit = validate_limit(limit, DEFAULT_FEED_LIMIT)

        if not cursor:
            return self.store.list_events(owner_id, after=None, limit=limit)

        pivot = self.resolve_cursor(owner_id, cursor)
        if pivot is None:
            logger.warning(f"Stale cursor '{cursor}' for owner {owner_id}")
            return []
        return self.store.list_events(owner_id, after=pivot, limit=limit)
