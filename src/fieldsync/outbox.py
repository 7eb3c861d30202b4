"""Outbox of intercepted write requests.

When a write request cannot reach the server it is stored here verbatim
(method, URL, headers, body) and replayed later in the order it was
captured. Replay stops at the first failure so that a later request
never overtakes an earlier one.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import time
from typing import Any, Callable, Dict, List, Optional

from .database import Database
from .models import OutboxRequest

logger = logging.getLogger(__name__)

__all__ = ["OutboxStore"]

ReplayFn = Callable[[OutboxRequest], Dict[str, Any]]


def _row_to_request(row: sqlite3.Row) -> OutboxRequest:
    return OutboxRequest(
        id=row["id"],
        method=row["method"],
        url=row["url"],
        headers=json.loads(row["headers"] or "{}"),
        body=row["body"],
        timestamp=row["timestamp"],
    )


class OutboxStore:
    """Durable FIFO of requests waiting to be replayed."""

    def __init__(self, db: Database, clock: Callable[[], float] = time.time) -> None:
        self.db = db
        self.clock = clock

    def add(
        self,
        method: str,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        body: Optional[str] = None,
    ) -> int:
        """Store a request for later replay.

        Returns:
            ID of the stored request
        """
        with self.db.transaction() as conn:
            cursor = conn.execute(
                "INSERT INTO outbox_requests (method, url, headers, body, timestamp) "
                "VALUES (?, ?, ?, ?, ?)",
                (method.upper(), url, json.dumps(headers or {}), body, self.clock()),
            )
            request_id = int(cursor.lastrowid)
        logger.info(f"Stored {method.upper()} {url} in outbox (#{request_id})")
        return request_id

    def list(self) -> List[OutboxRequest]:
        """Get stored requests in capture order."""
        rows = self.db.query("SELECT * FROM outbox_requests ORDER BY id ASC")
        return [_row_to_request(row) for row in rows]

    def get(self, request_id: int) -> Optional[OutboxRequest]:
        row = self.db.query_one("SELECT * FROM outbox_requests WHERE id = ?", (request_id,))
        return _row_to_request(row) if row else None

    def delete(self, request_id: int) -> bool:
        with self.db.transaction() as conn:
            cursor = conn.execute("DELETE FROM outbox_requests WHERE id = ?", (request_id,))
        return cursor.rowcount > 0

    def size(self) -> int:
        return int(self.db.query_one("SELECT COUNT(*) FROM outbox_requests")[0])

    def replay(self, send: ReplayFn) -> int:
        """Replay stored requests in order, stopping at the first failure.

        A request is deleted only after send() reports success.

        Args:
            send: Replays one request; returns {"success": True} on success

        Returns:
            Number of requests replayed
        """
        replayed = 0
        for stored in self.list():
            try:
                result = send(stored)
            except Exception as e:
                logger.error(f"Error replaying outbox request #{stored.id}: {e}")
                break
            if not (isinstance(result, dict) and result.get("success")):
                error = result.get("error") if isinstance(result, dict) else result
                logger.warning(
                    f"Replay of {stored.method} {stored.url} (#{stored.id}) failed: {error}. "
                    f"Stopping with {self.size()} requests left"
                )
                break
            self.delete(stored.id)
            replayed += 1

        if replayed:
            logger.info(f"Replayed {replayed} outbox requests")
        return replayed
