"""Sync client for the fieldsync server.

This module provides the client side of the sync protocol, allowing
this device to:
- Push queued events to the server (POST /sync/batch)
- Catch up on the owner's event feed (GET /sync/since)
- Replay requests captured in the outbox

Network failures never raise: every request returns a result dict with
"success" and either the data or an "error" string, so callers can hand
the outcome straight to the retry machinery.

The feed cursor lives in the client database and only advances after a
page has been applied, so a crash mid-page re-fetches that page.
"""

from __future__ import annotations

import json
import logging
import urllib.error
import urllib.parse
import urllib.request
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from .config import Config
from .database import Database
from .models import OutboxRequest, QueueItem, SyncEvent
from .sync import IDEMPOTENCY_HEADER, OWNER_HEADER, STALE_CURSOR_HEADER
from .validation import validate_limit

logger = logging.getLogger(__name__)

__all__ = ["SyncClient", "CURSOR_STATE_KEY"]

CURSOR_STATE_KEY = "feed.cursor"
LAST_SYNC_STATE_KEY = "feed.last_sync_at"

Opener = Callable[..., Any]
ApplyFn = Callable[[List[SyncEvent]], None]


def _epoch_to_iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def queue_item_to_event(item: QueueItem) -> Dict[str, Any]:
    """Wire form of a queued item. The queue item ID becomes the event ID."""
    return {
        "id": item.id,
        "type": item.type,
        "payload": item.payload,
        "occurred_at": _epoch_to_iso(item.created_at),
    }


class SyncClient:
    """HTTP client for the sync endpoints.

    Attributes:
        db: Client database (holds the feed cursor)
        config: Config instance (server URL, owner ID, timeouts)
    """

    def __init__(self, db: Database, config: Config, opener: Optional[Opener] = None) -> None:
        """Initialize sync client.

        Args:
            db: Database instance
            config: Config instance
            opener: Replacement for urllib.request.urlopen (used by tests)
        """
        self.db = db
        self.config = config
        self.opener = opener or urllib.request.urlopen
        self.timeout = int(config.get_sync_value("request_timeout"))
        self.feed_limit = validate_limit(config.get_sync_value("feed_limit"))

    @property
    def server_url(self) -> str:
        return self.config.get_server_url()

    # ===== Cursor =====

    def get_cursor(self) -> Optional[str]:
        return self.db.get_state(CURSOR_STATE_KEY)

    def set_cursor(self, cursor: Optional[str]) -> None:
        self.db.set_state(CURSOR_STATE_KEY, cursor)

    # ===== Push =====

    def push_batch(
        self,
        events: List[Dict[str, Any]],
        idempotency_key: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Send a batch of events.

        Args:
            events: Wire-form events (type, payload, occurred_at, id)
            idempotency_key: Optional key so a retried batch is not applied twice

        Returns:
            {"success": True, "inserted": n} or {"success": False, "error": "..."}
        """
        headers: Dict[str, str] = {}
        if idempotency_key:
            headers[IDEMPOTENCY_HEADER] = idempotency_key
        response = self._make_request(
            f"{self.server_url}/sync/batch",
            method="POST",
            data={"events": events},
            headers=headers,
        )
        if not response.get("success"):
            logger.warning(f"Push of {len(events)} events failed: {response.get('error')}")
            return {"success": False, "error": response.get("error")}
        inserted = int((response.get("data") or {}).get("inserted", 0))
        logger.info(f"Pushed {len(events)} events ({inserted} new)")
        return {"success": True, "inserted": inserted}

    def send_item(self, item: QueueItem) -> Dict[str, Any]:
        """Send one queued item. Adapter for RetryScheduler."""
        return self.push_batch([queue_item_to_event(item)], idempotency_key=item.id)

    def push_items(self, items: List[QueueItem], idempotency_key: str) -> Dict[str, Any]:
        """Send several queued items in one request. Adapter for RetryScheduler.flush_batch()."""
        return self.push_batch([queue_item_to_event(item) for item in items], idempotency_key)

    # ===== Pull =====

    def fetch_feed(self, cursor: Optional[str] = None, limit: Optional[int] = None) -> Dict[str, Any]:
        """Fetch one page of the feed after a cursor.

        Returns:
            {"success": True, "events": [SyncEvent, ...], "stale": bool}
            or {"success": False, "error": "..."}
        """
        params = {"limit": str(limit or self.feed_limit)}
        if cursor:
            params["cursor"] = cursor
        url = f"{self.server_url}/sync/since?{urllib.parse.urlencode(params)}"

        response = self._make_request(url, method="GET")
        if not response.get("success"):
            return {"success": False, "error": response.get("error")}

        data = response.get("data")
        if not isinstance(data, list):
            return {"success": False, "error": "Malformed feed response: expected a list"}
        try:
            events = [SyncEvent.from_dict(item) for item in data]
        except (KeyError, TypeError) as e:
            return {"success": False, "error": f"Malformed event in feed: {e}"}

        stale = response.get("headers", {}).get(STALE_CURSOR_HEADER.lower()) == "1"
        return {"success": True, "events": events, "stale": stale}

    def catch_up(self, apply: ApplyFn, max_pages: Optional[int] = None) -> Dict[str, Any]:
        """Page through the feed from the stored cursor.

        The cursor advances after apply() returns for a page. If the
        server reports the cursor stale, the cursor is cleared and the
        feed is read again from the beginning, so apply() must tolerate
        events it has seen before (event IDs are stable).

        Args:
            apply: Called with each non-empty page of events
            max_pages: Stop after this many pages (default: until caught up)

        Returns:
            {"success": bool, "applied": n, "resynced": bool, "error"?: str}
        """
        cursor = self.get_cursor()
        applied = 0
        resynced = False
        pages = 0

        while max_pages is None or pages < max_pages:
            result = self.fetch_feed(cursor)
            if not result.get("success"):
                logger.warning(f"Feed catch-up stopped: {result.get('error')}")
                return {"success": False, "applied": applied, "resynced": resynced,
                        "error": result.get("error")}

            if result["stale"]:
                if resynced:
                    error = "Feed cursor stale right after a full resync"
                    logger.error(error)
                    return {"success": False, "applied": applied, "resynced": True, "error": error}
                logger.warning(f"Cursor '{cursor}' is stale; starting full resync")
                self.set_cursor(None)
                cursor = None
                resynced = True
                continue

            events: List[SyncEvent] = result["events"]
            if not events:
                break
            try:
                apply(events)
            except Exception as e:
                logger.error(f"Applying feed page failed, cursor stays at '{cursor}': {e}")
                return {"success": False, "applied": applied, "resynced": resynced, "error": str(e)}

            cursor = events[-1].id
            self.set_cursor(cursor)
            applied += len(events)
            pages += 1
            if len(events) < validate_limit(self.feed_limit):
                break

        self.db.set_state(LAST_SYNC_STATE_KEY, datetime.now(timezone.utc).isoformat())
        if applied:
            logger.info(f"Applied {applied} feed events")
        return {"success": True, "applied": applied, "resynced": resynced}

    # ===== Outbox replay and status =====

    def replay_request(self, stored: OutboxRequest) -> Dict[str, Any]:
        """Replay a stored request verbatim. Adapter for OutboxStore.replay()."""
        body = stored.body.encode("utf-8") if stored.body is not None else None
        request = urllib.request.Request(
            stored.url, data=body, method=stored.method, headers=dict(stored.headers)
        )
        return self._open(request)

    def check_status(self) -> Dict[str, Any]:
        """Check if the sync server is reachable.

        Returns:
            Dict with "reachable" and the server's protocol_version, or "error"
        """
        response = self._make_request(f"{self.server_url}/sync/status", method="GET")
        if response.get("success"):
            return {
                "reachable": True,
                "protocol_version": (response.get("data") or {}).get("protocol_version"),
            }
        return {"reachable": False, "error": response.get("error")}

    # ===== HTTP =====

    def _make_request(
        self,
        url: str,
        method: str = "GET",
        data: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        """Make a JSON request to the sync server.

        Args:
            url: Full URL to request
            method: HTTP method
            data: JSON data to send (for POST)
            headers: Extra request headers

        Returns:
            Dict with success status and response data or error
        """
        owner_id = self.config.get_owner_id()
        if not owner_id:
            return {"success": False, "error": "owner_id is not configured"}

        request_headers = {OWNER_HEADER: owner_id, "Accept": "application/json"}
        request_headers.update(headers or {})
        body = None
        if data is not None:
            body = json.dumps(data).encode("utf-8")
            request_headers["Content-Type"] = "application/json"

        request = urllib.request.Request(url, data=body, method=method, headers=request_headers)
        return self._open(request)

    def _open(self, request: urllib.request.Request) -> Dict[str, Any]:
        try:
            response = self.opener(request, timeout=self.timeout)
            try:
                raw = response.read()
                response_headers = {k.lower(): v for k, v in response.headers.items()} if response.headers else {}
            finally:
                response.close()
            response_data = json.loads(raw.decode("utf-8")) if raw else None
            logger.debug(f"{request.get_method()} {request.full_url} -> ok")
            return {"success": True, "data": response_data, "headers": response_headers}

        except urllib.error.HTTPError as e:
            try:
                error_data = json.loads(e.read().decode("utf-8"))
                error_msg = error_data.get("error", f"HTTP {e.code}: {e.reason}")
            except (ValueError, AttributeError):
                error_msg = f"HTTP {e.code}: {e.reason}"
            logger.warning(f"{request.get_method()} {request.full_url} failed: {error_msg}")
            return {"success": False, "error": error_msg, "status": e.code}

        except urllib.error.URLError as e:
            error_msg = f"Connection failed: {e.reason}"
            logger.warning(f"{request.get_method()} {request.full_url}: {error_msg}")
            return {"success": False, "error": error_msg}

        except (OSError, ValueError) as e:
            error_msg = f"Request failed: {e}"
            logger.warning(f"{request.get_method()} {request.full_url}: {error_msg}")
            return {"success": False, "error": error_msg}
