"""HTTP surface of the fieldsync server.

Two endpoints carry sync traffic:
1. POST /sync/batch: ingest a batch of events for the calling owner
2. GET /sync/since: incremental feed after a cursor

plus GET /sync/status as a liveness probe.

The owner is taken from the X-Owner-ID header. Authentication happens in
front of this service and is not handled here.
"""

from __future__ import annotations

import functools
import logging
from typing import Any, Callable, Optional, Tuple

from flask import Blueprint, Flask, Response, jsonify, request
from flask_cors import CORS

from .event_store import EventStore
from .feed import DEFAULT_FEED_LIMIT, FeedService
from .validation import ValidationError, validate_limit, validate_owner_id

logger = logging.getLogger(__name__)

__all__ = ["create_sync_blueprint", "create_sync_server", "PROTOCOL_VERSION"]

PROTOCOL_VERSION = "1.0"
OWNER_HEADER = "X-Owner-ID"
IDEMPOTENCY_HEADER = "Idempotency-Key"
STALE_CURSOR_HEADER = "X-Cursor-Stale"


def api_endpoint(func: Callable) -> Callable:
    """Decorator for consistent API error handling.

    Catches ValidationError (400) and Exception (500) with proper
    JSON error responses and logging.
    """
    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return func(*args, **kwargs)
        except ValidationError as e:
            logger.warning(f"Rejected {request.method} {request.path}: {e}")
            return jsonify({"error": f"Invalid {e.field}: {e.message}"}), 400
        except Exception as e:
            logger.error(f"Error in {func.__name__}: {e}")
            return jsonify({"error": f"Internal server error: {e}"}), 500
    return wrapper


def _owner_from_request() -> str:
    return validate_owner_id(request.headers.get(OWNER_HEADER))


def create_sync_blueprint(store: EventStore, feed_limit: int = DEFAULT_FEED_LIMIT) -> Blueprint:
    """Create Flask blueprint for sync endpoints.

    Args:
        store: EventStore receiving batches and backing the feed
        feed_limit: Page size used when the client does not ask for one

    Returns:
        Flask Blueprint with sync routes
    """
    sync_bp = Blueprint("sync", __name__, url_prefix="/sync")
    feed_service = FeedService(store)

    @sync_bp.route("/batch", methods=["POST"])
    @api_endpoint
    def ingest_batch() -> Tuple[Response, int]:
        """Append a batch of events atomically.

        Headers:
            X-Owner-ID: owner whose stream receives the events
            Idempotency-Key: optional, deduplicates retried batches

        Request body:
            {"events": [{"type": "...", "occurred_at": "...", "payload": "...", "id": "..."}]}

        Response:
            {"inserted": n}
        """
        owner_id = _owner_from_request()
        idempotency_key = request.headers.get(IDEMPOTENCY_HEADER)

        data = request.get_json(silent=True)
        if not isinstance(data, dict):
            raise ValidationError("body", "missing JSON request body")
        events = data.get("events")

        logger.info(
            f"Batch from owner {owner_id}: "
            f"{len(events) if isinstance(events, list) else 0} events, "
            f"Idempotency-Key={idempotency_key or '-'}"
        )
        result = store.append_batch(owner_id, events, idempotency_key=idempotency_key)
        return jsonify({"inserted": result.inserted}), 200

    @sync_bp.route("/since", methods=["GET"])
    @api_endpoint
    def get_since() -> Tuple[Response, int]:
        """Get events after a cursor.

        Query params:
            cursor: ID (or created_at) of the last processed event (optional)
            limit: Page size (default 100, at most 1000)

        Response:
            [{"id": ..., "owner_id": ..., "type": ..., "payload": ...,
              "occurred_at": ..., "created_at": ...}, ...]

        A supplied cursor that names no event yields [] with the
        X-Cursor-Stale header set, telling the client to resync.
        """
        owner_id = _owner_from_request()
        cursor: Optional[str] = request.args.get("cursor") or None
        limit = validate_limit(request.args.get("limit"), feed_limit)

        events = feed_service.feed(owner_id, cursor=cursor, limit=limit)
        response = jsonify([event.to_dict() for event in events])
        if cursor and not events and feed_service.resolve_cursor(owner_id, cursor) is None:
            response.headers[STALE_CURSOR_HEADER] = "1"
        logger.debug(f"Feed for owner {owner_id} after '{cursor}': {len(events)} events")
        return response, 200

    @sync_bp.route("/status", methods=["GET"])
    def status() -> Tuple[Response, int]:
        """Get sync server status.

        Response:
            {"status": "ok", "protocol_version": "1.0"}
        """
        return jsonify({"status": "ok", "protocol_version": PROTOCOL_VERSION}), 200

    return sync_bp


def create_sync_server(store: EventStore, config: Any = None) -> Flask:
    """Create a standalone Flask sync server.

    Args:
        store: EventStore instance
        config: Config instance (optional; supplies the default feed page size)

    Returns:
        Flask application instance
    """
    app = Flask(__name__)
    app.json.sort_keys = False
    CORS(app, expose_headers=[STALE_CURSOR_HEADER])

    feed_limit = DEFAULT_FEED_LIMIT
    if config is not None:
        feed_limit = int(config.get_sync_value("feed_limit"))

    app.register_blueprint(create_sync_blueprint(store, feed_limit))

    @app.errorhandler(404)
    def not_found(error: Any) -> Tuple[Response, int]:
        """Handle 404 errors."""
        return jsonify({"error": "Not found"}), 404

    return app
