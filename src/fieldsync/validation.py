"""Input validation for fieldsync.

This module provides validation functions for everything that crosses a
trust boundary: HTTP request bodies, CLI arguments and queue input.
All validators raise ValidationError with descriptive messages.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional, Union

from .models import Priority


class ValidationError(ValueError):
    """Validation error with field and message attributes."""

    def __init__(self, field: str, message: str) -> None:
        self.field = field
        self.message = message
        super().__init__(f"{field}: {message}")

    def __str__(self) -> str:
        return f"{self.field}: {self.message}"

    def __repr__(self) -> str:
        return f"ValidationError(field='{self.field}', message='{self.message}')"


__all__ = [
    "ValidationError",
    "validate_owner_id",
    "validate_event_type",
    "validate_event_id",
    "validate_payload",
    "validate_timestamp",
    "validate_priority",
    "validate_limit",
    "validate_idempotency_key",
    "validate_event_input",
]

# Limits
MAX_OWNER_ID_LENGTH = 128
MAX_EVENT_TYPE_LENGTH = 64
MAX_EVENT_ID_LENGTH = 128
MAX_PAYLOAD_LENGTH = 1_000_000
MAX_IDEMPOTENCY_KEY_LENGTH = 255
MAX_FEED_LIMIT = 1000


def _require_string(value: Any, field_name: str) -> str:
    if not isinstance(value, str):
        raise ValidationError(
            field_name, f"must be a string, got {type(value).__name__}"
        )
    return value


def _require_non_empty(value: Any, field_name: str, max_length: int) -> str:
    value = _require_string(value, field_name)
    if not value.strip():
        raise ValidationError(field_name, "cannot be empty")
    if len(value) > max_length:
        raise ValidationError(
            field_name, f"must be at most {max_length} characters, got {len(value)}"
        )
    return value


def validate_owner_id(owner_id: Any) -> str:
    """Validate the owner (worker) ID an event stream belongs to."""
    return _require_non_empty(owner_id, "owner_id", MAX_OWNER_ID_LENGTH)


def validate_event_type(event_type: Any) -> str:
    """Validate a domain event type name."""
    return _require_non_empty(event_type, "type", MAX_EVENT_TYPE_LENGTH)


def validate_event_id(event_id: Any) -> str:
    """Validate a caller-supplied event ID. Any non-empty string is accepted."""
    return _require_non_empty(event_id, "id", MAX_EVENT_ID_LENGTH)


def validate_payload(payload: Any) -> str:
    """Validate an opaque payload. Must be a non-empty string."""
    return _require_non_empty(payload, "payload", MAX_PAYLOAD_LENGTH)


def validate_timestamp(value: Any, field_name: str = "occurred_at") -> datetime:
    """Validate an ISO 8601 timestamp and return the parsed datetime."""
    value = _require_string(value, field_name)
    text = value.strip()
    # fromisoformat() only learned the "Z" suffix in Python 3.11
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        raise ValidationError(field_name, f"not an ISO 8601 timestamp: '{value}'") from None


def validate_priority(priority: Union[Priority, str]) -> Priority:
    """Validate a priority given as enum or name ("high", "medium", "low")."""
    if isinstance(priority, Priority):
        return priority
    if isinstance(priority, str):
        try:
            return Priority(priority.strip().lower())
        except ValueError:
            pass
    valid = ", ".join(p.value for p in Priority)
    raise ValidationError("priority", f"must be one of: {valid}")


def validate_limit(value: Any, default: int = 100) -> int:
    """Validate a feed page size and clamp it to [1, MAX_FEED_LIMIT]."""
    if value is None or value == "":
        return default
    try:
        limit = int(value)
    except (TypeError, ValueError):
        raise ValidationError("limit", f"must be an integer, got '{value}'") from None
    return max(1, min(limit, MAX_FEED_LIMIT))


def validate_idempotency_key(key: Optional[str]) -> Optional[str]:
    """Validate an optional idempotency key."""
    if key is None or key == "":
        return None
    return _require_non_empty(key, "idempotency_key", MAX_IDEMPOTENCY_KEY_LENGTH)


def validate_event_input(data: Any, index: Optional[int] = None) -> Dict[str, Any]:
    """Validate one incoming event of a batch.

    Accepts both occurred_at and occurredAt spellings.

    Returns:
        Normalized dict with keys type, payload, occurred_at and optional id.
    """
    prefix = f"events[{index}]." if index is not None else ""
    if not isinstance(data, dict):
        raise ValidationError(f"{prefix}event", "must be an object")
    try:
        occurred_raw = data.get("occurred_at", data.get("occurredAt"))
        if occurred_raw is None:
            raise ValidationError("occurred_at", "is required")
        validate_timestamp(occurred_raw)
        result: Dict[str, Any] = {
            "type": validate_event_type(data.get("type")),
            "payload": validate_payload(data.get("payload")),
            "occurred_at": occurred_raw,
        }
        if data.get("id") is not None:
            result["id"] = validate_event_id(data["id"])
    except ValidationError as e:
        raise ValidationError(f"{prefix}{e.field}", e.message) from None
    return result
