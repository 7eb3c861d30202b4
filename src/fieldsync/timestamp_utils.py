"""Timestamp utilities for fieldsync.

The server stores created_at as a fixed-width UTC string so that SQL
string comparison matches chronological order. The client stores epoch
seconds. These helpers convert between the two.
"""

from datetime import datetime, timezone
from typing import Optional, Union

# Fixed width: 2024-02-01T01:00:00.000000Z
SERVER_TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def format_server_timestamp(dt: datetime) -> str:
    """Format a datetime as a fixed-width UTC server timestamp.

    Naive datetimes are assumed to already be UTC.
    """
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt.strftime(SERVER_TIMESTAMP_FORMAT)


def parse_timestamp(value: str) -> Optional[datetime]:
    """Parse an ISO 8601 timestamp into an aware UTC datetime.

    Returns:
        Parsed datetime, or None if the string is not a timestamp.
    """
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(text)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def normalize_server_timestamp(value: str) -> Optional[str]:
    """Normalize any ISO 8601 string to the server's fixed-width format."""
    dt = parse_timestamp(value)
    if dt is None:
        return None
    return format_server_timestamp(dt)


def to_epoch_seconds(value: Union[str, int, float, datetime, None]) -> float:
    """Convert a record timestamp of any common shape to epoch seconds.

    Numbers above 1e11 are taken as milliseconds (JavaScript clients send
    Date.now()). Unparseable or missing values become 0.
    """
    if value is None:
        return 0.0
    if isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float)):
        seconds = float(value)
        return seconds / 1000.0 if seconds > 1e11 else seconds
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.timestamp()
    dt = parse_timestamp(str(value))
    return dt.timestamp() if dt is not None else 0.0


def format_epoch(ts: Optional[float]) -> str:
    """Format epoch seconds in the local timezone for display.

    Returns:
        "YYYY-MM-DD HH:MM:SS", or empty string if ts is None
    """
    if ts is None:
        return ""
    utc_dt = datetime.fromtimestamp(ts, tz=timezone.utc)
    return utc_dt.astimezone().strftime("%Y-%m-%d %H:%M:%S")
