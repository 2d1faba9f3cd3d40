"""Time helpers.

Timestamps are stored as naive UTC datetimes throughout the database.
"""

from datetime import datetime, timezone


def utcnow() -> datetime:
    """Current time as a naive UTC datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def from_unix(seconds: float) -> datetime:
    """Convert a Unix timestamp into a naive UTC datetime."""
    return datetime.fromtimestamp(seconds, tz=timezone.utc).replace(tzinfo=None)
