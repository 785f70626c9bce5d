"""Timezone-aware UTC timestamp utilities.

All engine code should use these helpers instead of datetime.utcnow()
or datetime.now(). Every serialized timestamp (deployment log entries,
created_at/updated_at columns) carries a +00:00 offset.
"""

from datetime import datetime, timezone


def now() -> datetime:
    """Return the current UTC time as a timezone-aware datetime."""
    return datetime.now(timezone.utc)


def isonow() -> str:
    """Return the current UTC time as an ISO 8601 string with +00:00 offset."""
    return now().isoformat()
