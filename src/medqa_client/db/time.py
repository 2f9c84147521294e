"""Clock helpers for stored rows and remote payloads."""

import time
from datetime import UTC, datetime


def utcnow() -> datetime:
    """Return the current UTC time as a timezone-aware datetime."""
    return datetime.now(UTC)


def utc_timestamp() -> str:
    """Return the current UTC time formatted for `updated_at` columns."""
    return utcnow().isoformat()


def epoch_seconds() -> int:
    return int(time.time())
