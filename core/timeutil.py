"""
core/timeutil.py -- UTC timestamp helpers shared by every store.

Timestamps are persisted as fixed-width ISO-8601 strings with microsecond
precision and an explicit +00:00 offset. Fixed width means string comparison
in SQL (ORDER BY, <, >) agrees with chronological order, which the session
and token queries rely on.

Services accept a `clock` callable (defaulting to utc_now) so tests can
advance time without sleeping.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timezone

Clock = Callable[[], datetime]

_ISO_FORMAT = "%Y-%m-%dT%H:%M:%S.%f+00:00"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime | None) -> str | None:
    """Serialise an aware datetime to the fixed-width storage format."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime(_ISO_FORMAT)


def from_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
