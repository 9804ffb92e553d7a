"""
core/clock.py -- Wall-clock abstraction and timestamp serialization.

Every component that compares against "now" takes a `clock` callable
(default utc_now) so tests can freeze and advance time deterministically.

Timestamps are persisted as fixed-width ISO-8601 UTC strings. Fixed width
(always microseconds, always +00:00) matters: expiry checks run in SQL as
plain string comparisons, which are only chronological when every value has
the same shape. datetime.isoformat() drops the fraction when it is zero, so
never call it directly for stored values -- use to_iso().
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timezone

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(moment: datetime) -> str:
    """Serialize an aware datetime as a fixed-width UTC ISO-8601 string."""
    if moment.tzinfo is None:
        raise ValueError("naive datetimes are not accepted; attach a timezone")
    return moment.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
