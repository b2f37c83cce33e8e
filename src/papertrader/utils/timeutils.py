"""
Timestamp helpers.

Every timestamp written to the store goes through `to_iso`, so stored
values share one fixed-width UTC format and compare correctly as text.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional, Union


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(ts: Optional[Union[datetime, str]] = None) -> str:
    """Serialise `ts` (default: now) as ISO-8601 UTC with microseconds.

    Naive datetimes are assumed to be UTC. Strings are parsed first so
    that values coming from other sources are normalised as well.
    """
    if ts is None:
        ts = utcnow()
    elif isinstance(ts, str):
        ts = datetime.fromisoformat(ts)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc).isoformat(timespec="microseconds")


def days_ago(days: float, now: Optional[datetime] = None) -> datetime:
    """Start of a trailing window of `days` ending at `now`."""
    return (now or utcnow()) - timedelta(days=days)
