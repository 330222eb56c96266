"""
Clock helpers for the storefront.

Timestamps are stored as naive UTC datetimes; API responses render them as
ISO-8601 with a trailing 'Z'. Ledger filters accept either a full timestamp
or a bare calendar date.
"""
from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def minutes_ago(minutes: int) -> datetime:
    """Cutoff used when sweeping stale pending-payment orders."""
    return utcnow() - timedelta(minutes=minutes)


def days_ago(days: int) -> datetime:
    return utcnow() - timedelta(days=days)


def parse_filter_bound(value: Optional[str], *, end_of_day: bool = False) -> Optional[datetime]:
    """
    Read a start/end bound for the movement ledger.

    - None or blank means no bound.
    - "2026-10-19T08:30Z" and "2026-10-19T16:30+08:00" name the same instant.
      Offsets are converted to UTC, a naive timestamp is taken as UTC already.
    - A bare date "2026-10-19" means the start of that day, or its last
      microsecond when end_of_day is set, so an inclusive end date covers
      the whole day.

    Raises ValueError for anything else.
    """
    if value is None or not value.strip():
        return None
    text = value.strip()

    if len(text) == 10:
        day = date.fromisoformat(text)
        return datetime.combine(day, time.max if end_of_day else time.min)

    if text[-1] in "zZ":
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def to_utc_z(moment: Optional[datetime]) -> Optional[str]:
    """Render a stored timestamp as "YYYY-MM-DDTHH:MM:SSZ" (seconds precision)."""
    if moment is None:
        return None
    if moment.tzinfo is not None:
        moment = moment.astimezone(timezone.utc).replace(tzinfo=None)
    return moment.replace(microsecond=0).isoformat() + "Z"
