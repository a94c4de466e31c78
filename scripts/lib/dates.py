"""
Timezone-aware date helpers for bucketing events by the user's calendar day.
"""
from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from typing import Iterator, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from scripts.lib.logger import setup_logger
from scripts.lib.utils import parse_iso

logger = setup_logger("dates")


def resolve_timezone(name: Optional[str]) -> ZoneInfo:
    """ZoneInfo for ``name``; unknown or empty names fall back to UTC."""
    if not name:
        return ZoneInfo("UTC")
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown timezone %r, falling back to UTC", name)
        return ZoneInfo("UTC")


def local_date(value, tz: ZoneInfo) -> Optional[date]:
    """Calendar date of a timestamp as seen in ``tz``."""
    dt = parse_iso(value)
    if dt is None:
        return None
    return dt.astimezone(tz).date()


def day_bounds(day: date, tz: ZoneInfo) -> Tuple[datetime, datetime]:
    """UTC start (inclusive) and end (exclusive) of a local calendar day."""
    start = datetime.combine(day, time.min, tzinfo=tz)
    end = datetime.combine(day + timedelta(days=1), time.min, tzinfo=tz)
    return start.astimezone(timezone.utc), end.astimezone(timezone.utc)


def range_bounds(date_from: date, date_to: date, tz: ZoneInfo) -> Tuple[datetime, datetime]:
    """UTC bounds covering every local day from ``date_from`` to ``date_to``."""
    start, _ = day_bounds(date_from, tz)
    _, end = day_bounds(date_to, tz)
    return start, end


def iter_days(date_from: date, date_to: date) -> Iterator[date]:
    """Each calendar day from ``date_from`` to ``date_to`` inclusive.

    A reversed or zero-length range still yields ``date_from`` once.
    """
    total = max((date_to - date_from).days, 0) + 1
    for offset in range(total):
        yield date_from + timedelta(days=offset)


def short_label(day: date) -> str:
    """Chart label such as 'Jan 5'."""
    return f"{day.strftime('%b')} {day.day}"
