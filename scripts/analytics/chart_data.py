"""
Pulse Hub — Call Chart Data
=============================

Turns stored calendly_events rows into the per-day chart series and the
headline call stats shown on the dashboard. Days are calendar days in the
viewer's timezone.
"""
from __future__ import annotations

from collections import Counter
from datetime import date, datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional

from scripts.lib.data_sync import is_cancelled
from scripts.lib.dates import iter_days, local_date, range_bounds, resolve_timezone, short_label
from scripts.lib.logger import setup_logger
from scripts.lib.utils import parse_iso

logger = setup_logger("chart_data")

SCHEDULED_STATUSES = ("active", "scheduled")
NO_SHOW = "no_show"


def generate_call_chart(events: Iterable[Dict], date_from: date, date_to: date,
                        tz_name: Optional[str] = None,
                        page_views_by_date: Optional[Dict[str, int]] = None) -> List[Dict]:
    """
    One data point per local calendar day, bucketed by booking (created_at) date.

    Args:
        events: calendly_events rows.
        date_from / date_to: inclusive day range.
        tz_name: IANA timezone of the viewer (UTC when missing or unknown).
        page_views_by_date: ISO date -> page_view count.
    """
    tz = resolve_timezone(tz_name)
    page_views_by_date = page_views_by_date or {}

    by_day: Dict[date, List[Dict]] = {}
    for event in events:
        day = local_date(event.get("created_at"), tz)
        if day is not None:
            by_day.setdefault(day, []).append(event)

    series = []
    for day in iter_days(date_from, date_to):
        day_events = by_day.get(day, [])
        statuses = Counter((e.get("status") or "").lower() for e in day_events)
        booked = len(day_events)
        cancelled = statuses["canceled"] + statuses["cancelled"]
        no_shows = statuses[NO_SHOW]
        scheduled = sum(statuses[s] for s in SCHEDULED_STATUSES)
        taken = max(0, scheduled - no_shows)
        series.append({
            "date": short_label(day),
            "isoDate": day.isoformat(),
            "totalBookings": booked,
            "callsBooked": booked,
            "callsTaken": taken,
            "cancelled": cancelled,
            "noShows": no_shows,
            "showUpRate": round(taken / scheduled * 100, 1) if scheduled else 0,
            "pageViews": int(page_views_by_date.get(day.isoformat(), 0)),
        })
    return series


def dedupe_events(events: Iterable[Dict]) -> List[Dict]:
    """Keep the first row per calendly_event_id."""
    seen = set()
    unique = []
    for event in events:
        key = event.get("calendly_event_id") or event.get("id")
        if key in seen:
            continue
        seen.add(key)
        unique.append(event)
    return unique


def _cancelled_at(event: Dict) -> Optional[datetime]:
    return parse_iso(
        event.get("cancelled_at") or event.get("updated_at") or event.get("scheduled_at")
    )


def _within(value, start: datetime, end: datetime) -> bool:
    dt = parse_iso(value) if not isinstance(value, datetime) else value
    return dt is not None and start <= dt < end


def _period_stats(events: List[Dict], start: datetime, end: datetime, now: datetime) -> Dict:
    created = [e for e in events if _within(e.get("created_at"), start, end)]
    scheduled = [e for e in events if _within(e.get("scheduled_at"), start, end)]
    live = [e for e in scheduled if not is_cancelled(e.get("status"))]
    cancelled = [
        e for e in events
        if is_cancelled(e.get("status")) and _within(_cancelled_at(e), start, end)
    ]
    completed = [e for e in live if parse_iso(e.get("scheduled_at")) < now]
    upcoming = [e for e in live if parse_iso(e.get("scheduled_at")) >= now]
    closed = [e for e in completed if e.get("is_closed") is True]

    past = len(completed) + len(cancelled)
    return {
        "totalBookings": len(created),
        "callsTaken": len(live),
        "cancelled": len(cancelled),
        "completed": len(completed),
        "upcoming": len(upcoming),
        "closed": len(closed),
        "showUpRate": round(len(completed) / past * 100) if past else 0,
        "closeRate": round(len(closed) / len(completed) * 100) if completed else 0,
    }


def calculate_call_stats(events: Iterable[Dict], date_from: date, date_to: date,
                         tz_name: Optional[str] = None, now: Optional[datetime] = None) -> Dict:
    """Headline call stats for a day range plus the preceding period of equal length."""
    tz = resolve_timezone(tz_name)
    now = now or datetime.now(timezone.utc)
    events = list(events)
    unique = dedupe_events(events)

    start, end = range_bounds(date_from, date_to, tz)
    current = _period_stats(unique, start, end, now)

    length = timedelta(days=max((date_to - date_from).days, 0) + 1)
    prev_start, prev_end = range_bounds(date_from - length, date_to - length, tz)
    previous = _period_stats(unique, prev_start, prev_end, now)

    stats = dict(current)
    stats["categoryBreakdown"] = {
        key: current[key] for key in ("cancelled", "completed", "upcoming", "closed")
    }
    for key in ("totalBookings", "callsTaken", "cancelled", "showUpRate", "closeRate"):
        stats[f"previous{key[0].upper()}{key[1:]}"] = previous[key]
    stats["duplicatesRemoved"] = len(events) - len(unique)
    return stats
