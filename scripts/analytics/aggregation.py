"""
Pulse Hub — Daily Metrics Aggregation
=======================================

Rolls page_view events up into project_daily_metrics, one row per
(project, date, landing page). Without a project id every project is
aggregated for the last 7 days.
"""
from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from typing import Dict, List, Optional
from urllib.parse import urlsplit, urlunsplit

from scripts.analytics.attribution import page_details
from scripts.lib.data_sync import _upsert_batched
from scripts.lib.logger import setup_logger
from scripts.lib.supabase_client import get_client, utc_now

logger = setup_logger("aggregation")

DEFAULT_DAYS = 7


def strip_query(url: str) -> str:
    parts = urlsplit(url or "")
    return urlunsplit((parts.scheme, parts.netloc, parts.path, "", ""))


def default_dates(today: date = None, days: int = DEFAULT_DAYS) -> List[date]:
    today = today or datetime.now(timezone.utc).date()
    return [today - timedelta(days=offset) for offset in range(days - 1, -1, -1)]


def build_daily_rows(project_id: str, day: date, page_views: List[Dict]) -> List[Dict]:
    """Group one day's page_view events by landing page name."""
    pages: Dict[str, Dict] = {}
    for event in page_views:
        url = strip_query(event.get("page_url"))
        name = page_details(url, [])["name"]
        page = pages.setdefault(name, {"url": url, "views": 0, "sessions": set()})
        page["views"] += 1
        if event.get("session_id"):
            page["sessions"].add(event["session_id"])

    now = utc_now()
    return [
        {
            "project_id": project_id,
            "date": day.isoformat(),
            "landing_page_name": name,
            "landing_page_url": page["url"],
            "total_page_views": page["views"],
            "unique_visitors": len(page["sessions"]),
            "updated_at": now,
        }
        for name, page in sorted(pages.items())
    ]


def _page_views_on(project_id: str, day: date) -> List[Dict]:
    start = datetime(day.year, day.month, day.day, tzinfo=timezone.utc)
    end = start + timedelta(days=1)
    return (
        get_client().table("tracking_events")
        .select("page_url, session_id, created_at")
        .eq("project_id", project_id)
        .eq("event_type", "page_view")
        .gte("created_at", start.isoformat())
        .lt("created_at", end.isoformat())
        .execute()
    ).data or []


def aggregate_daily_metrics(project_id: Optional[str] = None,
                            dates: Optional[List[date]] = None) -> Dict:
    """Aggregate each (project, date) pair; one failing day does not stop the rest."""
    dates = dates or default_dates()
    if project_id:
        project_ids = [project_id]
    else:
        projects = get_client().table("projects").select("id").execute().data or []
        project_ids = [p["id"] for p in projects]

    processed, rows_written, results = [], 0, []
    for pid in project_ids:
        for day in dates:
            try:
                rows = build_daily_rows(pid, day, _page_views_on(pid, day))
                rows_written += _upsert_batched(
                    "project_daily_metrics", rows, "project_id,date,landing_page_name",
                )
                results.append({"project_id": pid, "date": day.isoformat(), "status": "success"})
                processed.append(day.isoformat())
            except Exception as e:
                logger.error("Aggregation failed for %s on %s: %s", pid, day, e)
                results.append({
                    "project_id": pid, "date": day.isoformat(), "status": "error", "error": str(e),
                })

    logger.info("Daily aggregation wrote %d rows for %d projects", rows_written, len(project_ids))
    return {
        "success": True,
        "processed_dates": sorted(set(processed)),
        "rows_written": rows_written,
        "results": results,
    }
