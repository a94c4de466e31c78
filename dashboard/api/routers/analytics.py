"""
Pulse Hub — Analytics Router
==============================
Dashboard charts, call stats, attribution, page analytics and forecasts.

Endpoints:
  GET  /api/analytics/{project_id}/call-chart    - Daily booking series
  GET  /api/analytics/{project_id}/call-stats    - Headline call stats vs previous period
  GET  /api/analytics/{project_id}/attribution   - Revenue by channel
  GET  /api/analytics/{project_id}/pages         - Funnel page metrics for a pixel
  GET  /api/analytics/{project_id}/forecast      - Trend forecast and scenarios
  POST /api/analytics/daily-aggregation          - Roll up page views per day
"""
from __future__ import annotations

from collections import Counter
from datetime import date, datetime, timedelta, timezone
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from dashboard.api.middleware import require_scope
from models.sync_models import DailyAggregationRequest
from scripts.analytics import aggregation, attribution, chart_data, forecast
from scripts.lib.dates import local_date, range_bounds, resolve_timezone
from scripts.lib.errors import HubError, SchemaValidationError
from scripts.lib.logger import setup_logger
from scripts.lib.supabase_client import get_client

logger = setup_logger("analytics_router")

router = APIRouter(prefix="/api/analytics", tags=["analytics"])

DEFAULT_RANGE_DAYS = 30


def _date_range(date_from: Optional[date], date_to: Optional[date]):
    date_to = date_to or datetime.now(timezone.utc).date()
    date_from = date_from or date_to - timedelta(days=DEFAULT_RANGE_DAYS - 1)
    if date_from > date_to:
        raise SchemaValidationError("date_from must not be after date_to", field="date_from")
    return date_from, date_to


def _parse_day(value: Optional[str], field: str) -> Optional[date]:
    if not value:
        return None
    try:
        return date.fromisoformat(value[:10])
    except ValueError:
        raise SchemaValidationError(f"Invalid date: {value}", field=field)


def _events_between(project_id: str, column: str, start: datetime, end: datetime) -> List[Dict]:
    return (
        get_client().table("calendly_events")
        .select("*")
        .eq("project_id", project_id)
        .gte(column, start.isoformat())
        .lt(column, end.isoformat())
        .execute()
    ).data or []


def _page_views_by_date(project_id: str, start: datetime, end: datetime, tz) -> Dict[str, int]:
    rows = (
        get_client().table("tracking_events")
        .select("created_at")
        .eq("project_id", project_id)
        .eq("event_type", "page_view")
        .gte("created_at", start.isoformat())
        .lt("created_at", end.isoformat())
        .execute()
    ).data or []
    counts = Counter()
    for row in rows:
        day = local_date(row.get("created_at"), tz)
        if day is not None:
            counts[day.isoformat()] += 1
    return dict(counts)


@router.get("/{project_id}/call-chart")
async def call_chart(
    project_id: str,
    date_from: Optional[str] = Query(None, description="First day (YYYY-MM-DD)"),
    date_to: Optional[str] = Query(None, description="Last day (YYYY-MM-DD)"),
    tz_name: Optional[str] = Query(None, alias="timezone", description="IANA timezone"),
):
    """Bookings, calls taken, cancellations and page views per local day."""
    try:
        day_from, day_to = _date_range(
            _parse_day(date_from, "date_from"), _parse_day(date_to, "date_to"),
        )
        tz = resolve_timezone(tz_name)
        start, end = range_bounds(day_from, day_to, tz)
        events = _events_between(project_id, "created_at", start, end)
        page_views = _page_views_by_date(project_id, start, end, tz)
        return {
            "data": chart_data.generate_call_chart(events, day_from, day_to, tz_name, page_views),
            "dateFrom": day_from.isoformat(),
            "dateTo": day_to.isoformat(),
        }
    except (HTTPException, HubError):
        raise
    except Exception as e:
        logger.error("Call chart failed for %s: %s", project_id, e)
        raise HTTPException(status_code=500, detail="Failed to build call chart")


@router.get("/{project_id}/call-stats")
async def call_stats(
    project_id: str,
    date_from: Optional[str] = Query(None),
    date_to: Optional[str] = Query(None),
    tz_name: Optional[str] = Query(None, alias="timezone"),
):
    """Headline call stats for the range and the equally long period before it."""
    try:
        day_from, day_to = _date_range(
            _parse_day(date_from, "date_from"), _parse_day(date_to, "date_to"),
        )
        tz = resolve_timezone(tz_name)
        length = timedelta(days=(day_to - day_from).days + 1)
        start, end = range_bounds(day_from - length, day_to, tz)

        # Booked, held or cancelled in either period; merged on row id
        rows: Dict = {}
        for column in ("created_at", "scheduled_at", "updated_at"):
            for row in _events_between(project_id, column, start, end):
                rows.setdefault(row.get("id"), row)

        return chart_data.calculate_call_stats(list(rows.values()), day_from, day_to, tz_name)
    except (HTTPException, HubError):
        raise
    except Exception as e:
        logger.error("Call stats failed for %s: %s", project_id, e)
        raise HTTPException(status_code=500, detail="Failed to calculate call stats")


@router.get("/{project_id}/attribution")
async def attribution_report(
    project_id: str,
    date_from: Optional[str] = Query(None),
    date_to: Optional[str] = Query(None),
    model: str = Query("first_touch", description="first_touch, last_touch, linear"),
):
    try:
        if model not in attribution.MODELS:
            raise SchemaValidationError(f"Unknown attribution model: {model}", field="model")
        day_from, day_to = _date_range(
            _parse_day(date_from, "date_from"), _parse_day(date_to, "date_to"),
        )
        start, end = range_bounds(day_from, day_to, resolve_timezone(None))
        return attribution.attribution_report(
            project_id, start.isoformat(), end.isoformat(), model,
        )
    except (HTTPException, HubError):
        raise
    except Exception as e:
        logger.error("Attribution report failed for %s: %s", project_id, e)
        raise HTTPException(status_code=500, detail="Failed to build attribution report")


@router.get("/{project_id}/pages")
async def page_report(
    project_id: str,
    pixel_id: str = Query(..., description="Pixel whose funnel pages to report"),
    days: int = Query(30, ge=1, le=365),
):
    """Per-page metrics for a pixel's configured funnel, plus headline numbers."""
    try:
        pixels = (
            get_client().table("tracking_pixels")
            .select("*")
            .eq("project_id", project_id)
            .eq("pixel_id", pixel_id)
            .limit(1)
            .execute()
        ).data
        if not pixels:
            raise HTTPException(status_code=404, detail="Pixel not found")
        pixel = pixels[0]
        funnel_pages = (pixel.get("config") or {}).get("funnelPages") or []
        tracks_purchases = "purchase" in (pixel.get("conversion_events") or [])

        since = datetime.now(timezone.utc) - timedelta(days=days)
        events = (
            get_client().table("tracking_events")
            .select("*")
            .eq("project_id", project_id)
            .gte("created_at", since.isoformat())
            .order("created_at", desc=True)
            .execute()
        ).data or []

        return {
            "pages": attribution.page_analytics(events, funnel_pages, tracks_purchases),
            "keyMetrics": attribution.key_metrics(events, tracks_purchases),
            "eventTypes": attribution.event_type_breakdown(events),
        }
    except (HTTPException, HubError):
        raise
    except Exception as e:
        logger.error("Page analytics failed for %s: %s", project_id, e)
        raise HTTPException(status_code=500, detail="Failed to build page analytics")


@router.get("/{project_id}/forecast")
async def forecast_report(
    project_id: str,
    metric: str = Query("bookings", description="bookings, events, revenue"),
    days: int = Query(30, ge=7, le=365, description="History window"),
    forecast_days: int = Query(14, ge=1, le=90),
):
    try:
        if metric not in forecast.METRIC_SOURCES:
            raise SchemaValidationError(f"Unknown forecast metric: {metric}", field="metric")
        history = forecast.load_daily_history(project_id, metric, days)
        result = forecast.generate_forecast(history, forecast_days)
        values = [point["value"] for point in history]
        trend = forecast.linear_trend(values)
        result["scenarios"] = forecast.scenario_forecasts(
            values[-1], trend, forecast_days, forecast.residual_std_dev(values, trend),
        )
        result["metric"] = metric
        return result
    except (HTTPException, HubError):
        raise
    except Exception as e:
        logger.error("Forecast failed for %s: %s", project_id, e)
        raise HTTPException(status_code=500, detail="Failed to build forecast")


@router.post("/daily-aggregation", dependencies=[Depends(require_scope("write"))])
async def daily_aggregation(body: DailyAggregationRequest = DailyAggregationRequest()):
    """Aggregate page views per day (the last 7 days unless a range is given)."""
    try:
        dates = None
        start = _parse_day(body.start_date, "startDate")
        end = _parse_day(body.end_date, "endDate")
        if start or end:
            day_from, day_to = _date_range(start, end)
            dates = [
                day_from + timedelta(days=i) for i in range((day_to - day_from).days + 1)
            ]
        return aggregation.aggregate_daily_metrics(body.project_id, dates)
    except (HTTPException, HubError):
        raise
    except Exception as e:
        logger.error("Daily aggregation failed: %s", e)
        raise HTTPException(status_code=500, detail="Daily aggregation failed")
