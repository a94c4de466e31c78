"""
Pulse Hub — Forecasting
=========================

Small time-series toolkit behind the dashboard's predictive charts:
moving average, least-squares trend, weekly seasonality detection,
a trend + seasonal forecast and optimistic/realistic/pessimistic scenarios.

All functions take plain lists of numbers (oldest first).
"""
from __future__ import annotations

import math
from collections import defaultdict
from datetime import date, datetime, timedelta, timezone
from typing import Dict, List, Optional

from scripts.lib.data_sync import _safe_float
from scripts.lib.logger import setup_logger
from scripts.lib.supabase_client import get_client
from scripts.lib.utils import parse_iso

logger = setup_logger("forecast")

WEEKLY_PERIOD = 7
SEASONALITY_THRESHOLD = 0.3
STABLE_SLOPE = 0.01


def moving_average(values: List[float], window: int) -> List[float]:
    """Trailing average; the first points average over what is available."""
    window = max(1, window)
    result = []
    for i in range(len(values)):
        chunk = values[max(0, i - window + 1): i + 1]
        result.append(sum(chunk) / len(chunk))
    return result


def linear_trend(values: List[float]) -> Dict[str, float]:
    """Least-squares line through (index, value) with r_squared floored at 0."""
    n = len(values)
    if n < 2:
        return {"slope": 0.0, "intercept": 0.0, "r_squared": 0.0}

    x_mean = (n - 1) / 2
    y_mean = sum(values) / n
    numerator = denominator = total_ss = 0.0
    for i, value in enumerate(values):
        numerator += (i - x_mean) * (value - y_mean)
        denominator += (i - x_mean) ** 2
        total_ss += (value - y_mean) ** 2

    slope = numerator / denominator if denominator else 0.0
    intercept = y_mean - slope * x_mean
    residual_ss = sum((v - (slope * i + intercept)) ** 2 for i, v in enumerate(values))
    r_squared = 1 - residual_ss / total_ss if total_ss else 0.0
    return {"slope": slope, "intercept": intercept, "r_squared": max(0.0, r_squared)}


def autocorrelation(values: List[float], lag: int) -> float:
    if len(values) <= lag:
        return 0.0
    mean = sum(values) / len(values)
    numerator = sum(
        (values[i] - mean) * (values[i + lag] - mean) for i in range(len(values) - lag)
    )
    denominator = sum((v - mean) ** 2 for v in values)
    return numerator / denominator if denominator else 0.0


def detect_seasonality(values: List[float]) -> Optional[Dict[str, float]]:
    """Weekly seasonality when the lag-7 autocorrelation exceeds 0.3."""
    if len(values) < WEEKLY_PERIOD:
        return None
    strength = autocorrelation(values, WEEKLY_PERIOD)
    if strength > SEASONALITY_THRESHOLD:
        return {"period": WEEKLY_PERIOD, "strength": strength}
    return None


def residual_std_dev(values: List[float], trend: Dict[str, float]) -> float:
    if len(values) < 2:
        return 0.0
    variance = sum(
        (v - (trend["slope"] * i + trend["intercept"])) ** 2 for i, v in enumerate(values)
    ) / (len(values) - 1)
    return math.sqrt(variance)


def _to_date(value) -> Optional[date]:
    if isinstance(value, date) and not isinstance(value, datetime):
        return value
    dt = parse_iso(value)
    return dt.date() if dt else None


def generate_forecast(history: List[Dict], forecast_days: int) -> Dict:
    """
    Extend a daily series ``[{date, value}]`` by ``forecast_days`` predictions.

    Historical points come back flagged ``isActual`` with confidence 100.
    Predictions are the trend line plus a sinusoidal weekly adjustment when
    seasonality is detected, never below zero. Confidence decays with
    distance from the last actual point.
    """
    points = []
    for point in history:
        value = _safe_float(point.get("value"))
        day = _to_date(point.get("date"))
        if value is None or math.isnan(value) or day is None:
            continue
        points.append((day, value))
    points.sort(key=lambda p: p[0])

    if not points:
        return {"data": [], "trend": "stable", "accuracy": 0, "seasonality": None}

    values = [v for _, v in points]
    trend = linear_trend(values)
    seasonality = detect_seasonality(values)

    data = [
        {"date": day.isoformat(), "value": value, "isActual": True, "confidence": 100}
        for day, value in points
    ]

    last_day = points[-1][0]
    for i in range(1, forecast_days + 1):
        x = len(values) + i - 1
        trend_value = trend["slope"] * x + trend["intercept"]
        seasonal = 0.0
        if seasonality:
            index = x % seasonality["period"]
            seasonal = (
                math.sin(2 * math.pi * index / seasonality["period"])
                * trend_value * seasonality["strength"] * 0.1
            )
        base_confidence = max(0.4, trend["r_squared"])
        decay = max(0.3, 1 - (i / forecast_days) * 0.4)
        data.append({
            "date": (last_day + timedelta(days=i)).isoformat(),
            "value": round(max(0.0, trend_value + seasonal)),
            "isActual": False,
            "confidence": round(base_confidence * decay * 100),
        })

    direction = "stable"
    if abs(trend["slope"]) > STABLE_SLOPE:
        direction = "increasing" if trend["slope"] > 0 else "decreasing"

    return {
        "data": data,
        "trend": direction,
        "accuracy": round(trend["r_squared"] * 100, 2),
        "seasonality": seasonality,
        "standardDeviation": round(residual_std_dev(values, trend), 4),
        "movingAverage": [round(v, 2) for v in moving_average(values, min(7, len(values)))],
    }


def scenario_forecasts(base_value: float, trend: Dict[str, float],
                       days_ahead: int, std_dev: float) -> Dict[str, int]:
    """Optimistic / realistic / pessimistic projections ``days_ahead`` out."""
    r_squared = trend.get("r_squared", 0.0)
    projected = trend.get("slope", 0.0) * days_ahead + base_value
    optimistic = 1 + (0.2 * r_squared + 0.1)
    pessimistic = 1 - (0.15 * r_squared + 0.1)
    return {
        "optimistic": round(projected * optimistic + std_dev),
        "realistic": round(projected),
        "pessimistic": round(max(0.0, projected * pessimistic - std_dev)),
        "confidence": round(r_squared * 100),
    }


# ─── History loaders ──────────────────────────────────────────

METRIC_SOURCES = {
    "bookings": ("calendly_events", "created_at", None),
    "events": ("tracking_events", "created_at", None),
    "revenue": ("tracking_events", "created_at", "revenue_amount"),
}


def load_daily_history(project_id: str, metric: str = "bookings",
                       days: int = 30, today: date = None) -> List[Dict]:
    """Daily totals for the last ``days`` days, zero-filled."""
    if metric not in METRIC_SOURCES:
        raise ValueError(f"Unknown forecast metric: {metric}")
    table, date_column, value_column = METRIC_SOURCES[metric]
    today = today or datetime.now(timezone.utc).date()
    start = today - timedelta(days=days - 1)

    columns = date_column if not value_column else f"{date_column}, {value_column}"
    rows = (
        get_client().table(table)
        .select(columns)
        .eq("project_id", project_id)
        .gte(date_column, start.isoformat())
        .execute()
    ).data or []

    totals = defaultdict(float)
    for row in rows:
        day = _to_date(row.get(date_column))
        if day is None:
            continue
        totals[day] += (_safe_float(row.get(value_column)) or 0.0) if value_column else 1
    return [
        {"date": (start + timedelta(days=i)).isoformat(), "value": totals[start + timedelta(days=i)]}
        for i in range(days)
    ]
