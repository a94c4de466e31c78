"""
Pulse Hub — Data Sync Module
==============================
Transforms raw platform JSON (Calendly, GHL, Facebook Graph) into the row
shapes stored in Supabase, plus the batched upsert helper the sync engines
share.

Usage:
    from scripts.lib.data_sync import calendly_event_row, ghl_submission_row

    row = calendly_event_row(project_id, api_event, "Discovery Call")
    _upsert_batched("facebook_daily_insights", rows, "project_id,campaign_id,date")
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from scripts.lib.logger import setup_logger
from scripts.lib.supabase_client import upsert_rows

logger = setup_logger("data_sync")

# Batch size for upserts (Supabase recommends ≤1000)
BATCH_SIZE = 500

CANCELLED = "cancelled"
CANCELLED_STATUSES = ("canceled", "cancelled")

# Facebook action types counted as conversions
CONVERSION_ACTIONS = (
    "purchase",
    "lead",
    "complete_registration",
    "offsite_conversion.fb_pixel_purchase",
    "offsite_conversion.fb_pixel_lead",
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _safe_float(val: Any) -> Optional[float]:
    """Convert a value to float, returning None on failure."""
    if val is None or val == "":
        return None
    try:
        return float(val)
    except (ValueError, TypeError):
        return None


def _safe_int(val: Any) -> Optional[int]:
    """Convert a value to int, returning None on failure."""
    if val is None or val == "":
        return None
    try:
        return int(float(val))
    except (ValueError, TypeError):
        return None


def _safe_timestamp(val: Any) -> Optional[str]:
    """Convert an epoch (s or ms) or ISO string to ISO format."""
    if val is None or val == "":
        return None
    if isinstance(val, str):
        if "T" in val or "-" in val:
            return val
        try:
            ts = int(val) / 1000
            return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()
        except (ValueError, TypeError, OSError):
            return val
    if isinstance(val, (int, float)):
        try:
            ts = val / 1000 if val > 1e12 else val
            return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()
        except (ValueError, TypeError, OSError):
            return None
    return None


def _first(record: Dict, *keys: str) -> Any:
    """First truthy value among ``keys`` in ``record``."""
    for key in keys:
        value = record.get(key)
        if value:
            return value
    return None


def _batched(items: list, size: int = BATCH_SIZE):
    """Yield successive batches from a list."""
    for i in range(0, len(items), size):
        yield items[i : i + size]


def _upsert_batched(table: str, rows: List[Dict], on_conflict: str) -> int:
    """Upsert rows in batches. Returns count of successfully upserted rows."""
    if not rows:
        return 0
    total = 0
    for batch in _batched(rows):
        if upsert_rows(table, batch, on_conflict=on_conflict):
            total += len(batch)
        else:
            logger.warning("Batch upsert failed for %s (%d rows)", table, len(batch))
    return total


# ---------------------------------------------------------------------------
# Calendly
# ---------------------------------------------------------------------------

def normalize_calendly_status(status: Optional[str]) -> str:
    """Calendly spells it 'canceled'; stored rows use 'cancelled'."""
    if not status:
        return "active"
    if status.lower() in CANCELLED_STATUSES:
        return CANCELLED
    return status.lower()


def is_cancelled(status: Optional[str]) -> bool:
    return (status or "").lower() in CANCELLED_STATUSES


def calendly_event_row(
    project_id: str,
    event: Dict,
    event_type_name: Optional[str],
    invitee: Optional[Dict] = None,
) -> Dict:
    """Transform a Calendly scheduled_event resource into a calendly_events row."""
    status = normalize_calendly_status(event.get("status"))
    cancellation = event.get("cancellation") or {}
    now = datetime.now(timezone.utc).isoformat()
    invitee = invitee or {}

    row = {
        "project_id": project_id,
        "calendly_event_id": event.get("uri"),
        "calendly_event_type_id": event.get("event_type"),
        "event_type_name": event_type_name or "Unknown",
        "scheduled_at": event.get("start_time"),
        "status": status,
        "invitee_name": invitee.get("name"),
        "invitee_email": invitee.get("email"),
        "created_at": event.get("created_at") or now,
        "updated_at": now,
    }
    if status == CANCELLED:
        row["cancelled_at"] = (
            cancellation.get("created_at") or event.get("updated_at") or now
        )
    return row


# ---------------------------------------------------------------------------
# GoHighLevel
# ---------------------------------------------------------------------------

def ghl_form_row(project_id: str, form: Dict) -> Dict:
    return {
        "project_id": project_id,
        "form_id": form.get("id"),
        "form_name": form.get("name"),
        "form_url": form.get("url"),
        "is_active": True,
    }


def ghl_submission_row(project_id: str, submission: Dict,
                       form_id: Optional[str] = None) -> Dict:
    """Transform a GHL form submission into a ghl_form_submissions row."""
    others = submission.get("others") or {}
    name = _first(submission, "contact_name", "contactName", "name")
    if not name:
        # first/last may sit on the submission or under "others"
        source = submission if submission.get("first_name") else others
        name = " ".join(
            p for p in (source.get("first_name"), source.get("last_name")) if p
        ) or None

    return {
        "project_id": project_id,
        "form_id": form_id or _first(submission, "form_id", "formId"),
        "submission_id": submission.get("id") or submission.get("submission_id"),
        "contact_name": name,
        "contact_email": (
            _first(submission, "contact_email", "contactEmail", "email")
            or others.get("email")
        ),
        "contact_phone": (
            _first(submission, "contact_phone", "contactPhone", "phone")
            or others.get("phone")
        ),
        "form_data": submission,
        "submitted_at": (
            _safe_timestamp(_first(
                submission, "submitted_at", "submittedAt", "created_at", "createdAt",
            ))
            or datetime.now(timezone.utc).isoformat()
        ),
    }


# ---------------------------------------------------------------------------
# Facebook
# ---------------------------------------------------------------------------

def sum_actions(actions: Optional[Iterable[Dict]],
                action_types: Iterable[str] = CONVERSION_ACTIONS) -> float:
    """Sum Graph API ``actions``/``action_values`` entries of the given types."""
    if not actions:
        return 0.0
    wanted = set(action_types)
    return sum(
        _safe_float(a.get("value")) or 0.0
        for a in actions
        if a.get("action_type") in wanted
    )


def facebook_aggregate(insights: Dict) -> Dict:
    """Account-level aggregated metrics from a last_30d insights row."""
    impressions = _safe_int(insights.get("impressions")) or 0
    clicks = _safe_int(insights.get("clicks")) or 0
    spend = _safe_float(insights.get("spend")) or 0.0
    conversions = _safe_float(insights.get("conversions"))
    if conversions is None:
        conversions = sum_actions(insights.get("actions"))
    revenue = _safe_float(insights.get("conversion_values"))
    if revenue is None:
        revenue = sum_actions(insights.get("action_values"))

    ctr = _safe_float(insights.get("ctr"))
    if ctr is None:
        ctr = (clicks / impressions * 100) if impressions else 0.0
    cpc = _safe_float(insights.get("cpc"))
    if cpc is None:
        cpc = (spend / clicks) if clicks else 0.0

    return {
        "total_impressions": impressions,
        "total_clicks": clicks,
        "total_spend": round(spend, 2),
        "total_reach": _safe_int(insights.get("reach")) or 0,
        "total_conversions": int(conversions),
        "total_revenue": round(revenue, 2),
        "overall_ctr": round(ctr, 4),
        "overall_cpc": round(cpc, 2),
    }


def facebook_daily_rows(project_id: str, daily_insights: List[Dict]) -> List[Dict]:
    """Per-campaign daily insights into facebook_daily_insights rows."""
    rows = []
    now = datetime.now(timezone.utc).isoformat()
    for item in daily_insights:
        campaign_id = item.get("campaign_id")
        day = item.get("date_start")
        if not campaign_id or not day:
            continue
        rows.append({
            "project_id": project_id,
            "campaign_id": campaign_id,
            "campaign_name": item.get("campaign_name"),
            "date": day,
            "impressions": _safe_int(item.get("impressions")) or 0,
            "clicks": _safe_int(item.get("clicks")) or 0,
            "spend": _safe_float(item.get("spend")) or 0.0,
            "reach": _safe_int(item.get("reach")) or 0,
            "conversions": int(sum_actions(item.get("actions"))),
            "conversion_values": sum_actions(item.get("action_values")),
            "ctr": _safe_float(item.get("ctr")) or 0.0,
            "cpc": _safe_float(item.get("cpc")) or 0.0,
            "cpm": _safe_float(item.get("cpm")) or 0.0,
            "frequency": _safe_float(item.get("frequency")) or 0.0,
            "updated_at": now,
        })
    return rows
