"""
Pulse Hub — Attribution & Page Analytics
==========================================

Credits revenue to the UTM source/campaign that produced it and summarises
pixel events per funnel page.

Attribution models:
  first_touch  all credit to the contact's first session
  last_touch   all credit to the session the conversion happened in
  linear       credit split evenly across every session of the contact
"""
from __future__ import annotations

from collections import Counter, OrderedDict
from typing import Dict, Iterable, List, Optional, Tuple
from urllib.parse import urlparse

from scripts.lib.data_sync import _safe_float
from scripts.lib.logger import setup_logger
from scripts.lib.supabase_client import get_client, insert_row

logger = setup_logger("attribution")

MODELS = ("first_touch", "last_touch", "linear")
DIRECT = "(direct)"
NO_CAMPAIGN = "(none)"


def record_attribution(project_id: str, session: Dict, event: Dict,
                       revenue: float, model: str = "first_touch") -> Optional[Dict]:
    """Store one attribution_data row for a revenue event."""
    return insert_row("attribution_data", {
        "project_id": project_id,
        "session_id": event.get("session_id") or session.get("session_id"),
        "event_id": event.get("id"),
        "contact_email": event.get("contact_email"),
        "contact_phone": event.get("contact_phone"),
        "attributed_revenue": revenue,
        "attribution_model": model,
        "utm_source": session.get("utm_source"),
        "utm_campaign": session.get("utm_campaign"),
        "utm_medium": session.get("utm_medium"),
    })


def channel_of(session: Optional[Dict]) -> Tuple[str, str]:
    session = session or {}
    return (
        session.get("utm_source") or DIRECT,
        session.get("utm_campaign") or NO_CAMPAIGN,
    )


def credit_touches(touches: List[Dict], model: str) -> List[Tuple[Dict, float]]:
    """Share of one conversion credited to each touch (session)."""
    if model not in MODELS:
        raise ValueError(f"Unknown attribution model: {model}")
    if not touches:
        return [({}, 1.0)]
    if model == "first_touch":
        return [(touches[0], 1.0)]
    if model == "last_touch":
        return [(touches[-1], 1.0)]
    share = 1.0 / len(touches)
    return [(touch, share) for touch in touches]


def attribute(conversions: Iterable[Dict], touch_paths: Dict[str, List[Dict]],
              model: str = "first_touch") -> Dict:
    """
    Group conversion revenue by channel.

    Args:
        conversions: tracking_events rows with revenue_amount > 0.
        touch_paths: event id -> that contact's sessions, oldest first.
        model: first_touch, last_touch or linear.
    """
    channels: "OrderedDict[Tuple[str, str], Dict]" = OrderedDict()
    total_revenue = 0.0
    total_conversions = 0

    for event in conversions:
        revenue = _safe_float(event.get("revenue_amount")) or 0.0
        total_revenue += revenue
        total_conversions += 1
        for touch, share in credit_touches(touch_paths.get(event.get("id"), []), model):
            source, campaign = channel_of(touch)
            bucket = channels.setdefault((source, campaign), {
                "source": source, "campaign": campaign, "conversions": 0.0, "revenue": 0.0,
            })
            bucket["conversions"] += share
            bucket["revenue"] += revenue * share

    rows = sorted(channels.values(), key=lambda c: c["revenue"], reverse=True)
    for row in rows:
        row["conversions"] = round(row["conversions"], 2)
        row["revenue"] = round(row["revenue"], 2)
        row["share"] = round(row["revenue"] / total_revenue * 100, 1) if total_revenue else 0
    return {
        "model": model,
        "channels": rows,
        "totalRevenue": round(total_revenue, 2),
        "totalConversions": total_conversions,
    }


def _touch_paths(project_id: str, conversions: List[Dict]) -> Dict[str, List[Dict]]:
    """Sessions per conversion: every session the same contact had, or just its own."""
    client = get_client()
    emails = sorted({e["contact_email"] for e in conversions if e.get("contact_email")})

    sessions_by_email: Dict[str, set] = {}
    if emails:
        contact_events = (
            client.table("tracking_events")
            .select("session_id, contact_email")
            .eq("project_id", project_id)
            .in_("contact_email", emails)
            .execute()
        ).data or []
        for row in contact_events:
            sessions_by_email.setdefault(row["contact_email"], set()).add(row["session_id"])

    session_ids = {e["session_id"] for e in conversions if e.get("session_id")}
    for ids in sessions_by_email.values():
        session_ids |= ids
    if not session_ids:
        return {}

    sessions = (
        client.table("tracking_sessions")
        .select("*")
        .eq("project_id", project_id)
        .in_("session_id", sorted(session_ids))
        .order("created_at")
        .execute()
    ).data or []
    by_id = {s["session_id"]: s for s in sessions}

    paths = {}
    for event in conversions:
        ids = sessions_by_email.get(event.get("contact_email")) or {event.get("session_id")}
        touches = [by_id[sid] for sid in ids if sid in by_id]
        touches.sort(key=lambda s: s.get("created_at") or "")
        if event.get("session_id") in by_id:
            # the converting session is always the last touch
            touches = [t for t in touches if t["session_id"] != event["session_id"]]
            touches.append(by_id[event["session_id"]])
        paths[event.get("id")] = touches
    return paths


def attribution_report(project_id: str, date_from: str, date_to: str,
                       model: str = "first_touch") -> Dict:
    """Revenue by channel for conversions created between two ISO timestamps."""
    conversions = (
        get_client().table("tracking_events")
        .select("*")
        .eq("project_id", project_id)
        .gt("revenue_amount", 0)
        .gte("created_at", date_from)
        .lte("created_at", date_to)
        .execute()
    ).data or []
    report = attribute(conversions, _touch_paths(project_id, conversions), model)
    report.update({"dateFrom": date_from, "dateTo": date_to})
    return report


# ─── Page analytics ───────────────────────────────────────────

def infer_page_type(path: str) -> str:
    if "checkout" in path or "payment" in path:
        return "checkout"
    if "thank" in path or "success" in path:
        return "thankyou"
    if "webinar" in path or "training" in path:
        return "webinar"
    if "book" in path or "schedule" in path:
        return "booking"
    return "landing"


def _path_of(url: str) -> Optional[str]:
    if not url:
        return None
    parsed = urlparse(url if "://" in url else f"https://{url}")
    return parsed.path or "/"


def page_details(page_url: str, funnel_pages: List[Dict]) -> Dict:
    """Name, type and funnel position of the page an event URL belongs to."""
    event_path = _path_of(page_url)
    for index, page in enumerate(funnel_pages):
        configured = _path_of(page.get("url", ""))
        if configured and event_path and (
            configured == event_path
            or (configured != "/" and configured in (page_url or ""))
        ):
            return {"name": page.get("name"), "type": page.get("type", "landing"), "order": index}

    if not event_path:
        return {"name": page_url or "Unknown Page", "type": "landing", "order": 999}
    if event_path in ("", "/"):
        return {"name": "Home Page", "type": "landing", "order": 0}
    segments = [
        s.replace("-", " ").replace("_", " ") for s in event_path.strip("/").split("/")
    ]
    name = " / ".join(s[:1].upper() + s[1:] for s in segments)
    return {"name": name or "Unknown Page", "type": infer_page_type(event_path), "order": 999}


def _revenue(events: Iterable[Dict]) -> float:
    return sum(_safe_float(e.get("revenue_amount")) or 0.0 for e in events)


def _is_conversion(event: Dict) -> bool:
    return (_safe_float(event.get("revenue_amount")) or 0) > 0


def _visitor_key(event: Dict):
    return event.get("contact_email") or event.get("session_id") or event.get("page_url")


def page_analytics(events: List[Dict], funnel_pages: List[Dict],
                   tracks_purchases: bool = False) -> List[Dict]:
    """Per-page metrics for every configured funnel page, in funnel order."""
    names = [page_details(e.get("page_url"), funnel_pages)["name"] for e in events]
    metrics = []
    for index, page in enumerate(funnel_pages):
        page_events = [e for e, name in zip(events, names) if name == page.get("name")]
        total = len(page_events)
        visitors = len({_visitor_key(e) for e in page_events})
        conversions = sum(1 for e in page_events if _is_conversion(e))
        revenue = _revenue(page_events) if tracks_purchases else 0.0
        metrics.append({
            "name": page.get("name"),
            "type": page.get("type", "landing"),
            "order": index,
            "totalEvents": total,
            "uniqueVisitors": visitors,
            "conversions": conversions,
            "revenue": round(revenue, 2),
            "conversionRate": round(conversions / total * 100, 2) if total else 0,
            "revenuePerVisitor": round(revenue / visitors, 2) if tracks_purchases and visitors else 0,
        })
    return metrics


def key_metrics(events: List[Dict], tracks_purchases: bool = False) -> Dict:
    """Headline numbers; events must be newest first for the trend split."""
    total_events = len(events)
    conversions = [e for e in events if _is_conversion(e)] if tracks_purchases else []
    total_revenue = _revenue(conversions)

    midpoint = total_events // 2
    recent, older = events[:midpoint], events[midpoint:]
    recent_revenue = _revenue(recent) if tracks_purchases else 0.0
    older_revenue = _revenue(older) if tracks_purchases else 0.0

    return {
        "totalRevenue": round(total_revenue, 2),
        "totalConversions": len(conversions),
        "totalEvents": total_events,
        "uniqueVisitors": len({_visitor_key(e) for e in events}),
        "conversionRate": round(len(conversions) / total_events * 100, 2) if total_events else 0,
        "avgOrderValue": round(total_revenue / len(conversions), 2) if conversions else 0,
        "revenueTrend": (
            round((recent_revenue - older_revenue) / older_revenue * 100, 2)
            if older_revenue > 0 else 0
        ),
        "eventsTrend": (
            round((len(recent) - len(older)) / len(older) * 100, 2) if older else 0
        ),
    }


def event_type_breakdown(events: Iterable[Dict]) -> List[Dict]:
    counts = Counter(e.get("event_type") or "unknown" for e in events)
    return [
        {
            "eventType": " ".join(w.capitalize() for w in event_type.split("_")),
            "rawType": event_type,
            "count": count,
        }
        for event_type, count in counts.most_common()
    ]
