"""
Pulse Hub — Calendly Gap Detection
====================================

Audits stored calendly_events per connected project and repairs what it can:

  1. status normalisation   'canceled' -> 'cancelled' (last 30 days)
  2. timeline gaps          > 6 h between consecutive bookings (last 14 days)
  3. duplicate cleanup      one row per calendly_event_id, newest update wins
  4. stale sync             last_sync missing or older than 24 h
  5. outdated statuses      'active' events that started over 24 h ago

Timeline gaps and stale syncs trigger an incremental sync; outdated statuses
trigger a status refresh.
"""
from __future__ import annotations

from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from scripts.lib.logger import setup_logger
from scripts.lib.supabase_client import get_client
from scripts.lib.utils import parse_iso
from scripts.sync import oauth_store

logger = setup_logger("gap_detection")

PLATFORM = "calendly"

VALIDATION_WINDOW = timedelta(days=30)
TIMELINE_WINDOW = timedelta(days=14)
GAP_THRESHOLD_HOURS = 6
HIGH_SEVERITY_HOURS = 24
STALE_AFTER = timedelta(hours=24)


def find_timeline_gaps(events: List[Dict]) -> List[Dict]:
    """Gaps longer than 6 h between consecutive ``created_at`` values."""
    stamps = sorted(
        (parse_iso(e.get("created_at")), e.get("created_at"))
        for e in events
        if parse_iso(e.get("created_at"))
    )
    gaps = []
    for (prev, prev_raw), (curr, curr_raw) in zip(stamps, stamps[1:]):
        hours = (curr - prev).total_seconds() / 3600
        if hours > GAP_THRESHOLD_HOURS:
            gaps.append({
                "start_time": prev_raw,
                "end_time": curr_raw,
                "gap_duration_hours": round(hours, 1),
                "severity": "high" if hours > HIGH_SEVERITY_HOURS else "medium",
            })
    return gaps


def _normalize_statuses(project_id: str, since: datetime) -> int:
    client = get_client()
    rows = (
        client.table("calendly_events")
        .select("id")
        .eq("project_id", project_id)
        .eq("status", "canceled")
        .gte("created_at", since.isoformat())
        .execute()
    ).data or []
    if rows:
        client.table("calendly_events").update({
            "status": "cancelled",
            "updated_at": datetime.now(timezone.utc).isoformat(),
        }).in_("id", [r["id"] for r in rows]).execute()
    return len(rows)


def _clean_duplicates(project_id: str, since: datetime) -> int:
    client = get_client()
    rows = (
        client.table("calendly_events")
        .select("id, calendly_event_id, updated_at")
        .eq("project_id", project_id)
        .gte("created_at", since.isoformat())
        .execute()
    ).data or []

    by_event: Dict[str, List[Dict]] = defaultdict(list)
    for row in rows:
        by_event[row["calendly_event_id"]].append(row)

    to_delete = []
    for copies in by_event.values():
        if len(copies) < 2:
            continue
        copies.sort(key=lambda r: r.get("updated_at") or "", reverse=True)
        to_delete.extend(r["id"] for r in copies[1:])

    if to_delete:
        client.table("calendly_events").delete().in_("id", to_delete).execute()
        logger.info("Removed %d duplicate events for project %s", len(to_delete), project_id)
    return len(to_delete)


def _stale_sync_gap(integration: Dict, now: datetime) -> Optional[Dict]:
    last_sync = parse_iso(integration.get("last_sync"))
    if last_sync and now - last_sync <= STALE_AFTER:
        return None
    age = int((now - last_sync).total_seconds() // 3600) if last_sync else None
    return {
        "project_id": integration["project_id"],
        "gap_type": "stale_sync",
        "last_sync": integration.get("last_sync"),
        "last_sync_age_hours": age,
        "severity": "high",
        "recommendation": "full_sync",
    }


def analyze_project(integration: Dict, now: datetime) -> Dict:
    """Run every check for one project. Returns {gaps, validation}."""
    pid = integration["project_id"]
    client = get_client()
    gaps = []

    status_fixes = _normalize_statuses(pid, now - VALIDATION_WINDOW)

    recent = (
        client.table("calendly_events")
        .select("created_at, scheduled_at, status")
        .eq("project_id", pid)
        .gte("created_at", (now - TIMELINE_WINDOW).isoformat())
        .order("created_at", desc=False)
        .execute()
    ).data or []
    timeline = find_timeline_gaps(recent)
    if timeline:
        gaps.append({
            "project_id": pid,
            "gap_type": "timeline",
            "gaps": timeline,
            "severity": "high" if any(g["severity"] == "high" for g in timeline) else "medium",
            "recommendation": "incremental_sync",
        })

    duplicates = _clean_duplicates(pid, now - VALIDATION_WINDOW)

    stale = _stale_sync_gap(integration, now)
    if stale:
        gaps.append(stale)

    outdated = (
        client.table("calendly_events")
        .select("id")
        .eq("project_id", pid)
        .eq("status", "active")
        .lt("scheduled_at", (now - timedelta(hours=24)).isoformat())
        .execute()
    ).data or []
    if outdated:
        gaps.append({
            "project_id": pid,
            "gap_type": "status_outdated",
            "outdated_events": len(outdated),
            "severity": "medium",
            "recommendation": "status_refresh",
        })

    return {
        "gaps": gaps,
        "validation": {
            "project_id": pid,
            "total_events": len(recent),
            "status_fixes": status_fixes,
            "duplicates_cleaned": duplicates,
            "outdated_statuses": len(outdated),
        },
    }


async def _trigger_actions(gaps: List[Dict]) -> int:
    """One incremental sync and/or one status refresh per affected project."""
    from scripts.sync.calendly_sync import incremental_sync, refresh_statuses

    needs_sync, needs_refresh = [], []
    for gap in gaps:
        pid = gap["project_id"]
        if gap["recommendation"] in ("incremental_sync", "full_sync"):
            if pid not in needs_sync:
                needs_sync.append(pid)
        elif gap["recommendation"] == "status_refresh" and pid not in needs_refresh:
            needs_refresh.append(pid)

    triggered = 0
    for pid in needs_sync:
        try:
            await incremental_sync(project_id=pid, incremental=True, days_back=7)
            triggered += 1
        except Exception as e:
            logger.error("Corrective incremental sync failed for %s: %s", pid, e)
    for pid in needs_refresh:
        try:
            await refresh_statuses(project_id=pid)
            triggered += 1
        except Exception as e:
            logger.error("Corrective status refresh failed for %s: %s", pid, e)
    return triggered


async def detect_gaps(project_id: str = None, trigger_actions: bool = True,
                      now: datetime = None) -> Dict:
    """Analyse every connected Calendly project and optionally repair gaps."""
    now = now or datetime.now(timezone.utc)
    integrations = oauth_store.get_connected_integrations(PLATFORM, project_id)
    if not integrations:
        return {"success": True, "message": "No projects to analyze", "gaps": []}

    gaps: List[Dict] = []
    validation: List[Dict] = []
    for integration in integrations:
        try:
            outcome = analyze_project(integration, now)
            gaps.extend(outcome["gaps"])
            validation.append(outcome["validation"])
        except Exception as e:
            logger.error(
                "Gap detection failed for project %s: %s", integration["project_id"], e,
            )

    actions = await _trigger_actions(gaps) if trigger_actions and gaps else 0

    logger.info(
        "Gap detection: %d projects, %d gaps, %d corrective actions",
        len(integrations), len(gaps), actions,
    )
    return {
        "success": True,
        "message": "Gap detection completed",
        "analysis": {
            "projects_analyzed": len(integrations),
            "gaps_detected": len(gaps),
            "corrective_actions_triggered": actions,
            "data_validation": validation,
        },
        "gaps": gaps,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
