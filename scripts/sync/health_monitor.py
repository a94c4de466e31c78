"""
Pulse Hub — Sync Health Monitor
=================================

Scores each connected integration (0-100) for sync health and data quality,
records the scores in sync_health_metrics, raises alert_incidents for
breached alert_configurations, and stamps the scores on project_integrations.

Scoring (both scores start at 100, floored at 0):
  calendly   -40 no sync logs in 24 h; -20 success rate < 90 %, another -30
             below 70 %; data quality -20 when past events are still 'active'
  facebook   -50 when the stored payload was not refreshed in 24 h
  ghl        -30 when there were no submissions in the last 24 h or 7 days
  other      50 / 50
"""
from __future__ import annotations

import time
from datetime import datetime, timedelta, timezone
from typing import Dict, List

from scripts.lib.logger import setup_logger
from scripts.lib.supabase_client import get_client, update_integration, utc_now
from scripts.lib.utils import parse_iso, pause
from scripts.sync import oauth_store

logger = setup_logger("health_monitor")

HEALTHY_THRESHOLD = 70


def _score(health: int, quality: int, metrics: Dict) -> Dict:
    return {
        "health_score": max(0, health),
        "data_quality": max(0, quality),
        "metrics": metrics,
    }


def check_calendly(project_id: str, now: datetime) -> Dict:
    client = get_client()
    yesterday = (now - timedelta(hours=24)).isoformat()
    health, quality, metrics = 100, 100, {}

    logs = (
        client.table("calendly_sync_logs")
        .select("sync_status")
        .eq("project_id", project_id)
        .gte("created_at", yesterday)
        .execute()
    ).data or []
    metrics["recent_syncs"] = len(logs)
    if logs:
        failed = sum(1 for log in logs if log.get("sync_status") == "failed")
        success_rate = (len(logs) - failed) / len(logs) * 100
        metrics["success_rate"] = round(success_rate, 1)
        if success_rate < 90:
            health -= 20
        if success_rate < 70:
            health -= 30
    else:
        health -= 40
        metrics["warning"] = "No recent sync activity"

    stale = (
        client.table("calendly_events")
        .select("id")
        .eq("project_id", project_id)
        .eq("status", "active")
        .lt("scheduled_at", yesterday)
        .execute()
    ).data or []
    if stale:
        quality -= 20
        metrics["stale_events"] = len(stale)
    return _score(health, quality, metrics)


def check_facebook(project_id: str, now: datetime) -> Dict:
    health, metrics = 100, {}
    row = oauth_store.get_integration_row(project_id, "facebook")
    updated = row.get("updated_at") if row else None
    updated_at = parse_iso(updated)
    fresh = updated_at is not None and updated_at >= now - timedelta(hours=24)
    metrics["recent_data_syncs"] = 1 if fresh else 0
    if not fresh:
        health -= 50
        metrics["warning"] = "No recent Facebook data syncs"
    return _score(health, 100, metrics)


def check_ghl(project_id: str, now: datetime) -> Dict:
    client = get_client()
    health, metrics = 100, {}

    def _count_since(delta: timedelta) -> int:
        return len((
            client.table("ghl_form_submissions")
            .select("id")
            .eq("project_id", project_id)
            .gte("submitted_at", (now - delta).isoformat())
            .execute()
        ).data or [])

    metrics["recent_submissions"] = _count_since(timedelta(hours=24))
    if metrics["recent_submissions"] == 0 and _count_since(timedelta(days=7)) == 0:
        health -= 30
        metrics["warning"] = "No GHL form activity"
    return _score(health, 100, metrics)


PLATFORM_CHECKS = {
    "calendly": check_calendly,
    "facebook": check_facebook,
    "ghl": check_ghl,
}


def check_platform(integration: Dict, now: datetime) -> Dict:
    check = PLATFORM_CHECKS.get(integration["platform"])
    if check is None:
        return _score(50, 50, {"error": "Unknown platform"})
    return check(integration["project_id"], now)


# ─── Metrics & alerts ─────────────────────────────────────────

def record_metrics(integration: Dict, result: Dict, duration_ms: int):
    timestamp = utc_now()
    rows = [
        {
            "project_id": integration["project_id"],
            "platform": integration["platform"],
            "metric_type": metric_type,
            "metric_value": value,
            "timestamp": timestamp,
            "metadata": {**result.get("metrics", {}), "check_timestamp": timestamp},
        }
        for metric_type, value in (
            ("health_score", result["health_score"]),
            ("data_quality", result["data_quality"]),
            ("sync_duration", duration_ms),
        )
    ]
    get_client().table("sync_health_metrics").insert(rows).execute()


def threshold_breached(value: float, operator: str, threshold: float) -> bool:
    if operator == "greater_than":
        return value > threshold
    if operator == "less_than":
        return value < threshold
    if operator == "equals":
        return value == threshold
    logger.warning("Unknown threshold operator %r", operator)
    return False


def _in_cooldown(config: Dict, now: datetime) -> bool:
    minutes = config.get("cooldown_minutes") or 0
    if not minutes:
        return False
    recent = (
        get_client().table("alert_incidents")
        .select("id")
        .eq("alert_config_id", config["id"])
        .gte("created_at", (now - timedelta(minutes=minutes)).isoformat())
        .limit(1)
        .execute()
    ).data
    return bool(recent)


def evaluate_alerts(integration: Dict, result: Dict, now: datetime) -> List[Dict]:
    """Open an incident for every enabled, breached, non-cooling alert config."""
    client = get_client()
    configs = (
        client.table("alert_configurations")
        .select("*")
        .eq("project_id", integration["project_id"])
        .eq("is_enabled", True)
        .execute()
    ).data or []

    values = {"health_score": result["health_score"], "data_quality": result["data_quality"]}
    opened = []
    for config in configs:
        if config.get("platform") not in (None, integration["platform"]):
            continue
        metric_type = config.get("metric_type") or config.get("alert_type")
        if metric_type not in values:
            continue
        value = values[metric_type]
        if not threshold_breached(
            value, config.get("threshold_operator"), float(config.get("threshold_value", 0)),
        ):
            continue
        if _in_cooldown(config, now):
            continue

        incident = {
            "alert_config_id": config["id"],
            "project_id": integration["project_id"],
            "platform": integration["platform"],
            "incident_type": metric_type,
            "severity": config.get("severity") or ("high" if value < 50 else "medium"),
            "title": f"{integration['platform']} {metric_type.replace('_', ' ')} alert",
            "description": (
                f"{metric_type} is {value} ({config.get('threshold_operator')} "
                f"{config.get('threshold_value')})"
            ),
            "status": "active",
            "metadata": result.get("metrics", {}),
            "created_at": now.isoformat(),
        }
        client.table("alert_incidents").insert(incident).execute()
        opened.append(incident)
        logger.warning("Alert opened: %s", incident["description"])
    return opened


async def check_health(project_id: str = None, platform: str = None) -> Dict:
    """Score every connected integration and return a summary."""
    now = datetime.now(timezone.utc)
    integrations = oauth_store.get_all_connected(project_id)
    if platform:
        integrations = [i for i in integrations if i["platform"] == platform]

    results = []
    for integration in integrations:
        started = time.time()
        try:
            result = check_platform(integration, now)
            duration_ms = int((time.time() - started) * 1000)
            record_metrics(integration, result, duration_ms)
            alerts = evaluate_alerts(integration, result, now)
            update_integration(integration["project_id"], integration["platform"], {
                "last_health_check": now.isoformat(),
                "sync_health_score": result["health_score"],
                "data_quality_score": result["data_quality"],
            })
            results.append({
                "project_id": integration["project_id"],
                "platform": integration["platform"],
                "status": "healthy" if result["health_score"] >= HEALTHY_THRESHOLD else "unhealthy",
                "health_score": result["health_score"],
                "data_quality": result["data_quality"],
                "metrics": result["metrics"],
                "alerts_opened": len(alerts),
                "sync_duration": duration_ms,
            })
        except Exception as e:
            logger.error(
                "Health check failed for %s/%s: %s",
                integration["project_id"], integration["platform"], e,
            )
            results.append({
                "project_id": integration["project_id"],
                "platform": integration["platform"],
                "status": "unhealthy",
                "health_score": 0,
                "error": str(e),
            })
        await pause(0.1)

    healthy = sum(1 for r in results if r["status"] == "healthy")
    average = (
        round(sum(r.get("health_score", 0) for r in results) / len(results), 1)
        if results else 0
    )
    return {
        "success": True,
        "message": "Health monitoring completed",
        "timestamp": now.isoformat(),
        "results": results,
        "summary": {
            "total_checked": len(results),
            "healthy": healthy,
            "unhealthy": len(results) - healthy,
            "average_health_score": average,
        },
    }
