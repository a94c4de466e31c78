"""
Pulse Hub — Unified Integration Scheduler
===========================================

Runs the right sync for every connected integration, grouped by project:

    calendly      incremental sync
    facebook      batch sync
    ghl           integration sync (forms + submissions)
    zoho_crm      token expiry check
    clickfunnels  re-sync of the selected funnel

One failing platform never stops the others.
"""
from __future__ import annotations

from collections import OrderedDict
from typing import Dict, List

from scripts.lib.logger import setup_logger
from scripts.lib.utils import pause
from scripts.sync import oauth_store

logger = setup_logger("scheduler")

PLATFORM_DELAY_SECONDS = 1
PROJECT_DELAY_SECONDS = 2


async def sync_platform(project_id: str, platform: str) -> Dict:
    """Dispatch one platform sync for one project."""
    if platform == "calendly":
        from scripts.sync.calendly_sync import incremental_sync
        return await incremental_sync(project_id=project_id, incremental=True)
    if platform == "facebook":
        from scripts.sync.facebook_sync import batch_sync
        return await batch_sync(project_id=project_id)
    if platform == "ghl":
        from scripts.sync.ghl_sync import integration_sync
        return await integration_sync(project_id, sync_type="both")
    if platform == "zoho_crm":
        from scripts.sync.crm_sync import check_zoho_token
        return await check_zoho_token(project_id)
    if platform == "clickfunnels":
        from scripts.sync.crm_sync import sync_selected_funnel
        return await sync_selected_funnel(project_id)
    return {"success": True, "skipped": f"no scheduled sync for {platform}"}


def group_by_project(integrations: List[Dict]) -> "OrderedDict[str, List[str]]":
    grouped: "OrderedDict[str, List[str]]" = OrderedDict()
    for integration in integrations:
        grouped.setdefault(integration["project_id"], []).append(integration["platform"])
    return grouped


def engine_succeeded(data) -> bool:
    """Engines report per-project failures in their result rather than raising."""
    if not isinstance(data, dict):
        return True
    if data.get("success") is False:
        return False
    stats = data.get("stats") or {}
    if stats.get("projectsWithErrors"):
        return False
    errors = data.get("errors")
    return not data.get("error_count") and not errors


async def run_all(project_id: str = None) -> Dict:
    """Sync every connected integration, project by project."""
    grouped = group_by_project(oauth_store.get_all_connected(project_id))
    results = []

    for project_index, (pid, platforms) in enumerate(grouped.items()):
        for platform_index, platform in enumerate(platforms):
            try:
                data = await sync_platform(pid, platform)
                ok = engine_succeeded(data)
                if not ok:
                    logger.warning("%s sync for project %s reported errors", platform, pid)
                results.append({"project_id": pid, "platform": platform, "success": ok, "data": data})
            except Exception as e:
                logger.error("%s sync failed for project %s: %s", platform, pid, e)
                results.append({
                    "project_id": pid, "platform": platform, "success": False, "error": str(e),
                })
            if platform_index < len(platforms) - 1:
                await pause(PLATFORM_DELAY_SECONDS)
        if project_index < len(grouped) - 1:
            await pause(PROJECT_DELAY_SECONDS)

    success_count = sum(1 for r in results if r["success"])
    logger.info(
        "Unified sync: %d projects, %d ok, %d failed",
        len(grouped), success_count, len(results) - success_count,
    )
    return {
        "success": True,
        "message": "Unified integration sync completed",
        "projects_processed": len(grouped),
        "total_integrations": len(results),
        "success_count": success_count,
        "error_count": len(results) - success_count,
        "results": results,
    }
