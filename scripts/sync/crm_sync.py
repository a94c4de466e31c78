"""
Pulse Hub — Zoho CRM & ClickFunnels Data
==========================================

Reads live CRM / funnel data with each project's stored OAuth token.
Zoho tokens expire hourly, so reads refresh the token first when it is
close to expiry.
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Dict, List

from integrations.clickfunnels import ClickFunnelsClient
from integrations.zoho import ZohoClient
from scripts.lib.errors import IntegrationNotFoundError
from scripts.lib.logger import setup_logger
from scripts.lib.supabase_client import mark_synced, utc_now
from scripts.lib.utils import parse_iso, pause
from scripts.sync import oauth_store
from scripts.sync.oauth_flows import refresh_platform_token

logger = setup_logger("crm_sync")

ZOHO_PLATFORM = "zoho_crm"
CLICKFUNNELS_PLATFORM = "clickfunnels"
CLICKFUNNELS_TOKEN_PLATFORM = "clickfunnels_oauth"

REFRESH_MARGIN = timedelta(minutes=10)


def token_expiring(data: Dict, now: datetime = None) -> bool:
    expires_at = parse_iso(data.get("expires_at"))
    if not expires_at:
        return False
    return expires_at - (now or datetime.now(timezone.utc)) < REFRESH_MARGIN


# ─── Zoho CRM ─────────────────────────────────────────────────

async def zoho_client(project_id: str) -> ZohoClient:
    data = oauth_store.get_integration_data(project_id, ZOHO_PLATFORM, required=True)
    if token_expiring(data) and data.get("refresh_token"):
        await refresh_platform_token(project_id, "zoho")
        data = oauth_store.get_integration_data(project_id, ZOHO_PLATFORM, required=True)
    if not data.get("access_token"):
        raise IntegrationNotFoundError(ZOHO_PLATFORM, project_id)
    return ZohoClient(data["access_token"], api_domain=data.get("api_domain"))


async def zoho_modules(project_id: str) -> List[Dict]:
    client = await zoho_client(project_id)
    return await client.get_modules()


async def zoho_records(project_id: str, module: str, page: int = 1,
                       per_page: int = 200) -> Dict:
    client = await zoho_client(project_id)
    return await client.get_records(module, page=page, per_page=per_page)


async def check_zoho_token(project_id: str) -> Dict:
    """Refresh the Zoho token when it is about to expire."""
    data = oauth_store.get_integration_data(project_id, ZOHO_PLATFORM, required=True)
    if not token_expiring(data):
        return {"success": True, "token_refreshed": False}
    outcome = await refresh_platform_token(project_id, "zoho")
    return {**outcome, "token_refreshed": True}


# ─── ClickFunnels ─────────────────────────────────────────────

def _clickfunnels_client(project_id: str) -> ClickFunnelsClient:
    data = oauth_store.get_integration_data(
        project_id, CLICKFUNNELS_TOKEN_PLATFORM, required=True,
    )
    if not data.get("access_token"):
        raise IntegrationNotFoundError(CLICKFUNNELS_PLATFORM, project_id)
    return ClickFunnelsClient(data["access_token"])


async def list_funnels(project_id: str) -> List[Dict]:
    return await _clickfunnels_client(project_id).get_funnels()


async def sync_funnel(project_id: str, funnel_id: str) -> Dict:
    """Store one funnel and its stats under the clickfunnels platform."""
    client = _clickfunnels_client(project_id)
    funnel = await client.get_funnel(funnel_id)
    stats = await client.get_funnel_stats(funnel_id)
    oauth_store.save_integration_data(project_id, CLICKFUNNELS_PLATFORM, {
        "funnel": funnel,
        "stats": stats,
        "funnel_id": funnel_id,
        "synced_at": utc_now(),
    }, merge=False)
    mark_synced(project_id, CLICKFUNNELS_PLATFORM)
    return {"success": True, "funnel_id": funnel_id, "stats": stats}


async def sync_selected_funnel(project_id: str) -> Dict:
    """Re-sync the funnel a project picked earlier, if any."""
    stored = oauth_store.get_integration_data(project_id, CLICKFUNNELS_PLATFORM) or {}
    funnel_id = stored.get("funnel_id")
    if not funnel_id:
        return {"success": True, "skipped": "no funnel selected"}
    await pause(0.5)
    return await sync_funnel(project_id, funnel_id)
