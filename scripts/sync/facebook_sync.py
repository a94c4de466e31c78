"""
Pulse Hub — Facebook Ads Sync Engine
======================================

Batch-syncs campaigns, ad sets and insights for every connected Facebook
project using the Graph batch API, and keeps access tokens long-lived.

Per project:
  1. one batch call: campaigns, ad sets, 30-day account insights, daily
     campaign insights
  2. campaign insights in batches of 10 campaigns, 1.5 s apart, with a 60 s
     back-off when x-ad-account-usage reports call_count above 80 %
  3. payload merged into project_integration_data, daily rows upserted into
     facebook_daily_insights
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from integrations.facebook import INSIGHT_FIELDS, FacebookClient
from scripts.lib.data_sync import _upsert_batched, facebook_aggregate, facebook_daily_rows
from scripts.lib.errors import APIError, IntegrationNotFoundError, SchemaValidationError
from scripts.lib.logger import setup_logger
from scripts.lib.supabase_client import update_integration, utc_now
from scripts.lib.utils import chunked, parse_iso, pause
from scripts.sync import oauth_store

logger = setup_logger("facebook_sync")

PLATFORM = "facebook"

CAMPAIGN_CHUNK_SIZE = 10
CHUNK_DELAY_SECONDS = 1.5
PROJECT_DELAY_SECONDS = 2
USAGE_THRESHOLD_PERCENT = 80
USAGE_BACKOFF_SECONDS = 60

LONG_LIVED_SECONDS = 86400 * 30
REFRESH_COOLDOWN = timedelta(hours=24)
MIN_REMAINING = timedelta(days=7)


def _account_path(ad_account_id: str) -> str:
    return ad_account_id if ad_account_id.startswith("act_") else f"act_{ad_account_id}"


def build_batch_requests(ad_account_id: str) -> List[Dict]:
    account = _account_path(ad_account_id)
    return [
        {
            "method": "GET",
            "relative_url": (
                f"{account}/campaigns?fields=id,name,status,objective,"
                "created_time,updated_time&limit=100"
            ),
        },
        {
            "method": "GET",
            "relative_url": (
                f"{account}/adsets?fields=id,name,status,campaign_id,"
                "daily_budget,lifetime_budget,targeting&limit=100"
            ),
        },
        {
            "method": "GET",
            "relative_url": f"{account}/insights?fields={INSIGHT_FIELDS}&date_preset=last_30d",
        },
        {
            "method": "GET",
            "relative_url": (
                f"{account}/insights?level=campaign&time_increment=1"
                f"&date_preset=last_30d&fields=campaign_id,campaign_name,{INSIGHT_FIELDS}"
            ),
        },
    ]


def usage_exceeded(usage: Optional[Dict]) -> bool:
    """True when x-ad-account-usage call_count is above the threshold (percent)."""
    if not usage:
        return False
    try:
        return float(usage.get("call_count", 0)) > USAGE_THRESHOLD_PERCENT
    except (TypeError, ValueError):
        return False


def _item_data(item: Optional[Dict]) -> List[Dict]:
    if not item or item.get("code") != 200:
        return []
    return item["body"].get("data") or []


async def fetch_account_data(client: FacebookClient, ad_account_id: str,
                             previous: Optional[Dict] = None) -> Dict:
    """Everything stored for one ad account after a batch sync."""
    items, usage = await client.batch(build_batch_requests(ad_account_id))
    items = items + [None] * (4 - len(items))

    campaigns = _item_data(items[0])
    insights_rows = _item_data(items[2])
    insights = insights_rows[0] if insights_rows else {}
    daily_insights = _item_data(items[3])

    rate_limit_hit = False
    if items[1] and items[1].get("code") == 200:
        adsets = _item_data(items[1])
    else:
        adsets = []
        if items[1] and items[1].get("code") in (400, 429):
            rate_limit_hit = True
            adsets = list((previous or {}).get("adsets") or [])
            logger.warning(
                "Ad set request throttled for %s, reusing %d stored ad sets",
                ad_account_id, len(adsets),
            )

    names = {c.get("id"): c.get("name") for c in campaigns}
    adsets = [
        {**adset, "campaign_name": names.get(adset.get("campaign_id")) or "Unknown Campaign"}
        for adset in adsets
    ]

    campaign_insights: List[Dict] = []
    chunks = list(chunked(campaigns, CAMPAIGN_CHUNK_SIZE))
    for index, chunk in enumerate(chunks):
        if usage_exceeded(usage):
            logger.warning("Ad account usage above %d%%, backing off", USAGE_THRESHOLD_PERCENT)
            await pause(USAGE_BACKOFF_SECONDS)
        try:
            rows, usage = await client.get_campaign_insights([c["id"] for c in chunk])
        except APIError as e:
            logger.error(
                "Campaign insights chunk %d/%d failed for %s: %s",
                index + 1, len(chunks), ad_account_id, e,
            )
            rows = []
        for campaign, row in zip(chunk, rows):
            campaign_insights.append({**row, "campaign_name": campaign.get("name")})
        if index < len(chunks) - 1:
            await pause(CHUNK_DELAY_SECONDS)

    return {
        "campaigns": campaigns,
        "adsets": adsets,
        "insights": insights,
        "campaign_insights": campaign_insights,
        "aggregated_metrics": facebook_aggregate(insights),
        "daily_insights": daily_insights,
        "sync_method": "batch_api",
        "synced_at": utc_now(),
        "rate_limit_hit": rate_limit_hit,
        "meta": {
            "adSetsAvailable": bool(adsets),
            "campaignInsightsAvailable": bool(campaign_insights),
            "rateLimitHit": rate_limit_hit,
            "syncMethod": "batch_api",
        },
    }


async def sync_project(project_id: str) -> Dict:
    """Batch-sync one project. Raises on missing credentials or API failure."""
    stored = oauth_store.get_integration_data(project_id, PLATFORM)
    if not stored or not stored.get("access_token"):
        raise IntegrationNotFoundError(PLATFORM, project_id)
    ad_account_id = stored.get("selected_ad_account_id")
    if not ad_account_id:
        raise SchemaValidationError(
            "No ad account selected for this project", field="selected_ad_account_id",
        )

    client = FacebookClient(stored["access_token"])
    payload = await fetch_account_data(client, ad_account_id, previous=stored)

    oauth_store.save_integration_data(project_id, PLATFORM, payload)
    daily_rows = facebook_daily_rows(project_id, payload["daily_insights"])
    _upsert_batched("facebook_daily_insights", daily_rows, "project_id,campaign_id,date")
    update_integration(project_id, PLATFORM, {"last_sync": utc_now(), "is_connected": True})

    return {
        "project_id": project_id,
        "status": "success",
        "campaigns": len(payload["campaigns"]),
        "adSets": len(payload["adsets"]),
        "dailyRows": len(daily_rows),
        "rateLimitHit": payload["rate_limit_hit"],
    }


async def batch_sync(project_id: str = None) -> Dict:
    """Sync every connected Facebook project (or just ``project_id``)."""
    integrations = oauth_store.get_connected_integrations(PLATFORM, project_id)
    if not integrations:
        return {"success": True, "message": "No Facebook integrations to sync"}

    results = []
    success_count = error_count = 0
    for index, integration in enumerate(integrations):
        pid = integration["project_id"]
        try:
            results.append(await sync_project(pid))
            success_count += 1
        except Exception as e:
            logger.error("Facebook sync failed for project %s: %s", pid, e)
            results.append({"project_id": pid, "status": "error", "error": str(e)})
            error_count += 1
        if index < len(integrations) - 1:
            await pause(PROJECT_DELAY_SECONDS)

    message = f"Batch sync completed: {success_count} success, {error_count} errors"
    logger.info(message)
    return {
        "success": True,
        "message": message,
        "results": results,
        "total_integrations": len(integrations),
        "success_count": success_count,
        "error_count": error_count,
    }


# ─── Token maintenance ────────────────────────────────────────

def _expires_at(expires_in) -> Optional[str]:
    if not expires_in:
        return None
    return (datetime.now(timezone.utc) + timedelta(seconds=int(expires_in))).isoformat()


async def refresh_token(project_id: str, force_refresh: bool = False) -> Dict:
    """
    Keep a project's token usable: validate it, and swap it for a
    long-lived token when invalid (or when forced).

    Returns {success: False, requires_reauth: True, error} when the user
    has to reconnect.
    """
    stored = oauth_store.get_integration_data(project_id, PLATFORM)
    if not stored or not stored.get("access_token"):
        return {
            "success": False,
            "requires_reauth": True,
            "error": "No Facebook integration found for project",
        }

    client = FacebookClient(stored["access_token"])
    if not force_refresh:
        try:
            await client.validate_token()
            return {"success": True, "message": "Token is still valid", "token_refreshed": False}
        except APIError as e:
            logger.info("Facebook token for %s failed validation: %s", project_id, e)

    try:
        token = await client.exchange_token()
    except APIError as e:
        logger.error("Long-lived token exchange failed for %s: %s", project_id, e)
        token = {}
    if not token.get("access_token"):
        return {
            "success": False,
            "requires_reauth": True,
            "error": "Failed to refresh token - manual re-authentication may be required",
        }

    expires_in = token.get("expires_in")
    is_long_lived = bool(expires_in and int(expires_in) > LONG_LIVED_SECONDS)
    oauth_store.save_integration_data(project_id, PLATFORM, {
        "access_token": token["access_token"],
        "token_type": token.get("token_type", "bearer"),
        "expires_in": expires_in,
        "expires_at": _expires_at(expires_in),
        "is_long_lived": is_long_lived,
        "token_refreshed_at": utc_now(),
    })
    update_integration(project_id, PLATFORM, {"is_connected": True})
    logger.info("Refreshed Facebook token for project %s", project_id)
    return {
        "success": True,
        "message": "Token refreshed successfully",
        "token_refreshed": True,
        "expires_in": expires_in,
        "is_long_lived": is_long_lived,
    }


def needs_refresh(data: Dict, now: datetime = None) -> bool:
    """Skip tokens refreshed in the last 24 h and long-lived ones with >7 d left."""
    now = now or datetime.now(timezone.utc)
    if not data.get("access_token"):
        return False
    refreshed = parse_iso(data.get("token_refreshed_at"))
    if refreshed and now - refreshed < REFRESH_COOLDOWN:
        return False
    expires_at = parse_iso(data.get("expires_at"))
    if data.get("is_long_lived") and expires_at and expires_at - now > MIN_REMAINING:
        return False
    return True


async def refresh_all_tokens() -> Dict:
    """Refresh every connected project's token that is due."""
    results = []
    refreshed = skipped = failed = 0
    for integration in oauth_store.get_connected_integrations(PLATFORM):
        pid = integration["project_id"]
        data = oauth_store.get_integration_data(pid, PLATFORM) or {}
        if not needs_refresh(data):
            skipped += 1
            continue
        try:
            outcome = await refresh_token(pid)
        except Exception as e:
            logger.error("Token refresh crashed for %s: %s", pid, e)
            outcome = {"success": False, "error": str(e)}
        if not outcome.get("success"):
            failed += 1
            update_integration(pid, PLATFORM, {"is_connected": False})
        elif outcome.get("token_refreshed"):
            refreshed += 1
        results.append({"project_id": pid, **outcome})

    logger.info(
        "Facebook token refresh: %d refreshed, %d skipped, %d failed",
        refreshed, skipped, failed,
    )
    return {
        "success": True,
        "refreshed": refreshed,
        "skipped": skipped,
        "failed": failed,
        "results": results,
    }
