"""
Pulse Hub — OAuth Flows
=========================

Authorization URL generation, callback handling and token refresh for every
OAuth platform. Tokens land in project_integration_data (encrypted) and the
connection flag in project_integrations.

Platform keys:
    calendly      -> calendly / calendly
    facebook      -> facebook / facebook
    ghl           -> ghl / ghl
    zoho          -> zoho_crm / zoho_crm
    clickfunnels  -> clickfunnels / clickfunnels_oauth
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

from integrations.calendly import CalendlyClient
from integrations.clickfunnels import ClickFunnelsClient
from integrations.facebook import FacebookClient
from integrations.ghl import GHLClient
from integrations.zoho import ZohoClient, decode_state
from scripts.lib.errors import SchemaValidationError
from scripts.lib.logger import setup_logger
from scripts.lib.supabase_client import utc_now
from scripts.sync import oauth_store

logger = setup_logger("oauth_flows")

# platform -> (client class, integration platform, data platform)
OAUTH_PLATFORMS = {
    "calendly": (CalendlyClient, "calendly", "calendly"),
    "facebook": (FacebookClient, "facebook", "facebook"),
    "ghl": (GHLClient, "ghl", "ghl"),
    "zoho": (ZohoClient, "zoho_crm", "zoho_crm"),
    "clickfunnels": (ClickFunnelsClient, "clickfunnels", "clickfunnels_oauth"),
}

REFRESHABLE = ("calendly", "zoho")


def _resolve(platform: str):
    try:
        return OAUTH_PLATFORMS[platform]
    except KeyError:
        raise SchemaValidationError(f"Platform not supported: {platform}", field="platform")


def _expires_at(expires_in) -> Optional[str]:
    if not expires_in:
        return None
    try:
        seconds = int(expires_in)
    except (TypeError, ValueError):
        return None
    return (datetime.now(timezone.utc) + timedelta(seconds=seconds)).isoformat()


def start_oauth(platform: str, project_id: str, redirect_uri: str = None) -> Dict:
    """Authorization URL for a project's connect button."""
    if not project_id:
        raise SchemaValidationError("Project ID is required", field="project_id")
    client_cls, _, _ = _resolve(platform)
    auth_url = client_cls.get_auth_url(project_id, redirect_uri=redirect_uri)
    logger.info("OAuth URL generated for %s, project %s", platform, project_id)
    return {"auth_url": auth_url}


async def _platform_extras(platform: str, token: Dict) -> Dict:
    """Account details fetched with the fresh token."""
    access_token = token.get("access_token")

    if platform == "calendly":
        user = await CalendlyClient(access_token).get_current_user()
        return {
            "user_uri": user.get("uri"),
            "organization_uri": user.get("current_organization"),
            "user_name": user.get("name"),
        }

    if platform == "facebook":
        client = FacebookClient(access_token)
        long_lived = await client.exchange_token()
        if long_lived.get("access_token"):
            token["access_token"] = long_lived["access_token"]
            token["expires_in"] = long_lived.get("expires_in", token.get("expires_in"))
            client.access_token = long_lived["access_token"]
        accounts = await client.list_ad_accounts()
        return {
            "ad_accounts": accounts,
            "selected_ad_account_id": accounts[0]["id"] if accounts else None,
        }

    if platform == "ghl":
        return {
            "location_id": token.get("locationId"),
            "user_id": token.get("userId"),
            "company_id": token.get("companyId"),
        }

    if platform == "zoho":
        api_domain = token.get("api_domain") or "https://www.zohoapis.com"
        client = ZohoClient(access_token, api_domain=api_domain)
        return {
            "user": await client.get_current_user(),
            "org": await client.get_organization(),
            "api_domain": api_domain,
        }

    return {}


async def complete_oauth(platform: str, code: str, state: str,
                         redirect_uri: str = None) -> Dict:
    """
    Exchange the callback code and persist tokens for the project in ``state``.

    Raises:
        SchemaValidationError: missing code/state or unsupported platform.
        APIError subclasses: token exchange failed upstream.
    """
    client_cls, integration_platform, data_platform = _resolve(platform)
    if not code or not state:
        raise SchemaValidationError("Missing authorization code or state", field="code")

    project_id = decode_state(state)
    if not project_id:
        raise SchemaValidationError("Invalid OAuth state", field="state")

    token = await client_cls().exchange_code(code, redirect_uri=redirect_uri)
    if not token.get("access_token"):
        raise SchemaValidationError(
            f"No access token received from {platform}", field="access_token",
        )

    extras = await _platform_extras(platform, token)
    data = {
        "access_token": token["access_token"],
        "refresh_token": token.get("refresh_token"),
        "token_type": token.get("token_type"),
        "expires_at": _expires_at(token.get("expires_in")),
        "scope": token.get("scope"),
        "connected_at": utc_now(),
    }
    data.update(extras)

    oauth_store.mark_connected(project_id, integration_platform, True, last_sync=None)
    oauth_store.save_integration_data(project_id, data_platform, data, merge=False)
    logger.info("Stored %s tokens for project %s", platform, project_id)

    return {"success": True, "project_id": project_id, "platform": integration_platform}


async def refresh_platform_token(project_id: str, platform: str) -> Dict:
    """Refresh an expiring Calendly or Zoho access token."""
    client_cls, integration_platform, data_platform = _resolve(platform)
    if platform not in REFRESHABLE:
        raise SchemaValidationError(
            f"Token refresh not supported for {platform}", field="platform",
        )

    stored = oauth_store.get_integration_data(project_id, data_platform, required=True)
    refresh_token = stored.get("refresh_token")
    if not refresh_token:
        raise SchemaValidationError("No refresh token stored", field="refresh_token")

    token = await client_cls().refresh_access_token(refresh_token)
    update = {
        "access_token": token["access_token"],
        "expires_at": _expires_at(token.get("expires_in")),
        "token_refreshed_at": utc_now(),
    }
    # Zoho only returns a new refresh token on the first exchange
    if token.get("refresh_token"):
        update["refresh_token"] = token["refresh_token"]
    if token.get("api_domain"):
        update["api_domain"] = token["api_domain"]

    oauth_store.save_integration_data(project_id, data_platform, update)
    logger.info("Refreshed %s token for project %s", integration_platform, project_id)
    return {"success": True, "project_id": project_id, "expires_at": update["expires_at"]}


def disconnect(project_id: str, platform: str) -> Dict:
    """Drop stored tokens and flag the integration disconnected."""
    _, integration_platform, data_platform = _resolve(platform)
    oauth_store.disconnect(project_id, integration_platform, [data_platform])
    return {"success": True, "project_id": project_id, "platform": integration_platform}
