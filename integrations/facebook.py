"""
Facebook Graph Integration
===========================

Connects to the Facebook Marketing (Graph v18.0) API for:
- OAuth login and long-lived token exchange
- Ad account discovery
- Batched campaign / ad set / insights reads

Setup:
1. Create a Facebook app with the Marketing API product
2. Set FACEBOOK_APP_ID, FACEBOOK_APP_SECRET, FACEBOOK_REDIRECT_URI in .env
"""
from __future__ import annotations

import json
import os
from typing import Dict, List, Optional, Tuple
from urllib.parse import urlencode

import httpx

from integrations.base import PlatformClient
from scripts.lib.errors import ConfigError
from scripts.lib.logger import setup_logger

logger = setup_logger("facebook_client")

GRAPH_API_VERSION = "v18.0"
GRAPH_URL = f"https://graph.facebook.com/{GRAPH_API_VERSION}"
DIALOG_URL = f"https://www.facebook.com/{GRAPH_API_VERSION}/dialog/oauth"

BASIC_SCOPES = ["email", "public_profile"]
ADS_SCOPES = ["ads_read", "ads_management", "business_management"]

INSIGHT_FIELDS = (
    "impressions,clicks,spend,reach,ctr,cpc,cpm,frequency,actions,action_values"
)


def parse_usage_header(headers: httpx.Headers) -> Optional[Dict]:
    """Decode the x-ad-account-usage header (JSON) if present."""
    raw = headers.get("x-ad-account-usage")
    if not raw:
        return None
    try:
        return json.loads(raw)
    except ValueError:
        logger.warning("Could not parse x-ad-account-usage header: %s", raw)
        return None


class FacebookClient(PlatformClient):
    """Facebook Graph API connector. The token travels as a parameter."""

    platform = "facebook"
    base_url = GRAPH_URL
    # Graph error codes for app/user/account-level throttling
    rate_limit_codes = (4, 17, 32, 613, 80004)

    def _auth_headers(self) -> Dict[str, str]:
        return {}

    @staticmethod
    def app_credentials() -> Tuple[str, str]:
        app_id = os.getenv("FACEBOOK_APP_ID")
        app_secret = os.getenv("FACEBOOK_APP_SECRET")
        if not app_id or not app_secret:
            raise ConfigError(
                "Facebook app credentials not configured", setting="FACEBOOK_APP_ID",
            )
        return app_id, app_secret

    @classmethod
    def get_auth_url(cls, project_id: str, permission_level: str = "ads",
                     redirect_uri: str = None) -> str:
        app_id, _ = cls.app_credentials()
        scopes = BASIC_SCOPES if permission_level == "basic" else BASIC_SCOPES + ADS_SCOPES
        params = {
            "client_id": app_id,
            "redirect_uri": redirect_uri or os.getenv("FACEBOOK_REDIRECT_URI", ""),
            "scope": ",".join(scopes),
            "response_type": "code",
            "state": project_id,
        }
        return f"{DIALOG_URL}?{urlencode(params)}"

    # ─── OAuth / tokens ───────────────────────────────────────

    async def exchange_code(self, code: str, redirect_uri: str = None) -> Dict:
        app_id, app_secret = self.app_credentials()
        return await self.get_json("/oauth/access_token", params={
            "client_id": app_id,
            "client_secret": app_secret,
            "redirect_uri": redirect_uri or os.getenv("FACEBOOK_REDIRECT_URI", ""),
            "code": code,
        })

    async def validate_token(self) -> Dict:
        """Cheap call proving the token still works."""
        return await self.get_json(
            "/me", params={"fields": "id", "access_token": self.access_token},
        )

    async def exchange_token(self) -> Dict:
        """Swap the current token for a long-lived one (about 60 days)."""
        app_id, app_secret = self.app_credentials()
        return await self.get_json("/oauth/access_token", params={
            "grant_type": "fb_exchange_token",
            "client_id": app_id,
            "client_secret": app_secret,
            "fb_exchange_token": self.access_token,
        })

    async def list_ad_accounts(self) -> List[Dict]:
        data = await self.get_json("/me/adaccounts", params={
            "fields": "id,name,account_status,currency,timezone_name",
            "access_token": self.access_token,
        })
        return data.get("data", [])

    # ─── Batch API ────────────────────────────────────────────

    async def get_campaign_insights(self, campaign_ids: List[str],
                                    date_preset: str = "last_30d") -> Tuple[List[Dict], Optional[Dict]]:
        """
        Last-period insights for a group of campaigns in one batch call.

        Returns:
            (rows, usage) with one row per campaign id (empty dict when the
            campaign had no delivery or its batch item failed).
        """
        items, usage = await self.batch([
            {
                "method": "GET",
                "relative_url": (
                    f"{campaign_id}/insights?fields={INSIGHT_FIELDS}"
                    f"&date_preset={date_preset}"
                ),
            }
            for campaign_id in campaign_ids
        ])
        rows = []
        for campaign_id, item in zip(campaign_ids, items):
            data = (item["body"].get("data") or [{}]) if item["code"] == 200 else [{}]
            rows.append({"campaign_id": campaign_id, **data[0]})
        return rows, usage

    async def batch(self, requests: List[Dict]) -> Tuple[List[Dict], Optional[Dict]]:
        """
        Run up to 50 relative GET requests in one Graph batch call.

        Returns:
            (items, usage) where each item is {"code": int, "body": dict}
            and usage is the decoded x-ad-account-usage header.
        """
        response = await self.request(
            "POST", f"{GRAPH_URL}/",
            json={"access_token": self.access_token, "batch": requests},
        )
        items = []
        for raw in response.json() or []:
            if raw is None:
                items.append({"code": 0, "body": {}})
                continue
            try:
                body = json.loads(raw.get("body") or "{}")
            except ValueError:
                body = {}
            items.append({"code": raw.get("code", 0), "body": body})
        return items, parse_usage_header(response.headers)
