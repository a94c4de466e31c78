"""
ClickFunnels Integration
=========================

OAuth + funnel reads against app.clickfunnels.com (API v2).

Setup:
1. Create an OAuth application in ClickFunnels
2. Set CLICKFUNNELS_CLIENT_ID, CLICKFUNNELS_CLIENT_SECRET,
   CLICKFUNNELS_REDIRECT_URI in .env
"""
from __future__ import annotations

import os
from typing import Dict, List
from urllib.parse import urlencode

from integrations.base import PlatformClient
from scripts.lib.errors import ConfigError
from scripts.lib.logger import setup_logger

logger = setup_logger("clickfunnels_client")

CLICKFUNNELS_URL = "https://app.clickfunnels.com"
CLICKFUNNELS_SCOPES = "funnel:read funnel:write"


class ClickFunnelsClient(PlatformClient):
    """ClickFunnels funnels connector."""

    platform = "clickfunnels"
    base_url = f"{CLICKFUNNELS_URL}/api/v2"

    @staticmethod
    def oauth_config() -> Dict[str, str]:
        client_id = os.getenv("CLICKFUNNELS_CLIENT_ID")
        client_secret = os.getenv("CLICKFUNNELS_CLIENT_SECRET")
        if not client_id or not client_secret:
            raise ConfigError(
                "ClickFunnels OAuth is not configured", setting="CLICKFUNNELS_CLIENT_ID",
            )
        return {
            "client_id": client_id,
            "client_secret": client_secret,
            "redirect_uri": os.getenv("CLICKFUNNELS_REDIRECT_URI", ""),
        }

    @classmethod
    def get_auth_url(cls, project_id: str, redirect_uri: str = None) -> str:
        config = cls.oauth_config()
        params = {
            "client_id": config["client_id"],
            "redirect_uri": redirect_uri or config["redirect_uri"],
            "response_type": "code",
            "scope": CLICKFUNNELS_SCOPES,
            "state": project_id,
        }
        return f"{CLICKFUNNELS_URL}/oauth/authorize?{urlencode(params)}"

    async def exchange_code(self, code: str, redirect_uri: str = None) -> Dict:
        config = self.oauth_config()
        return await self.post_json(
            f"{CLICKFUNNELS_URL}/oauth/token",
            data={
                "grant_type": "authorization_code",
                "client_id": config["client_id"],
                "client_secret": config["client_secret"],
                "code": code,
                "redirect_uri": redirect_uri or config["redirect_uri"],
            },
            authenticated=False,
        )

    async def get_funnels(self) -> List[Dict]:
        data = await self.get_json("/funnels")
        if isinstance(data, list):
            return data
        return data.get("funnels") or data.get("data") or []

    async def get_funnel(self, funnel_id: str) -> Dict:
        return await self.get_json(f"/funnels/{funnel_id}")

    async def get_funnel_stats(self, funnel_id: str) -> Dict:
        return await self.get_json(f"/funnels/{funnel_id}/stats")
