"""
GoHighLevel Integration
========================

LeadConnector (GHL v2) API client for forms and form submissions.
Authenticates with either a location API key or an OAuth access token,
both sent as a bearer token.

Setup (OAuth):
1. Create a marketplace app with forms/contacts scopes
2. Set GHL_CLIENT_ID, GHL_CLIENT_SECRET, GHL_REDIRECT_URI in .env
"""
from __future__ import annotations

import base64
import json
import os
from typing import AsyncIterator, Dict, List, Optional
from urllib.parse import urlencode

from integrations.base import PlatformClient
from scripts.lib.errors import ConfigError
from scripts.lib.logger import setup_logger
from scripts.lib.utils import pause

logger = setup_logger("ghl_client")

GHL_API_URL = "https://services.leadconnectorhq.com"
GHL_AUTH_URL = "https://marketplace.gohighlevel.com/oauth/chooselocation"
GHL_API_VERSION = "2021-07-28"
GHL_SCOPES = ["forms.readonly", "forms.write", "contacts.readonly", "contacts.write"]

PAGE_SIZE = 100
PAGE_DELAY_SECONDS = 0.2


class GHLClient(PlatformClient):
    """GoHighLevel forms connector."""

    platform = "ghl"
    base_url = GHL_API_URL

    def _auth_headers(self) -> Dict[str, str]:
        headers = super()._auth_headers()
        headers["Version"] = os.getenv("GHL_API_VERSION", GHL_API_VERSION)
        return headers

    @staticmethod
    def oauth_config() -> Dict[str, str]:
        client_id = os.getenv("GHL_CLIENT_ID")
        client_secret = os.getenv("GHL_CLIENT_SECRET")
        if not client_id or not client_secret:
            raise ConfigError("GHL OAuth is not configured", setting="GHL_CLIENT_ID")
        return {
            "client_id": client_id,
            "client_secret": client_secret,
            "redirect_uri": os.getenv("GHL_REDIRECT_URI", ""),
        }

    @classmethod
    def get_auth_url(cls, project_id: str, redirect_uri: str = None) -> str:
        config = cls.oauth_config()
        state = base64.b64encode(
            json.dumps({"projectId": project_id, "platform": "ghl"}).encode()
        ).decode()
        params = {
            "response_type": "code",
            "client_id": config["client_id"],
            "redirect_uri": redirect_uri or config["redirect_uri"],
            "scope": " ".join(GHL_SCOPES),
            "state": state,
        }
        return f"{GHL_AUTH_URL}?{urlencode(params)}"

    async def exchange_code(self, code: str, redirect_uri: str = None) -> Dict:
        """Token payload includes locationId, userId and companyId."""
        config = self.oauth_config()
        return await self.post_json(
            "/oauth/token",
            data={
                "grant_type": "authorization_code",
                "client_id": config["client_id"],
                "client_secret": config["client_secret"],
                "code": code,
                "redirect_uri": redirect_uri or config["redirect_uri"],
            },
            authenticated=False,
        )

    # ─── Forms ────────────────────────────────────────────────

    async def list_forms(self, location_id: str) -> List[Dict]:
        data = await self.get_json(f"/locations/{location_id}/forms/")
        return data.get("forms", [])

    async def list_form_submissions(
        self,
        location_id: str,
        form_id: str,
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
        limit: int = PAGE_SIZE,
        start_after: Optional[str] = None,
    ) -> Dict:
        """One page of submissions: {"submissions": [...], "meta": {...}}."""
        params = {"limit": limit}
        if start_after:
            params["startAfter"] = start_after
        if start_date:
            params["startDate"] = start_date
        if end_date:
            params["endDate"] = end_date
        return await self.get_json(
            f"/locations/{location_id}/forms/{form_id}/submissions", params=params,
        )

    async def iter_form_submissions(
        self,
        location_id: str,
        form_id: str,
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
    ) -> AsyncIterator[List[Dict]]:
        """Yield pages of submissions, paging with startAfter=<last id>."""
        start_after = None
        while True:
            data = await self.list_form_submissions(
                location_id, form_id, start_date, end_date, start_after=start_after,
            )
            page = data.get("submissions", [])
            if page:
                yield page

            has_more = bool((data.get("meta") or {}).get("nextPageUrl")) or len(page) == PAGE_SIZE
            if not has_more or not page:
                break
            next_cursor = page[-1].get("id")
            if not next_cursor or next_cursor == start_after:
                logger.warning(
                    "Stopping submission paging for form %s: no usable cursor after %r",
                    form_id, start_after,
                )
                break
            start_after = next_cursor
            await pause(PAGE_DELAY_SECONDS)
