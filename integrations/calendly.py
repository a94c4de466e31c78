"""
Calendly Integration
=====================

OAuth + REST client for the Calendly v2 API:
- Authorization URL / code exchange / token refresh
- Current user, event types
- Scheduled events (paginated via next_page_token) and invitees

Setup:
1. Create an OAuth app at https://developer.calendly.com
2. Set CALENDLY_CLIENT_ID, CALENDLY_CLIENT_SECRET, CALENDLY_REDIRECT_URI in .env
"""
from __future__ import annotations

import os
from datetime import datetime
from typing import Dict, List, Optional
from urllib.parse import urlencode

from integrations.base import PlatformClient
from scripts.lib.errors import ConfigError
from scripts.lib.logger import setup_logger

logger = setup_logger("calendly_client")

CALENDLY_API_URL = "https://api.calendly.com"
CALENDLY_AUTH_URL = "https://auth.calendly.com/oauth/authorize"
CALENDLY_TOKEN_URL = "https://auth.calendly.com/oauth/token"

# Hard stop for runaway pagination (100 events per page)
MAX_PAGES = 50


def _iso(value) -> str:
    if isinstance(value, datetime):
        return value.isoformat().replace("+00:00", "Z")
    return value


def event_uuid(uri_or_uuid: str) -> str:
    """Extract the UUID from a Calendly resource URI."""
    return uri_or_uuid.rstrip("/").rsplit("/", 1)[-1]


class CalendlyClient(PlatformClient):
    """Calendly v2 API connector."""

    platform = "calendly"
    base_url = CALENDLY_API_URL

    @staticmethod
    def oauth_config() -> Dict[str, str]:
        client_id = os.getenv("CALENDLY_CLIENT_ID")
        client_secret = os.getenv("CALENDLY_CLIENT_SECRET")
        if not client_id or not client_secret:
            raise ConfigError(
                "Calendly OAuth is not configured", setting="CALENDLY_CLIENT_ID",
            )
        return {
            "client_id": client_id,
            "client_secret": client_secret,
            "redirect_uri": os.getenv("CALENDLY_REDIRECT_URI", ""),
        }

    @classmethod
    def get_auth_url(cls, project_id: str, redirect_uri: str = None) -> str:
        config = cls.oauth_config()
        params = {
            "client_id": config["client_id"],
            "response_type": "code",
            "redirect_uri": redirect_uri or config["redirect_uri"],
            "scope": "default",
            "state": project_id,
        }
        return f"{CALENDLY_AUTH_URL}?{urlencode(params)}"

    # ─── OAuth ────────────────────────────────────────────────

    async def exchange_code(self, code: str, redirect_uri: str = None) -> Dict:
        """Exchange an authorization code for tokens."""
        config = self.oauth_config()
        return await self.post_json(
            CALENDLY_TOKEN_URL,
            data={
                "grant_type": "authorization_code",
                "client_id": config["client_id"],
                "client_secret": config["client_secret"],
                "code": code,
                "redirect_uri": redirect_uri or config["redirect_uri"],
            },
            authenticated=False,
        )

    async def refresh_access_token(self, refresh_token: str) -> Dict:
        config = self.oauth_config()
        return await self.post_json(
            CALENDLY_TOKEN_URL,
            data={
                "grant_type": "refresh_token",
                "client_id": config["client_id"],
                "client_secret": config["client_secret"],
                "refresh_token": refresh_token,
            },
            authenticated=False,
        )

    # ─── Resources ────────────────────────────────────────────

    async def get_current_user(self) -> Dict:
        data = await self.get_json("/users/me")
        return data.get("resource", {})

    async def _collect(self, path: str, params: Dict,
                       max_pages: int = MAX_PAGES) -> List[Dict]:
        """Follow pagination.next_page_token until exhausted."""
        items: List[Dict] = []
        params = dict(params)
        for _ in range(max_pages):
            data = await self.get_json(path, params=params)
            items.extend(data.get("collection", []))
            token = (data.get("pagination") or {}).get("next_page_token")
            if not token:
                break
            params["page_token"] = token
        return items

    async def list_event_types(self, user_uri: str) -> List[Dict]:
        return await self._collect(
            "/event_types", {"user": user_uri, "count": 100},
        )

    async def list_scheduled_events(
        self,
        user_uri: str,
        min_start_time,
        max_start_time,
        count: int = 100,
        sort: str = "start_time:desc",
        status: Optional[str] = None,
        max_pages: int = MAX_PAGES,
    ) -> List[Dict]:
        """Scheduled events for a user whose start time falls in the window."""
        params = {
            "user": user_uri,
            "min_start_time": _iso(min_start_time),
            "max_start_time": _iso(max_start_time),
            "count": count,
            "sort": sort,
        }
        if status:
            params["status"] = status
        events = await self._collect("/scheduled_events", params, max_pages=max_pages)
        logger.info("Fetched %d Calendly events for %s", len(events), user_uri)
        return events

    async def get_scheduled_event(self, uri_or_uuid: str) -> Dict:
        data = await self.get_json(f"/scheduled_events/{event_uuid(uri_or_uuid)}")
        return data.get("resource", {})

    async def list_invitees(self, uri_or_uuid: str) -> List[Dict]:
        return await self._collect(
            f"/scheduled_events/{event_uuid(uri_or_uuid)}/invitees", {"count": 100},
        )
