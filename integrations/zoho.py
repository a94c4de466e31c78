"""
Zoho CRM Integration
=====================

OAuth + REST client for Zoho CRM v2:
- Authorization URL (offline access, base64 JSON state)
- Code exchange / refresh against accounts.zoho.com
- Current user, organization, modules and module records

Setup:
1. Register a server-based client at https://api-console.zoho.com
2. Set ZOHO_CLIENT_ID, ZOHO_CLIENT_SECRET, ZOHO_REDIRECT_URI in .env
"""
from __future__ import annotations

import base64
import json
import os
from typing import Dict, List, Optional
from urllib.parse import urlencode

from integrations.base import PlatformClient
from scripts.lib.errors import ConfigError
from scripts.lib.logger import setup_logger

logger = setup_logger("zoho_client")

ZOHO_ACCOUNTS_URL = "https://accounts.zoho.com/oauth/v2"
ZOHO_API_DOMAIN = "https://www.zohoapis.com"
ZOHO_SCOPES = "ZohoCRM.modules.ALL,ZohoCRM.settings.ALL,ZohoCRM.users.READ"


def encode_state(project_id: str) -> str:
    return base64.b64encode(json.dumps({"projectId": project_id}).encode()).decode()


def decode_state(state: str) -> Optional[str]:
    """Project id from a base64 JSON state; plain ids pass through."""
    try:
        return json.loads(base64.b64decode(state).decode()).get("projectId")
    except (ValueError, UnicodeDecodeError, AttributeError):
        return state or None


class ZohoClient(PlatformClient):
    """Zoho CRM connector. ``api_domain`` comes back from the token exchange."""

    platform = "zoho_crm"
    base_url = f"{ZOHO_API_DOMAIN}/crm/v2"

    def __init__(self, access_token: Optional[str] = None,
                 api_domain: Optional[str] = None, **kwargs):
        super().__init__(access_token, **kwargs)
        self.base_url = f"{(api_domain or ZOHO_API_DOMAIN).rstrip('/')}/crm/v2"

    def _auth_headers(self) -> Dict[str, str]:
        if not self.access_token:
            return {}
        return {"Authorization": f"Zoho-oauthtoken {self.access_token}"}

    @staticmethod
    def oauth_config() -> Dict[str, str]:
        client_id = os.getenv("ZOHO_CLIENT_ID")
        client_secret = os.getenv("ZOHO_CLIENT_SECRET")
        if not client_id or not client_secret:
            raise ConfigError("Zoho OAuth is not configured", setting="ZOHO_CLIENT_ID")
        return {
            "client_id": client_id,
            "client_secret": client_secret,
            "redirect_uri": os.getenv("ZOHO_REDIRECT_URI", ""),
        }

    @classmethod
    def get_auth_url(cls, project_id: str, redirect_uri: str = None) -> str:
        config = cls.oauth_config()
        params = {
            "scope": ZOHO_SCOPES,
            "client_id": config["client_id"],
            "response_type": "code",
            "access_type": "offline",
            "prompt": "consent",
            "redirect_uri": redirect_uri or config["redirect_uri"],
            "state": encode_state(project_id),
        }
        return f"{ZOHO_ACCOUNTS_URL}/auth?{urlencode(params)}"

    # ─── OAuth ────────────────────────────────────────────────

    async def exchange_code(self, code: str, redirect_uri: str = None) -> Dict:
        config = self.oauth_config()
        return await self.post_json(
            f"{ZOHO_ACCOUNTS_URL}/token",
            data={
                "grant_type": "authorization_code",
                "client_id": config["client_id"],
                "client_secret": config["client_secret"],
                "redirect_uri": redirect_uri or config["redirect_uri"],
                "code": code,
            },
            authenticated=False,
        )

    async def refresh_access_token(self, refresh_token: str) -> Dict:
        config = self.oauth_config()
        return await self.post_json(
            f"{ZOHO_ACCOUNTS_URL}/token",
            data={
                "grant_type": "refresh_token",
                "client_id": config["client_id"],
                "client_secret": config["client_secret"],
                "refresh_token": refresh_token,
            },
            authenticated=False,
        )

    # ─── CRM data ─────────────────────────────────────────────

    async def get_current_user(self) -> Optional[Dict]:
        data = await self.get_json("/users", params={"type": "CurrentUser"})
        users = data.get("users") or []
        return users[0] if users else None

    async def get_organization(self) -> Optional[Dict]:
        data = await self.get_json("/org")
        orgs = data.get("org") or []
        return orgs[0] if orgs else None

    async def get_modules(self) -> List[Dict]:
        data = await self.get_json("/settings/modules")
        return data.get("modules", [])

    async def get_records(self, module: str, page: int = 1,
                          per_page: int = 200) -> Dict:
        """One page of records: {"data": [...], "info": {"more_records": bool}}."""
        data = await self.get_json(
            f"/{module}", params={"page": page, "per_page": per_page},
        )
        return {"data": data.get("data", []), "info": data.get("info", {})}
