"""Tests for OAuth connect/refresh/disconnect and the Zoho / ClickFunnels reads."""

import base64
import json
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from scripts.lib.errors import IntegrationNotFoundError, SchemaValidationError
from scripts.sync import crm_sync, oauth_flows, oauth_store


def state_for(project_id):
    return base64.b64encode(json.dumps({"projectId": project_id}).encode()).decode()


class FakeTokenClient:
    token = {}
    refreshed = {}

    def __init__(self, access_token=None, **kwargs):
        self.access_token = access_token

    async def exchange_code(self, code, redirect_uri=None):
        return dict(self.token)

    async def refresh_access_token(self, refresh_token):
        return dict(self.refreshed)


class TestStartOAuth:
    def test_calendly_auth_url(self):
        with patch.dict("os.environ", {
            "CALENDLY_CLIENT_ID": "cid",
            "CALENDLY_CLIENT_SECRET": "secret",
            "CALENDLY_REDIRECT_URI": "https://app.example.com/cb",
        }, clear=False):
            result = oauth_flows.start_oauth("calendly", "p1")
        assert result["auth_url"].startswith("https://auth.calendly.com/oauth/authorize?")
        assert "client_id=cid" in result["auth_url"]
        assert "state=p1" in result["auth_url"]

    def test_unsupported_platform(self):
        with pytest.raises(SchemaValidationError):
            oauth_flows.start_oauth("myspace", "p1")

    def test_project_required(self):
        with pytest.raises(SchemaValidationError):
            oauth_flows.start_oauth("calendly", "")


class TestCompleteOAuth:
    @pytest.fixture
    def ghl_tokens(self, monkeypatch):
        FakeTokenClient.token = {
            "access_token": "acc",
            "refresh_token": "ref",
            "expires_in": 86399,
            "locationId": "loc-1",
            "companyId": "co-1",
        }
        monkeypatch.setitem(oauth_flows.OAUTH_PLATFORMS, "ghl", (FakeTokenClient, "ghl", "ghl"))

    @pytest.mark.asyncio
    async def test_tokens_stored_encrypted(self, db, ghl_tokens):
        result = await oauth_flows.complete_oauth("ghl", "code", state_for("p1"))

        assert result == {"success": True, "project_id": "p1", "platform": "ghl"}
        integration = oauth_store.get_integration("p1", "ghl")
        assert integration["is_connected"] is True
        raw = oauth_store.get_integration_row("p1", "ghl")["data"]
        assert raw["encrypted"] is True
        assert raw["access_token"] != "acc"
        data = oauth_store.get_integration_data("p1", "ghl")
        assert data["access_token"] == "acc"
        assert data["location_id"] == "loc-1"
        assert data["expires_at"]

    @pytest.mark.asyncio
    async def test_plain_state_is_project_id(self, db, ghl_tokens):
        result = await oauth_flows.complete_oauth("ghl", "code", "p2")
        assert result["project_id"] == "p2"

    @pytest.mark.asyncio
    async def test_missing_code_rejected(self, db, ghl_tokens):
        with pytest.raises(SchemaValidationError):
            await oauth_flows.complete_oauth("ghl", "", state_for("p1"))

    @pytest.mark.asyncio
    async def test_missing_access_token_rejected(self, db, ghl_tokens):
        FakeTokenClient.token = {"error": "invalid_grant"}
        with pytest.raises(SchemaValidationError):
            await oauth_flows.complete_oauth("ghl", "code", state_for("p1"))
        assert oauth_store.get_integration("p1", "ghl") is None

    @pytest.mark.asyncio
    async def test_calendly_stores_user_uri(self, db, monkeypatch):
        class FakeCalendly(FakeTokenClient):
            token = {"access_token": "cal", "expires_in": 7200}

            async def get_current_user(self):
                return {"uri": "users/1", "current_organization": "orgs/1", "name": "Sam"}

        monkeypatch.setitem(
            oauth_flows.OAUTH_PLATFORMS, "calendly", (FakeCalendly, "calendly", "calendly"),
        )
        monkeypatch.setattr(oauth_flows, "CalendlyClient", FakeCalendly)

        await oauth_flows.complete_oauth("calendly", "code", "p1")

        data = oauth_store.get_integration_data("p1", "calendly")
        assert data["user_uri"] == "users/1"
        assert data["organization_uri"] == "orgs/1"


class TestRefreshAndDisconnect:
    @pytest.mark.asyncio
    async def test_zoho_refresh_keeps_refresh_token(self, db, connect, monkeypatch):
        connect("p1", "zoho_crm", {"access_token": "old", "refresh_token": "keep"})
        FakeTokenClient.refreshed = {
            "access_token": "new", "expires_in": 3600, "api_domain": "https://www.zohoapis.eu",
        }
        monkeypatch.setitem(oauth_flows.OAUTH_PLATFORMS, "zoho", (FakeTokenClient, "zoho_crm", "zoho_crm"))

        result = await oauth_flows.refresh_platform_token("p1", "zoho")

        assert result["success"] is True
        data = oauth_store.get_integration_data("p1", "zoho_crm")
        assert data["access_token"] == "new"
        assert data["refresh_token"] == "keep"
        assert data["api_domain"] == "https://www.zohoapis.eu"

    @pytest.mark.asyncio
    async def test_refresh_not_supported_for_facebook(self, db):
        with pytest.raises(SchemaValidationError):
            await oauth_flows.refresh_platform_token("p1", "facebook")

    @pytest.mark.asyncio
    async def test_refresh_requires_refresh_token(self, db, connect):
        connect("p1", "calendly", {"access_token": "a"})
        with pytest.raises(SchemaValidationError):
            await oauth_flows.refresh_platform_token("p1", "calendly")

    def test_disconnect_clickfunnels_drops_token_row(self, db, connect):
        connect("p1", "clickfunnels", {"access_token": "cf"}, data_platform="clickfunnels_oauth")

        result = oauth_flows.disconnect("p1", "clickfunnels")

        assert result["platform"] == "clickfunnels"
        assert oauth_store.get_integration("p1", "clickfunnels")["is_connected"] is False
        assert oauth_store.get_integration_row("p1", "clickfunnels_oauth") is None

    def test_disconnect_unknown_integration(self, db):
        with pytest.raises(IntegrationNotFoundError):
            oauth_flows.disconnect("p1", "zoho")


class FakeZoho:
    def __init__(self, access_token=None, api_domain=None, **kwargs):
        self.access_token = access_token
        self.api_domain = api_domain

    async def get_modules(self):
        return [{"api_name": "Leads", "token": self.access_token}]


class FakeFunnels:
    def __init__(self, access_token=None, **kwargs):
        self.access_token = access_token

    async def get_funnels(self):
        return [{"id": "fn1"}]

    async def get_funnel(self, funnel_id):
        return {"id": funnel_id, "name": "Webinar"}

    async def get_funnel_stats(self, funnel_id):
        return {"visits": 120, "optins": 30}


class TestCrmReads:
    def test_token_expiring(self):
        now = datetime(2026, 3, 1, tzinfo=timezone.utc)
        assert crm_sync.token_expiring({"expires_at": (now + timedelta(minutes=5)).isoformat()}, now)
        assert not crm_sync.token_expiring({"expires_at": (now + timedelta(hours=1)).isoformat()}, now)
        assert not crm_sync.token_expiring({}, now)

    @pytest.mark.asyncio
    async def test_zoho_refreshes_expiring_token(self, db, connect, monkeypatch):
        soon = (datetime.now(timezone.utc) + timedelta(minutes=2)).isoformat()
        connect("p1", "zoho_crm", {"access_token": "old", "refresh_token": "r", "expires_at": soon})

        async def fake_refresh(project_id, platform):
            oauth_store.save_integration_data(project_id, "zoho_crm", {"access_token": "fresh"})
            return {"success": True}

        monkeypatch.setattr(crm_sync, "refresh_platform_token", fake_refresh)
        monkeypatch.setattr(crm_sync, "ZohoClient", FakeZoho)

        modules = await crm_sync.zoho_modules("p1")

        assert modules == [{"api_name": "Leads", "token": "fresh"}]

    @pytest.mark.asyncio
    async def test_zoho_not_connected(self, db):
        with pytest.raises(IntegrationNotFoundError):
            await crm_sync.zoho_modules("p1")

    @pytest.mark.asyncio
    async def test_funnel_sync_stores_stats(self, db, connect, monkeypatch):
        connect("p1", "clickfunnels", {"access_token": "cf"}, data_platform="clickfunnels_oauth")
        monkeypatch.setattr(crm_sync, "ClickFunnelsClient", FakeFunnels)

        assert await crm_sync.list_funnels("p1") == [{"id": "fn1"}]
        result = await crm_sync.sync_funnel("p1", "fn1")

        assert result["stats"] == {"visits": 120, "optins": 30}
        stored = oauth_store.get_integration_data("p1", "clickfunnels")
        assert stored["funnel_id"] == "fn1"
        assert oauth_store.get_integration("p1", "clickfunnels")["last_sync"]

        again = await crm_sync.sync_selected_funnel("p1")
        assert again["funnel_id"] == "fn1"

    @pytest.mark.asyncio
    async def test_no_selected_funnel(self, db):
        assert await crm_sync.sync_selected_funnel("p1") == {
            "success": True, "skipped": "no funnel selected",
        }
