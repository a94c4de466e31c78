"""Tests for the shared platform client plumbing and the per-platform clients."""

import json
from unittest.mock import patch

import httpx
import pytest

from integrations.calendly import CalendlyClient, event_uuid
from integrations.facebook import FacebookClient, parse_usage_header
from integrations.ghl import GHLClient
from integrations.zoho import ZohoClient, decode_state, encode_state
from scripts.lib.circuit_breaker import CircuitBreaker
from scripts.lib.errors import (
    APIAuthError,
    APIRateLimitError,
    CircuitOpenError,
    ConfigError,
    PlatformAPIError,
)


def transport_from(responses, seen=None):
    """MockTransport replaying ``responses`` in order, recording requests."""
    queue = list(responses)

    def handler(request):
        if seen is not None:
            seen.append(request)
        return queue.pop(0) if len(queue) > 1 else queue[0]

    return httpx.MockTransport(handler)


class TestPlatformClient:
    @pytest.mark.asyncio
    async def test_retries_429_then_succeeds(self):
        seen = []
        client = CalendlyClient("tok", transport=transport_from([
            httpx.Response(429),
            httpx.Response(429),
            httpx.Response(200, json={"resource": {"uri": "u/1"}}),
        ], seen))
        user = await client.get_current_user()
        assert user == {"uri": "u/1"}
        assert len(seen) == 3
        assert seen[0].headers["Authorization"] == "Bearer tok"

    @pytest.mark.asyncio
    async def test_rate_limit_exhaustion_raises_and_counts_failure(self):
        client = CalendlyClient("tok", max_attempts=2, transport=transport_from([
            httpx.Response(429, headers={"retry-after": "7"}),
        ]))
        with pytest.raises(APIRateLimitError) as exc:
            await client.get_json("/users/me")
        assert exc.value.retry_after == 7
        assert CircuitBreaker.get("calendly").failure_count == 1

    @pytest.mark.asyncio
    async def test_401_maps_to_auth_error_without_retry(self):
        seen = []
        client = CalendlyClient("bad", transport=transport_from([httpx.Response(401)], seen))
        with pytest.raises(APIAuthError):
            await client.get_json("/users/me")
        assert len(seen) == 1
        assert CircuitBreaker.get("calendly").failure_count == 0

    @pytest.mark.asyncio
    async def test_404_is_platform_error_with_status(self):
        client = CalendlyClient("tok", transport=transport_from([
            httpx.Response(404, text="missing"),
        ]))
        with pytest.raises(PlatformAPIError) as exc:
            await client.get_scheduled_event("https://api.calendly.com/scheduled_events/abc")
        assert exc.value.status_code == 404
        assert exc.value.body == "missing"

    @pytest.mark.asyncio
    async def test_breaker_opens_after_repeated_5xx(self):
        seen = []
        client = GHLClient("tok", transport=transport_from([httpx.Response(502)], seen))
        for _ in range(5):
            with pytest.raises(PlatformAPIError):
                await client.list_forms("loc")
        with pytest.raises(CircuitOpenError):
            await client.list_forms("loc")
        assert len(seen) == 5

    @pytest.mark.asyncio
    async def test_transport_error_is_status_zero(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        client = ZohoClient("tok", transport=httpx.MockTransport(handler))
        with pytest.raises(PlatformAPIError) as exc:
            await client.get_modules()
        assert exc.value.status_code == 0


class TestFacebookClient:
    @pytest.mark.asyncio
    async def test_throttle_code_in_400_is_retried(self):
        seen = []
        client = FacebookClient("fb", transport=transport_from([
            httpx.Response(400, json={"error": {"code": 17, "message": "User request limit reached"}}),
            httpx.Response(200, json={"id": "me"}),
        ], seen))
        assert await client.validate_token() == {"id": "me"}
        assert len(seen) == 2
        assert seen[0].url.params["access_token"] == "fb"
        assert "Authorization" not in seen[0].headers

    @pytest.mark.asyncio
    async def test_other_400_is_not_retried(self):
        seen = []
        client = FacebookClient("fb", transport=transport_from([
            httpx.Response(400, json={"error": {"code": 100, "message": "Invalid parameter"}}),
        ], seen))
        with pytest.raises(PlatformAPIError) as exc:
            await client.list_ad_accounts()
        assert exc.value.status_code == 400
        assert len(seen) == 1

    @pytest.mark.asyncio
    async def test_batch_decodes_items_and_usage(self):
        usage = {"acc_id_util_pct": 42}
        client = FacebookClient("fb", transport=transport_from([
            httpx.Response(
                200,
                json=[
                    {"code": 200, "body": json.dumps({"data": [{"id": "c1"}]})},
                    None,
                    {"code": 400, "body": "not json"},
                ],
                headers={"x-ad-account-usage": json.dumps(usage)},
            ),
        ]))
        items, parsed = await client.batch([{"method": "GET", "relative_url": "x"}] * 3)
        assert items[0] == {"code": 200, "body": {"data": [{"id": "c1"}]}}
        assert items[1] == {"code": 0, "body": {}}
        assert items[2] == {"code": 400, "body": {}}
        assert parsed == usage

    @pytest.mark.asyncio
    async def test_campaign_insights_fill_missing_rows(self):
        client = FacebookClient("fb", transport=transport_from([
            httpx.Response(200, json=[
                {"code": 200, "body": json.dumps({"data": [{"spend": "12.5"}]})},
                {"code": 200, "body": json.dumps({"data": []})},
            ]),
        ]))
        rows, _ = await client.get_campaign_insights(["c1", "c2"])
        assert rows == [{"campaign_id": "c1", "spend": "12.5"}, {"campaign_id": "c2"}]

    def test_usage_header_garbage_is_ignored(self):
        assert parse_usage_header(httpx.Headers({"x-ad-account-usage": "{"})) is None
        assert parse_usage_header(httpx.Headers({})) is None

    def test_auth_url_requires_app_credentials(self):
        with patch.dict("os.environ", {"FACEBOOK_APP_ID": "", "FACEBOOK_APP_SECRET": ""}, clear=False):
            with pytest.raises(ConfigError):
                FacebookClient.get_auth_url("p1")

    def test_basic_permission_level_omits_ads_scopes(self):
        with patch.dict("os.environ", {"FACEBOOK_APP_ID": "app", "FACEBOOK_APP_SECRET": "s"}, clear=False):
            url = FacebookClient.get_auth_url("p1", permission_level="basic")
        assert "ads_read" not in url
        assert "state=p1" in url


class TestCalendlyClient:
    @pytest.mark.asyncio
    async def test_scheduled_events_follow_page_tokens(self):
        seen = []
        client = CalendlyClient("tok", transport=transport_from([
            httpx.Response(200, json={"collection": [{"uri": "e1"}], "pagination": {"next_page_token": "p2"}}),
            httpx.Response(200, json={"collection": [{"uri": "e2"}], "pagination": {}}),
        ], seen))
        events = await client.list_scheduled_events("user/1", "2026-01-01T00:00:00Z", "2026-02-01T00:00:00Z")
        assert [e["uri"] for e in events] == ["e1", "e2"]
        assert seen[1].url.params["page_token"] == "p2"

    def test_event_uuid_from_uri(self):
        assert event_uuid("https://api.calendly.com/scheduled_events/ABC/") == "ABC"
        assert event_uuid("ABC") == "ABC"


class TestGHLClient:
    @pytest.mark.asyncio
    async def test_submissions_page_with_start_after(self):
        seen = []
        full_page = [{"id": f"s{i}"} for i in range(100)]
        client = GHLClient("tok", transport=transport_from([
            httpx.Response(200, json={"submissions": full_page, "meta": {}}),
            httpx.Response(200, json={"submissions": [{"id": "last"}], "meta": {}}),
        ], seen))
        pages = [page async for page in client.iter_form_submissions("loc", "form")]
        assert [len(p) for p in pages] == [100, 1]
        assert seen[1].url.params["startAfter"] == "s99"
        assert seen[0].headers["Version"] == "2021-07-28"

    @pytest.mark.asyncio
    async def test_paging_stops_when_last_submission_has_no_id(self):
        seen = []
        full_page = [{"id": f"s{i}"} for i in range(99)] + [{"name": "no id"}]
        client = GHLClient("tok", transport=transport_from([
            httpx.Response(200, json={"submissions": full_page, "meta": {}}),
        ], seen))
        pages = [page async for page in client.iter_form_submissions("loc", "form")]
        assert [len(p) for p in pages] == [100]
        assert len(seen) == 1

    @pytest.mark.asyncio
    async def test_paging_stops_when_cursor_repeats(self):
        seen = []
        full_page = [{"id": f"s{i}"} for i in range(100)]
        client = GHLClient("tok", transport=transport_from([
            httpx.Response(200, json={"submissions": full_page, "meta": {"nextPageUrl": "x"}}),
        ], seen))
        pages = [page async for page in client.iter_form_submissions("loc", "form")]
        assert len(pages) == 2
        assert len(seen) == 2
        assert seen[1].url.params["startAfter"] == "s99"


class TestZohoClient:
    def test_state_round_trip_and_plain_ids(self):
        assert decode_state(encode_state("proj-1")) == "proj-1"
        assert decode_state("proj-2") == "proj-2"

    @pytest.mark.asyncio
    async def test_api_domain_and_auth_header(self):
        seen = []
        client = ZohoClient("tok", api_domain="https://www.zohoapis.eu", transport=transport_from([
            httpx.Response(200, json={"data": [{"id": 1}], "info": {"more_records": False}}),
        ], seen))
        page = await client.get_records("Leads", page=2)
        assert page["data"] == [{"id": 1}]
        assert str(seen[0].url).startswith("https://www.zohoapis.eu/crm/v2/Leads")
        assert seen[0].headers["Authorization"] == "Zoho-oauthtoken tok"
