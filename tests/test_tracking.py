"""Tests for pixel ingestion, the secure endpoint and pixel rendering."""

import pytest

from scripts.lib.errors import InvalidPixelError, RateLimitExceededError, SchemaValidationError
from scripts.tracking import ingest, pixel


@pytest.fixture
def active_pixel(db):
    db.add("tracking_pixels", {
        "pixel_id": "px_live", "project_id": "p1",
        "domains": ["shop.example.com"], "is_active": True,
    })
    db.add("tracking_pixels", {
        "pixel_id": "px_off", "project_id": "p1", "domains": None, "is_active": False,
    })
    return db


def pixel_payload(**overrides):
    payload = {
        "pixel_id": "px_live",
        "session_id": "sess_1",
        "event_type": "page_view",
        "page_url": "https://shop.example.com/landing",
        "utm": {"source": "facebook", "campaign": "spring"},
        "click_ids": {"fbclid": "fb-123"},
        "device_info": {"device_type": "mobile", "browser": "Safari"},
    }
    payload.update(overrides)
    return payload


class TestHelpers:
    def test_hash_ip(self):
        assert ingest.hash_ip("1.2.3.4") == ingest.hash_ip("1.2.3.4")
        assert len(ingest.hash_ip("1.2.3.4")) == 64
        assert ingest.hash_ip("unknown") is None
        assert ingest.hash_ip(None) is None

    @pytest.mark.parametrize("url, domains, expected", [
        ("https://shop.example.com/a", None, True),
        ("https://shop.example.com/a", ["shop.example.com"], True),
        ("https://blog.example.com/a", ["example.com"], True),
        ("https://www.example.com/a", ["www.example.com"], True),
        ("https://example.com.evil.io/a", ["example.com"], False),
        ("https://other.io/a", ["example.com"], False),
        ("not a url", ["example.com"], False),
    ])
    def test_domain_allowed(self, url, domains, expected):
        assert ingest.domain_allowed(url, domains) is expected


class TestTrackEvent:
    def test_creates_session_and_event(self, active_pixel):
        result = ingest.track_event(pixel_payload(), client_ip="10.0.0.1")

        assert result["success"] is True
        event = active_pixel.rows("tracking_events")[0]
        assert result["eventId"] == event["id"]
        assert event["project_id"] == "p1"
        assert event["currency"] == "USD"
        session = active_pixel.rows("tracking_sessions")[0]
        assert session["utm_source"] == "facebook"
        assert session["click_id_facebook"] == "fb-123"
        assert session["landing_page_url"] == "https://shop.example.com/landing"
        assert session["ip_hash"] == ingest.hash_ip("10.0.0.1")
        assert active_pixel.rows("attribution_data") == []

    def test_existing_session_is_reused(self, active_pixel):
        ingest.track_event(pixel_payload())
        ingest.track_event(pixel_payload(event_type="click"))

        assert len(active_pixel.rows("tracking_sessions")) == 1
        assert len(active_pixel.rows("tracking_events")) == 2
        assert active_pixel.rows("tracking_sessions")[0]["last_activity_at"]

    def test_revenue_records_attribution(self, active_pixel):
        ingest.track_event(pixel_payload(
            event_type="purchase",
            revenue={"amount": 49.5, "currency": "EUR"},
            contact_info={"email": "buyer@example.com"},
        ))

        event = active_pixel.rows("tracking_events")[0]
        assert event["currency"] == "EUR"
        assert event["contact_email"] == "buyer@example.com"
        attribution = active_pixel.rows("attribution_data")[0]
        assert attribution["attributed_revenue"] == 49.5
        assert attribution["attribution_model"] == "first_touch"
        assert attribution["utm_campaign"] == "spring"
        assert attribution["event_id"] == event["id"]

    def test_domain_not_allowed(self, active_pixel):
        with pytest.raises(InvalidPixelError) as exc:
            ingest.track_event(pixel_payload(page_url="https://elsewhere.io/"))
        assert exc.value.message == "Domain not allowed for this pixel"
        assert active_pixel.rows("tracking_events") == []

    @pytest.mark.parametrize("pixel_id", ["px_off", "px_missing", None])
    def test_unknown_or_inactive_pixel(self, active_pixel, pixel_id):
        with pytest.raises(InvalidPixelError):
            ingest.track_event(pixel_payload(pixel_id=pixel_id))

    def test_session_required(self, active_pixel):
        with pytest.raises(SchemaValidationError):
            ingest.track_event(pixel_payload(session_id=""))


def secure_payload(**overrides):
    payload = {
        "event_type": "form_submission",
        "page_url": "https://shop.example.com/thanks",
        "project_id": "p1",
        "session_id": "sess_9",
    }
    payload.update(overrides)
    return payload


class TestSecureTrackEvent:
    def test_stores_event_without_audit(self, db):
        result = ingest.secure_track_event(secure_payload(), client_ip="10.0.0.2")

        event = db.rows("tracking_events")[0]
        assert result == {"success": True, "event_id": event["id"]}
        assert event["custom_data"] == {}
        assert event["event_timestamp"]
        assert db.rows("security_audit_logs") == []
        assert db.rpc_calls == [("detect_suspicious_tracking_activity", {
            "p_session_id": "sess_9", "p_project_id": "p1", "p_client_ip": "10.0.0.2",
        })]

    def test_failed_suspicious_activity_check_still_stores(self, db):
        db.fail_tables.add("detect_suspicious_tracking_activity")
        assert ingest.secure_track_event(secure_payload())["success"] is True
        assert len(db.rows("tracking_events")) == 1

    def test_contact_data_is_audited(self, db):
        ingest.secure_track_event(
            secure_payload(contact_email="lead@example.com", contact_name="Lead"),
            client_ip="10.0.0.2", user_agent="Mozilla/5.0",
        )

        audit = db.rows("security_audit_logs")[0]
        assert audit["action"] == "contact_data_tracked"
        assert audit["details"]["has_email"] is True
        assert audit["details"]["has_phone"] is False
        assert audit["details"]["user_agent"] == "Mozilla/5.0"

    @pytest.mark.parametrize("overrides, message", [
        ({"session_id": ""}, "Missing required fields"),
        ({"event_type": "Page View"}, "Invalid event type"),
        ({"page_url": "ftp://shop.example.com"}, "Invalid page URL"),
        ({"contact_email": "not-an-email"}, "Invalid email address"),
        ({"contact_phone": "call me"}, "Invalid phone number"),
    ])
    def test_validation(self, db, overrides, message):
        with pytest.raises(SchemaValidationError) as exc:
            ingest.secure_track_event(secure_payload(**overrides), client_ip="10.0.0.3")
        assert exc.value.message == message
        assert db.rows("tracking_events") == []

    def test_rate_limited_per_ip(self, db):
        for _ in range(ingest.SECURE_RATE_LIMIT):
            assert ingest.secure_rate_limiter.is_allowed("10.0.0.4")

        with pytest.raises(RateLimitExceededError) as exc:
            ingest.secure_track_event(secure_payload(), client_ip="10.0.0.4")
        assert exc.value.http_status == 429

        assert ingest.secure_track_event(secure_payload(), client_ip="10.0.0.5")["success"]


class TestPixel:
    def test_javascript_substitution(self):
        js = pixel.pixel_javascript("px_abc", "https://hub.example.com/")
        assert 'var PIXEL_ID = "px_abc";' in js
        assert 'var API_URL = "https://hub.example.com/api/track/event";' in js
        assert "__PIXEL_ID__" not in js

    def test_script_snippet(self):
        snippet = pixel.generate_pixel_script("px_abc", "https://hub.example.com")
        assert snippet.startswith("<!-- Pulse Hub Tracking Pixel -->\n<script>\n")
        assert snippet.endswith("</script>\n")

    def test_create_pixel(self, db):
        created = pixel.create_pixel("p1", "Main site", domains=[" Shop.Example.com ", ""])

        stored = db.rows("tracking_pixels")[0]
        assert created["pixel_id"].startswith("px_")
        assert stored["domains"] == ["shop.example.com"]
        assert stored["conversion_events"] == ["form_submission", "purchase"]
        assert stored["is_active"] is True

    def test_create_pixel_without_domains(self, db):
        assert pixel.create_pixel("p1", "Any")["domains"] is None

    def test_create_pixel_requires_name(self, db):
        with pytest.raises(SchemaValidationError):
            pixel.create_pixel("p1", "<>")
