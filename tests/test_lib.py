"""Tests for the shared helpers in scripts/lib."""

from datetime import date, datetime, timezone
from unittest.mock import patch

import pytest
from cryptography.fernet import Fernet

from scripts.lib import credentials
from scripts.lib import supabase_client
from scripts.lib.circuit_breaker import CircuitBreaker, breaker_settings
from scripts.lib.credentials import CredentialCipher
from scripts.lib.dates import day_bounds, iter_days, local_date, resolve_timezone, short_label
from scripts.lib.errors import (
    APIRateLimitError,
    CircuitOpenError,
    IntegrationNotFoundError,
    SchemaValidationError,
    WebhookSignatureError,
)
from scripts.lib.utils import chunked, parse_iso
from scripts.lib.validation import (
    SlidingWindowRateLimiter,
    sanitize_input,
    validate_email,
    validate_event_type,
    validate_password,
    validate_phone,
    validate_project_name,
    validate_url,
)


class TestCredentialCipher:
    def test_sensitive_fields_are_encrypted(self):
        cipher = CredentialCipher(Fernet.generate_key())
        stored = cipher.encrypt_fields({"access_token": "abc", "user_uri": "u/1"})
        assert stored["encrypted"] is True
        assert stored["access_token"] != "abc"
        assert stored["user_uri"] == "u/1"
        assert cipher.decrypt_fields(stored) == {"access_token": "abc", "user_uri": "u/1"}

    def test_plaintext_rows_pass_through(self):
        cipher = CredentialCipher(Fernet.generate_key())
        assert cipher.decrypt_fields({"api_key": "plain"}) == {"api_key": "plain"}

    def test_already_encrypted_blob_is_not_double_encrypted(self):
        cipher = CredentialCipher(Fernet.generate_key())
        once = cipher.encrypt_fields({"refresh_token": "r"})
        assert cipher.encrypt_fields(once) == once

    def test_wrong_key_raises_value_error(self):
        stored = CredentialCipher(Fernet.generate_key()).encrypt_fields({"api_key": "k"})
        with pytest.raises(ValueError):
            CredentialCipher(Fernet.generate_key()).decrypt_fields(stored)

    def test_get_cipher_uses_env_key(self):
        key = Fernet.generate_key().decode()
        with patch.dict("os.environ", {"CREDENTIALS_ENCRYPTION_KEY": key}, clear=False):
            credentials._cipher = None
            cipher = credentials.get_cipher()
        assert credentials.get_cipher() is cipher
        token = cipher.encrypt("x")
        assert Fernet(key.encode()).decrypt(token.encode()) == b"x"


class TestCircuitBreaker:
    def test_opens_at_threshold(self):
        breaker = CircuitBreaker.get("svc", failure_threshold=3, reset_timeout=60)
        for _ in range(2):
            breaker.record_failure()
        assert breaker.state == CircuitBreaker.CLOSED
        breaker.record_failure()
        assert breaker.state == CircuitBreaker.OPEN
        with pytest.raises(CircuitOpenError):
            breaker.guard()

    def test_half_open_after_timeout_then_closes(self):
        breaker = CircuitBreaker("svc", failure_threshold=1, reset_timeout=0)
        breaker.record_failure()
        assert breaker.can_execute() is True
        assert breaker.state == CircuitBreaker.HALF_OPEN
        breaker.record_success()
        assert breaker.state == CircuitBreaker.CLOSED
        assert breaker.failure_count == 0

    def test_half_open_failure_reopens(self):
        breaker = CircuitBreaker("svc", failure_threshold=1, reset_timeout=0)
        breaker.record_failure()
        breaker.can_execute()
        breaker.record_failure()
        assert breaker.state == CircuitBreaker.OPEN

    def test_registry_and_status(self):
        assert CircuitBreaker.get("a") is CircuitBreaker.get("a")
        CircuitBreaker.get("b")
        services = {s["service"] for s in CircuitBreaker.all_status()}
        assert services == {"a", "b"}
        CircuitBreaker.reset_all()
        assert CircuitBreaker.all_status() == []

    def test_platform_defaults(self):
        assert breaker_settings("facebook") == {"failure_threshold": 3, "reset_timeout": 300}
        assert breaker_settings("ghl") == {"failure_threshold": 5, "reset_timeout": 120}
        assert breaker_settings("linkedin") == {"failure_threshold": 5, "reset_timeout": 60}

    def test_env_overrides_apply_in_registry(self, monkeypatch):
        monkeypatch.setenv("CIRCUIT_ZOHO_CRM_THRESHOLD", "2")
        monkeypatch.setenv("CIRCUIT_ZOHO_CRM_RESET_SECONDS", "15")
        breaker = CircuitBreaker.get("zoho_crm")
        assert (breaker.failure_threshold, breaker.reset_timeout) == (2, 15)
        breaker.record_failure()
        breaker.record_failure()
        assert breaker.state == CircuitBreaker.OPEN
        assert breaker.status()["times_opened"] == 1

    def test_bad_env_value_keeps_default(self, monkeypatch):
        monkeypatch.setenv("CIRCUIT_CALENDLY_THRESHOLD", "lots")
        monkeypatch.setenv("CIRCUIT_CALENDLY_RESET_SECONDS", "")
        assert breaker_settings("calendly") == {"failure_threshold": 5, "reset_timeout": 60}

    def test_explicit_kwargs_beat_config(self, monkeypatch):
        monkeypatch.setenv("CIRCUIT_FACEBOOK_THRESHOLD", "9")
        assert CircuitBreaker.get("facebook", failure_threshold=1).failure_threshold == 1


class TestSupabaseHelpers:
    def test_upsert_row_merges_on_conflict(self, db):
        db.add("ghl_form_submissions", {"submission_id": "s1", "contact_name": "Old"})

        assert supabase_client.upsert_row(
            "ghl_form_submissions", {"submission_id": "s1", "contact_name": "New"},
            on_conflict="submission_id",
        ) is True
        assert supabase_client.upsert_row("ghl_form_submissions", {"submission_id": "s2"}) is True

        rows = db.rows("ghl_form_submissions")
        assert [r["contact_name"] for r in rows if r["submission_id"] == "s1"] == ["New"]
        assert len(rows) == 2

    def test_upsert_row_failure_returns_false(self, db):
        db.fail_tables.add("ghl_form_submissions")
        assert supabase_client.upsert_row(
            "ghl_form_submissions", {"submission_id": "s1"}, on_conflict="submission_id",
        ) is False

    def test_call_rpc_returns_data(self, db):
        db.rpc_results["detect_suspicious_tracking_activity"] = True
        assert supabase_client.call_rpc(
            "detect_suspicious_tracking_activity", {"p_session_id": "s"},
        ) is True
        assert db.rpc_calls == [("detect_suspicious_tracking_activity", {"p_session_id": "s"})]

    def test_call_rpc_failure_returns_none(self, db):
        db.fail_tables.add("check_rate_limit")
        assert supabase_client.call_rpc("check_rate_limit") is None
        assert db.rpc_calls == [("check_rate_limit", {})]


class TestErrors:
    @pytest.mark.parametrize("error, status", [
        (SchemaValidationError("bad"), 400),
        (WebhookSignatureError(), 401),
        (IntegrationNotFoundError("calendly", "p1"), 404),
        (APIRateLimitError("https://x"), 503),
        (CircuitOpenError("facebook", 5, 30), 503),
    ])
    def test_http_status_mapping(self, error, status):
        assert error.http_status == status

    def test_message_and_code(self):
        error = IntegrationNotFoundError("ghl", "p9")
        assert error.message == "No connected ghl integration for project p9"
        assert error.code == "INTEGRATION_NOT_FOUND"
        assert error.details["project_id"] == "p9"


class TestValidation:
    def test_email(self):
        assert validate_email("a@b.co")
        assert not validate_email("nope")
        assert not validate_email("a" * 250 + "@b.co")
        assert not validate_email(None)

    def test_password_rules(self):
        assert validate_password("Str0ng!pass") == []
        assert len(validate_password("weak")) == 4

    def test_sanitize_strips_markup(self):
        assert sanitize_input(" <b>hi</b> javascript:x onclick=y ") == "bhi/b x y"

    def test_project_name(self):
        assert validate_project_name("Spring Launch_2026")
        assert not validate_project_name("x")
        assert not validate_project_name("bad$name")

    def test_url_phone_event_type(self):
        assert validate_url("https://example.com/page")
        assert not validate_url("ftp://example.com")
        assert validate_phone("+1 (555) 123-4567")
        assert not validate_phone("12")
        assert validate_event_type("page_view")
        assert not validate_event_type("PageView")

    def test_sliding_window_limiter(self):
        limiter = SlidingWindowRateLimiter(max_requests=2, window_seconds=10)
        assert limiter.is_allowed("ip", now=100)
        assert limiter.is_allowed("ip", now=101)
        assert not limiter.is_allowed("ip", now=102)
        assert limiter.is_allowed("other", now=102)
        assert limiter.is_allowed("ip", now=111)


class TestDatesAndUtils:
    def test_parse_iso_variants(self):
        expected = datetime(2026, 3, 1, 12, tzinfo=timezone.utc)
        assert parse_iso("2026-03-01T12:00:00Z") == expected
        assert parse_iso("2026-03-01T12:00:00") == expected
        assert parse_iso("2026-03-01T07:00:00-05:00") == expected
        assert parse_iso("garbage") is None
        assert parse_iso("") is None

    def test_local_date_crosses_midnight(self):
        tz = resolve_timezone("America/New_York")
        assert local_date("2026-03-02T03:00:00Z", tz) == date(2026, 3, 1)

    def test_unknown_timezone_falls_back_to_utc(self):
        assert str(resolve_timezone("Mars/Olympus")) == "UTC"
        assert str(resolve_timezone(None)) == "UTC"

    def test_day_bounds_in_utc(self):
        start, end = day_bounds(date(2026, 1, 5), resolve_timezone("America/New_York"))
        assert start == datetime(2026, 1, 5, 5, tzinfo=timezone.utc)
        assert end == datetime(2026, 1, 6, 5, tzinfo=timezone.utc)

    def test_iter_days_and_labels(self):
        days = list(iter_days(date(2026, 1, 30), date(2026, 2, 2)))
        assert [short_label(d) for d in days] == ["Jan 30", "Jan 31", "Feb 1", "Feb 2"]
        assert list(iter_days(date(2026, 1, 5), date(2026, 1, 1))) == [date(2026, 1, 5)]

    def test_chunked(self):
        assert list(chunked([1, 2, 3, 4, 5], 2)) == [[1, 2], [3, 4], [5]]
