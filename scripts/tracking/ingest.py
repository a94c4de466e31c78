"""
Pulse Hub — Tracking Ingestion
================================

Stores events posted by the browser pixel.

  track_event         pixel-authenticated ingestion (sessions + attribution)
  secure_track_event  project-scoped ingestion with per-IP rate limiting,
                      field validation and an audit trail for contact data
"""
from __future__ import annotations

import hashlib
from typing import Dict, Optional
from urllib.parse import urlparse

from scripts.analytics.attribution import record_attribution
from scripts.lib.data_sync import _safe_float
from scripts.lib.errors import InvalidPixelError, RateLimitExceededError, SchemaValidationError
from scripts.lib.logger import setup_logger
from scripts.lib.supabase_client import call_rpc, get_client, insert_row, utc_now
from scripts.lib.validation import (
    SlidingWindowRateLimiter,
    validate_email,
    validate_event_type,
    validate_phone,
    validate_url,
)

logger = setup_logger("tracking")

SECURE_RATE_LIMIT = 100
SECURE_RATE_WINDOW_SECONDS = 3600

secure_rate_limiter = SlidingWindowRateLimiter(SECURE_RATE_LIMIT, SECURE_RATE_WINDOW_SECONDS)


def hash_ip(ip: Optional[str]) -> Optional[str]:
    """SHA-256 of the client IP, or None when it is unknown."""
    if not ip or ip == "unknown":
        return None
    return hashlib.sha256(ip.encode("utf-8")).hexdigest()


def domain_allowed(page_url: str, domains) -> bool:
    """True when the page host is one of ``domains`` or a subdomain of one."""
    if not domains:
        return True
    host = (urlparse(page_url or "").hostname or "").lower()
    for domain in domains:
        domain = (domain or "").strip().lower()
        if domain.startswith("www."):
            domain = domain[4:]
        if host == domain or host.endswith(f".{domain}") or host == f"www.{domain}":
            return True
    return False


def get_active_pixel(pixel_id: str) -> Dict:
    if not pixel_id:
        raise InvalidPixelError(pixel_id)
    result = (
        get_client().table("tracking_pixels")
        .select("project_id, domains, is_active")
        .eq("pixel_id", pixel_id)
        .eq("is_active", True)
        .limit(1)
        .execute()
    )
    if not result.data:
        logger.warning("Invalid or inactive pixel: %s", pixel_id)
        raise InvalidPixelError(pixel_id)
    return result.data[0]


def _ensure_session(payload: Dict, project_id: str, ip_hash: Optional[str]) -> Dict:
    client = get_client()
    session_id = payload["session_id"]
    existing = (
        client.table("tracking_sessions")
        .select("*")
        .eq("session_id", session_id)
        .limit(1)
        .execute()
    ).data
    if existing:
        client.table("tracking_sessions").update(
            {"last_activity_at": utc_now()}
        ).eq("session_id", session_id).execute()
        return existing[0]

    utm = payload.get("utm") or {}
    click_ids = payload.get("click_ids") or {}
    device = payload.get("device_info") or {}
    session = insert_row("tracking_sessions", {
        "session_id": session_id,
        "project_id": project_id,
        "utm_source": utm.get("source"),
        "utm_medium": utm.get("medium"),
        "utm_campaign": utm.get("campaign"),
        "utm_term": utm.get("term"),
        "utm_content": utm.get("content"),
        "referrer_url": payload.get("referrer_url"),
        "landing_page_url": payload.get("page_url"),
        "ip_hash": ip_hash,
        "user_agent": device.get("user_agent"),
        "device_type": device.get("device_type"),
        "browser": device.get("browser"),
        "operating_system": device.get("os"),
        "click_id_facebook": click_ids.get("fbclid"),
        "click_id_google": click_ids.get("gclid"),
        "click_id_tiktok": click_ids.get("ttclid"),
    })
    if session is None:
        raise RuntimeError("Failed to create session")
    return session


def track_event(payload: Dict, client_ip: Optional[str] = None) -> Dict:
    """
    Record one pixel event.

    Raises:
        InvalidPixelError: pixel unknown, inactive, or the page domain is not allowed.
        SchemaValidationError: session_id or event_type missing.
    """
    pixel = get_active_pixel(payload.get("pixel_id"))
    if not payload.get("session_id") or not payload.get("event_type"):
        raise SchemaValidationError("sessionId and eventType are required", field="session_id")
    if not domain_allowed(payload.get("page_url"), pixel.get("domains")):
        raise InvalidPixelError(payload["pixel_id"], "Domain not allowed for this pixel")

    project_id = pixel["project_id"]
    session = _ensure_session(payload, project_id, hash_ip(client_ip))

    revenue = payload.get("revenue") or {}
    contact = payload.get("contact_info") or {}
    event = insert_row("tracking_events", {
        "session_id": payload["session_id"],
        "project_id": project_id,
        "event_type": payload["event_type"],
        "event_name": payload.get("event_name"),
        "page_url": payload.get("page_url"),
        "form_data": payload.get("form_data"),
        "revenue_amount": revenue.get("amount"),
        "currency": revenue.get("currency") or "USD",
        "contact_email": contact.get("email"),
        "contact_phone": contact.get("phone"),
        "contact_name": contact.get("name"),
        "custom_data": payload.get("custom_data"),
    })
    if event is None:
        raise RuntimeError("Failed to create event")

    amount = _safe_float(revenue.get("amount")) or 0
    if amount > 0:
        if record_attribution(project_id, session, event, amount) is None:
            logger.error("Attribution insert failed for event %s", event.get("id"))

    logger.debug("Tracked %s for project %s", payload["event_type"], project_id)
    return {"success": True, "eventId": event.get("id")}


def _validate_secure_fields(payload: Dict):
    if not validate_event_type(payload.get("event_type")):
        raise SchemaValidationError("Invalid event type", field="event_type")
    if not validate_url(payload.get("page_url")):
        raise SchemaValidationError("Invalid page URL", field="page_url")
    if payload.get("contact_email") and not validate_email(payload["contact_email"]):
        raise SchemaValidationError("Invalid email address", field="contact_email")
    if payload.get("contact_phone") and not validate_phone(payload["contact_phone"]):
        raise SchemaValidationError("Invalid phone number", field="contact_phone")


def secure_track_event(payload: Dict, client_ip: Optional[str] = None,
                       user_agent: Optional[str] = None) -> Dict:
    """
    Record an event sent straight to a project (no pixel lookup).

    Raises:
        RateLimitExceededError: more than 100 requests in the last hour from this IP.
        SchemaValidationError: required field missing or malformed.
    """
    identifier = client_ip or "unknown"
    if not secure_rate_limiter.is_allowed(identifier):
        logger.warning("Rate limit exceeded for IP %s", identifier)
        raise RateLimitExceededError(identifier, SECURE_RATE_LIMIT, SECURE_RATE_WINDOW_SECONDS)

    required = ("event_type", "page_url", "project_id", "session_id")
    if any(not payload.get(field) for field in required):
        raise SchemaValidationError("Missing required fields")
    _validate_secure_fields(payload)

    # Flagging only; the event is stored either way.
    call_rpc("detect_suspicious_tracking_activity", {
        "p_session_id": payload["session_id"],
        "p_project_id": payload["project_id"],
        "p_client_ip": client_ip,
    })

    if payload.get("contact_email") or payload.get("contact_phone") or payload.get("contact_name"):
        audit = insert_row("security_audit_logs", {
            "user_id": None,
            "action": "contact_data_tracked",
            "resource_type": "tracking_events",
            "resource_id": None,
            "severity": "warning",
            "details": {
                "has_email": bool(payload.get("contact_email")),
                "has_phone": bool(payload.get("contact_phone")),
                "has_name": bool(payload.get("contact_name")),
                "client_ip": identifier,
                "user_agent": user_agent or "unknown",
                "page_url": payload["page_url"],
            },
        })
        if audit is None:
            logger.warning("Could not write audit log for project %s", payload["project_id"])

    event = insert_row("tracking_events", {
        "event_type": payload["event_type"],
        "page_url": payload["page_url"],
        "project_id": payload["project_id"],
        "session_id": payload["session_id"],
        "contact_email": payload.get("contact_email"),
        "contact_phone": payload.get("contact_phone"),
        "contact_name": payload.get("contact_name"),
        "custom_data": payload.get("custom_data") or {},
        "event_timestamp": utc_now(),
    })
    if event is None:
        raise RuntimeError("Failed to store tracking event")
    return {"success": True, "event_id": event.get("id")}
