"""
Pulse Hub — Calendly Sync Engine
==================================

Keeps calendly_events in step with Calendly:

  sync_gaps          fill in events missing from the last 48 h (7 d in debug)
  incremental_sync   windowed upsert of every tracked event, logged to
                     calendly_sync_logs
  refresh_statuses   re-check recent active events for cancellations
  handle_webhook     invitee.created / invitee.canceled push notifications
  list_event_types / save_event_mappings
                     which event types a project tracks

Only event types with an active row in calendly_event_mappings are stored.
"""
from __future__ import annotations

import hashlib
import hmac
import os
import time
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple

from integrations.calendly import CalendlyClient
from scripts.lib.credentials import get_cipher
from scripts.lib.data_sync import (
    CANCELLED,
    calendly_event_row,
    normalize_calendly_status,
)
from scripts.lib.errors import (
    APIRateLimitError,
    IntegrationNotFoundError,
    PlatformAPIError,
    SchemaValidationError,
    WebhookSignatureError,
)
from scripts.lib.logger import setup_logger
from scripts.lib.supabase_client import (
    get_client,
    insert_row,
    mark_synced,
    upsert_rows,
    utc_now,
)
from scripts.lib.utils import chunked, parse_iso, pause
from scripts.sync import oauth_store

logger = setup_logger("calendly_sync")

PLATFORM = "calendly"

GAP_WINDOW = timedelta(hours=48)
DEBUG_GAP_WINDOW = timedelta(days=7)
DEEP_SYNC_DAYS = 90
INCREMENTAL_OVERLAP = timedelta(hours=1)
FUTURE_WINDOW = timedelta(days=30)

STATUS_REFRESH_WINDOW = timedelta(days=3)
STATUS_BATCH_SIZE = 10

WEBHOOK_TOLERANCE_SECONDS = 180
WEBHOOK_FETCH_ATTEMPTS = 3


# ─── Shared helpers ───────────────────────────────────────────

def get_event_mappings(project_id: str) -> Dict[str, str]:
    """Active mappings as {event_type_uri: event_type_name}."""
    result = (
        get_client().table("calendly_event_mappings")
        .select("calendly_event_type_id, event_type_name")
        .eq("project_id", project_id)
        .eq("is_active", True)
        .execute()
    )
    return {
        row["calendly_event_type_id"]: row.get("event_type_name")
        for row in result.data or []
    }


async def load_client(project_id: str) -> Tuple[CalendlyClient, str]:
    """
    Calendly client and user URI for a project.

    Looks up and stores the user URI when an older token payload lacks it.

    Raises:
        IntegrationNotFoundError: no stored access token.
    """
    data = oauth_store.get_integration_data(project_id, PLATFORM)
    if not data or not data.get("access_token"):
        raise IntegrationNotFoundError(PLATFORM, project_id)

    client = CalendlyClient(data["access_token"])
    user_uri = data.get("user_uri")
    if not user_uri:
        user = await client.get_current_user()
        user_uri = user.get("uri")
        oauth_store.save_integration_data(project_id, PLATFORM, {
            "user_uri": user_uri,
            "organization_uri": user.get("current_organization"),
        })
    return client, user_uri


async def _first_invitee(client: CalendlyClient, event_uri: str) -> Optional[Dict]:
    try:
        invitees = await client.list_invitees(event_uri)
    except PlatformAPIError as e:
        logger.warning("Could not load invitees for %s: %s", event_uri, e)
        return None
    return invitees[0] if invitees else None


def _existing_event_ids(project_id: str, uris: List[str]) -> set:
    if not uris:
        return set()
    result = (
        get_client().table("calendly_events")
        .select("calendly_event_id")
        .eq("project_id", project_id)
        .in_("calendly_event_id", uris)
        .execute()
    )
    return {row["calendly_event_id"] for row in result.data or []}


# ─── Gap sync ─────────────────────────────────────────────────

async def sync_gaps(project_id: str = None, debug_mode: bool = False) -> Dict:
    """
    Fetch recent scheduled events and insert the ones missing locally.

    Returns:
        {success, gapsFound, eventsSynced, projectsProcessed, debugInfo, timestamp}
    """
    now = datetime.now(timezone.utc)
    sync_from = now - (DEBUG_GAP_WINDOW if debug_mode else GAP_WINDOW)
    integrations = oauth_store.get_connected_integrations(PLATFORM, project_id)

    gaps_found = 0
    events_synced = 0
    projects_processed = 0
    debug_info: List[Dict] = []

    for integration in integrations:
        pid = integration["project_id"]
        try:
            mappings = get_event_mappings(pid)
            if not mappings:
                logger.warning("Project %s has no active event type mappings", pid)
                debug_info.append({
                    "projectId": pid, "warning": "No active event type mappings found",
                })
                continue

            try:
                client, user_uri = await load_client(pid)
            except IntegrationNotFoundError:
                logger.warning("Project %s has no Calendly token, skipping", pid)
                debug_info.append({"projectId": pid, "warning": "Missing access token"})
                continue

            events = await client.list_scheduled_events(user_uri, sync_from, now)
            tracked = [e for e in events if e.get("event_type") in mappings]
            existing = _existing_event_ids(pid, [e["uri"] for e in tracked])
            missing = [e for e in tracked if e["uri"] not in existing]
            gaps_found += len(missing)

            rows = []
            for event in missing:
                invitee = await _first_invitee(client, event["uri"])
                rows.append(calendly_event_row(
                    pid, event, mappings.get(event.get("event_type")), invitee,
                ))
            if rows and upsert_rows("calendly_events", rows, on_conflict="calendly_event_id"):
                events_synced += len(rows)

            mark_synced(pid, PLATFORM)
            projects_processed += 1
            debug_info.append({
                "projectId": pid,
                "apiEvents": len(events),
                "trackedEvents": len(tracked),
                "missingEvents": len(missing),
            })
            logger.info(
                "Project %s: %d tracked events, %d gaps filled", pid, len(tracked), len(rows),
            )
        except Exception as e:
            logger.error("Gap sync failed for project %s: %s", pid, e)
            debug_info.append({"projectId": pid, "error": str(e)})

    result = {
        "success": True,
        "gapsFound": gaps_found,
        "eventsSynced": events_synced,
        "projectsProcessed": projects_processed,
        "timestamp": utc_now(),
    }
    if debug_mode:
        result["debugInfo"] = debug_info
    return result


# ─── Incremental sync ─────────────────────────────────────────

def _sync_start(integration: Dict, now: datetime, incremental: bool,
                deep_sync: bool, days_back: int) -> datetime:
    if deep_sync:
        return now - timedelta(days=DEEP_SYNC_DAYS)
    last_sync = parse_iso(integration.get("last_sync"))
    if incremental and last_sync:
        return last_sync - INCREMENTAL_OVERLAP
    return now - timedelta(days=days_back)


def _log_sync(project_id: str, sync_type: str, status: str, stats: Dict,
              started: float, range_start: datetime, range_end: datetime,
              error: str = None):
    try:
        get_client().table("calendly_sync_logs").insert({
            "project_id": project_id,
            "sync_type": sync_type,
            "sync_status": status,
            "events_processed": stats.get("events_processed", 0),
            "events_created": stats.get("events_created", 0),
            "events_updated": stats.get("events_updated", 0),
            "sync_duration_ms": int((time.time() - started) * 1000),
            "error_message": error,
            "sync_range_start": range_start.isoformat(),
            "sync_range_end": range_end.isoformat(),
            "created_at": utc_now(),
        }).execute()
    except Exception as e:
        logger.warning("Could not write calendly_sync_logs for %s: %s", project_id, e)


async def _sync_project(integration: Dict, start: datetime, end: datetime) -> Dict:
    pid = integration["project_id"]
    mappings = get_event_mappings(pid)
    if not mappings:
        return {"events_processed": 0, "events_created": 0, "events_updated": 0}

    client, user_uri = await load_client(pid)
    events = await client.list_scheduled_events(
        user_uri, start, end, sort="start_time:asc",
    )
    tracked = [e for e in events if e.get("event_type") in mappings]
    existing = _existing_event_ids(pid, [e["uri"] for e in tracked])

    new_rows = []
    for event in tracked:
        if event["uri"] in existing:
            continue
        invitee = await _first_invitee(client, event["uri"])
        new_rows.append(calendly_event_row(
            pid, event, mappings.get(event.get("event_type")), invitee,
        ))
    if new_rows and not upsert_rows("calendly_events", new_rows, on_conflict="calendly_event_id"):
        raise RuntimeError("calendly_events upsert failed")

    # Stored rows keep the invitee captured when they were first written.
    updated = 0
    for event in tracked:
        if event["uri"] not in existing:
            continue
        row = calendly_event_row(pid, event, mappings.get(event.get("event_type")))
        for column in ("invitee_name", "invitee_email", "created_at"):
            row.pop(column, None)
        (
            get_client().table("calendly_events").update(row)
            .eq("project_id", pid)
            .eq("calendly_event_id", event["uri"])
            .execute()
        )
        updated += 1

    return {
        "events_processed": len(new_rows) + updated,
        "events_created": len(new_rows),
        "events_updated": updated,
    }


async def incremental_sync(project_id: str = None, incremental: bool = True,
                           deep_sync: bool = False, days_back: int = 7) -> Dict:
    """
    Upsert every tracked event in the sync window for each connected project.

    Raises:
        IntegrationNotFoundError: no connected Calendly integrations.
    """
    integrations = oauth_store.get_connected_integrations(PLATFORM, project_id)
    if not integrations:
        raise IntegrationNotFoundError(PLATFORM, project_id)

    sync_mode = "deep" if deep_sync else "incremental" if incremental else "default"
    sync_type = "deep" if deep_sync else "incremental" if incremental else "manual"
    results = []
    processed = errors = 0

    for index, integration in enumerate(integrations):
        if index:
            await pause(2)
        pid = integration["project_id"]
        now = datetime.now(timezone.utc)
        start = _sync_start(integration, now, incremental, deep_sync, days_back)
        end = now + FUTURE_WINDOW
        started = time.time()

        try:
            stats = await _sync_project(integration, start, end)
            mark_synced(pid, PLATFORM)
            _log_sync(pid, sync_type, "completed", stats, started, start, end)
            results.append({"project_id": pid, "status": "success", **stats})
            processed += 1
        except Exception as e:
            logger.error("Incremental sync failed for project %s: %s", pid, e)
            _log_sync(pid, sync_type, "failed", {}, started, start, end, error=str(e))
            results.append({"project_id": pid, "status": "error", "error": str(e)})
            errors += 1

    logger.info(
        "Calendly %s sync: %d processed, %d errors", sync_mode, processed, errors,
    )
    return {
        "success": True,
        "message": "Incremental sync completed",
        "results": results,
        "stats": {
            "projectsProcessed": processed,
            "projectsWithErrors": errors,
            "totalProjects": len(integrations),
            "syncMode": sync_mode,
        },
    }


# ─── Status refresh ───────────────────────────────────────────

def _status_update(new_status: str, old_status: str) -> Dict:
    update = {"status": new_status, "updated_at": utc_now()}
    if new_status == CANCELLED and old_status != CANCELLED:
        update["cancelled_at"] = utc_now()
    return update


async def refresh_statuses(project_id: str = None) -> Dict:
    """Re-read active events scheduled in the last 3 days and record changes."""
    now = datetime.now(timezone.utc)
    checked = updated = errors = 0

    for integration in oauth_store.get_connected_integrations(PLATFORM, project_id):
        pid = integration["project_id"]
        try:
            client, _ = await load_client(pid)
        except IntegrationNotFoundError:
            logger.warning("Project %s has no Calendly token, skipping refresh", pid)
            continue

        events = (
            get_client().table("calendly_events")
            .select("id, calendly_event_id, scheduled_at, status")
            .eq("project_id", pid)
            .eq("status", "active")
            .lt("scheduled_at", now.isoformat())
            .gte("scheduled_at", (now - STATUS_REFRESH_WINDOW).isoformat())
            .execute()
        ).data or []
        checked += len(events)

        batches = list(chunked(events, STATUS_BATCH_SIZE))
        for batch_index, batch in enumerate(batches):
            for event in batch:
                try:
                    try:
                        resource = await client.get_scheduled_event(event["calendly_event_id"])
                        new_status = normalize_calendly_status(resource.get("status"))
                    except PlatformAPIError as e:
                        if e.status_code != 404:
                            raise
                        logger.info(
                            "Event %s gone from Calendly, marking cancelled",
                            event["calendly_event_id"],
                        )
                        new_status = CANCELLED

                    if new_status != event["status"]:
                        get_client().table("calendly_events").update(
                            _status_update(new_status, event["status"])
                        ).eq("id", event["id"]).execute()
                        updated += 1
                except Exception as e:
                    logger.error(
                        "Status refresh failed for %s: %s", event["calendly_event_id"], e,
                    )
                    errors += 1
                await pause(0.2)

            if batch_index < len(batches) - 1:
                await pause(1)

    logger.info("Status refresh: %d checked, %d updated, %d errors", checked, updated, errors)
    return {
        "success": True,
        "message": "Status refresh completed",
        "stats": {"events_checked": checked, "events_updated": updated, "errors": errors},
    }


# ─── Webhook ──────────────────────────────────────────────────

def verify_webhook_signature(raw_body: bytes, signature_header: Optional[str],
                             signing_key: Optional[str] = None,
                             now: float = None) -> bool:
    """
    Check a ``calendly-webhook-signature: t=<ts>,v1=<hex>`` header.

    Raises:
        WebhookSignatureError: header missing, malformed, stale or wrong.
    """
    signing_key = signing_key or os.getenv("CALENDLY_WEBHOOK_SIGNING_KEY")
    if not signing_key:
        logger.warning("CALENDLY_WEBHOOK_SIGNING_KEY not set, skipping signature check")
        return False
    if not signature_header:
        raise WebhookSignatureError("Missing webhook signature")

    parts = dict(
        piece.split("=", 1) for piece in signature_header.split(",") if "=" in piece
    )
    timestamp, signature = parts.get("t"), parts.get("v1")
    if not timestamp or not signature:
        raise WebhookSignatureError("Invalid signature format")

    try:
        age = abs((now if now is not None else time.time()) - int(timestamp))
    except ValueError:
        raise WebhookSignatureError("Invalid signature timestamp")
    if age > WEBHOOK_TOLERANCE_SECONDS:
        raise WebhookSignatureError("Webhook signature expired")

    if isinstance(raw_body, str):
        raw_body = raw_body.encode()
    expected = hmac.new(
        signing_key.encode(), timestamp.encode() + b"." + raw_body, hashlib.sha256,
    ).hexdigest()
    if not hmac.compare_digest(expected, signature):
        raise WebhookSignatureError()
    return True


async def _fetch_event_with_retry(client: CalendlyClient, uri: str) -> Optional[Dict]:
    """Full scheduled event, None on 404; 5xx and 429 retried with 2^n s waits."""
    for attempt in range(1, WEBHOOK_FETCH_ATTEMPTS + 1):
        try:
            return await client.get_scheduled_event(uri)
        except PlatformAPIError as e:
            if e.status_code == 404:
                logger.warning("Webhook event %s not found, skipping", uri)
                return None
            if attempt == WEBHOOK_FETCH_ATTEMPTS or e.status_code < 500:
                raise
        except APIRateLimitError:
            if attempt == WEBHOOK_FETCH_ATTEMPTS:
                raise
        await pause(2 ** attempt)
    return None


def _webhook_token() -> Optional[str]:
    """Most recently updated Calendly token (any project)."""
    result = (
        get_client().table("project_integration_data")
        .select("*")
        .eq("platform", PLATFORM)
        .order("updated_at", desc=True)
        .limit(1)
        .execute()
    )
    if not result.data:
        return None
    return get_cipher().decrypt_fields(result.data[0]["data"]).get("access_token")


async def handle_webhook(body: Dict, raw_body: bytes = b"",
                         signature_header: str = None) -> Dict:
    """Apply an invitee.created / invitee.canceled notification."""
    verify_webhook_signature(raw_body, signature_header)

    event_name = body.get("event")
    if event_name not in ("invitee.created", "invitee.canceled"):
        return {"received": True, "ignored": event_name}

    payload = body.get("payload") or {}
    scheduled = payload.get("scheduled_event") or {}
    event_uri = scheduled.get("uri") or payload.get("event")
    if not event_uri:
        raise SchemaValidationError("Missing scheduled event URI", field="scheduled_event")

    token = _webhook_token()
    if not token:
        raise IntegrationNotFoundError(PLATFORM)

    resource = await _fetch_event_with_retry(CalendlyClient(token), event_uri)
    if resource is None:
        return {"received": True, "skipped": "event_not_found"}

    event_type = resource.get("event_type")
    mappings = (
        get_client().table("calendly_event_mappings")
        .select("project_id, event_type_name")
        .eq("calendly_event_type_id", event_type)
        .eq("is_active", True)
        .execute()
    ).data or []
    if not mappings:
        logger.info("No project tracks event type %s", event_type)
        return {"received": True, "skipped": "no_mapping"}

    status = CANCELLED if event_name == "invitee.canceled" else "active"
    invitee = payload.get("invitee") or payload
    project_ids = []
    for mapping in mappings:
        pid = mapping["project_id"]
        row = calendly_event_row(
            pid, {**resource, "status": status}, mapping.get("event_type_name"), invitee,
        )
        row["calendly_event_id"] = row["calendly_event_id"] or event_uri
        if status == CANCELLED and not resource.get("cancellation"):
            row["cancelled_at"] = (invitee.get("cancellation") or {}).get("created_at") or utc_now()

        # One row per (event, project): several projects may track the same type.
        found = (
            get_client().table("calendly_events")
            .select("id")
            .eq("calendly_event_id", row["calendly_event_id"])
            .eq("project_id", pid)
            .limit(1)
            .execute()
        ).data
        if found:
            row.pop("created_at", None)
            get_client().table("calendly_events").update(row).eq("id", found[0]["id"]).execute()
        else:
            row["created_at"] = invitee.get("created_at") or body.get("created_at") or utc_now()
            if insert_row("calendly_events", row) is None:
                logger.info("Skipped duplicate %s for project %s", event_uri, pid)
                continue
        project_ids.append(pid)

    for pid in project_ids:
        try:
            await sync_gaps(pid)
        except Exception as e:
            logger.error("Post-webhook gap sync failed for %s: %s", pid, e)

    logger.info("Webhook %s applied to %d project(s)", event_name, len(project_ids))
    return {
        "received": True,
        "event": event_name,
        "status": status,
        "projects_updated": project_ids,
    }


# ─── Event types & mappings ───────────────────────────────────

async def list_event_types(project_id: str) -> List[Dict]:
    """Event types on the connected account; APIAuthError means reconnect."""
    client, user_uri = await load_client(project_id)
    return await client.list_event_types(user_uri)


def save_event_mappings(project_id: str, mappings: List[Dict]) -> Dict:
    rows = [
        {
            "project_id": project_id,
            "calendly_event_type_id": m["calendly_event_type_id"],
            "event_type_name": m.get("event_type_name") or "Unknown Event",
            "is_active": m.get("is_active", True),
        }
        for m in mappings
        if m.get("calendly_event_type_id")
    ]
    if not rows:
        raise SchemaValidationError("No event type mappings supplied", field="mappings")
    if not upsert_rows(
        "calendly_event_mappings", rows, on_conflict="project_id,calendly_event_type_id",
    ):
        raise RuntimeError("Failed to save event mappings")
    return {"success": True, "saved": len(rows)}
