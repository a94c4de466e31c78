"""
Pulse Hub — GoHighLevel Sync Engine
=====================================

Moves GHL forms and form submissions into ghl_forms / ghl_form_submissions:

  bulk_sync         one-off historical import with a location API key
  integration_sync  scheduled sync with the project's stored OAuth token
  handle_webhook    single submission pushed by a GHL workflow
"""
from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Dict, List, Optional

from integrations.ghl import GHLClient
from scripts.lib.data_sync import _batched, _upsert_batched, ghl_form_row, ghl_submission_row
from scripts.lib.errors import IntegrationNotFoundError, SchemaValidationError
from scripts.lib.logger import setup_logger
from scripts.lib.supabase_client import get_client, insert_row, mark_synced, upsert_row, utc_now
from scripts.lib.utils import pause
from scripts.sync import oauth_store

logger = setup_logger("ghl_sync")

PLATFORM = "ghl"
BATCH_DELAY_SECONDS = 0.1


def _store_submission_batch(rows: List[Dict]) -> Dict[str, int]:
    """Insert a batch, leaving already-stored submission ids untouched."""
    try:
        result = get_client().table("ghl_form_submissions").upsert(
            rows, on_conflict="submission_id", ignore_duplicates=True,
        ).execute()
    except Exception as e:
        logger.error("Submission batch failed (%d rows): %s", len(rows), e)
        return {"processed": 0, "duplicate": 0, "error": len(rows)}
    inserted = len(result.data or [])
    return {"processed": inserted, "duplicate": len(rows) - inserted, "error": 0}


async def _sync_form_submissions(client: GHLClient, project_id: str, location_id: str,
                                 form_id: str, start_date: Optional[str],
                                 end_date: Optional[str], batch_size: int) -> Dict[str, int]:
    totals = {"total": 0, "processed": 0, "duplicate": 0, "error": 0}
    async for page in client.iter_form_submissions(location_id, form_id, start_date, end_date):
        rows = [ghl_submission_row(project_id, s, form_id) for s in page]
        rows = [r for r in rows if r["submission_id"]]
        totals["total"] += len(page)
        totals["error"] += len(page) - len(rows)
        for batch in _batched(rows, batch_size):
            outcome = _store_submission_batch(batch)
            for key, value in outcome.items():
                totals[key] += value
            await pause(BATCH_DELAY_SECONDS)
    return totals


async def bulk_sync(project_id: str, location_id: str, api_key: str,
                    start_date: str = None, end_date: str = None,
                    batch_size: int = 100) -> Dict:
    """
    Import every form and submission for a location.

    Raises:
        SchemaValidationError: project_id, location_id or api_key missing.
    """
    if not project_id or not location_id or not api_key:
        raise SchemaValidationError("project_id, location_id, and api_key are required")

    started = time.time()
    start_time = utc_now()
    client = GHLClient(api_key)

    forms = await client.list_forms(location_id)
    _upsert_batched(
        "ghl_forms", [ghl_form_row(project_id, f) for f in forms], "project_id,form_id",
    )

    results = {
        "total_forms": len(forms),
        "synced_forms": 0,
        "total_submissions": 0,
        "processed_submissions": 0,
        "duplicate_submissions": 0,
        "error_submissions": 0,
    }
    for form in forms:
        try:
            totals = await _sync_form_submissions(
                client, project_id, location_id, form["id"], start_date, end_date, batch_size,
            )
        except Exception as e:
            logger.error("Submission sync failed for form %s: %s", form.get("id"), e)
            continue
        results["synced_forms"] += 1
        results["total_submissions"] += totals["total"]
        results["processed_submissions"] += totals["processed"]
        results["duplicate_submissions"] += totals["duplicate"]
        results["error_submissions"] += totals["error"]
        logger.info(
            "Form %s: %d submissions (%d new)", form.get("id"), totals["total"], totals["processed"],
        )

    results.update({
        "start_time": start_time,
        "end_time": utc_now(),
        "duration_seconds": round(time.time() - started, 2),
    })
    return {"success": True, "message": "Bulk sync completed successfully", "results": results}


async def integration_sync(project_id: str, sync_type: str = "both") -> Dict:
    """
    Sync forms and/or submissions with the stored GHL credentials.

    Raises:
        IntegrationNotFoundError: no stored credentials.
        SchemaValidationError: credentials lack a token or location id.
    """
    if sync_type not in ("forms", "submissions", "both"):
        raise SchemaValidationError(f"Invalid sync type: {sync_type}", field="sync_type")

    stored = oauth_store.get_integration_data(project_id, PLATFORM, required=True)
    token = stored.get("access_token") or stored.get("api_key")
    location_id = stored.get("location_id")
    if not token or not location_id:
        raise SchemaValidationError("Invalid integration data", field="location_id")

    client = GHLClient(token)
    synced = {"forms": 0, "submissions": 0}

    if sync_type in ("forms", "both"):
        forms = await client.list_forms(location_id)
        synced["forms"] = _upsert_batched(
            "ghl_forms", [ghl_form_row(project_id, f) for f in forms], "project_id,form_id",
        )

    if sync_type in ("submissions", "both"):
        integration = oauth_store.get_integration(project_id, PLATFORM) or {}
        since = (integration.get("last_sync") or "")[:10] or None
        tracked = (
            get_client().table("ghl_forms")
            .select("form_id")
            .eq("project_id", project_id)
            .eq("is_active", True)
            .execute()
        ).data or []
        for form in tracked:
            try:
                totals = await _sync_form_submissions(
                    client, project_id, location_id, form["form_id"], since, None, 100,
                )
                synced["submissions"] += totals["processed"]
            except Exception as e:
                logger.error("Submission sync failed for form %s: %s", form["form_id"], e)

    mark_synced(project_id, PLATFORM)
    message = f"Synced {synced['forms']} forms and {synced['submissions']} submissions"
    logger.info("Project %s: %s", project_id, message)
    return {"success": True, "results": synced, "message": message}


def handle_webhook(project_id: Optional[str], payload: Dict) -> Dict:
    """Store one pushed submission and mirror it as a form_submission event."""
    if not project_id:
        raise SchemaValidationError("project_id parameter is required", field="project_id")
    form_id = payload.get("form_id") or payload.get("formId")
    if not form_id:
        raise SchemaValidationError("form_id is required in webhook payload", field="form_id")

    client = get_client()
    tracked = (
        client.table("ghl_forms")
        .select("*")
        .eq("project_id", project_id)
        .eq("form_id", form_id)
        .eq("is_active", True)
        .limit(1)
        .execute()
    ).data
    if not tracked:
        return {"success": True, "skipped": True, "message": "Form not tracked", "form_id": form_id}
    form = tracked[0]

    submission_id = (
        payload.get("submission_id") or payload.get("submissionId") or payload.get("id")
    )
    if submission_id:
        existing = (
            client.table("ghl_form_submissions")
            .select("id")
            .eq("submission_id", submission_id)
            .limit(1)
            .execute()
        ).data
        if existing:
            return {"success": True, "duplicate": True, "message": "Submission already processed"}
    else:
        submission_id = f"ghl_{int(datetime.now(timezone.utc).timestamp() * 1000)}"

    row = ghl_submission_row(project_id, {**payload, "id": submission_id}, form_id)
    row["form_data"] = payload
    if not upsert_row("ghl_form_submissions", row, on_conflict="submission_id"):
        raise RuntimeError("Error saving submission")

    event = insert_row("tracking_events", {
        "project_id": project_id,
        "session_id": f"ghl_{submission_id}",
        "event_type": "form_submission",
        "event_name": "ghl_form_submission",
        "page_url": form.get("form_url") or f"ghl-form-{form_id}",
        "contact_email": row["contact_email"],
        "contact_phone": row["contact_phone"],
        "contact_name": row["contact_name"],
        "custom_data": {
            "form_id": form_id,
            "form_name": form.get("form_name"),
            "submission_id": submission_id,
            "source": "go_high_level",
        },
    })
    if event is None:
        logger.warning("Could not mirror GHL submission %s as a tracking event", submission_id)

    return {
        "success": True,
        "message": "Form submission processed successfully",
        "form_name": form.get("form_name"),
        "submission_id": submission_id,
    }
