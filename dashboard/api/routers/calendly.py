"""
Pulse Hub — Calendly Router
=============================
Calendly booking sync, gap detection, webhooks and event-type mappings.

Endpoints:
  POST /api/calendly/sync-gaps                     - Fill missing bookings
  POST /api/calendly/incremental-sync              - Windowed sync
  POST /api/calendly/status-refresh                - Re-check upcoming statuses
  POST /api/calendly/gap-detection                 - Find gaps (and fix them)
  POST /api/calendly/webhook                       - invitee.created / invitee.canceled
  GET  /api/calendly/{project_id}/event-types      - Event types on the account
  GET  /api/calendly/{project_id}/event-mappings   - Tracked event types
  POST /api/calendly/{project_id}/event-mappings   - Replace tracked event types
"""
from __future__ import annotations

import json

from fastapi import APIRouter, Depends, HTTPException, Request

from dashboard.api.middleware import require_scope
from dashboard.api.websocket import GAP_DETECTED, SYNC_COMPLETE, notify
from models.sync_models import CalendlySyncRequest, EventMappingsRequest, GapDetectionRequest
from scripts.lib.errors import HubError, SchemaValidationError
from scripts.lib.logger import setup_logger
from scripts.lib.supabase_client import get_client
from scripts.sync import calendly_sync, gap_detection

logger = setup_logger("calendly_router")

router = APIRouter(prefix="/api/calendly", tags=["calendly"])

SIGNATURE_HEADER = "Calendly-Webhook-Signature"


@router.post("/sync-gaps", dependencies=[Depends(require_scope("write"))])
async def sync_gaps(body: CalendlySyncRequest = CalendlySyncRequest()):
    """Fetch the last 90 days and the next 30 and insert any missing bookings."""
    try:
        result = await calendly_sync.sync_gaps(body.project_id, body.debug_mode)
        await notify(SYNC_COMPLETE, {"platform": "calendly", "type": "gap_sync", **result})
        return result
    except (HTTPException, HubError):
        raise
    except Exception as e:
        logger.error("Calendly gap sync failed: %s", e)
        raise HTTPException(status_code=500, detail="Calendly gap sync failed")


@router.post("/incremental-sync", dependencies=[Depends(require_scope("write"))])
async def incremental_sync(body: CalendlySyncRequest = CalendlySyncRequest()):
    """Sync from the last sync time (or a deep 90-day window)."""
    try:
        result = await calendly_sync.incremental_sync(
            body.project_id, incremental=body.incremental, deep_sync=body.deep_sync,
        )
        await notify(SYNC_COMPLETE, {"platform": "calendly", "type": "incremental", **result})
        return result
    except (HTTPException, HubError):
        raise
    except Exception as e:
        logger.error("Calendly incremental sync failed: %s", e)
        raise HTTPException(status_code=500, detail="Calendly incremental sync failed")


@router.post("/status-refresh", dependencies=[Depends(require_scope("write"))])
async def status_refresh(body: CalendlySyncRequest = CalendlySyncRequest()):
    try:
        return await calendly_sync.refresh_statuses(body.project_id)
    except (HTTPException, HubError):
        raise
    except Exception as e:
        logger.error("Calendly status refresh failed: %s", e)
        raise HTTPException(status_code=500, detail="Calendly status refresh failed")


@router.post("/gap-detection", dependencies=[Depends(require_scope("write"))])
async def detect_gaps(body: GapDetectionRequest = GapDetectionRequest()):
    """Report timeline gaps and stale syncs; optionally trigger repair syncs."""
    try:
        result = await gap_detection.detect_gaps(body.project_id, body.trigger_actions)
        if result.get("gaps"):
            await notify(GAP_DETECTED, {
                "gaps": len(result["gaps"]),
                "projects": sorted({g.get("project_id") for g in result["gaps"] if g.get("project_id")}),
            })
        return result
    except (HTTPException, HubError):
        raise
    except Exception as e:
        logger.error("Gap detection failed: %s", e)
        raise HTTPException(status_code=500, detail="Gap detection failed")


@router.post("/webhook")
async def webhook(request: Request):
    """Signed Calendly notification; applied to every project mapping the event type."""
    try:
        raw_body = await request.body()
        try:
            body = json.loads(raw_body or b"{}")
        except json.JSONDecodeError:
            raise SchemaValidationError("Webhook body is not valid JSON")
        return await calendly_sync.handle_webhook(
            body, raw_body, request.headers.get(SIGNATURE_HEADER),
        )
    except (HTTPException, HubError):
        raise
    except Exception as e:
        logger.error("Calendly webhook failed: %s", e)
        raise HTTPException(status_code=500, detail="Webhook processing failed")


@router.get("/{project_id}/event-types")
async def event_types(project_id: str):
    try:
        return {"event_types": await calendly_sync.list_event_types(project_id)}
    except (HTTPException, HubError):
        raise
    except Exception as e:
        logger.error("Listing Calendly event types failed: %s", e)
        raise HTTPException(status_code=500, detail="Failed to fetch event types")


@router.get("/{project_id}/event-mappings")
async def event_mappings(project_id: str):
    try:
        result = (
            get_client().table("calendly_event_mappings")
            .select("*")
            .eq("project_id", project_id)
            .execute()
        )
        return {"mappings": result.data or []}
    except Exception as e:
        logger.error("Listing event mappings failed: %s", e)
        raise HTTPException(status_code=500, detail="Failed to fetch event mappings")


@router.post("/{project_id}/event-mappings", dependencies=[Depends(require_scope("write"))])
async def save_mappings(project_id: str, body: EventMappingsRequest):
    try:
        return calendly_sync.save_event_mappings(
            project_id, [m.model_dump() for m in body.mappings],
        )
    except (HTTPException, HubError):
        raise
    except Exception as e:
        logger.error("Saving event mappings failed: %s", e)
        raise HTTPException(status_code=500, detail="Failed to save event mappings")
