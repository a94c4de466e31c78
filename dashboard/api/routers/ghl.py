"""
Pulse Hub — GoHighLevel Router
================================

Endpoints:
  POST /api/ghl/bulk-sync          - Forms + submissions for a date range
  POST /api/ghl/integration-sync   - Sync with stored credentials
  POST /api/ghl/webhook?project_id - Pushed form submission
"""
from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query

from dashboard.api.middleware import require_scope
from dashboard.api.websocket import SYNC_COMPLETE, notify
from models.sync_models import GHLBulkSyncRequest, GHLIntegrationSyncRequest
from scripts.lib.errors import HubError
from scripts.lib.logger import setup_logger
from scripts.sync import ghl_sync

logger = setup_logger("ghl_router")

router = APIRouter(prefix="/api/ghl", tags=["ghl"])


@router.post("/bulk-sync", dependencies=[Depends(require_scope("write"))])
async def bulk_sync(body: GHLBulkSyncRequest):
    try:
        result = await ghl_sync.bulk_sync(
            body.project_id, body.location_id, body.api_key,
            body.start_date, body.end_date, body.batch_size,
        )
        await notify(SYNC_COMPLETE, {"platform": "ghl", "project_id": body.project_id})
        return result
    except (HTTPException, HubError):
        raise
    except Exception as e:
        logger.error("GHL bulk sync failed: %s", e)
        raise HTTPException(status_code=500, detail="GHL bulk sync failed")


@router.post("/integration-sync", dependencies=[Depends(require_scope("write"))])
async def integration_sync(body: GHLIntegrationSyncRequest):
    try:
        result = await ghl_sync.integration_sync(body.project_id, body.sync_type)
        await notify(SYNC_COMPLETE, {"platform": "ghl", "project_id": body.project_id})
        return result
    except (HTTPException, HubError):
        raise
    except Exception as e:
        logger.error("GHL integration sync failed: %s", e)
        raise HTTPException(status_code=500, detail="GHL integration sync failed")


@router.post("/webhook")
async def webhook(payload: dict, project_id: str = Query(None)):
    try:
        return ghl_sync.handle_webhook(project_id, payload)
    except (HTTPException, HubError):
        raise
    except Exception as e:
        logger.error("GHL webhook failed: %s", e)
        raise HTTPException(status_code=500, detail="Webhook processing failed")
