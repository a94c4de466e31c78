"""
Pulse Hub — ClickFunnels Router
=================================
"""
from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException

from dashboard.api.middleware import require_scope
from dashboard.api.websocket import SYNC_COMPLETE, notify
from scripts.lib.errors import HubError
from scripts.lib.logger import setup_logger
from scripts.sync import crm_sync

logger = setup_logger("clickfunnels_router")

router = APIRouter(prefix="/api/clickfunnels", tags=["clickfunnels"])


@router.get("/{project_id}/funnels")
async def funnels(project_id: str):
    try:
        return {"funnels": await crm_sync.list_funnels(project_id)}
    except (HTTPException, HubError):
        raise
    except Exception as e:
        logger.error("Listing funnels failed: %s", e)
        raise HTTPException(status_code=500, detail="Failed to fetch funnels")


@router.post("/{project_id}/funnels/{funnel_id}/sync", dependencies=[Depends(require_scope("write"))])
async def sync_funnel(project_id: str, funnel_id: str):
    """Store the funnel and its stats, and remember it for scheduled syncs."""
    try:
        result = await crm_sync.sync_funnel(project_id, funnel_id)
        await notify(SYNC_COMPLETE, {"platform": "clickfunnels", "project_id": project_id})
        return result
    except (HTTPException, HubError):
        raise
    except Exception as e:
        logger.error("Funnel sync failed for %s: %s", funnel_id, e)
        raise HTTPException(status_code=500, detail="Failed to sync funnel")
