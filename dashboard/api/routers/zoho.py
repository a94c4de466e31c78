"""
Pulse Hub — Zoho CRM Router
=============================
Read-only proxy over a project's Zoho CRM. Tokens refresh on demand.
"""
from __future__ import annotations

from fastapi import APIRouter, HTTPException, Query

from scripts.lib.errors import HubError
from scripts.lib.logger import setup_logger
from scripts.sync import crm_sync

logger = setup_logger("zoho_router")

router = APIRouter(prefix="/api/zoho", tags=["zoho"])


@router.get("/{project_id}/modules")
async def modules(project_id: str):
    try:
        return {"modules": await crm_sync.zoho_modules(project_id)}
    except (HTTPException, HubError):
        raise
    except Exception as e:
        logger.error("Zoho modules failed: %s", e)
        raise HTTPException(status_code=500, detail="Failed to fetch Zoho modules")


@router.get("/{project_id}/records/{module}")
async def records(
    project_id: str,
    module: str,
    page: int = Query(1, ge=1),
    per_page: int = Query(200, ge=1, le=200),
):
    try:
        return {
            "module": module,
            "page": page,
            "records": await crm_sync.zoho_records(project_id, module, page, per_page),
        }
    except (HTTPException, HubError):
        raise
    except Exception as e:
        logger.error("Zoho records failed for %s: %s", module, e)
        raise HTTPException(status_code=500, detail="Failed to fetch Zoho records")
