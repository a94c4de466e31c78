"""
Pulse Hub — Sync Router
=========================
Unified scheduling, health checks, run history and circuit status.

Endpoints:
  POST /api/sync/run-all        - Sync every connected integration
  POST /api/sync/health-check   - Score integration health, raise alerts
  GET  /api/sync/runs           - Recent scheduled runs
  GET  /api/sync/runs/{id}      - One run
  GET  /api/sync/circuits       - Circuit breaker status per platform
"""
from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query

from dashboard.api.middleware import require_scope
from dashboard.api.websocket import HEALTH_CHECKED, SYNC_COMPLETE, notify
from models.sync_models import SyncRunRequest
from scripts.lib.circuit_breaker import CircuitBreaker
from scripts.lib.errors import HubError
from scripts.lib.logger import setup_logger
from scripts.lib.supabase_client import get_client, query_table
from scripts.sync import health_monitor, scheduler

logger = setup_logger("sync_router")

router = APIRouter(prefix="/api/sync", tags=["sync"])


@router.post("/run-all", dependencies=[Depends(require_scope("write"))])
async def run_all(body: SyncRunRequest = SyncRunRequest()):
    try:
        result = await scheduler.run_all(body.project_id)
        await notify(SYNC_COMPLETE, {
            "type": "unified",
            "projects_processed": result["projects_processed"],
            "success_count": result["success_count"],
            "error_count": result["error_count"],
        })
        return result
    except (HTTPException, HubError):
        raise
    except Exception as e:
        logger.error("Unified sync failed: %s", e)
        raise HTTPException(status_code=500, detail="Unified sync failed")


@router.post("/health-check", dependencies=[Depends(require_scope("write"))])
async def health_check(body: SyncRunRequest = SyncRunRequest()):
    try:
        result = await health_monitor.check_health(body.project_id, body.platform)
        await notify(HEALTH_CHECKED, result.get("summary", {}))
        return result
    except (HTTPException, HubError):
        raise
    except Exception as e:
        logger.error("Health check failed: %s", e)
        raise HTTPException(status_code=500, detail="Health check failed")


@router.get("/runs")
async def list_runs(
    status: str = Query(None, description="Filter by status: running, success, partial, failed"),
    limit: int = Query(20, ge=1, le=100),
):
    """List recent scheduled runs."""
    try:
        runs = query_table(
            "sync_runs",
            filters={"status": status} if status else None,
            order_by="started_at",
            limit=limit,
        )
        return {"results": runs, "count": len(runs)}
    except Exception as e:
        logger.error("List sync runs failed: %s", e)
        raise HTTPException(status_code=500, detail="Failed to fetch sync runs")


@router.get("/runs/{run_id}")
async def get_run(run_id: str):
    try:
        result = (
            get_client().table("sync_runs")
            .select("*")
            .eq("id", run_id)
            .limit(1)
            .execute()
        )
        if not result.data:
            raise HTTPException(status_code=404, detail="Sync run not found")
        return result.data[0]
    except HTTPException:
        raise
    except Exception as e:
        logger.error("Get sync run failed: %s", e)
        raise HTTPException(status_code=500, detail="Failed to fetch sync run")


@router.get("/circuits")
async def circuits():
    return {"circuits": CircuitBreaker.all_status()}
