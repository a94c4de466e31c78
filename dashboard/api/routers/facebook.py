"""
Pulse Hub — Facebook Ads Router
=================================

Endpoints:
  POST /api/facebook/batch-sync                  - Sync campaigns, ad sets, insights
  POST /api/facebook/token-refresh               - Validate / extend one project's token
  POST /api/facebook/token-refresh-all           - Refresh tokens near expiry
  GET  /api/facebook/{project_id}/ad-accounts    - Ad accounts seen at connect time
  POST /api/facebook/{project_id}/ad-account     - Pick the ad account to sync
"""
from __future__ import annotations

from fastapi import APIRouter, Body, Depends, HTTPException

from dashboard.api.middleware import require_scope
from dashboard.api.websocket import SYNC_COMPLETE, notify
from models.sync_models import FacebookSyncRequest, TokenRefreshRequest
from scripts.lib.errors import HubError, IntegrationNotFoundError, SchemaValidationError
from scripts.lib.logger import setup_logger
from scripts.sync import facebook_sync, oauth_store

logger = setup_logger("facebook_router")

router = APIRouter(prefix="/api/facebook", tags=["facebook"])


@router.post("/batch-sync", dependencies=[Depends(require_scope("write"))])
async def batch_sync(body: FacebookSyncRequest = FacebookSyncRequest()):
    try:
        result = await facebook_sync.batch_sync(body.project_id)
        await notify(SYNC_COMPLETE, {"platform": "facebook", **result})
        return result
    except (HTTPException, HubError):
        raise
    except Exception as e:
        logger.error("Facebook batch sync failed: %s", e)
        raise HTTPException(status_code=500, detail="Facebook batch sync failed")


@router.post("/token-refresh", dependencies=[Depends(require_scope("write"))])
async def token_refresh(body: TokenRefreshRequest):
    try:
        return await facebook_sync.refresh_token(body.project_id, body.force_refresh)
    except (HTTPException, HubError):
        raise
    except Exception as e:
        logger.error("Facebook token refresh failed: %s", e)
        raise HTTPException(status_code=500, detail="Facebook token refresh failed")


@router.post("/token-refresh-all", dependencies=[Depends(require_scope("write"))])
async def token_refresh_all():
    try:
        return await facebook_sync.refresh_all_tokens()
    except (HTTPException, HubError):
        raise
    except Exception as e:
        logger.error("Facebook token sweep failed: %s", e)
        raise HTTPException(status_code=500, detail="Facebook token refresh failed")


@router.get("/{project_id}/ad-accounts")
async def ad_accounts(project_id: str):
    try:
        stored = oauth_store.get_integration_data(project_id, facebook_sync.PLATFORM, required=True)
        return {
            "ad_accounts": stored.get("ad_accounts") or [],
            "selected_ad_account_id": stored.get("selected_ad_account_id"),
        }
    except (HTTPException, HubError):
        raise
    except Exception as e:
        logger.error("Listing ad accounts failed: %s", e)
        raise HTTPException(status_code=500, detail="Failed to fetch ad accounts")


@router.post("/{project_id}/ad-account", dependencies=[Depends(require_scope("write"))])
async def select_ad_account(project_id: str, ad_account_id: str = Body(..., embed=True, alias="adAccountId")):
    try:
        stored = oauth_store.get_integration_data(project_id, facebook_sync.PLATFORM)
        if not stored:
            raise IntegrationNotFoundError(facebook_sync.PLATFORM, project_id)
        known = {a.get("id") for a in stored.get("ad_accounts") or []}
        if known and ad_account_id not in known:
            raise SchemaValidationError("Unknown ad account", field="adAccountId")
        oauth_store.save_integration_data(
            project_id, facebook_sync.PLATFORM, {"selected_ad_account_id": ad_account_id},
        )
        return {"success": True, "selected_ad_account_id": ad_account_id}
    except (HTTPException, HubError):
        raise
    except Exception as e:
        logger.error("Selecting ad account failed: %s", e)
        raise HTTPException(status_code=500, detail="Failed to select ad account")
