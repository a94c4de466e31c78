"""
Pulse Hub — OAuth Router
==========================
Connect a project to Calendly, Facebook, GHL, Zoho CRM or ClickFunnels.

Endpoints:
  GET    /api/oauth/{platform}/authorize?project_id=  - Provider authorize URL
  GET    /api/oauth/{platform}/callback?code=&state=  - Browser redirect target
  POST   /api/oauth/{platform}/callback               - Code exchange from the dashboard
  POST   /api/oauth/{platform}/refresh                - Refresh an expiring token
  DELETE /api/oauth/{platform}/{project_id}           - Disconnect
"""
from __future__ import annotations

from fastapi import APIRouter, HTTPException, Query

from models.sync_models import OAuthCallbackRequest, ProjectPlatformRequest
from scripts.lib.errors import HubError
from scripts.lib.logger import setup_logger
from scripts.sync import oauth_flows

logger = setup_logger("oauth_router")

router = APIRouter(prefix="/api/oauth", tags=["oauth"])


@router.get("/{platform}/authorize")
async def authorize(
    platform: str,
    project_id: str = Query(..., description="Project to connect"),
    redirect_uri: str = Query(None, description="Override the configured redirect URI"),
):
    """Build the provider's consent URL."""
    try:
        return oauth_flows.start_oauth(platform, project_id, redirect_uri)
    except (HTTPException, HubError):
        raise
    except Exception as e:
        logger.error("OAuth start failed for %s: %s", platform, e)
        raise HTTPException(status_code=500, detail="Failed to start OAuth")


@router.get("/{platform}/callback")
async def callback_redirect(
    platform: str,
    code: str = Query(...),
    state: str = Query(...),
):
    """Provider redirect: exchange the code and store tokens."""
    try:
        return await oauth_flows.complete_oauth(platform, code, state)
    except (HTTPException, HubError):
        raise
    except Exception as e:
        logger.error("OAuth callback failed for %s: %s", platform, e)
        raise HTTPException(status_code=500, detail="Failed to complete OAuth")


@router.post("/{platform}/callback")
async def callback(platform: str, body: OAuthCallbackRequest):
    """Exchange a code the dashboard received and store tokens."""
    try:
        return await oauth_flows.complete_oauth(
            platform, body.code, body.state, body.redirect_uri,
        )
    except (HTTPException, HubError):
        raise
    except Exception as e:
        logger.error("OAuth callback failed for %s: %s", platform, e)
        raise HTTPException(status_code=500, detail="Failed to complete OAuth")


@router.post("/{platform}/refresh")
async def refresh(platform: str, body: ProjectPlatformRequest):
    """Refresh a Calendly or Zoho access token."""
    try:
        return await oauth_flows.refresh_platform_token(body.project_id, platform)
    except (HTTPException, HubError):
        raise
    except Exception as e:
        logger.error("Token refresh failed for %s: %s", platform, e)
        raise HTTPException(status_code=500, detail="Failed to refresh token")


@router.delete("/{platform}/{project_id}")
async def disconnect(platform: str, project_id: str):
    """Drop stored tokens and mark the integration disconnected."""
    try:
        return oauth_flows.disconnect(project_id, platform)
    except (HTTPException, HubError):
        raise
    except Exception as e:
        logger.error("Disconnect failed for %s: %s", platform, e)
        raise HTTPException(status_code=500, detail="Failed to disconnect")
