"""
Pulse Hub — Tracking Router
=============================
Browser pixel ingestion and the pixel script itself. All routes are public.

Endpoints:
  POST /api/track/event               - Pixel event (session + attribution)
  POST /api/track/secure              - Rate-limited direct event
  GET  /api/track/pixel/{pixel_id}.js - Pixel JavaScript
"""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import Response

from models.tracking_models import SecureTrackRequest, TrackEventRequest
from scripts.lib.errors import HubError
from scripts.lib.logger import setup_logger
from scripts.tracking.ingest import get_active_pixel, secure_track_event, track_event
from scripts.tracking.pixel import pixel_javascript

logger = setup_logger("tracking_router")

router = APIRouter(prefix="/api/track", tags=["tracking"])


def client_ip(request: Request) -> Optional[str]:
    """First X-Forwarded-For hop, then X-Real-IP, then the socket peer."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip
    return request.client.host if request.client else None


@router.post("/event")
async def track(body: TrackEventRequest, request: Request):
    """Record an event posted by the tracking pixel."""
    try:
        return track_event(body.model_dump(), client_ip(request))
    except (HTTPException, HubError):
        raise
    except Exception as e:
        logger.error("Track event failed: %s", e)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.post("/secure")
async def secure_track(body: SecureTrackRequest, request: Request):
    """Record a direct event (100 requests/hour per IP)."""
    try:
        return secure_track_event(
            body.model_dump(), client_ip(request), request.headers.get("user-agent"),
        )
    except (HTTPException, HubError):
        raise
    except Exception as e:
        logger.error("Secure track failed: %s", e)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.get("/pixel/{pixel_id}.js")
async def pixel_script(pixel_id: str, request: Request):
    """Serve the pixel JavaScript for an active pixel."""
    try:
        get_active_pixel(pixel_id)
        script = pixel_javascript(pixel_id, str(request.base_url))
        return Response(
            content=script,
            media_type="application/javascript",
            headers={"Cache-Control": "public, max-age=300"},
        )
    except (HTTPException, HubError):
        raise
    except Exception as e:
        logger.error("Pixel script failed for %s: %s", pixel_id, e)
        raise HTTPException(status_code=500, detail="Failed to render pixel script")
