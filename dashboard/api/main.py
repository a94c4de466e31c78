"""
Pulse Hub — API Server
========================

Marketing-analytics API: platform OAuth, sync jobs, pixel ingestion and
dashboard analytics, all backed by Supabase.

Route groups:
  /api/health          - Health check
  /api/track/*         - Pixel + secure event ingestion, pixel script
  /api/projects/*      - Projects, pixels, integrations
  /api/oauth/*         - OAuth connect / callback / refresh / disconnect
  /api/calendly/*      - Calendly sync, gap detection, webhook, mappings
  /api/facebook/*      - Facebook Ads batch sync + token refresh
  /api/ghl/*           - GoHighLevel bulk sync, webhook, integration sync
  /api/zoho/*          - Zoho CRM modules + records
  /api/clickfunnels/*  - ClickFunnels funnels
  /api/analytics/*     - Call charts, stats, attribution, pages, forecast
  /api/sync/*          - Unified scheduler, health monitor, run history
  /ws/dashboard        - WebSocket live feed

Every error response body is ``{"error": message}`` (plus optional "details").
"""

import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from scripts.lib.errors import HubError

load_dotenv()

logger = logging.getLogger(__name__)

VERSION = "1.0.0"


# ─── Lifespan ─────────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app):
    """Application startup and shutdown."""
    logger.info("Starting Pulse Hub...")

    try:
        from scripts.lib.supabase_client import get_client
        get_client()
        logger.info("Supabase connected")
    except Exception as e:
        logger.warning("Supabase not available: %s", e)

    if not os.getenv("CREDENTIALS_ENCRYPTION_KEY"):
        logger.warning("CREDENTIALS_ENCRYPTION_KEY not set, OAuth tokens stored unencrypted")

    logger.info("Pulse Hub ready")
    yield
    logger.info("Shutting down Pulse Hub...")


# ─── App Setup ────────────────────────────────────────────────

cors_origins = os.getenv(
    "CORS_ORIGINS", "http://localhost:3000,http://localhost:8001"
).split(",")

app = FastAPI(
    title="Pulse Hub",
    version=VERSION,
    description="Marketing analytics: ad, booking and funnel sync plus pixel attribution",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# API key middleware (does not block when Supabase is unavailable)
try:
    from dashboard.api.middleware import APIKeyMiddleware
    require_auth = os.getenv("REQUIRE_API_KEY", "false").lower() == "true"
    app.add_middleware(APIKeyMiddleware, require_auth=require_auth)
except Exception as e:
    logger.warning("API key middleware not loaded: %s", e)


# ─── Error Handlers ───────────────────────────────────────────

def error_response(status_code: int, message: str, details=None) -> JSONResponse:
    body = {"error": message}
    if details:
        body["details"] = jsonable_encoder(details)
    return JSONResponse(status_code=status_code, content=body)


@app.exception_handler(HubError)
async def hub_error_handler(request: Request, exc: HubError):
    if exc.http_status >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    else:
        logger.warning("%s %s rejected: %s", request.method, request.url.path, exc.message)
    return error_response(exc.http_status, exc.message, exc.details)


@app.exception_handler(HTTPException)
async def http_error_handler(request: Request, exc: HTTPException):
    return error_response(exc.status_code, str(exc.detail))


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    return error_response(400, "Invalid request", exc.errors())


# ─── Include Routers ──────────────────────────────────────────

from dashboard.api.routers.tracking import router as tracking_router
from dashboard.api.routers.projects import router as projects_router
from dashboard.api.routers.oauth import router as oauth_router
from dashboard.api.routers.calendly import router as calendly_router
from dashboard.api.routers.facebook import router as facebook_router
from dashboard.api.routers.ghl import router as ghl_router
from dashboard.api.routers.zoho import router as zoho_router
from dashboard.api.routers.clickfunnels import router as clickfunnels_router
from dashboard.api.routers.analytics import router as analytics_router
from dashboard.api.routers.sync import router as sync_router

app.include_router(tracking_router)
app.include_router(projects_router)
app.include_router(oauth_router)
app.include_router(calendly_router)
app.include_router(facebook_router)
app.include_router(ghl_router)
app.include_router(zoho_router)
app.include_router(clickfunnels_router)
app.include_router(analytics_router)
app.include_router(sync_router)


# ─── WebSocket ────────────────────────────────────────────────

from dashboard.api.websocket import websocket_endpoint

app.add_api_websocket_route("/ws/dashboard", websocket_endpoint)


# ─── Health ───────────────────────────────────────────────────

@app.get("/api/health", tags=["system"])
async def health():
    """Health check with service status."""
    supabase_ok = False
    try:
        from scripts.lib.supabase_client import get_client
        get_client()
        supabase_ok = True
    except Exception as e:
        logger.debug("Supabase unavailable for health check: %s", e)

    from dashboard.api.websocket import ws_manager
    from scripts.lib.circuit_breaker import CircuitBreaker

    open_circuits = [
        c["service"] for c in CircuitBreaker.all_status() if c["state"] != CircuitBreaker.CLOSED
    ]
    return {
        "status": "healthy" if supabase_ok else "degraded",
        "service": "Pulse Hub",
        "version": VERSION,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "integrations": {
            "supabase": supabase_ok,
            "credential_encryption": bool(os.getenv("CREDENTIALS_ENCRYPTION_KEY")),
        },
        "open_circuits": open_circuits,
        "websocket_connections": ws_manager.connection_count,
    }
