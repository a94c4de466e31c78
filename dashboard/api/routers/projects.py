"""
Pulse Hub — Projects Router
=============================
Projects, their tracking pixels and their platform integrations.

Endpoints:
  GET  /api/projects                                  - List projects
  POST /api/projects                                  - Create a project
  GET  /api/projects/{id}                             - Get a project
  GET  /api/projects/{id}/pixels                      - List pixels
  POST /api/projects/{id}/pixels                      - Create a pixel
  GET  /api/projects/{id}/pixels/{pixel_id}/snippet   - Installable snippet
  GET  /api/projects/{id}/integrations                - Integration status
  POST /api/projects/{id}/integrations                - Store API-key credentials
"""
from __future__ import annotations

from fastapi import APIRouter, HTTPException, Query, Request

from models.sync_models import ApiKeysPayload
from models.tracking_models import PixelCreate, ProjectCreate
from scripts.lib.errors import HubError, SchemaValidationError
from scripts.lib.logger import setup_logger
from scripts.lib.supabase_client import get_client, insert_row, query_table
from scripts.lib.validation import sanitize_input, validate_project_name
from scripts.sync import oauth_store
from scripts.tracking.pixel import create_pixel, generate_pixel_script

logger = setup_logger("projects_router")

router = APIRouter(prefix="/api/projects", tags=["projects"])

API_KEY_PLATFORMS = {"ghl", "clickfunnels", "facebook", "zoho_crm", "calendly"}


@router.get("")
async def list_projects(limit: int = Query(50, ge=1, le=200)):
    """List projects, newest first."""
    try:
        result = (
            get_client().table("projects")
            .select("*")
            .order("created_at", desc=True)
            .limit(limit)
            .execute()
        )
        return {"results": result.data or [], "count": len(result.data or [])}
    except Exception as e:
        logger.error("List projects failed: %s", e)
        raise HTTPException(status_code=500, detail="Failed to fetch projects")


@router.post("")
async def create_project(body: ProjectCreate):
    """Create a project."""
    try:
        name = sanitize_input(body.name)
        if not validate_project_name(name):
            raise SchemaValidationError(
                "Project name must be 2-100 letters, numbers, spaces, -, _ or .", field="name",
            )
        project = insert_row("projects", {
            "name": name,
            "description": sanitize_input(body.description or "") or None,
            "timezone": body.timezone or "UTC",
        })
        if project is None:
            raise HTTPException(status_code=500, detail="Failed to create project")
        return project
    except (HTTPException, HubError):
        raise
    except Exception as e:
        logger.error("Create project failed: %s", e)
        raise HTTPException(status_code=500, detail="Failed to create project")


@router.get("/{project_id}")
async def get_project(project_id: str):
    """Get a project by id."""
    try:
        result = (
            get_client().table("projects")
            .select("*")
            .eq("id", project_id)
            .limit(1)
            .execute()
        )
        if not result.data:
            raise HTTPException(status_code=404, detail="Project not found")
        return result.data[0]
    except HTTPException:
        raise
    except Exception as e:
        logger.error("Get project failed: %s", e)
        raise HTTPException(status_code=500, detail="Failed to fetch project")


@router.get("/{project_id}/pixels")
async def list_pixels(project_id: str):
    """List a project's tracking pixels."""
    try:
        pixels = query_table(
            "tracking_pixels", filters={"project_id": project_id}, order_by="created_at",
        )
        return {"results": pixels, "count": len(pixels)}
    except Exception as e:
        logger.error("List pixels failed: %s", e)
        raise HTTPException(status_code=500, detail="Failed to fetch pixels")


@router.post("/{project_id}/pixels")
async def add_pixel(project_id: str, body: PixelCreate, request: Request):
    """Create a pixel and return it with its installable snippet."""
    try:
        pixel = create_pixel(
            project_id, body.name, body.domains, body.conversion_events, body.config,
        )
        return {
            **pixel,
            "snippet": generate_pixel_script(pixel["pixel_id"], str(request.base_url)),
        }
    except (HTTPException, HubError):
        raise
    except Exception as e:
        logger.error("Create pixel failed: %s", e)
        raise HTTPException(status_code=500, detail="Failed to create pixel")


@router.get("/{project_id}/pixels/{pixel_id}/snippet")
async def pixel_snippet(project_id: str, pixel_id: str, request: Request):
    """Installable ``<script>`` snippet for a pixel."""
    try:
        result = (
            get_client().table("tracking_pixels")
            .select("pixel_id")
            .eq("project_id", project_id)
            .eq("pixel_id", pixel_id)
            .limit(1)
            .execute()
        )
        if not result.data:
            raise HTTPException(status_code=404, detail="Pixel not found")
        return {
            "pixel_id": pixel_id,
            "snippet": generate_pixel_script(pixel_id, str(request.base_url)),
        }
    except HTTPException:
        raise
    except Exception as e:
        logger.error("Pixel snippet failed: %s", e)
        raise HTTPException(status_code=500, detail="Failed to render snippet")


@router.get("/{project_id}/integrations")
async def list_integrations(project_id: str):
    """Connection status of every platform for a project."""
    try:
        integrations = query_table("project_integrations", filters={"project_id": project_id})
        return {"results": integrations, "count": len(integrations)}
    except Exception as e:
        logger.error("List integrations failed: %s", e)
        raise HTTPException(status_code=500, detail="Failed to fetch integrations")


@router.post("/{project_id}/integrations")
async def save_api_keys(project_id: str, body: ApiKeysPayload):
    """Store API-key credentials (``{projectId, platform, apiKeys}``) for a platform."""
    try:
        if body.project_id != project_id:
            raise SchemaValidationError("projectId does not match the URL", field="projectId")
        if body.platform not in API_KEY_PLATFORMS:
            raise SchemaValidationError(f"Unsupported platform: {body.platform}", field="platform")
        if not body.api_keys:
            raise SchemaValidationError("apiKeys is required", field="apiKeys")

        oauth_store.save_integration_data(project_id, body.platform, dict(body.api_keys))
        oauth_store.mark_connected(project_id, body.platform, True)
        return {"success": True, "project_id": project_id, "platform": body.platform}
    except (HTTPException, HubError):
        raise
    except Exception as e:
        logger.error("Save API keys failed: %s", e)
        raise HTTPException(status_code=500, detail="Failed to save credentials")
