"""
Pulse Hub — Sync Pydantic Models
==================================

Request bodies for the OAuth, platform sync and scheduling endpoints.
Dashboard clients send camelCase; models accept either spelling.
"""
from __future__ import annotations

from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


# ─── OAuth ──────────────────────────────────────────────────

class OAuthCallbackRequest(_CamelModel):
    code: str
    state: str
    redirect_uri: Optional[str] = Field(None, alias="redirectUri")


class ProjectPlatformRequest(_CamelModel):
    project_id: str = Field(..., alias="projectId")


# ─── Calendly ───────────────────────────────────────────────

class CalendlySyncRequest(_CamelModel):
    project_id: Optional[str] = Field(None, alias="projectId")
    incremental: bool = True
    debug_mode: bool = Field(False, alias="debugMode")
    deep_sync: bool = Field(False, alias="deepSync")


class GapDetectionRequest(_CamelModel):
    project_id: Optional[str] = Field(None, alias="projectId")
    trigger_actions: bool = Field(True, alias="triggerActions")


class EventMapping(_CamelModel):
    calendly_event_type_id: str = Field(..., alias="calendlyEventTypeId")
    event_type_name: Optional[str] = Field(None, alias="eventTypeName")
    is_active: bool = Field(True, alias="isActive")


class EventMappingsRequest(_CamelModel):
    mappings: List[EventMapping]


# ─── Facebook ───────────────────────────────────────────────

class FacebookSyncRequest(_CamelModel):
    project_id: Optional[str] = Field(None, alias="projectId")


class TokenRefreshRequest(_CamelModel):
    project_id: str = Field(..., alias="projectId")
    force_refresh: bool = Field(False, alias="forceRefresh")


# ─── GHL ────────────────────────────────────────────────────

class GHLBulkSyncRequest(_CamelModel):
    project_id: str = Field(..., alias="projectId")
    location_id: str = Field(..., alias="locationId")
    api_key: str = Field(..., alias="apiKey")
    start_date: Optional[str] = Field(None, alias="startDate")
    end_date: Optional[str] = Field(None, alias="endDate")
    batch_size: int = Field(100, alias="batchSize", ge=1, le=500)


class GHLIntegrationSyncRequest(_CamelModel):
    project_id: str = Field(..., alias="projectId")
    sync_type: str = Field("both", alias="syncType")


# ─── Analytics & scheduling ─────────────────────────────────

class DailyAggregationRequest(_CamelModel):
    project_id: Optional[str] = Field(None, alias="projectId")
    start_date: Optional[str] = Field(None, alias="startDate")
    end_date: Optional[str] = Field(None, alias="endDate")


class SyncRunRequest(_CamelModel):
    project_id: Optional[str] = Field(None, alias="projectId")
    platform: Optional[str] = None


class ApiKeysPayload(_CamelModel):
    """Manual credentials for platforms connected by API key."""
    project_id: str = Field(..., alias="projectId")
    platform: str
    api_keys: Dict[str, str] = Field(default_factory=dict, alias="apiKeys")
