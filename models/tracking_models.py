"""
Pulse Hub — Tracking Pydantic Models
======================================

Request models for pixel ingestion, secure tracking, pixels and projects.
The pixel snippet posts camelCase keys; models accept either spelling.
"""
from __future__ import annotations

from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


# ─── Pixel event payload ────────────────────────────────────

class UTMParams(_CamelModel):
    source: Optional[str] = None
    medium: Optional[str] = None
    campaign: Optional[str] = None
    term: Optional[str] = None
    content: Optional[str] = None


class ClickIds(_CamelModel):
    fbclid: Optional[str] = None
    gclid: Optional[str] = None
    ttclid: Optional[str] = None


class DeviceInfo(_CamelModel):
    user_agent: Optional[str] = Field(None, alias="userAgent")
    device_type: Optional[str] = Field(None, alias="deviceType")
    browser: Optional[str] = None
    os: Optional[str] = None


class ContactInfo(_CamelModel):
    email: Optional[str] = None
    phone: Optional[str] = None
    name: Optional[str] = None


class Revenue(_CamelModel):
    amount: Optional[float] = None
    currency: Optional[str] = None


class TrackEventRequest(_CamelModel):
    """Event posted by the browser pixel."""
    pixel_id: str = Field(..., alias="pixelId")
    session_id: str = Field(..., alias="sessionId")
    event_type: str = Field(..., alias="eventType")
    event_name: Optional[str] = Field(None, alias="eventName")
    page_url: Optional[str] = Field(None, alias="pageUrl")
    referrer_url: Optional[str] = Field(None, alias="referrerUrl")
    utm: Optional[UTMParams] = None
    click_ids: Optional[ClickIds] = Field(None, alias="clickIds")
    device_info: Optional[DeviceInfo] = Field(None, alias="deviceInfo")
    form_data: Optional[dict] = Field(None, alias="formData")
    contact_info: Optional[ContactInfo] = Field(None, alias="contactInfo")
    revenue: Optional[Revenue] = None
    custom_data: Optional[Any] = Field(None, alias="customData")


class SecureTrackRequest(BaseModel):
    """Event sent directly to a project without a pixel."""
    event_type: Optional[str] = None
    page_url: Optional[str] = None
    project_id: Optional[str] = None
    session_id: Optional[str] = None
    contact_email: Optional[str] = None
    contact_phone: Optional[str] = None
    contact_name: Optional[str] = None
    custom_data: Optional[dict] = None


# ─── Projects & pixels ──────────────────────────────────────

class ProjectCreate(BaseModel):
    name: str
    description: Optional[str] = None
    timezone: Optional[str] = "UTC"


class PixelCreate(BaseModel):
    name: str
    domains: List[str] = Field(default_factory=list)
    conversion_events: Optional[List[str]] = None
    config: dict = Field(default_factory=dict)

