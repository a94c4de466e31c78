"""
Pulse Hub — Integration Credential Store
==========================================

Reads and writes the two integration tables:

  project_integrations      one row per (project_id, platform): connection
                            flag, last_sync, health columns
  project_integration_data  JSON blob per (project_id, platform): OAuth
                            tokens (encrypted) and cached sync payloads
"""
from __future__ import annotations

from typing import Dict, List, Optional

from scripts.lib.credentials import get_cipher
from scripts.lib.errors import IntegrationNotFoundError
from scripts.lib.logger import setup_logger
from scripts.lib.supabase_client import get_client, update_integration, utc_now

logger = setup_logger("oauth_store")


def get_integration(project_id: str, platform: str) -> Optional[Dict]:
    """The project_integrations row, or None."""
    client = get_client()
    result = (
        client.table("project_integrations")
        .select("*")
        .eq("project_id", project_id)
        .eq("platform", platform)
        .limit(1)
        .execute()
    )
    return result.data[0] if result.data else None


def get_connected_integrations(platform: str, project_id: str = None) -> List[Dict]:
    """Connected integrations for a platform, optionally narrowed to one project."""
    client = get_client()
    query = (
        client.table("project_integrations")
        .select("*")
        .eq("platform", platform)
        .eq("is_connected", True)
    )
    if project_id:
        query = query.eq("project_id", project_id)
    return query.execute().data or []


def get_all_connected(project_id: str = None) -> List[Dict]:
    """Every connected integration across platforms."""
    client = get_client()
    query = client.table("project_integrations").select("*").eq("is_connected", True)
    if project_id:
        query = query.eq("project_id", project_id)
    return query.execute().data or []


def get_integration_row(project_id: str, platform: str) -> Optional[Dict]:
    """Raw project_integration_data row (data left as stored)."""
    client = get_client()
    result = (
        client.table("project_integration_data")
        .select("*")
        .eq("project_id", project_id)
        .eq("platform", platform)
        .limit(1)
        .execute()
    )
    return result.data[0] if result.data else None


def get_integration_data(project_id: str, platform: str,
                         required: bool = False) -> Optional[Dict]:
    """
    Decrypted data blob for a project's platform.

    Raises:
        IntegrationNotFoundError: when ``required`` and no row exists.
    """
    row = get_integration_row(project_id, platform)
    if not row or not row.get("data"):
        if required:
            raise IntegrationNotFoundError(platform, project_id)
        return None
    return get_cipher().decrypt_fields(row["data"])


def save_integration_data(project_id: str, platform: str, data: Dict,
                          merge: bool = True) -> Dict:
    """
    Store a data blob, merged over the existing one, with tokens encrypted.

    Returns:
        The merged plaintext blob.
    """
    merged = {}
    if merge:
        merged.update(get_integration_data(project_id, platform) or {})
    merged.update(data)

    now = utc_now()
    get_client().table("project_integration_data").upsert(
        {
            "project_id": project_id,
            "platform": platform,
            "data": get_cipher().encrypt_fields(merged),
            "updated_at": now,
        },
        on_conflict="project_id,platform",
    ).execute()
    return merged


def mark_connected(project_id: str, platform: str, is_connected: bool = True,
                   **fields) -> None:
    """Upsert the project_integrations row with a connection flag."""
    row = {
        "project_id": project_id,
        "platform": platform,
        "is_connected": is_connected,
        "updated_at": utc_now(),
    }
    row.update(fields)
    get_client().table("project_integrations").upsert(
        row, on_conflict="project_id,platform",
    ).execute()
    logger.info(
        "%s integration for project %s %s",
        platform, project_id, "connected" if is_connected else "disconnected",
    )


def disconnect(project_id: str, platform: str, data_platforms: List[str] = None) -> bool:
    """Flag the integration disconnected and drop its stored tokens."""
    if not get_integration(project_id, platform):
        raise IntegrationNotFoundError(platform, project_id)

    update_integration(project_id, platform, {
        "is_connected": False,
        "updated_at": utc_now(),
    })
    client = get_client()
    for data_platform in data_platforms or [platform]:
        client.table("project_integration_data").delete().eq(
            "project_id", project_id
        ).eq("platform", data_platform).execute()
    return True
