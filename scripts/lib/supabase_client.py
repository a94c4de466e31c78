"""
Supabase Client Helper for Pulse Hub.
Provides the shared connection and small table/RPC helpers.

Usage:
    from scripts.lib.supabase_client import get_client, query_table, upsert_rows

    client = get_client()
    rows = query_table("calendly_events", filters={"project_id": pid}, limit=50)
    upsert_rows("ghl_forms", rows, on_conflict="project_id,form_id")
"""
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv

from scripts.lib.logger import setup_logger

logger = setup_logger("supabase_client")

# Load .env from project root
PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
load_dotenv(PROJECT_ROOT / ".env")

SUPABASE_URL = os.environ.get("SUPABASE_URL", "")
SUPABASE_KEY = (
    os.environ.get("SUPABASE_SERVICE_ROLE_KEY", "")
    or os.environ.get("SUPABASE_KEY", "")
)

_client = None


def get_client():
    """Create and return a Supabase client (singleton)."""
    global _client
    if _client is not None:
        return _client

    if not SUPABASE_URL or not SUPABASE_KEY:
        raise RuntimeError(
            "SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set in .env"
        )

    from supabase import create_client
    _client = create_client(SUPABASE_URL, SUPABASE_KEY)
    logger.info("Supabase client connected to %s", SUPABASE_URL)
    return _client


def utc_now() -> str:
    """Current UTC time as an ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat()


def query_table(
    table: str,
    select: str = "*",
    filters: Dict[str, Any] = None,
    order_by: str = None,
    desc: bool = True,
    limit: int = 100,
    offset: int = 0,
) -> List[Dict]:
    """
    Query a Supabase table with optional filters, ordering, and pagination.

    Args:
        table: Table name.
        select: Columns to select (default "*").
        filters: Dict of column=value equality filters.
        order_by: Column to order by.
        desc: Descending order (default True).
        limit: Max rows to return.
        offset: Rows to skip.

    Returns:
        List of row dicts.
    """
    try:
        client = get_client()
        query = client.table(table).select(select)

        if filters:
            for col, val in filters.items():
                query = query.eq(col, val)

        if order_by:
            query = query.order(order_by, desc=desc)

        query = query.range(offset, offset + limit - 1)
        result = query.execute()
        return result.data or []
    except Exception as e:
        logger.error("Supabase query failed on %s: %s", table, e)
        return []


def insert_row(table: str, row: Dict) -> Optional[Dict]:
    """
    Insert a single row and return it as stored (with generated id).

    Returns:
        The inserted row, or None on failure.
    """
    try:
        client = get_client()
        result = client.table(table).insert(row).execute()
        if result.data:
            return result.data[0]
        return None
    except Exception as e:
        logger.error("Supabase insert failed on %s: %s", table, e)
        return None


def upsert_row(table: str, row: Dict, on_conflict: str = None) -> bool:
    """
    Upsert a single row into a table.

    Args:
        table: Table name.
        row: Dict of column=value pairs.
        on_conflict: Column(s) for conflict resolution; plain insert when omitted.

    Returns:
        True on success, False on failure.
    """
    try:
        client = get_client()
        query = client.table(table)
        if on_conflict:
            query.upsert(row, on_conflict=on_conflict).execute()
        else:
            query.insert(row).execute()
        return True
    except Exception as e:
        logger.error("Supabase upsert failed on %s: %s", table, e)
        return False


def upsert_rows(
    table: str,
    rows: List[Dict],
    on_conflict: str = None,
    ignore_duplicates: bool = False,
) -> bool:
    """
    Upsert multiple rows into a table.

    Args:
        table: Table name.
        rows: List of row dicts.
        on_conflict: Conflict resolution column(s).
        ignore_duplicates: Keep existing rows on conflict instead of updating.

    Returns:
        True on success, False on failure.
    """
    if not rows:
        return True

    try:
        client = get_client()
        query = client.table(table)
        if on_conflict:
            query.upsert(
                rows, on_conflict=on_conflict, ignore_duplicates=ignore_duplicates,
            ).execute()
        else:
            query.insert(rows).execute()
        logger.info("Upserted %d rows into %s", len(rows), table)
        return True
    except Exception as e:
        logger.error("Supabase bulk upsert failed on %s: %s", table, e)
        return False


def call_rpc(name: str, params: Dict = None) -> Any:
    """
    Call a Postgres function through PostgREST.

    Returns:
        The function's result data, or None on failure.
    """
    try:
        client = get_client()
        result = client.rpc(name, params or {}).execute()
        return result.data
    except Exception as e:
        logger.error("RPC %s failed: %s", name, e)
        return None


def update_integration(project_id: str, platform: str, fields: Dict) -> bool:
    """Update columns on a project_integrations row."""
    try:
        client = get_client()
        client.table("project_integrations").update(fields).eq(
            "project_id", project_id
        ).eq("platform", platform).execute()
        return True
    except Exception as e:
        logger.error(
            "Failed to update %s integration for project %s: %s",
            platform, project_id, e,
        )
        return False


def mark_synced(project_id: str, platform: str) -> bool:
    """Stamp last_sync on a project's integration."""
    return update_integration(project_id, platform, {"last_sync": utc_now()})
