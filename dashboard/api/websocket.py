"""
Pulse Hub — WebSocket Manager
===============================
Manages WebSocket connections for live dashboard push updates.

Usage:
    from dashboard.api.websocket import ws_manager, websocket_endpoint

    # After a sync job:
    await ws_manager.broadcast({"event": SYNC_COMPLETE, "data": {...}})

    # In FastAPI:
    app.add_api_websocket_route("/ws/dashboard", websocket_endpoint)
"""
from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Dict, Set

from fastapi import WebSocket, WebSocketDisconnect

from scripts.lib.logger import setup_logger

logger = setup_logger("websocket")

SYNC_COMPLETE = "sync_complete"
GAP_DETECTED = "gap_detected"
HEALTH_CHECKED = "health_checked"


def _payload(message: Dict[str, Any]) -> str:
    return json.dumps(
        {**message, "timestamp": datetime.now(timezone.utc).isoformat()},
        default=str,
    )


class WebSocketManager:
    """Manages active WebSocket connections and broadcasts events."""

    def __init__(self):
        self._connections: Set[WebSocket] = set()

    async def connect(self, websocket: WebSocket):
        """Accept and register a new WebSocket connection."""
        await websocket.accept()
        self._connections.add(websocket)
        logger.info(
            "WebSocket connected. Active connections: %d", len(self._connections)
        )

    def disconnect(self, websocket: WebSocket):
        """Remove a disconnected WebSocket."""
        self._connections.discard(websocket)
        logger.info(
            "WebSocket disconnected. Active connections: %d", len(self._connections)
        )

    async def broadcast(self, message: Dict[str, Any]):
        """Send a message to all connected clients."""
        if not self._connections:
            return

        payload = _payload(message)
        disconnected = set()
        for ws in list(self._connections):
            try:
                await ws.send_text(payload)
            except Exception:
                disconnected.add(ws)

        for ws in disconnected:
            self._connections.discard(ws)

    async def send_to(self, websocket: WebSocket, message: Dict[str, Any]):
        """Send a message to a specific connection."""
        try:
            await websocket.send_text(_payload(message))
        except Exception:
            self._connections.discard(websocket)

    @property
    def connection_count(self) -> int:
        return len(self._connections)


# Singleton manager
ws_manager = WebSocketManager()


async def notify(event: str, data: Dict[str, Any]):
    """Broadcast a dashboard event; a failed push never fails the caller."""
    try:
        await ws_manager.broadcast({"event": event, "data": data})
    except Exception as e:
        logger.warning("Broadcast of %s failed: %s", event, e)


async def websocket_endpoint(websocket: WebSocket):
    """
    WebSocket endpoint for dashboard live updates.

    Clients connect to ws://host/ws/dashboard and receive:
    - sync_complete: after a platform or unified sync finishes
    - gap_detected: when gap detection finds missing or stale Calendly data
    - health_checked: after the sync health monitor runs
    """
    await ws_manager.connect(websocket)

    await ws_manager.send_to(websocket, {
        "event": "connected",
        "data": {"message": "Connected to Pulse Hub live feed"},
    })

    try:
        while True:
            data = await websocket.receive_text()
            try:
                msg = json.loads(data)
                if msg.get("type") == "ping":
                    await ws_manager.send_to(websocket, {"event": "pong", "data": {}})
            except json.JSONDecodeError:
                pass
    except WebSocketDisconnect:
        ws_manager.disconnect(websocket)
    except Exception:
        ws_manager.disconnect(websocket)
