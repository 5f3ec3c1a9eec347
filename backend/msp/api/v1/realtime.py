"""
FastAPI route: Realtime admin sessions.

    WS /api/v1/realtime/admin — receive alert:created and workflow:reminder events

Inbound frames are read only to detect disconnects; a ``ping`` text frame
is answered with ``pong``.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from backend.msp.alerts.channels.realtime import RealtimeHub

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/realtime", tags=["realtime"])


@router.websocket("/admin")
async def admin_session(websocket: WebSocket):
    hub: RealtimeHub = websocket.app.state.realtime_hub
    await websocket.accept()
    await hub.register(websocket)
    try:
        while True:
            message = await websocket.receive_text()
            if message == "ping":
                await websocket.send_text("pong")
    except WebSocketDisconnect as exc:
        logger.debug("Admin realtime session disconnected (code=%s)", exc.code)
    finally:
        await hub.unregister(websocket)
