"""
realtime.py — Push events to connected dashboard sessions.

Administrative (staff) sessions connect over ``WS /api/v1/realtime/admin``
and are registered here. ``broadcast_to_administrators`` fans one event out
to every registered session; a session that fails to receive is dropped
from the registry and does not fail the broadcast.

Per-client realtime delivery is a placeholder: it is logged only.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Set

from fastapi import WebSocket

logger = logging.getLogger(__name__)


class RealtimeHub:
    """Registry of administrative WebSocket sessions."""

    def __init__(self) -> None:
        self._admins: Set[WebSocket] = set()
        self._lock = asyncio.Lock()

    @property
    def admin_count(self) -> int:
        return len(self._admins)

    async def register(self, websocket: WebSocket) -> None:
        async with self._lock:
            self._admins.add(websocket)
        logger.info("Admin realtime session connected (%d open)", self.admin_count)

    async def unregister(self, websocket: WebSocket) -> None:
        async with self._lock:
            self._admins.discard(websocket)
        logger.info("Admin realtime session closed (%d open)", self.admin_count)

    async def broadcast_to_administrators(self, event: Dict[str, Any]) -> int:
        """Send ``event`` to every admin session; returns how many received it."""
        async with self._lock:
            sessions = list(self._admins)

        delivered = 0
        for websocket in sessions:
            try:
                await websocket.send_json(event)
                delivered += 1
            except Exception as exc:
                logger.warning("Dropping admin realtime session: %s", exc)
                await self.unregister(websocket)

        logger.debug(
            "Broadcast %s to %d/%d admin sessions",
            event.get("type"), delivered, len(sessions),
        )
        return delivered

    async def send_to_client(self, user_id: int, event: Dict[str, Any]) -> None:
        logger.info(
            "[REALTIME] Client push for user %s (%s) not delivered: no client sessions",
            user_id, event.get("type"),
        )
