"""
Request correlation middleware.

Every HTTP request gets a correlation ID (the caller's ``X-Request-ID``
or a fresh one) that is echoed on the response and bound to the log
context while the request is handled. ``X-Process-Time`` reports the
time until the response headers went out.

WebSocket and lifespan traffic passes straight through.
"""

from __future__ import annotations

import logging
import time
import uuid

from starlette.datastructures import Headers, MutableHeaders
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from backend.msp.core.logging_config import log_context

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"
PROCESS_TIME_HEADER = "X-Process-Time"

# Polled constantly; never logged.
_UNLOGGED_PREFIXES = ("/docs", "/redoc", "/openapi", "/favicon", "/health/live")


class RequestCorrelationMiddleware:
    """Tag each HTTP exchange with a request ID and write one access log line."""

    def __init__(self, app: ASGIApp):
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        request_id = Headers(scope=scope).get(REQUEST_ID_HEADER) or uuid.uuid4().hex[:16]
        method = scope["method"]
        path = scope["path"]
        client = scope.get("client")
        peer = client[0] if client else "unknown"

        started = time.perf_counter()
        status_code = 500

        async def send_with_headers(message: Message) -> None:
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = message["status"]
                headers = MutableHeaders(scope=message)
                headers[REQUEST_ID_HEADER] = request_id
                headers[PROCESS_TIME_HEADER] = f"{(time.perf_counter() - started) * 1000:.1f}ms"
            await send(message)

        with log_context(request_id=request_id, endpoint=path, method=method):
            try:
                await self.app(scope, receive, send_with_headers)
            finally:
                self._log_exchange(method, path, status_code, started, peer)

    @staticmethod
    def _log_exchange(method: str, path: str, status_code: int, started: float, peer: str) -> None:
        if path.startswith(_UNLOGGED_PREFIXES) and status_code < 500:
            return
        elapsed_ms = (time.perf_counter() - started) * 1000
        if status_code >= 500:
            level = logging.ERROR
        elif status_code >= 400:
            level = logging.WARNING
        else:
            level = logging.INFO
        logger.log(
            level,
            "%s %s → %d (%.1fms) [%s]",
            method, path, status_code, elapsed_ms, peer,
            extra={"duration_ms": elapsed_ms, "status_code": status_code},
        )
