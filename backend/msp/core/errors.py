"""
Centralised error handling — exception hierarchy + FastAPI handlers.

Provides:
    • Domain-specific exception classes
    • Consistent JSON error response format
    • Automatic logging of unhandled errors

Usage:
    from backend.msp.core.errors import (
        MSPServiceError,
        OccurrenceNotFoundError,
        SubscriberQueryError,
        ChannelDeliveryError,
        register_error_handlers,
    )

    raise OccurrenceNotFoundError(occurrence_id=42)
"""

from __future__ import annotations

import logging
import traceback
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from backend.msp.core.config import settings

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# Exception Hierarchy
# ═══════════════════════════════════════════════════════════════════════════

class MSPServiceError(Exception):
    """Base exception for all application errors."""

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        *,
        status_code: int = 500,
        error_code: str = "INTERNAL_ERROR",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.error_code = error_code
        self.details = details or {}


class NotFoundError(MSPServiceError):
    """Resource not found (404)."""

    def __init__(self, resource: str, **identifiers: Any):
        details = {"resource": resource, **identifiers}
        super().__init__(
            message=f"{resource} not found",
            status_code=404,
            error_code="NOT_FOUND",
            details=details,
        )


class OccurrenceNotFoundError(NotFoundError):
    """The alert occurrence to dispatch does not exist."""

    def __init__(self, occurrence_id: int):
        super().__init__("Alert occurrence", occurrence_id=occurrence_id)
        self.occurrence_id = occurrence_id


class SubscriberQueryError(MSPServiceError):
    """Subscriber lookup failed — fatal to one dispatch call (503)."""

    def __init__(self, audience: str, message: str = ""):
        super().__init__(
            message=f"Could not load {audience} subscriptions: {message}",
            status_code=503,
            error_code="SUBSCRIBER_QUERY_FAILED",
            details={"audience": audience},
        )


class ExternalServiceError(MSPServiceError):
    """External API call failed (502)."""

    def __init__(self, service: str, message: str = "", **details: Any):
        super().__init__(
            message=f"External service '{service}' failed: {message}",
            status_code=502,
            error_code="EXTERNAL_SERVICE_ERROR",
            details={"service": service, **details},
        )


class ChannelDeliveryError(ExternalServiceError):
    """One channel transport rejected a message."""

    def __init__(self, channel: str, message: str = "", **details: Any):
        super().__init__(channel, message, **details)
        self.channel = channel
        self.error_code = "CHANNEL_DELIVERY_ERROR"


class SmsDeliveryError(ChannelDeliveryError):
    """SMS gateway failure, optionally carrying a user-presentable message."""

    def __init__(self, message: str = "", *, user_message: Optional[str] = None):
        super().__init__("sms", message)
        self.user_message = user_message


class SchedulerError(MSPServiceError):
    """Reminder scheduler misuse or failure (500)."""

    def __init__(self, message: str):
        super().__init__(
            message=message,
            status_code=500,
            error_code="SCHEDULER_ERROR",
        )


# ═══════════════════════════════════════════════════════════════════════════
# Error Response Builder
# ═══════════════════════════════════════════════════════════════════════════

def _build_error_response(
    status_code: int,
    error_code: str,
    message: str,
    details: Optional[Dict[str, Any]] = None,
    request: Optional[Request] = None,
) -> JSONResponse:
    """Build a consistent JSON error response."""
    body: Dict[str, Any] = {
        "error": {
            "code": error_code,
            "message": message,
            "status": status_code,
        }
    }

    if details:
        body["error"]["details"] = details

    if request and not settings.is_production:
        body["error"]["path"] = str(request.url.path)
        body["error"]["method"] = request.method

    return JSONResponse(status_code=status_code, content=body)


# ═══════════════════════════════════════════════════════════════════════════
# FastAPI Exception Handlers
# ═══════════════════════════════════════════════════════════════════════════

def register_error_handlers(app: FastAPI) -> None:
    """Register all exception handlers on the FastAPI app."""

    @app.exception_handler(MSPServiceError)
    async def handle_service_error(request: Request, exc: MSPServiceError):
        logger.error(
            "API Error [%s]: %s | details=%s",
            exc.error_code, exc.message, exc.details,
        )
        return _build_error_response(
            exc.status_code, exc.error_code, exc.message,
            exc.details, request,
        )

    @app.exception_handler(ValueError)
    async def handle_value_error(request: Request, exc: ValueError):
        logger.warning("ValueError: %s", exc)
        return _build_error_response(
            422, "VALIDATION_ERROR", str(exc), request=request,
        )

    @app.exception_handler(Exception)
    async def handle_unhandled(request: Request, exc: Exception):
        logger.critical(
            "Unhandled exception: %s\n%s",
            exc, traceback.format_exc(),
        )
        message = str(exc) if settings.DEBUG else "Internal server error"
        return _build_error_response(
            500, "INTERNAL_ERROR", message, request=request,
        )
