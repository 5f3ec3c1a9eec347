"""
FastAPI route: Alert occurrence notification dispatch.

Provides endpoints to:
    POST /api/v1/alerts/occurrences/{id}/notify      — route one occurrence
    GET  /api/v1/alerts/occurrences/{id}/deliveries  — delivery log
    GET  /api/v1/alerts/channels                     — known channels
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Path

from backend.msp.alerts.alert_service import AlertNotificationService
from backend.msp.alerts.models import AlertChannel, RecipientType
from backend.msp.api.dependencies import get_alert_service
from backend.msp.api.schemas import DeliveryLogResponse, DeliveryRecordOut, DispatchResponse

router = APIRouter(prefix="/api/v1/alerts", tags=["alert-dispatch"])


@router.post(
    "/occurrences/{occurrence_id}/notify",
    response_model=DispatchResponse,
    response_model_exclude_none=True,
    summary="Notify subscribers of an alert occurrence",
    description=(
        "Resolves employee and client subscribers, applies staff quiet hours, "
        "and delivers over each enabled channel. A missing occurrence or a "
        "subscriber lookup failure is reported as success=false with an error."
    ),
)
async def notify_occurrence(
    occurrence_id: int = Path(..., ge=1),
    service: AlertNotificationService = Depends(get_alert_service),
):
    result = await service.route_alert(occurrence_id)
    return result.to_dict()


@router.get(
    "/occurrences/{occurrence_id}/deliveries",
    response_model=DeliveryLogResponse,
    summary="Delivery log for an alert occurrence",
)
async def list_deliveries(
    occurrence_id: int = Path(..., ge=1),
    service: AlertNotificationService = Depends(get_alert_service),
):
    deliveries = await service.list_deliveries(occurrence_id)
    return DeliveryLogResponse(
        occurrence_id=occurrence_id,
        count=len(deliveries),
        deliveries=[DeliveryRecordOut(**d.to_dict()) for d in deliveries],
    )


@router.get("/channels", summary="List delivery channels")
async def list_channels():
    placeholders = {AlertChannel.BROWSER_PUSH, AlertChannel.PUSH}
    return {
        "channels": [
            {"name": c.value, "delivered": c not in placeholders}
            for c in AlertChannel
        ],
        "recipient_types": [r.value for r in RecipientType],
    }
