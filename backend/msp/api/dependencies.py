"""
FastAPI dependencies — hand route handlers the services built in the lifespan.
"""

from __future__ import annotations

from fastapi import Request

from backend.msp.alerts.alert_service import AlertNotificationService
from backend.msp.core.errors import SchedulerError
from backend.msp.workflow.scheduler import ReminderScheduler


def get_alert_service(request: Request) -> AlertNotificationService:
    return request.app.state.alert_service


def get_scheduler(request: Request) -> ReminderScheduler:
    scheduler = getattr(request.app.state, "scheduler", None)
    if scheduler is None:
        raise SchedulerError("Reminder scheduler is not configured")
    return scheduler
