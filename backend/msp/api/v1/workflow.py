"""
FastAPI route: Service-request reminder scheduler.

Provides endpoints to:
    GET  /api/v1/workflow/scheduler      — running state, last sweep, policies
    POST /api/v1/workflow/scheduler/run  — sweep now (busy report if one is running)
"""

from __future__ import annotations

from fastapi import APIRouter, Depends

from backend.msp.api.dependencies import get_scheduler
from backend.msp.api.schemas import SchedulerStatusOut, TickReportOut
from backend.msp.workflow.scheduler import ReminderScheduler

router = APIRouter(prefix="/api/v1/workflow", tags=["workflow"])


@router.get("/scheduler", response_model=SchedulerStatusOut, summary="Reminder scheduler status")
async def scheduler_status(scheduler: ReminderScheduler = Depends(get_scheduler)):
    return scheduler.status().to_dict()


@router.post("/scheduler/run", response_model=TickReportOut, summary="Run one reminder sweep now")
async def run_scheduler_once(scheduler: ReminderScheduler = Depends(get_scheduler)):
    report = await scheduler.run_once()
    return report.to_dict()
