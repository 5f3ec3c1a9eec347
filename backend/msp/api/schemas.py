"""
Pydantic schemas for the dispatch and workflow API.

Separated from the route handlers so they are reusable across
the codebase (WebSocket handlers, worker, tests).
"""

from __future__ import annotations

from typing import Dict, List, Optional

from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Alert dispatch
# ---------------------------------------------------------------------------

class ChannelTallyOut(BaseModel):
    sent: int = Field(0, ge=0, examples=[2])
    failed: int = Field(0, ge=0, examples=[0])


class DispatchResponse(BaseModel):
    """Aggregate outcome of routing one occurrence."""
    success: bool
    employees: ChannelTallyOut
    clients: ChannelTallyOut
    total: ChannelTallyOut
    error: Optional[str] = Field(
        None, description="Present only when the whole call failed",
    )


class DeliveryRecordOut(BaseModel):
    """One row of the delivery log."""
    occurrence_id: int
    recipient_type: str = Field(..., examples=["employee"])
    recipient_id: int
    subscription_id: int
    channel: str = Field(..., examples=["email"])
    status: str = Field(..., examples=["sent"])
    locale: str = Field(..., examples=["en"])
    recipient_email: Optional[str] = None
    recipient_phone: Optional[str] = None
    sent_at: Optional[str] = None
    failed_at: Optional[str] = None
    error_message: Optional[str] = None


class DeliveryLogResponse(BaseModel):
    occurrence_id: int
    count: int
    deliveries: List[DeliveryRecordOut]


# ---------------------------------------------------------------------------
# Workflow scheduler
# ---------------------------------------------------------------------------

class TickReportOut(BaseModel):
    tick_id: str
    started_at: str
    completed_at: Optional[str] = None
    due: int = 0
    reminded: int = 0
    cleared: int = 0
    skipped: int = 0
    failed: int = 0
    busy: bool = Field(False, description="True when another sweep was already running")
    error: Optional[str] = None


class ReminderPolicyOut(BaseModel):
    max_retries: int
    interval_minutes: int


class SchedulerStatusOut(BaseModel):
    running: bool
    interval_seconds: float
    ticks_completed: int
    tick_in_progress: bool
    last_tick: Optional[TickReportOut] = None
    policies: Dict[str, ReminderPolicyOut] = Field(default_factory=dict)
