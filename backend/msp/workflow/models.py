"""
models.py — Service-request workflow state and reminder policy.

═══════════════════════════════════════════════════════════════════════════
REMINDER LIFECYCLE
═══════════════════════════════════════════════════════════════════════════

    pending_acknowledgment ──(no ack in time)──► send_acknowledgment_reminder
    acknowledged ──────────(not started)──────► send_start_reminder

    Action kind               Counter                        Ceiling  Interval
    ──────────────────────    ───────────────────────────    ───────  ────────
    acknowledgment reminder   acknowledgment_reminder_count  5        2 min
    start reminder            start_reminder_count           3        10 min

Ceilings and intervals may be overridden per trigger event by an active
``workflow_notification_rules`` row; a null or zero override falls back to
the configured default.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from backend.msp.core.config import Settings, settings


class LifecycleState(str, Enum):
    PENDING_ACKNOWLEDGMENT = "pending_acknowledgment"
    ACKNOWLEDGED           = "acknowledged"
    STARTED                = "started"
    COMPLETED              = "completed"
    CLOSED                 = "closed"
    CANCELLED              = "cancelled"


ACTIONABLE_STATES = frozenset({
    LifecycleState.PENDING_ACKNOWLEDGMENT,
    LifecycleState.ACKNOWLEDGED,
})


class ScheduledAction(str, Enum):
    SEND_ACKNOWLEDGMENT_REMINDER = "send_acknowledgment_reminder"
    SEND_START_REMINDER          = "send_start_reminder"

    @property
    def trigger_event(self) -> str:
        """Key used by ``workflow_notification_rules.trigger_event``."""
        if self is ScheduledAction.SEND_ACKNOWLEDGMENT_REMINDER:
            return "acknowledgment_timeout"
        return "start_timeout"


@dataclass(frozen=True)
class WorkflowState:
    """Snapshot of one service request's reminder state as read by a tick."""
    service_request_id: int
    current_state: str
    request_number: Optional[str] = None
    next_action: Optional[ScheduledAction] = None
    next_action_at: Optional[datetime] = None
    acknowledgment_reminder_count: int = 0
    start_reminder_count: int = 0
    last_acknowledgment_reminder_sent_at: Optional[datetime] = None
    last_start_reminder_sent_at: Optional[datetime] = None

    def reminder_count(self, action: ScheduledAction) -> int:
        if action is ScheduledAction.SEND_ACKNOWLEDGMENT_REMINDER:
            return self.acknowledgment_reminder_count
        return self.start_reminder_count

    def to_dict(self) -> Dict[str, Any]:
        return {
            "service_request_id": self.service_request_id,
            "request_number": self.request_number,
            "current_state": self.current_state,
            "next_action": self.next_action.value if self.next_action else None,
            "next_action_at": self.next_action_at.isoformat() if self.next_action_at else None,
            "acknowledgment_reminder_count": self.acknowledgment_reminder_count,
            "start_reminder_count": self.start_reminder_count,
        }


ACK_REMINDER_ROLES = ("executive", "admin", "technician")


@dataclass(frozen=True)
class ReminderRecipient:
    employee_id: int
    email: str
    first_name: str = ""


@dataclass(frozen=True)
class ReminderTarget:
    """
    Who a reminder goes to and what it is about.

    Acknowledgment reminders go to every active employee holding one of
    ``ACK_REMINDER_ROLES``; start reminders go to the employee who
    acknowledged the request.
    """
    service_request_id: int
    request_number: Optional[str] = None
    title: Optional[str] = None
    recipients: Tuple[ReminderRecipient, ...] = ()


@dataclass(frozen=True)
class ReminderPolicy:
    max_retries: int
    interval_minutes: int

    @property
    def interval(self) -> timedelta:
        return timedelta(minutes=self.interval_minutes)


@dataclass(frozen=True)
class RuleOverride:
    """Active ``workflow_notification_rules`` values for one trigger event."""
    max_retry_count: Optional[int] = None
    retry_interval_minutes: Optional[int] = None


def default_policies(config: Settings = settings) -> Dict[ScheduledAction, ReminderPolicy]:
    return {
        ScheduledAction.SEND_ACKNOWLEDGMENT_REMINDER: ReminderPolicy(
            max_retries=config.ACK_REMINDER_MAX_RETRIES,
            interval_minutes=config.ACK_REMINDER_INTERVAL_MINUTES,
        ),
        ScheduledAction.SEND_START_REMINDER: ReminderPolicy(
            max_retries=config.START_REMINDER_MAX_RETRIES,
            interval_minutes=config.START_REMINDER_INTERVAL_MINUTES,
        ),
    }


def effective_policy(default: ReminderPolicy, override: Optional[RuleOverride]) -> ReminderPolicy:
    """Apply a rule override; falsy override values keep the default."""
    if override is None:
        return default
    return ReminderPolicy(
        max_retries=override.max_retry_count or default.max_retries,
        interval_minutes=override.retry_interval_minutes or default.interval_minutes,
    )
