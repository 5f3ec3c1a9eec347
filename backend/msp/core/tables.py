"""
ORM tables read and written by the alert dispatch and workflow reminder core.

═══════════════════════════════════════════════════════════════════════════
SCHEMA OVERVIEW
═══════════════════════════════════════════════════════════════════════════

    accounts ─┬─ agent_devices ── alert_occurrences ── alert_configurations
              │                         │
              ├─ employee_alert_subscriptions ── employees
              ├─ client_alert_subscriptions ──── client_users
              │
              └─ alert_notifications   (one row per delivery attempt)

    service_requests ── service_request_workflow_state
    workflow_notification_rules        (per-trigger retry ceiling overrides)

Set-valued subscription filters (severities, alert types, metric types,
client categories) are JSON arrays so the same schema runs on PostgreSQL
and SQLite. Schema management is owned by the back-office application;
``init_db()`` only creates these tables for development and tests.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional

from sqlalchemy import JSON, Boolean, DateTime, Float, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from backend.msp.core.database import Base


# ═══════════════════════════════════════════════════════════════════════════
# Directory
# ═══════════════════════════════════════════════════════════════════════════

class AccountRow(Base):
    __tablename__ = "accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(200))


class EmployeeRow(Base):
    __tablename__ = "employees"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    first_name: Mapped[str] = mapped_column(String(100), default="")
    last_name: Mapped[str] = mapped_column(String(100), default="")
    email: Mapped[Optional[str]] = mapped_column(String(255))
    phone: Mapped[Optional[str]] = mapped_column(String(20))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    role: Mapped[Optional[str]] = mapped_column(String(50))  # executive | admin | technician | ...


class ClientUserRow(Base):
    __tablename__ = "client_users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    first_name: Mapped[str] = mapped_column(String(100), default="")
    last_name: Mapped[str] = mapped_column(String(100), default="")
    email: Mapped[Optional[str]] = mapped_column(String(255))
    phone: Mapped[Optional[str]] = mapped_column(String(20))
    preferred_language: Mapped[Optional[str]] = mapped_column(String(10))


class AgentDeviceRow(Base):
    __tablename__ = "agent_devices"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    device_name: Mapped[str] = mapped_column(String(200))
    account_id: Mapped[int] = mapped_column(ForeignKey("accounts.id"))


# ═══════════════════════════════════════════════════════════════════════════
# Alerts
# ═══════════════════════════════════════════════════════════════════════════

class AlertConfigurationRow(Base):
    """Alert policy metadata: client visibility and client-facing copy."""
    __tablename__ = "alert_configurations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    client_visible: Mapped[bool] = mapped_column(Boolean, default=False)
    client_category: Mapped[Optional[str]] = mapped_column(String(50))
    client_display_name_en: Mapped[Optional[str]] = mapped_column(String(200))
    client_display_name_es: Mapped[Optional[str]] = mapped_column(String(200))
    client_description_en: Mapped[Optional[str]] = mapped_column(Text)
    client_description_es: Mapped[Optional[str]] = mapped_column(Text)


class AlertOccurrenceRow(Base):
    __tablename__ = "alert_occurrences"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    alert_config_id: Mapped[Optional[int]] = mapped_column(ForeignKey("alert_configurations.id"))
    agent_id: Mapped[int] = mapped_column(ForeignKey("agent_devices.id"))
    severity: Mapped[str] = mapped_column(String(20))
    alert_type: Mapped[str] = mapped_column(String(50))
    metric_type: Mapped[str] = mapped_column(String(50))
    metric_value: Mapped[Optional[float]] = mapped_column(Float)
    indicator_count: Mapped[int] = mapped_column(Integer, default=0)
    indicators_triggered: Mapped[Optional[Any]] = mapped_column(JSON)
    alert_title: Mapped[Optional[str]] = mapped_column(String(300))
    alert_description: Mapped[Optional[str]] = mapped_column(Text)
    triggered_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class EmployeeSubscriptionRow(Base):
    __tablename__ = "employee_alert_subscriptions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    employee_id: Mapped[int] = mapped_column(ForeignKey("employees.id"))
    account_id: Mapped[Optional[int]] = mapped_column(ForeignKey("accounts.id"))
    agent_id: Mapped[Optional[int]] = mapped_column(ForeignKey("agent_devices.id"))
    min_severity: Mapped[List[str]] = mapped_column(JSON, default=list)
    alert_types: Mapped[List[str]] = mapped_column(JSON, default=list)
    metric_types: Mapped[List[str]] = mapped_column(JSON, default=list)
    notify_realtime: Mapped[bool] = mapped_column(Boolean, default=True)
    notify_email: Mapped[bool] = mapped_column(Boolean, default=True)
    notify_sms: Mapped[bool] = mapped_column(Boolean, default=False)
    notify_browser: Mapped[bool] = mapped_column(Boolean, default=False)
    email: Mapped[Optional[str]] = mapped_column(String(255))
    phone_number: Mapped[Optional[str]] = mapped_column(String(20))
    quiet_hours_start: Mapped[Optional[str]] = mapped_column(String(8))
    quiet_hours_end: Mapped[Optional[str]] = mapped_column(String(8))
    quiet_hours_timezone: Mapped[Optional[str]] = mapped_column(String(50))
    enabled: Mapped[bool] = mapped_column(Boolean, default=True)


class ClientSubscriptionRow(Base):
    __tablename__ = "client_alert_subscriptions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("client_users.id"))
    account_id: Mapped[int] = mapped_column(ForeignKey("accounts.id"))
    agent_id: Mapped[Optional[int]] = mapped_column(ForeignKey("agent_devices.id"))
    alert_categories: Mapped[List[str]] = mapped_column(JSON, default=list)
    notify_email: Mapped[bool] = mapped_column(Boolean, default=True)
    notify_sms: Mapped[bool] = mapped_column(Boolean, default=False)
    notify_push: Mapped[bool] = mapped_column(Boolean, default=False)
    email: Mapped[Optional[str]] = mapped_column(String(255))
    phone_number: Mapped[Optional[str]] = mapped_column(String(20))
    preferred_language: Mapped[Optional[str]] = mapped_column(String(10))
    digest_mode: Mapped[bool] = mapped_column(Boolean, default=False)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True)


class AlertNotificationRow(Base):
    """Durable delivery log — one row per (occurrence, subscriber, channel)."""
    __tablename__ = "alert_notifications"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    occurrence_id: Mapped[int] = mapped_column(ForeignKey("alert_occurrences.id"), index=True)
    recipient_type: Mapped[str] = mapped_column(String(20))
    recipient_id: Mapped[int] = mapped_column(Integer)
    subscription_id: Mapped[int] = mapped_column(Integer)
    recipient_email: Mapped[Optional[str]] = mapped_column(String(255))
    recipient_phone: Mapped[Optional[str]] = mapped_column(String(20))
    channel: Mapped[str] = mapped_column(String(20))
    status: Mapped[str] = mapped_column(String(20))
    language: Mapped[str] = mapped_column(String(10))
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    failed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    error_message: Mapped[Optional[str]] = mapped_column(Text)


# ═══════════════════════════════════════════════════════════════════════════
# Service-request workflow
# ═══════════════════════════════════════════════════════════════════════════

class ServiceRequestRow(Base):
    __tablename__ = "service_requests"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    request_number: Mapped[str] = mapped_column(String(50))
    title: Mapped[Optional[str]] = mapped_column(String(255))
    soft_delete: Mapped[bool] = mapped_column(Boolean, default=False)


class WorkflowStateRow(Base):
    __tablename__ = "service_request_workflow_state"

    service_request_id: Mapped[int] = mapped_column(
        ForeignKey("service_requests.id"), primary_key=True,
    )
    current_state: Mapped[str] = mapped_column(String(50), default="pending_acknowledgment")
    acknowledged_by_employee_id: Mapped[Optional[int]] = mapped_column(ForeignKey("employees.id"))
    next_scheduled_action: Mapped[Optional[str]] = mapped_column(String(50))
    next_scheduled_action_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), index=True,
    )
    acknowledgment_reminder_count: Mapped[int] = mapped_column(Integer, default=0)
    last_acknowledgment_reminder_sent_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
    )
    start_reminder_count: Mapped[int] = mapped_column(Integer, default=0)
    last_start_reminder_sent_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
    )


class WorkflowNotificationRuleRow(Base):
    __tablename__ = "workflow_notification_rules"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    trigger_event: Mapped[str] = mapped_column(String(50))  # acknowledgment_timeout | start_timeout
    max_retry_count: Mapped[Optional[int]] = mapped_column(Integer)
    retry_interval_minutes: Mapped[Optional[int]] = mapped_column(Integer)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
