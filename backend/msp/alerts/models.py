"""
models.py — Shared data structures for alert notification dispatch.

Defines:
    • AlertChannel    — delivery channel enum
    • RecipientType   — employee (staff) vs client audience
    • DeliveryStatus  — outcome of one delivery attempt
    • AlertOccurrence — one triggered alert, immutable once loaded
    • ContactProfile  — the person behind a subscription
    • EmployeeSubscription / ClientSubscription — standing preferences
    • DeliveryAttempt — durable record of one (occurrence, subscriber, channel)
    • ChannelTally / DispatchResult — aggregate outcome returned to callers

═══════════════════════════════════════════════════════════════════════════
AUDIENCES AND CHANNELS
═══════════════════════════════════════════════════════════════════════════

    Audience    Realtime            Email               SMS        Push
    ────────    ────────────────    ────────────────    ───────    ───────────
    Employee    admin broadcast     technical, en       en         placeholder
    Client      placeholder         localized           localized  placeholder

Placeholders are logged and neither recorded nor counted.

═══════════════════════════════════════════════════════════════════════════
RECIPIENT ADDRESS RESOLUTION
═══════════════════════════════════════════════════════════════════════════

A subscription-level override always wins over the person's default
contact info. Email and phone are resolved independently, so a
subscription may override only its phone number and still mail the
person's default address.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, time
from enum import Enum
from typing import Any, Dict, FrozenSet, Mapping, Optional, Union


# ═══════════════════════════════════════════════════════════════════════════
# Enums
# ═══════════════════════════════════════════════════════════════════════════

SEVERITY_LEVELS = ("low", "medium", "high", "critical")


class AlertChannel(str, Enum):
    """Delivery channels known to the dispatcher."""
    REALTIME     = "websocket"
    EMAIL        = "email"
    SMS          = "sms"
    BROWSER_PUSH = "browser"   # employee placeholder
    PUSH         = "push"      # client placeholder


class RecipientType(str, Enum):
    EMPLOYEE = "employee"
    CLIENT   = "client"


class DeliveryStatus(str, Enum):
    """Outcome of one attempt. There is no pending state: attempts are recorded after they finish."""
    SENT   = "sent"
    FAILED = "failed"


def resolve_contact(override: Optional[str], default: Optional[str]) -> Optional[str]:
    """Subscription override first, then the person's default."""
    return override or default or None


def humanize_alert_type(alert_type: str) -> str:
    """``disk_full`` -> ``DISK FULL``."""
    return alert_type.replace("_", " ").upper()


# ═══════════════════════════════════════════════════════════════════════════
# Occurrence
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class AlertOccurrence:
    """
    One triggered alert instance with its policy metadata.

    Attributes
    ----------
    occurrence_id : int
        Primary key of the occurrence row.
    agent_id, agent_name : int, str
        Source device / monitoring agent.
    account_id, account_name : int | None, str | None
        Owning customer account.
    severity : str
        One of SEVERITY_LEVELS.
    alert_type, metric_type : str
        Tags matched against subscription filters (``disk_full`` / ``disk``).
    client_visible : bool
        Whether client subscriptions are considered at all.
    client_category : str | None
        Simplified category matched against client subscriptions.
    display_names, descriptions : mapping locale -> text
        Client-facing copy authored per language on the alert policy.
    indicators : Any
        Free-form technical indicator payload (JSON).
    """
    occurrence_id: int
    agent_id: int
    agent_name: str
    severity: str
    alert_type: str
    metric_type: str
    triggered_at: datetime
    account_id: Optional[int] = None
    account_name: Optional[str] = None
    metric_value: Optional[float] = None
    indicator_count: int = 0
    indicators: Optional[Any] = None
    title: Optional[str] = None
    description: Optional[str] = None
    client_visible: bool = False
    client_category: Optional[str] = None
    display_names: Mapping[str, str] = field(default_factory=dict)
    descriptions: Mapping[str, str] = field(default_factory=dict)

    @property
    def alert_name(self) -> str:
        """Technical name used in staff-facing messages."""
        return humanize_alert_type(self.alert_type)

    def display_name(self, locale: str, fallback_locale: str = "en") -> str:
        """Client-facing name for ``locale``, then the fallback locale, then the technical name."""
        return (
            self.display_names.get(locale)
            or self.display_names.get(fallback_locale)
            or self.alert_name
        )

    def client_description(self, locale: str, fallback_locale: str = "en") -> str:
        return (
            self.descriptions.get(locale)
            or self.descriptions.get(fallback_locale)
            or self.description
            or ""
        )

    def to_event(self) -> Dict[str, Any]:
        """Realtime event broadcast to administrative sessions."""
        return {
            "type": "alert:created",
            "data": {
                "alert": {
                    "id": self.occurrence_id,
                    "agent_name": self.agent_name,
                    "alert_type": self.alert_type,
                    "severity": self.severity,
                    "metric_type": self.metric_type,
                    "metric_value": self.metric_value,
                    "triggered_at": self.triggered_at.isoformat(),
                },
            },
        }


# ═══════════════════════════════════════════════════════════════════════════
# Subscriptions
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class ContactProfile:
    """The employee or client user behind a subscription."""
    person_id: int
    first_name: str = ""
    last_name: str = ""
    email: Optional[str] = None
    phone: Optional[str] = None
    is_active: bool = True
    preferred_language: Optional[str] = None

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


ClockValue = Union[str, time]


@dataclass(frozen=True)
class QuietHoursWindow:
    """Local-time suppression window; ``start`` may be later than ``end`` (wraps midnight)."""
    start: ClockValue
    end: ClockValue
    timezone: Optional[str] = None


@dataclass(frozen=True)
class EmployeeSubscription:
    subscription_id: int
    employee: ContactProfile
    enabled: bool = True
    agent_id: Optional[int] = None      # None = all agents
    account_id: Optional[int] = None    # None = all accounts
    severities: FrozenSet[str] = frozenset()
    alert_types: FrozenSet[str] = frozenset()
    metric_types: FrozenSet[str] = frozenset()
    notify_realtime: bool = False
    notify_email: bool = False
    notify_sms: bool = False
    notify_browser: bool = False
    email_override: Optional[str] = None
    phone_override: Optional[str] = None
    quiet_hours: Optional[QuietHoursWindow] = None

    recipient_type = RecipientType.EMPLOYEE

    @property
    def recipient_id(self) -> int:
        return self.employee.person_id

    @property
    def recipient_name(self) -> str:
        return self.employee.full_name

    @property
    def recipient_email(self) -> Optional[str]:
        return resolve_contact(self.email_override, self.employee.email)

    @property
    def recipient_phone(self) -> Optional[str]:
        return resolve_contact(self.phone_override, self.employee.phone)


@dataclass(frozen=True)
class ClientSubscription:
    subscription_id: int
    user: ContactProfile
    account_id: int
    enabled: bool = True
    agent_id: Optional[int] = None      # None = every agent of the account
    categories: FrozenSet[str] = frozenset()
    notify_email: bool = False
    notify_sms: bool = False
    notify_push: bool = False
    email_override: Optional[str] = None
    phone_override: Optional[str] = None
    preferred_language: Optional[str] = None
    digest_mode: bool = False

    recipient_type = RecipientType.CLIENT

    @property
    def recipient_id(self) -> int:
        return self.user.person_id

    @property
    def recipient_name(self) -> str:
        return self.user.full_name

    @property
    def recipient_email(self) -> Optional[str]:
        return resolve_contact(self.email_override, self.user.email)

    @property
    def recipient_phone(self) -> Optional[str]:
        return resolve_contact(self.phone_override, self.user.phone)

    @property
    def requested_language(self) -> Optional[str]:
        return self.preferred_language or self.user.preferred_language


Subscription = Union[EmployeeSubscription, ClientSubscription]


# ═══════════════════════════════════════════════════════════════════════════
# Delivery records
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class DeliveryAttempt:
    """One finished delivery attempt; exactly one of sent_at / failed_at is set."""
    occurrence_id: int
    recipient_type: RecipientType
    recipient_id: int
    subscription_id: int
    channel: AlertChannel
    status: DeliveryStatus
    locale: str
    recipient_email: Optional[str] = None
    recipient_phone: Optional[str] = None
    sent_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    error_message: Optional[str] = None

    def __post_init__(self) -> None:
        if (self.sent_at is None) == (self.failed_at is None):
            raise ValueError("exactly one of sent_at / failed_at must be set")
        if self.status == DeliveryStatus.SENT and self.sent_at is None:
            raise ValueError("sent attempt requires sent_at")
        if self.status == DeliveryStatus.FAILED and self.failed_at is None:
            raise ValueError("failed attempt requires failed_at")

    @classmethod
    def for_outcome(
        cls,
        occurrence: AlertOccurrence,
        subscription: Subscription,
        channel: AlertChannel,
        locale: str,
        *,
        at: datetime,
        error: Optional[str] = None,
    ) -> "DeliveryAttempt":
        failed = error is not None
        return cls(
            occurrence_id=occurrence.occurrence_id,
            recipient_type=subscription.recipient_type,
            recipient_id=subscription.recipient_id,
            subscription_id=subscription.subscription_id,
            channel=channel,
            status=DeliveryStatus.FAILED if failed else DeliveryStatus.SENT,
            locale=locale,
            recipient_email=subscription.recipient_email,
            recipient_phone=subscription.recipient_phone,
            sent_at=None if failed else at,
            failed_at=at if failed else None,
            error_message=error,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "occurrence_id": self.occurrence_id,
            "recipient_type": self.recipient_type.value,
            "recipient_id": self.recipient_id,
            "subscription_id": self.subscription_id,
            "channel": self.channel.value,
            "status": self.status.value,
            "locale": self.locale,
            "recipient_email": self.recipient_email,
            "recipient_phone": self.recipient_phone,
            "sent_at": self.sent_at.isoformat() if self.sent_at else None,
            "failed_at": self.failed_at.isoformat() if self.failed_at else None,
            "error_message": self.error_message,
        }


@dataclass
class ChannelTally:
    sent: int = 0
    failed: int = 0

    def add(self, other: "ChannelTally") -> "ChannelTally":
        return ChannelTally(self.sent + other.sent, self.failed + other.failed)

    def to_dict(self) -> Dict[str, int]:
        return {"sent": self.sent, "failed": self.failed}


@dataclass
class DispatchResult:
    """Aggregate outcome of routing one occurrence; per-attempt detail lives in the delivery log."""
    success: bool
    employees: ChannelTally = field(default_factory=ChannelTally)
    clients: ChannelTally = field(default_factory=ChannelTally)
    error: Optional[str] = None

    @property
    def total(self) -> ChannelTally:
        return self.employees.add(self.clients)

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "success": self.success,
            "employees": self.employees.to_dict(),
            "clients": self.clients.to_dict(),
            "total": self.total.to_dict(),
        }
        if self.error is not None:
            body["error"] = self.error
        return body
