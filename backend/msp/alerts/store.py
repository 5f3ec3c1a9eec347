"""
store.py — Read/write access to alert data.

``AlertStore`` is the collaborator interface the dispatch core depends on;
``SqlAlertStore`` implements it on the SQLAlchemy async session factory.

Reads:   occurrence + policy metadata, employee / client subscription
         candidates joined to their people.
Writes:  one alert_notifications row per delivery attempt.
"""

from __future__ import annotations

import abc
import logging
from typing import List, Optional

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backend.msp.alerts.models import (
    AlertChannel,
    AlertOccurrence,
    ClientSubscription,
    ContactProfile,
    DeliveryAttempt,
    DeliveryStatus,
    EmployeeSubscription,
    QuietHoursWindow,
    RecipientType,
)
from backend.msp.core.tables import (
    AccountRow,
    AgentDeviceRow,
    AlertConfigurationRow,
    AlertNotificationRow,
    AlertOccurrenceRow,
    ClientSubscriptionRow,
    ClientUserRow,
    EmployeeRow,
    EmployeeSubscriptionRow,
)

logger = logging.getLogger(__name__)


class AlertStore(abc.ABC):
    """Data-store collaborator used by the resolver, recorder and service."""

    @abc.abstractmethod
    async def get_occurrence(self, occurrence_id: int) -> Optional[AlertOccurrence]:
        ...

    @abc.abstractmethod
    async def list_employee_candidates(
        self, occurrence: AlertOccurrence,
    ) -> List[EmployeeSubscription]:
        ...

    @abc.abstractmethod
    async def list_client_candidates(
        self, occurrence: AlertOccurrence,
    ) -> List[ClientSubscription]:
        ...

    @abc.abstractmethod
    async def insert_delivery(self, attempt: DeliveryAttempt) -> None:
        ...

    @abc.abstractmethod
    async def list_deliveries(self, occurrence_id: int) -> List[DeliveryAttempt]:
        ...


# ═══════════════════════════════════════════════════════════════════════════
# Row → dataclass conversion
# ═══════════════════════════════════════════════════════════════════════════

def _localized(en: Optional[str], es: Optional[str]) -> dict:
    return {k: v for k, v in (("en", en), ("es", es)) if v}


def _to_occurrence(
    occ: AlertOccurrenceRow,
    agent: AgentDeviceRow,
    account: Optional[AccountRow],
    policy: Optional[AlertConfigurationRow],
) -> AlertOccurrence:
    return AlertOccurrence(
        occurrence_id=occ.id,
        agent_id=agent.id,
        agent_name=agent.device_name,
        account_id=account.id if account else None,
        account_name=account.name if account else None,
        severity=occ.severity,
        alert_type=occ.alert_type,
        metric_type=occ.metric_type,
        metric_value=occ.metric_value,
        indicator_count=occ.indicator_count or 0,
        indicators=occ.indicators_triggered,
        title=occ.alert_title,
        description=occ.alert_description,
        triggered_at=occ.triggered_at,
        client_visible=bool(policy and policy.client_visible),
        client_category=policy.client_category if policy else None,
        display_names=(
            _localized(policy.client_display_name_en, policy.client_display_name_es)
            if policy else {}
        ),
        descriptions=(
            _localized(policy.client_description_en, policy.client_description_es)
            if policy else {}
        ),
    )


def _to_employee_subscription(
    sub: EmployeeSubscriptionRow, employee: EmployeeRow,
) -> EmployeeSubscription:
    quiet_hours = None
    if sub.quiet_hours_start and sub.quiet_hours_end:
        quiet_hours = QuietHoursWindow(
            start=sub.quiet_hours_start,
            end=sub.quiet_hours_end,
            timezone=sub.quiet_hours_timezone,
        )

    return EmployeeSubscription(
        subscription_id=sub.id,
        employee=ContactProfile(
            person_id=employee.id,
            first_name=employee.first_name,
            last_name=employee.last_name,
            email=employee.email,
            phone=employee.phone,
            is_active=employee.is_active,
        ),
        enabled=sub.enabled,
        agent_id=sub.agent_id,
        account_id=sub.account_id,
        severities=frozenset(sub.min_severity or ()),
        alert_types=frozenset(sub.alert_types or ()),
        metric_types=frozenset(sub.metric_types or ()),
        notify_realtime=sub.notify_realtime,
        notify_email=sub.notify_email,
        notify_sms=sub.notify_sms,
        notify_browser=sub.notify_browser,
        email_override=sub.email,
        phone_override=sub.phone_number,
        quiet_hours=quiet_hours,
    )


def _to_client_subscription(
    sub: ClientSubscriptionRow, user: ClientUserRow,
) -> ClientSubscription:
    return ClientSubscription(
        subscription_id=sub.id,
        user=ContactProfile(
            person_id=user.id,
            first_name=user.first_name,
            last_name=user.last_name,
            email=user.email,
            phone=user.phone,
            preferred_language=user.preferred_language,
        ),
        account_id=sub.account_id,
        enabled=sub.enabled,
        agent_id=sub.agent_id,
        categories=frozenset(sub.alert_categories or ()),
        notify_email=sub.notify_email,
        notify_sms=sub.notify_sms,
        notify_push=sub.notify_push,
        email_override=sub.email,
        phone_override=sub.phone_number,
        preferred_language=sub.preferred_language,
        digest_mode=sub.digest_mode,
    )


def _to_attempt(row: AlertNotificationRow) -> DeliveryAttempt:
    return DeliveryAttempt(
        occurrence_id=row.occurrence_id,
        recipient_type=RecipientType(row.recipient_type),
        recipient_id=row.recipient_id,
        subscription_id=row.subscription_id,
        channel=AlertChannel(row.channel),
        status=DeliveryStatus(row.status),
        locale=row.language,
        recipient_email=row.recipient_email,
        recipient_phone=row.recipient_phone,
        sent_at=row.sent_at,
        failed_at=row.failed_at,
        error_message=row.error_message,
    )


# ═══════════════════════════════════════════════════════════════════════════
# SQLAlchemy implementation
# ═══════════════════════════════════════════════════════════════════════════

class SqlAlertStore(AlertStore):
    """AlertStore backed by the async SQLAlchemy session factory."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def get_occurrence(self, occurrence_id: int) -> Optional[AlertOccurrence]:
        stmt = (
            select(AlertOccurrenceRow, AgentDeviceRow, AccountRow, AlertConfigurationRow)
            .join(AgentDeviceRow, AlertOccurrenceRow.agent_id == AgentDeviceRow.id)
            .outerjoin(AccountRow, AgentDeviceRow.account_id == AccountRow.id)
            .outerjoin(
                AlertConfigurationRow,
                AlertOccurrenceRow.alert_config_id == AlertConfigurationRow.id,
            )
            .where(AlertOccurrenceRow.id == occurrence_id)
        )
        async with self._session_factory() as session:
            row = (await session.execute(stmt)).first()

        if row is None:
            return None
        return _to_occurrence(*row)

    async def list_employee_candidates(
        self, occurrence: AlertOccurrence,
    ) -> List[EmployeeSubscription]:
        sub = EmployeeSubscriptionRow
        stmt = (
            select(sub, EmployeeRow)
            .join(EmployeeRow, sub.employee_id == EmployeeRow.id)
            .where(
                sub.enabled.is_(True),
                EmployeeRow.is_active.is_(True),
                or_(sub.agent_id.is_(None), sub.agent_id == occurrence.agent_id),
                or_(sub.account_id.is_(None), sub.account_id == occurrence.account_id),
            )
            .order_by(sub.id)
        )
        async with self._session_factory() as session:
            rows = (await session.execute(stmt)).all()

        return [_to_employee_subscription(s, e) for s, e in rows]

    async def list_client_candidates(
        self, occurrence: AlertOccurrence,
    ) -> List[ClientSubscription]:
        if occurrence.account_id is None:
            return []

        sub = ClientSubscriptionRow
        stmt = (
            select(sub, ClientUserRow)
            .join(ClientUserRow, sub.user_id == ClientUserRow.id)
            .where(
                sub.enabled.is_(True),
                sub.digest_mode.is_(False),
                sub.account_id == occurrence.account_id,
                or_(sub.agent_id.is_(None), sub.agent_id == occurrence.agent_id),
            )
            .order_by(sub.id)
        )
        async with self._session_factory() as session:
            rows = (await session.execute(stmt)).all()

        return [_to_client_subscription(s, u) for s, u in rows]

    async def insert_delivery(self, attempt: DeliveryAttempt) -> None:
        row = AlertNotificationRow(
            occurrence_id=attempt.occurrence_id,
            recipient_type=attempt.recipient_type.value,
            recipient_id=attempt.recipient_id,
            subscription_id=attempt.subscription_id,
            recipient_email=attempt.recipient_email,
            recipient_phone=attempt.recipient_phone,
            channel=attempt.channel.value,
            status=attempt.status.value,
            language=attempt.locale,
            sent_at=attempt.sent_at,
            failed_at=attempt.failed_at,
            error_message=attempt.error_message,
        )
        async with self._session_factory() as session:
            async with session.begin():
                session.add(row)

    async def list_deliveries(self, occurrence_id: int) -> List[DeliveryAttempt]:
        stmt = (
            select(AlertNotificationRow)
            .where(AlertNotificationRow.occurrence_id == occurrence_id)
            .order_by(AlertNotificationRow.id)
        )
        async with self._session_factory() as session:
            rows = (await session.execute(stmt)).scalars().all()

        return [_to_attempt(r) for r in rows]
