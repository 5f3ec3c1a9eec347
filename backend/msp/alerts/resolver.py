"""
resolver.py — Who should hear about an occurrence.

Two independent audiences are resolved per occurrence:

    Employees   enabled subscription, active employee,
                agent scope  ∈ {None, occurrence.agent_id},
                account scope ∈ {None, occurrence.account_id},
                severity ∈ severities, alert_type ∈ alert_types,
                metric_type ∈ metric_types

    Clients     occurrence.client_visible (else nobody),
                enabled subscription, account == occurrence.account_id,
                agent scope ∈ {None, occurrence.agent_id},
                client_category ∈ categories,
                digest_mode is False (digest readers get the daily summary)

The store narrows candidates with the cheap scalar predicates in SQL;
the full rule is re-applied here as pure functions so it holds no matter
which store backs the resolver.
"""

from __future__ import annotations

import logging
from typing import List, Optional

from backend.msp.alerts.models import (
    AlertOccurrence,
    ClientSubscription,
    EmployeeSubscription,
)
from backend.msp.alerts.store import AlertStore
from backend.msp.core.errors import SubscriberQueryError

logger = logging.getLogger(__name__)


def scope_matches(scope: Optional[int], value: Optional[int]) -> bool:
    """A null scope matches every value."""
    return scope is None or scope == value


def employee_subscription_matches(
    subscription: EmployeeSubscription,
    occurrence: AlertOccurrence,
) -> bool:
    return (
        subscription.enabled
        and subscription.employee.is_active
        and scope_matches(subscription.agent_id, occurrence.agent_id)
        and scope_matches(subscription.account_id, occurrence.account_id)
        and occurrence.severity in subscription.severities
        and occurrence.alert_type in subscription.alert_types
        and occurrence.metric_type in subscription.metric_types
    )


def client_subscription_matches(
    subscription: ClientSubscription,
    occurrence: AlertOccurrence,
) -> bool:
    return (
        occurrence.client_visible
        and subscription.enabled
        and not subscription.digest_mode
        and occurrence.account_id is not None
        and subscription.account_id == occurrence.account_id
        and scope_matches(subscription.agent_id, occurrence.agent_id)
        and occurrence.client_category in subscription.categories
    )


class SubscriberResolver:
    """Resolves eligible employee and client subscriptions for an occurrence."""

    def __init__(self, store: AlertStore):
        self._store = store

    async def resolve_employees(self, occurrence: AlertOccurrence) -> List[EmployeeSubscription]:
        try:
            candidates = await self._store.list_employee_candidates(occurrence)
        except Exception as exc:
            raise SubscriberQueryError("employee", str(exc)) from exc

        return [s for s in candidates if employee_subscription_matches(s, occurrence)]

    async def resolve_clients(self, occurrence: AlertOccurrence) -> List[ClientSubscription]:
        if not occurrence.client_visible:
            logger.info(
                "Alert type '%s' is not client visible — skipping client notifications",
                occurrence.alert_type,
                extra={"occurrence_id": occurrence.occurrence_id},
            )
            return []

        try:
            candidates = await self._store.list_client_candidates(occurrence)
        except Exception as exc:
            raise SubscriberQueryError("client", str(exc)) from exc

        return [s for s in candidates if client_subscription_matches(s, occurrence)]
