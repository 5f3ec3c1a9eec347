"""
alert_service.py — Alert notification routing orchestration.

This is the central coordinator that:
    1. Loads the occurrence and its policy metadata
    2. Resolves employee and client subscribers
    3. Drops staff subscribers inside their quiet hours
    4. Dispatches to each subscriber over each enabled channel
    5. Returns aggregate sent / failed counts

═══════════════════════════════════════════════════════════════════════════
ORCHESTRATION FLOW
═══════════════════════════════════════════════════════════════════════════

    ┌─────────────────────┐
    │  route_alert(id)    │  HTTP trigger or library call
    └─────────┬───────────┘
              │
              ▼
    ┌─────────────────────┐
    │  1. Load            │  occurrence + agent + account + policy
    │     occurrence      │  missing → {success: false, error}
    └─────────┬───────────┘
              │
              ▼
    ┌─────────────────────┐
    │  2. Resolve         │  employees: scope + severity/type/metric sets
    │     subscribers     │  clients:   visible + account + category, no digest
    └─────────┬───────────┘  query failure → {success: false, error}
              │
              ▼
    ┌─────────────────────┐
    │  3. Quiet hours     │  employees only, fail open
    └─────────┬───────────┘
              │
              ▼
    ┌─────────────────────┐
    │  4. Dispatch        │  one isolated attempt per subscriber × channel,
    │                     │  each attempt written to the delivery log
    └─────────┬───────────┘
              │
              ▼
    ┌─────────────────────┐
    │  5. Result          │  {success, employees, clients, total}
    └─────────────────────┘

Per-attempt failures never fail the call; callers only see counts.
"""

from __future__ import annotations

import logging
import time
from typing import List, Optional

from backend.msp.alerts.dispatcher import ChannelDispatcher
from backend.msp.alerts.models import DeliveryAttempt, DispatchResult
from backend.msp.alerts.quiet_hours import QuietHoursFilter
from backend.msp.alerts.resolver import SubscriberResolver
from backend.msp.alerts.store import AlertStore
from backend.msp.core.errors import MSPServiceError, OccurrenceNotFoundError
from backend.msp.core.logging_config import log_context

logger = logging.getLogger(__name__)


class AlertNotificationService:
    """Routes one alert occurrence to every eligible subscriber."""

    def __init__(
        self,
        store: AlertStore,
        resolver: SubscriberResolver,
        quiet_hours: QuietHoursFilter,
        dispatcher: ChannelDispatcher,
    ):
        self.store = store
        self.resolver = resolver
        self.quiet_hours = quiet_hours
        self.dispatcher = dispatcher

    async def route_alert(self, occurrence_id: int) -> DispatchResult:
        """
        Notify all subscribers of one occurrence.

        Parameters
        ----------
        occurrence_id : int
            Primary key of the alert occurrence.

        Returns
        -------
        DispatchResult
            ``success=False`` with ``error`` when the occurrence is missing or
            subscribers could not be loaded; otherwise aggregate counts.
        """
        with log_context(occurrence_id=occurrence_id):
            return await self._route(occurrence_id)

    async def _route(self, occurrence_id: int) -> DispatchResult:
        started = time.perf_counter()

        try:
            occurrence = await self.store.get_occurrence(occurrence_id)
            if occurrence is None:
                raise OccurrenceNotFoundError(occurrence_id)

            logger.info(
                "Routing alert %s [%s] %s on %s",
                occurrence_id, occurrence.severity, occurrence.alert_type,
                occurrence.agent_name,
                extra={"occurrence_id": occurrence_id},
            )

            employees = await self.resolver.resolve_employees(occurrence)
            clients = await self.resolver.resolve_clients(occurrence)
        except MSPServiceError as exc:
            logger.error(
                "Alert %s routing failed: %s", occurrence_id, exc.message,
                extra={"occurrence_id": occurrence_id},
            )
            return DispatchResult(success=False, error=exc.message)
        except Exception as exc:
            logger.exception(
                "Alert %s routing failed unexpectedly", occurrence_id,
                extra={"occurrence_id": occurrence_id},
            )
            return DispatchResult(success=False, error=str(exc))

        active_employees = self.quiet_hours.filter(employees)
        suppressed = len(employees) - len(active_employees)

        logger.info(
            "Alert %s: %d employee subscribers (%d in quiet hours), %d client subscribers",
            occurrence_id, len(active_employees), suppressed, len(clients),
            extra={"occurrence_id": occurrence_id},
        )

        result = DispatchResult(
            success=True,
            employees=await self.dispatcher.dispatch_employees(occurrence, active_employees),
            clients=await self.dispatcher.dispatch_clients(occurrence, clients),
        )

        logger.info(
            "Alert %s routed: %d sent, %d failed",
            occurrence_id, result.total.sent, result.total.failed,
            extra={
                "occurrence_id": occurrence_id,
                "duration_ms": round((time.perf_counter() - started) * 1000, 1),
            },
        )
        return result

    async def list_deliveries(self, occurrence_id: int) -> List[DeliveryAttempt]:
        """Delivery log for one occurrence; raises ``OccurrenceNotFoundError`` if unknown."""
        occurrence = await self.store.get_occurrence(occurrence_id)
        if occurrence is None:
            raise OccurrenceNotFoundError(occurrence_id)
        return await self.store.list_deliveries(occurrence_id)


def build_alert_service(
    store: AlertStore,
    dispatcher: ChannelDispatcher,
    quiet_hours: Optional[QuietHoursFilter] = None,
) -> AlertNotificationService:
    """Wire the default resolver and quiet-hours filter around a store."""
    return AlertNotificationService(
        store=store,
        resolver=SubscriberResolver(store),
        quiet_hours=quiet_hours or QuietHoursFilter(),
        dispatcher=dispatcher,
    )
