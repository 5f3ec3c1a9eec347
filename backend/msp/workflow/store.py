"""
store.py — Workflow state reads and compare-and-set writes.

Both write paths are conditional ``UPDATE ... WHERE`` statements keyed on
the snapshot a tick read: same scheduled action, same due timestamp and,
for claims, the counter still one below the attempt being claimed. A
statement that matches no row means something else got there first (a
parallel tick, or the request was acknowledged / started meanwhile) and
the caller skips the row.
"""

from __future__ import annotations

import abc
import logging
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backend.msp.core.tables import (
    EmployeeRow,
    ServiceRequestRow,
    WorkflowNotificationRuleRow,
    WorkflowStateRow,
)
from backend.msp.workflow.models import (
    ACK_REMINDER_ROLES,
    ACTIONABLE_STATES,
    ReminderRecipient,
    ReminderTarget,
    RuleOverride,
    ScheduledAction,
    WorkflowState,
)

logger = logging.getLogger(__name__)


class WorkflowStore(abc.ABC):
    """Data-store collaborator used by the reminder scheduler."""

    @abc.abstractmethod
    async def fetch_due_actions(self, now: datetime) -> List[WorkflowState]:
        """Actionable, non-deleted rows whose action is due at ``now``, oldest first."""

    @abc.abstractmethod
    async def get_rule_overrides(self) -> Dict[ScheduledAction, RuleOverride]:
        ...

    @abc.abstractmethod
    async def claim_reminder(
        self,
        state: WorkflowState,
        attempt: int,
        *,
        sent_at: datetime,
        next_due_at: datetime,
    ) -> bool:
        """Set the action's counter to ``attempt`` if the row is unchanged since ``state``."""

    @abc.abstractmethod
    async def clear_scheduled_action(self, state: WorkflowState) -> bool:
        """Null the action and its due timestamp if the row is unchanged since ``state``."""

    @abc.abstractmethod
    async def get_state(self, service_request_id: int) -> Optional[WorkflowState]:
        ...

    @abc.abstractmethod
    async def get_reminder_target(
        self, service_request_id: int, action: ScheduledAction,
    ) -> Optional[ReminderTarget]:
        """The request and the employees a reminder for ``action`` is sent to."""


def _to_state(row: WorkflowStateRow, request_number: Optional[str] = None) -> WorkflowState:
    return WorkflowState(
        service_request_id=row.service_request_id,
        request_number=request_number,
        current_state=row.current_state,
        next_action=ScheduledAction(row.next_scheduled_action) if row.next_scheduled_action else None,
        next_action_at=row.next_scheduled_action_at,
        acknowledgment_reminder_count=row.acknowledgment_reminder_count or 0,
        start_reminder_count=row.start_reminder_count or 0,
        last_acknowledgment_reminder_sent_at=row.last_acknowledgment_reminder_sent_at,
        last_start_reminder_sent_at=row.last_start_reminder_sent_at,
    )


class SqlWorkflowStore(WorkflowStore):
    """WorkflowStore backed by the async SQLAlchemy session factory."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def fetch_due_actions(self, now: datetime) -> List[WorkflowState]:
        ws = WorkflowStateRow
        stmt = (
            select(ws, ServiceRequestRow.request_number)
            .join(ServiceRequestRow, ws.service_request_id == ServiceRequestRow.id)
            .where(
                ws.next_scheduled_action.is_not(None),
                ws.next_scheduled_action_at.is_not(None),
                ws.next_scheduled_action_at <= now,
                ws.current_state.in_([s.value for s in ACTIONABLE_STATES]),
                ServiceRequestRow.soft_delete.is_not(True),
            )
            .order_by(ws.next_scheduled_action_at)
        )
        async with self._session_factory() as session:
            rows = (await session.execute(stmt)).all()

        return [_to_state(row, number) for row, number in rows]

    async def get_rule_overrides(self) -> Dict[ScheduledAction, RuleOverride]:
        stmt = (
            select(WorkflowNotificationRuleRow)
            .where(WorkflowNotificationRuleRow.is_active.is_(True))
            .order_by(WorkflowNotificationRuleRow.id)
        )
        async with self._session_factory() as session:
            rules = (await session.execute(stmt)).scalars().all()

        by_event = {action.trigger_event: action for action in ScheduledAction}
        overrides: Dict[ScheduledAction, RuleOverride] = {}
        for rule in rules:
            action = by_event.get(rule.trigger_event)
            if action is not None and action not in overrides:
                overrides[action] = RuleOverride(
                    max_retry_count=rule.max_retry_count,
                    retry_interval_minutes=rule.retry_interval_minutes,
                )
        return overrides

    def _unchanged(self, state: WorkflowState):
        ws = WorkflowStateRow
        return (
            ws.service_request_id == state.service_request_id,
            ws.next_scheduled_action == state.next_action.value,
            ws.next_scheduled_action_at == state.next_action_at,
        )

    async def claim_reminder(
        self,
        state: WorkflowState,
        attempt: int,
        *,
        sent_at: datetime,
        next_due_at: datetime,
    ) -> bool:
        ws = WorkflowStateRow
        if state.next_action is ScheduledAction.SEND_ACKNOWLEDGMENT_REMINDER:
            counter, last_sent = ws.acknowledgment_reminder_count, "last_acknowledgment_reminder_sent_at"
        else:
            counter, last_sent = ws.start_reminder_count, "last_start_reminder_sent_at"

        stmt = (
            update(ws)
            .where(*self._unchanged(state), counter == attempt - 1)
            .values({
                counter.key: attempt,
                last_sent: sent_at,
                "next_scheduled_action_at": next_due_at,
            })
            .execution_options(synchronize_session=False)
        )
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(stmt)
        return result.rowcount == 1

    async def clear_scheduled_action(self, state: WorkflowState) -> bool:
        stmt = (
            update(WorkflowStateRow)
            .where(*self._unchanged(state))
            .values(next_scheduled_action=None, next_scheduled_action_at=None)
            .execution_options(synchronize_session=False)
        )
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(stmt)
        return result.rowcount == 1

    async def get_state(self, service_request_id: int) -> Optional[WorkflowState]:
        stmt = (
            select(WorkflowStateRow, ServiceRequestRow.request_number)
            .join(ServiceRequestRow, WorkflowStateRow.service_request_id == ServiceRequestRow.id)
            .where(WorkflowStateRow.service_request_id == service_request_id)
        )
        async with self._session_factory() as session:
            row = (await session.execute(stmt)).first()

        if row is None:
            return None
        return _to_state(*row)

    async def get_reminder_target(
        self, service_request_id: int, action: ScheduledAction,
    ) -> Optional[ReminderTarget]:
        async with self._session_factory() as session:
            request = (await session.execute(
                select(ServiceRequestRow, WorkflowStateRow.acknowledged_by_employee_id)
                .outerjoin(WorkflowStateRow, WorkflowStateRow.service_request_id == ServiceRequestRow.id)
                .where(ServiceRequestRow.id == service_request_id)
            )).first()
            if request is None:
                return None
            sr, acknowledged_by = request

            if action is ScheduledAction.SEND_ACKNOWLEDGMENT_REMINDER:
                audience = EmployeeRow.role.in_(ACK_REMINDER_ROLES)
            elif acknowledged_by is not None:
                audience = EmployeeRow.id == acknowledged_by
            else:
                audience = None

            employees = []
            if audience is not None:
                employees = (await session.execute(
                    select(EmployeeRow)
                    .where(EmployeeRow.is_active.is_(True), EmployeeRow.email.is_not(None), audience)
                    .order_by(EmployeeRow.id)
                )).scalars().all()

        return ReminderTarget(
            service_request_id=sr.id,
            request_number=sr.request_number,
            title=sr.title,
            recipients=tuple(
                ReminderRecipient(employee_id=e.id, email=e.email, first_name=e.first_name or "")
                for e in employees
            ),
        )
