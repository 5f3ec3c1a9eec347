"""
handlers.py — What happens when a reminder comes due.

The scheduler only decides *whether* attempt N of a reminder is sent; the
handler decides what sending means.

    RealtimeReminderHandlers  broadcast to connected admin sessions
    EmailReminderHandlers     email the staff who must act on the request
    FanOutReminderHandlers    run several handlers; fails only if all fail

A handler that raises is counted as a failed reminder for that tick.
"""

from __future__ import annotations

import abc
import logging
from typing import List, Optional, Sequence

from backend.msp.alerts.channels.email_alert import EmailMessage, EmailTransport, build_reminder_email
from backend.msp.alerts.channels.realtime import RealtimeHub
from backend.msp.core.config import settings
from backend.msp.core.errors import ChannelDeliveryError, SchedulerError
from backend.msp.workflow.models import ScheduledAction
from backend.msp.workflow.store import WorkflowStore

logger = logging.getLogger(__name__)


class TimeoutHandlers(abc.ABC):

    @abc.abstractmethod
    async def on_acknowledgment_timeout(self, service_request_id: int, attempt: int) -> None:
        ...

    @abc.abstractmethod
    async def on_start_timeout(self, service_request_id: int, attempt: int) -> None:
        ...


class RealtimeReminderHandlers(TimeoutHandlers):
    """Broadcast ``workflow:reminder`` events to administrators."""

    def __init__(self, hub: RealtimeHub):
        self._hub = hub

    async def _announce(self, service_request_id: int, reminder: str, attempt: int) -> None:
        logger.info(
            "Sending %s reminder #%d for service request %s",
            reminder, attempt, service_request_id,
            extra={"service_request_id": service_request_id, "attempt": attempt},
        )
        await self._hub.broadcast_to_administrators({
            "type": "workflow:reminder",
            "data": {
                "service_request_id": service_request_id,
                "reminder": reminder,
                "attempt": attempt,
            },
        })

    async def on_acknowledgment_timeout(self, service_request_id: int, attempt: int) -> None:
        await self._announce(service_request_id, "acknowledgment", attempt)

    async def on_start_timeout(self, service_request_id: int, attempt: int) -> None:
        await self._announce(service_request_id, "start", attempt)


class EmailReminderHandlers(TimeoutHandlers):
    """
    Email each reminder to the staff responsible for the request.

    Acknowledgment reminders go to active executives, admins and
    technicians; start reminders go to the acknowledging employee. The
    reminder fails (and is counted as such) when nobody can be addressed
    or every send is rejected.
    """

    def __init__(
        self,
        store: WorkflowStore,
        email: EmailTransport,
        *,
        from_address: Optional[str] = None,
        dashboard_url: Optional[str] = None,
        company_name: Optional[str] = None,
    ):
        self._store = store
        self._email = email
        self._from_address = from_address or settings.EMAIL_FROM
        self._dashboard_url = dashboard_url
        self._company_name = company_name

    async def _send(
        self, service_request_id: int, action: ScheduledAction, reminder: str, attempt: int,
    ) -> None:
        log_extra = {"service_request_id": service_request_id, "attempt": attempt}
        target = await self._store.get_reminder_target(service_request_id, action)
        if target is None or not target.recipients:
            raise SchedulerError(
                f"No recipients for {reminder} reminder #{attempt} "
                f"of service request {service_request_id}"
            )

        sent = 0
        errors: List[str] = []
        for recipient in target.recipients:
            rendered = build_reminder_email(
                target, recipient, reminder, attempt,
                dashboard_url=self._dashboard_url,
                company_name=self._company_name,
            )
            try:
                await self._email.send(EmailMessage(
                    from_address=self._from_address,
                    to=recipient.email,
                    subject=rendered.subject,
                    html=rendered.html,
                    text=rendered.text,
                ))
                sent += 1
            except ChannelDeliveryError as exc:
                errors.append(exc.message)
                logger.warning(
                    "%s reminder email to %s failed: %s",
                    reminder.capitalize(), recipient.email, exc.message, extra=log_extra,
                )

        if not sent:
            raise ChannelDeliveryError("email", f"all {len(errors)} reminder emails failed: {errors[0]}")

        logger.info(
            "Emailed %s reminder #%d for service request %s to %d/%d employees",
            reminder, attempt, service_request_id, sent, len(target.recipients),
            extra=log_extra,
        )

    async def on_acknowledgment_timeout(self, service_request_id: int, attempt: int) -> None:
        await self._send(
            service_request_id, ScheduledAction.SEND_ACKNOWLEDGMENT_REMINDER, "acknowledgment", attempt,
        )

    async def on_start_timeout(self, service_request_id: int, attempt: int) -> None:
        await self._send(service_request_id, ScheduledAction.SEND_START_REMINDER, "start", attempt)


class FanOutReminderHandlers(TimeoutHandlers):
    """Run every handler; re-raise the first error only if none succeeded."""

    def __init__(self, handlers: Sequence[TimeoutHandlers]):
        self._handlers = list(handlers)

    async def _each(self, method: str, service_request_id: int, attempt: int) -> None:
        first_error: Optional[Exception] = None
        succeeded = 0
        for handler in self._handlers:
            try:
                await getattr(handler, method)(service_request_id, attempt)
                succeeded += 1
            except Exception as exc:
                logger.warning(
                    "%s.%s failed for service request %s: %s",
                    type(handler).__name__, method, service_request_id, exc,
                    extra={"service_request_id": service_request_id, "attempt": attempt},
                )
                first_error = first_error or exc
        if not succeeded and first_error is not None:
            raise first_error

    async def on_acknowledgment_timeout(self, service_request_id: int, attempt: int) -> None:
        await self._each("on_acknowledgment_timeout", service_request_id, attempt)

    async def on_start_timeout(self, service_request_id: int, attempt: int) -> None:
        await self._each("on_start_timeout", service_request_id, attempt)
