"""
dispatcher.py — Per-subscriber, per-channel delivery with failure isolation.

═══════════════════════════════════════════════════════════════════════════
ATTEMPT LOOP
═══════════════════════════════════════════════════════════════════════════

    for subscriber in subscribers:
        for channel in enabled channels with a resolvable address:
            try:
                send
                record SENT,   sent += 1
            except Exception:
                record FAILED, failed += 1

One attempt never blocks or aborts another: a failed email still lets the
same subscriber's SMS go out, and a failed subscriber still lets the next
one be notified.

Channel rules:
    Employee realtime   broadcast alert:created to every admin session
    Employee email      technical template, fixed locale (en)
    Employee SMS        en, raw severity and alert type
    Employee browser    placeholder, logged only
    Client email        localized template
    Client SMS          localized severity label + display name
    Client push         placeholder, logged only
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional, Sequence

from backend.msp.alerts.channels.email_alert import (
    EmailMessage,
    EmailTransport,
    build_client_email,
    build_employee_email,
)
from backend.msp.alerts.channels.realtime import RealtimeHub
from backend.msp.alerts.channels.sms_gateway import (
    SmsTransport,
    build_client_sms,
    build_employee_sms,
)
from backend.msp.alerts.models import (
    AlertChannel,
    AlertOccurrence,
    ChannelTally,
    ClientSubscription,
    DeliveryAttempt,
    EmployeeSubscription,
    Subscription,
)
from backend.msp.alerts.phrases import PhraseTable
from backend.msp.alerts.recorder import DeliveryRecorder
from backend.msp.core.config import settings
from backend.msp.core.errors import SmsDeliveryError

logger = logging.getLogger(__name__)

EMPLOYEE_LOCALE = "en"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _error_text(exc: Exception) -> str:
    if isinstance(exc, SmsDeliveryError):
        return exc.message or exc.user_message or type(exc).__name__
    return str(exc) or type(exc).__name__


class ChannelDispatcher:
    """Sends one occurrence to resolved subscribers over their enabled channels."""

    def __init__(
        self,
        realtime: RealtimeHub,
        email: EmailTransport,
        sms: SmsTransport,
        phrases: PhraseTable,
        recorder: DeliveryRecorder,
        *,
        from_address: Optional[str] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.realtime = realtime
        self.email = email
        self.sms = sms
        self.phrases = phrases
        self.recorder = recorder
        self.from_address = from_address or settings.EMAIL_FROM
        self._clock = clock

    async def _attempt(
        self,
        occurrence: AlertOccurrence,
        subscription: Subscription,
        channel: AlertChannel,
        locale: str,
        send: Callable[[], Awaitable[object]],
        tally: ChannelTally,
    ) -> None:
        started = time.perf_counter()
        log_extra = {
            "occurrence_id": occurrence.occurrence_id,
            "subscription_id": subscription.subscription_id,
            "channel": channel.value,
            "recipient_type": subscription.recipient_type.value,
        }

        error: Optional[str] = None
        try:
            await send()
        except Exception as exc:
            error = _error_text(exc)
            logger.error(
                "%s %s notification failed for subscription %s: %s",
                subscription.recipient_type.value, channel.value,
                subscription.subscription_id, error,
                extra=log_extra,
            )
        else:
            log_extra["duration_ms"] = round((time.perf_counter() - started) * 1000, 1)
            logger.info(
                "%s %s notification sent for subscription %s",
                subscription.recipient_type.value, channel.value,
                subscription.subscription_id,
                extra=log_extra,
            )

        attempt = DeliveryAttempt.for_outcome(
            occurrence, subscription, channel, locale, at=self._clock(), error=error,
        )
        await self.recorder.record(attempt)

        if error is None:
            tally.sent += 1
        else:
            tally.failed += 1

    # ═══════════════════════════════════════════════════════════════════
    # Employees
    # ═══════════════════════════════════════════════════════════════════

    async def dispatch_employees(
        self,
        occurrence: AlertOccurrence,
        subscriptions: Sequence[EmployeeSubscription],
    ) -> ChannelTally:
        tally = ChannelTally()

        for sub in subscriptions:
            email = sub.recipient_email
            phone = sub.recipient_phone

            if sub.notify_realtime:
                async def send_realtime() -> None:
                    await self.realtime.broadcast_to_administrators(occurrence.to_event())

                await self._attempt(
                    occurrence, sub, AlertChannel.REALTIME, EMPLOYEE_LOCALE, send_realtime, tally,
                )

            if sub.notify_email and email:
                async def send_email(sub: EmployeeSubscription = sub, to: str = email) -> None:
                    rendered = build_employee_email(
                        occurrence, sub.recipient_name, self.phrases, locale=EMPLOYEE_LOCALE,
                    )
                    await self.email.send(EmailMessage(
                        from_address=self.from_address,
                        to=to,
                        subject=rendered.subject,
                        html=rendered.html,
                        text=rendered.text,
                    ))

                await self._attempt(
                    occurrence, sub, AlertChannel.EMAIL, EMPLOYEE_LOCALE, send_email, tally,
                )

            if sub.notify_sms and phone:
                async def send_sms(to: str = phone) -> None:
                    await self.sms.send(to, build_employee_sms(occurrence, self.phrases, EMPLOYEE_LOCALE))

                await self._attempt(
                    occurrence, sub, AlertChannel.SMS, EMPLOYEE_LOCALE, send_sms, tally,
                )

            if sub.notify_browser:
                logger.info(
                    "Browser push for %s queued (not yet delivered)",
                    email or sub.recipient_id,
                    extra={"occurrence_id": occurrence.occurrence_id, "channel": "browser"},
                )

        return tally

    # ═══════════════════════════════════════════════════════════════════
    # Clients
    # ═══════════════════════════════════════════════════════════════════

    async def dispatch_clients(
        self,
        occurrence: AlertOccurrence,
        subscriptions: Sequence[ClientSubscription],
    ) -> ChannelTally:
        tally = ChannelTally()

        for sub in subscriptions:
            email = sub.recipient_email
            phone = sub.recipient_phone
            locale = self.phrases.resolve_locale(sub.requested_language)

            if sub.notify_email and email:
                async def send_email(
                    sub: ClientSubscription = sub, to: str = email, locale: str = locale,
                ) -> None:
                    rendered = build_client_email(
                        occurrence, sub.recipient_name, self.phrases, locale=locale,
                    )
                    await self.email.send(EmailMessage(
                        from_address=self.from_address,
                        to=to,
                        subject=rendered.subject,
                        html=rendered.html,
                        text=rendered.text,
                    ))

                await self._attempt(occurrence, sub, AlertChannel.EMAIL, locale, send_email, tally)

            if sub.notify_sms and phone:
                async def send_sms(to: str = phone, locale: str = locale) -> None:
                    await self.sms.send(to, build_client_sms(occurrence, self.phrases, locale=locale))

                await self._attempt(occurrence, sub, AlertChannel.SMS, locale, send_sms, tally)

            if sub.notify_push:
                logger.info(
                    "Client push for %s queued (not yet delivered)",
                    email or sub.recipient_id,
                    extra={"occurrence_id": occurrence.occurrence_id, "channel": "push"},
                )

        return tally
