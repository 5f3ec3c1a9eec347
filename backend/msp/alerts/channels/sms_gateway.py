"""
sms_gateway.py — SMS alert text and gateway delivery.

Delivery mechanism:
    • "simulation" — log and keep the message in an in-memory outbox
    • "twilio"     — Twilio Messages API through the twilio SDK

═══════════════════════════════════════════════════════════════════════════
MESSAGE TEMPLATING
═══════════════════════════════════════════════════════════════════════════

    Employee (en, raw tags):
        "CRITICAL alert: web-01 - disk_full. Check dashboard."

    Client (subscriber locale, translated severity + display name):
        "Alerta CRÍTICO: web-01 - Disco lleno. Revisar panel."

Bodies longer than one GSM segment (160 chars) are truncated with "...".
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from twilio.base.exceptions import TwilioException, TwilioRestException

from backend.msp.alerts.models import AlertOccurrence
from backend.msp.alerts.phrases import PhraseTable
from backend.msp.core.config import Settings, settings
from backend.msp.core.errors import SmsDeliveryError

logger = logging.getLogger(__name__)

SMS_MAX_GSM7 = 160
PHONE_REGEX = re.compile(r"^\+?[1-9]\d{6,14}$")
_PHONE_PUNCTUATION = re.compile(r"[\s\-().]")


def normalize_phone(phone: str) -> str:
    """Strip formatting characters: ``+1 (555) 010-0199`` -> ``+15550100199``."""
    return _PHONE_PUNCTUATION.sub("", phone or "")


def truncate_sms(body: str, limit: int = SMS_MAX_GSM7) -> str:
    if len(body) <= limit:
        return body
    return body[: limit - 3] + "..."


def build_employee_sms(occurrence: AlertOccurrence, phrases: PhraseTable, locale: str = "en") -> str:
    return truncate_sms(phrases.sms_text("alert", locale, {
        "severity": occurrence.severity.upper(),
        "agentName": occurrence.agent_name,
        "alertType": occurrence.alert_type,
    }))


def build_client_sms(occurrence: AlertOccurrence, phrases: PhraseTable, *, locale: str) -> str:
    return truncate_sms(phrases.sms_text("alert", locale, {
        "severity": phrases.severity_label(occurrence.severity, locale).upper(),
        "agentName": occurrence.agent_name,
        "alertType": occurrence.display_name(locale, phrases.default_locale),
    }))


@dataclass
class SmsTransport:
    """
    SMS gateway client.

    ``send`` returns the provider response on success and raises
    ``SmsDeliveryError`` otherwise. The Twilio SDK is blocking, so it runs
    in a worker thread. A prepared ``twilio.rest.Client`` may be injected.
    """
    provider: str = "simulation"
    account_sid: Optional[str] = None
    auth_token: Optional[str] = None
    from_number: Optional[str] = None
    timeout_seconds: float = 15.0
    client: Optional[Any] = None
    outbox: List[Dict[str, str]] = field(default_factory=list)

    @classmethod
    def from_settings(cls, config: Settings = settings, **overrides: Any) -> "SmsTransport":
        return cls(
            provider=config.SMS_PROVIDER,
            account_sid=config.TWILIO_ACCOUNT_SID,
            auth_token=config.TWILIO_AUTH_TOKEN,
            from_number=config.TWILIO_FROM_NUMBER,
            timeout_seconds=config.SMS_TIMEOUT_SECONDS,
            **overrides,
        )

    def validate_recipient(self, phone: str) -> bool:
        return bool(PHONE_REGEX.match(normalize_phone(phone)))

    async def send(self, phone: str, body: str) -> Dict[str, Any]:
        if not self.validate_recipient(phone):
            raise SmsDeliveryError(
                f"Invalid phone number: {phone!r}",
                user_message="The phone number on file is not valid",
            )

        to = normalize_phone(phone)
        body = truncate_sms(body)

        if self.provider == "simulation":
            logger.info(
                "[SMS] → %s: %d chars → '%s'",
                to, len(body), body[:80] + ("..." if len(body) > 80 else ""),
            )
            self.outbox.append({"to": to, "body": body})
            return {
                "mode": "simulated",
                "phone": to,
                "message_length": len(body),
                "segments": 1 + (len(body) - 1) // SMS_MAX_GSM7,
            }

        if self.provider == "twilio":
            return await self._send_twilio(to, body)

        raise SmsDeliveryError(f"Unknown SMS provider: {self.provider}")

    def _twilio_client(self):
        if self.client is None:
            from twilio.http.http_client import TwilioHttpClient
            from twilio.rest import Client

            self.client = Client(
                self.account_sid,
                self.auth_token,
                http_client=TwilioHttpClient(timeout=self.timeout_seconds),
            )
        return self.client

    async def _send_twilio(self, to: str, body: str) -> Dict[str, Any]:
        if not (self.account_sid and self.auth_token and self.from_number):
            raise SmsDeliveryError("Twilio credentials are not configured")

        client = self._twilio_client()
        try:
            message = await asyncio.to_thread(
                client.messages.create, to=to, from_=self.from_number, body=body,
            )
        except TwilioRestException as exc:
            raise SmsDeliveryError(
                f"Twilio returned HTTP {exc.status}: {exc.msg}",
                user_message=exc.msg,
            ) from exc
        except TwilioException as exc:
            raise SmsDeliveryError(f"Twilio request failed: {exc}") from exc

        logger.info("[SMS/Twilio] Sent to %s (sid=%s)", to, message.sid)
        return {"mode": "twilio", "phone": to, "sid": message.sid, "status": message.status}
