"""
email_alert.py — Email alert content and delivery transport.

Delivery mechanism:
    • "simulation" — log and keep the message in an in-memory outbox (dev/test)
    • "smtp"       — STARTTLS SMTP submission, run in a worker thread so the
                     event loop is never blocked by the mail server

═══════════════════════════════════════════════════════════════════════════
ALERT TEMPLATES
═══════════════════════════════════════════════════════════════════════════

    Employee (always en)                Client (subscriber locale)
    ─────────────────────────────       ─────────────────────────────────
    Subject: Alert: DISK FULL on X      Subject: Alerta: Disco lleno en X
    Technical table: system,            Plain-language name + description,
    business, alert, severity,          translated severity, detection
    metric, value, detected,            time, "what this means" copy,
    indicator count + JSON payload      dashboard link
    Acknowledge-in-dashboard prompt

A third template, ``build_reminder_email``, carries service-request
acknowledgment and start reminders to staff.

All are rendered as HTML + plain text; every interpolated value is
HTML-escaped in the HTML part.
"""

from __future__ import annotations

import asyncio
import json
import logging
import smtplib
import ssl
from dataclasses import dataclass, field
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from html import escape
from typing import Any, Dict, List, Optional

from backend.msp.alerts.models import AlertOccurrence
from backend.msp.alerts.phrases import PhraseTable
from backend.msp.core.config import Settings, settings
from backend.msp.core.errors import ChannelDeliveryError
from backend.msp.workflow.models import ReminderRecipient, ReminderTarget

logger = logging.getLogger(__name__)

_SEVERITY_COLOURS = {
    "critical": "#dc2626",
    "high": "#ea580c",
    "medium": "#f59e0b",
    "low": "#10b981",
}


@dataclass(frozen=True)
class RenderedEmail:
    subject: str
    html: str
    text: str


@dataclass(frozen=True)
class EmailMessage:
    from_address: str
    to: str
    subject: str
    html: str
    text: str


def _format_indicators(indicators: Any) -> Optional[str]:
    if indicators in (None, "", {}, []):
        return None
    if isinstance(indicators, str):
        try:
            indicators = json.loads(indicators)
        except ValueError:
            return indicators
    return json.dumps(indicators, indent=2, default=str, ensure_ascii=False)


def _format_metric_value(value: Optional[float]) -> str:
    return "N/A" if value is None else f"{round(value)}%"


def _footer_lines(phrases: PhraseTable, locale: str, company_name: str) -> List[str]:
    return [
        company_name,
        phrases.lookup(locale, "footer.tagline"),
        f"© {company_name}. {phrases.lookup(locale, 'footer.rights')}",
    ]


def _html_page(
    locale: str,
    title: str,
    colour: str,
    heading: str,
    badge: str,
    body: str,
    footer: List[str],
) -> str:
    footer_html = "".join(f"<p>{escape(line)}</p>" for line in footer)
    return f"""<!DOCTYPE html>
<html lang="{escape(locale)}">
<head><meta charset="UTF-8"><title>{escape(title)}</title></head>
<body style="font-family:Arial,sans-serif;background:#f5f5f5;margin:0;padding:0;">
  <div style="max-width:600px;margin:20px auto;background:#fff;border-radius:8px;overflow:hidden;">
    <div style="background:{colour};color:#fff;padding:24px 20px;text-align:center;">
      <h1 style="margin:0;font-size:22px;">{escape(heading)}</h1>
      <span style="display:inline-block;margin-top:8px;font-size:12px;font-weight:600;text-transform:uppercase;">{escape(badge)}</span>
    </div>
    <div style="padding:24px 20px;">
{body}
    </div>
    <div style="padding:16px 20px;color:#6b7280;font-size:12px;text-align:center;">{footer_html}</div>
  </div>
</body>
</html>"""


def _detail_rows(rows: List[tuple]) -> str:
    return "\n".join(
        f'      <p style="margin:0 0 8px;"><strong>{escape(label)}:</strong> {escape(str(value))}</p>'
        for label, value in rows
    )


# ═══════════════════════════════════════════════════════════════════════════
# Template builders
# ═══════════════════════════════════════════════════════════════════════════

def build_employee_email(
    occurrence: AlertOccurrence,
    recipient_name: str,
    phrases: PhraseTable,
    *,
    locale: str = "en",
    dashboard_url: Optional[str] = None,
    company_name: Optional[str] = None,
) -> RenderedEmail:
    """Technical alert for staff (fixed locale)."""
    t = phrases.lookup
    dashboard_url = dashboard_url or settings.EMPLOYEE_DASHBOARD_URL
    company_name = company_name or settings.COMPANY_NAME

    subject = phrases.email_subject("alert", locale, {
        "alertName": occurrence.alert_name,
        "agentName": occurrence.agent_name,
    })
    details = [
        (t(locale, "labels.system"), occurrence.agent_name or "Unknown"),
        (t(locale, "labels.business"), occurrence.account_name or "N/A"),
        (t(locale, "labels.alert"), occurrence.alert_name),
        (t(locale, "labels.severity"), occurrence.severity),
        (t(locale, "labels.metric"), occurrence.metric_type.upper()),
        (t(locale, "labels.value"), _format_metric_value(occurrence.metric_value)),
        (t(locale, "labels.detected"), phrases.format_date_time(occurrence.triggered_at, locale)),
        (t(locale, "labels.indicators"), occurrence.indicator_count),
    ]
    indicators = _format_indicators(occurrence.indicators)
    greeting = t(locale, "greeting.employee", {"name": recipient_name})
    footer = _footer_lines(phrases, locale, company_name)

    text_lines = [
        f"SYSTEM ALERT - {occurrence.severity.upper()}",
        "",
        greeting,
        "",
        t(locale, "employee.intro"),
        "",
        "ALERT DETAILS:",
        "--------------",
        *(f"{label}: {value}" for label, value in details),
        "",
    ]
    if occurrence.description:
        text_lines += [f"{t(locale, 'labels.description').upper()}:", occurrence.description, ""]
    text_lines += [
        f"{t(locale, 'labels.technicalDetails').upper()}:",
        indicators or t(locale, "phrases.noTechnicalDetails"),
        "",
        t(locale, "employee.acknowledgement"),
        f"{t(locale, 'actions.viewDashboard')}: {dashboard_url}",
        "",
        "---",
        *footer,
    ]

    body = [
        f"      <p>{escape(greeting)}</p>",
        f"      <p>{escape(t(locale, 'employee.intro'))}</p>",
        _detail_rows(details),
    ]
    if occurrence.description:
        body.append(
            f"      <p><strong>{escape(t(locale, 'labels.description'))}:</strong><br>"
            f"{escape(occurrence.description)}</p>"
        )
    if indicators:
        body.append(
            f"      <h3>{escape(t(locale, 'labels.technicalDetails'))}</h3>\n"
            f"      <pre>{escape(indicators)}</pre>"
        )
    body += [
        f"      <p>{escape(t(locale, 'employee.acknowledgement'))}</p>",
        f'      <a href="{escape(dashboard_url)}">{escape(t(locale, "actions.viewDashboard"))}</a>',
    ]

    html = _html_page(
        locale,
        subject,
        _SEVERITY_COLOURS.get(occurrence.severity, "#667eea"),
        t(locale, "labels.alert"),
        occurrence.severity,
        "\n".join(body),
        footer,
    )
    return RenderedEmail(subject=subject, html=html, text="\n".join(text_lines).strip())


def build_client_email(
    occurrence: AlertOccurrence,
    recipient_name: str,
    phrases: PhraseTable,
    *,
    locale: str,
    dashboard_url: Optional[str] = None,
    company_name: Optional[str] = None,
) -> RenderedEmail:
    """Plain-language alert for client users in their own language."""
    t = phrases.lookup
    dashboard_url = dashboard_url or settings.CLIENT_DASHBOARD_URL
    company_name = company_name or settings.COMPANY_NAME

    alert_name = occurrence.display_name(locale, phrases.default_locale)
    description = occurrence.client_description(locale, phrases.default_locale)
    severity = phrases.severity_label(occurrence.severity, locale)

    subject = phrases.email_subject("alert", locale, {
        "alertName": alert_name,
        "agentName": occurrence.agent_name,
    })
    details = [
        (t(locale, "labels.system"), occurrence.agent_name),
        (t(locale, "labels.alert"), alert_name),
        (t(locale, "labels.severity"), severity),
        (t(locale, "labels.detected"), phrases.format_date_time(occurrence.triggered_at, locale)),
    ]
    impacts = [
        t(locale, "client.performanceImpact"),
        t(locale, "client.responseDelays"),
        t(locale, "phrases.noActionRequired"),
    ]
    footer = _footer_lines(phrases, locale, company_name)

    text_lines = [
        f"{t(locale, 'labels.alert').upper()} - {severity.upper()}",
        "",
        t(locale, "greeting.customer"),
        "",
        t(locale, "client.intro"),
        "",
        *(f"{label}: {value}" for label, value in details),
        "",
    ]
    if description:
        text_lines += [f"{t(locale, 'labels.description')}:", description, ""]
    text_lines += [
        t(locale, "phrases.whatThisMeans"),
        *(f"- {line}" for line in impacts),
        "",
        t(locale, "phrases.monitoringSituation"),
        t(locale, "phrases.pleaseContact"),
        "",
        f"{t(locale, 'actions.viewDashboard')}: {dashboard_url}",
        "",
        "---",
        *footer,
    ]

    body = [
        f"      <p>{escape(t(locale, 'greeting.customer'))}</p>",
        f"      <p>{escape(t(locale, 'client.intro'))}</p>",
        _detail_rows(details),
    ]
    if description:
        body.append(
            f"      <p><strong>{escape(t(locale, 'labels.description'))}:</strong><br>"
            f"{escape(description)}</p>"
        )
    body += [
        f"      <p><strong>{escape(t(locale, 'phrases.whatThisMeans'))}</strong></p>",
        "      <ul>" + "".join(f"<li>{escape(line)}</li>" for line in impacts) + "</ul>",
        f"      <p>{escape(t(locale, 'phrases.monitoringSituation'))}</p>",
        f"      <p>{escape(t(locale, 'phrases.pleaseContact'))}</p>",
        f'      <a href="{escape(dashboard_url)}">{escape(t(locale, "actions.viewDashboard"))}</a>',
    ]

    html = _html_page(
        locale,
        subject,
        _SEVERITY_COLOURS.get(occurrence.severity, "#667eea"),
        alert_name,
        severity,
        "\n".join(body),
        footer,
    )
    return RenderedEmail(subject=subject, html=html, text="\n".join(text_lines).strip())


_REMINDER_COPY = {
    "acknowledgment": (
        "REMINDER: Service Request #{number} Needs Acknowledgment (Attempt {attempt})",
        "This service request has not been acknowledged yet. Please take action immediately.",
    ),
    "start": (
        "Reminder: Start Service Request #{number} (Attempt {attempt})",
        "You acknowledged this service request but work has not started yet.",
    ),
}


def build_reminder_email(
    target: ReminderTarget,
    recipient: ReminderRecipient,
    reminder: str,
    attempt: int,
    *,
    dashboard_url: Optional[str] = None,
    company_name: Optional[str] = None,
) -> RenderedEmail:
    """Staff reminder for an unacknowledged or unstarted service request (en)."""
    dashboard_url = dashboard_url or settings.EMPLOYEE_DASHBOARD_URL
    company_name = company_name or settings.COMPANY_NAME
    subject_template, nudge = _REMINDER_COPY[reminder]

    number = target.request_number or str(target.service_request_id)
    subject = subject_template.format(number=number, attempt=attempt)
    greeting = f"Hello {recipient.first_name}," if recipient.first_name else "Hello,"
    details = [("Request", f"#{number}"), ("Title", target.title or "N/A")]
    footer = [company_name]

    text = "\n".join([
        subject,
        "",
        greeting,
        "",
        f"This is reminder #{attempt}. {nudge}",
        "",
        *(f"{label}: {value}" for label, value in details),
        "",
        f"View Dashboard: {dashboard_url}",
        "",
        "---",
        *footer,
    ])
    body = "\n".join([
        f"      <p>{escape(greeting)}</p>",
        f"      <p><strong>This is reminder #{attempt}.</strong> {escape(nudge)}</p>",
        _detail_rows(details),
        f'      <a href="{escape(dashboard_url)}">View Dashboard</a>',
    ])
    html = _html_page("en", subject, "#f59e0b", f"Service Request #{number}", f"Reminder #{attempt}", body, footer)
    return RenderedEmail(subject=subject, html=html, text=text)


# ═══════════════════════════════════════════════════════════════════════════
# Transport
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class EmailTransport:
    """
    Email delivery backend.

    ``send`` returns a provider response dict on success and raises
    ``ChannelDeliveryError`` on any failure; the dispatcher decides what a
    failure means for the delivery log.
    """
    provider: str = "simulation"
    smtp_host: Optional[str] = None
    smtp_port: int = 587
    username: Optional[str] = None
    password: Optional[str] = None
    use_tls: bool = True
    timeout_seconds: float = 20.0
    outbox: List[EmailMessage] = field(default_factory=list)

    @classmethod
    def from_settings(cls, config: Settings = settings) -> "EmailTransport":
        return cls(
            provider=config.EMAIL_PROVIDER,
            smtp_host=config.SMTP_HOST,
            smtp_port=config.SMTP_PORT,
            username=config.SMTP_USER,
            password=config.SMTP_PASSWORD,
            use_tls=config.SMTP_USE_TLS,
            timeout_seconds=config.SMTP_TIMEOUT_SECONDS,
        )

    async def send(self, message: EmailMessage) -> Dict[str, Any]:
        if self.provider == "simulation":
            logger.info("[EMAIL] → %s: Subject='%s'", message.to, message.subject)
            self.outbox.append(message)
            return {"mode": "simulated", "to": message.to, "html_size": len(message.html)}

        if self.provider == "smtp":
            await asyncio.to_thread(self._send_smtp, message)
            logger.info("[EMAIL/SMTP] Sent to %s", message.to)
            return {"mode": "smtp", "to": message.to}

        raise ChannelDeliveryError("email", f"Unknown email provider: {self.provider}")

    def _build_mime(self, message: EmailMessage) -> MIMEMultipart:
        mime = MIMEMultipart("alternative")
        mime["Subject"] = message.subject
        mime["From"] = message.from_address
        mime["To"] = message.to
        mime.attach(MIMEText(message.text, "plain", "utf-8"))
        mime.attach(MIMEText(message.html, "html", "utf-8"))
        return mime

    def _send_smtp(self, message: EmailMessage) -> None:
        if not self.smtp_host:
            raise ChannelDeliveryError("email", "SMTP_HOST is not configured")

        try:
            with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout_seconds) as server:
                if self.use_tls:
                    server.starttls(context=ssl.create_default_context())
                if self.username and self.password:
                    server.login(self.username, self.password)
                server.sendmail(message.from_address, [message.to], self._build_mime(message).as_string())
        except (smtplib.SMTPException, OSError) as exc:
            raise ChannelDeliveryError("email", str(exc), to=message.to) from exc
