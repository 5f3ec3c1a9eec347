"""
phrases.py — In-memory phrase table for alert notifications.

Keys are dotted paths into a per-locale tree (``subject.alert``,
``sms.alert``, ``labels.severity``). Values may contain ``{name}``
placeholders; placeholders without a matching parameter are left intact
so a missing value is visible in the delivered text instead of crashing
the attempt.

Missing keys log a warning and return the key path itself.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional, Sequence

from backend.msp.core.config import settings

logger = logging.getLogger(__name__)

_PLACEHOLDER = re.compile(r"\{(\w+)\}")

TRANSLATIONS: Dict[str, Dict[str, Any]] = {
    "en": {
        "subject": {
            "alert": "Alert: {alertName} on {agentName}",
        },
        "greeting": {
            "customer": "Dear Customer,",
            "employee": "Hello {name},",
        },
        "labels": {
            "system": "System",
            "business": "Business",
            "alert": "Alert",
            "severity": "Severity",
            "detected": "Detected",
            "metric": "Metric",
            "value": "Value",
            "indicators": "Indicators Triggered",
            "description": "Description",
            "technicalDetails": "Technical Details",
        },
        "severity": {
            "critical": "Critical",
            "high": "High",
            "medium": "Medium",
            "low": "Low",
        },
        "category": {
            "critical_issue": "Critical Issue",
            "performance_degradation": "Performance Degradation",
            "performance": "Performance",
            "security_alert": "Security Alert",
        },
        "phrases": {
            "monitoringSituation": "Our technical team is monitoring the situation.",
            "noActionRequired": "No immediate action is required from you.",
            "pleaseContact": "Please contact us if you have any concerns.",
            "whatThisMeans": "What this means:",
            "noTechnicalDetails": "No additional technical details",
        },
        "client": {
            "intro": "We've detected an issue with one of your monitored systems.",
            "performanceImpact": "Your applications may run slower than usual",
            "responseDelays": "System response times may be delayed",
        },
        "employee": {
            "intro": "A system alert has been triggered and requires attention.",
            "acknowledgement": "Please acknowledge this alert in the admin dashboard.",
        },
        "sms": {
            "alert": "{severity} alert: {agentName} - {alertType}. Check dashboard.",
        },
        "actions": {
            "viewDashboard": "View Dashboard",
        },
        "footer": {
            "tagline": "Professional IT Support",
            "rights": "All rights reserved.",
        },
    },
    "es": {
        "subject": {
            "alert": "Alerta: {alertName} en {agentName}",
        },
        "greeting": {
            "customer": "Estimado/a cliente,",
            "employee": "Hola {name},",
        },
        "labels": {
            "system": "Sistema",
            "business": "Negocio",
            "alert": "Alerta",
            "severity": "Gravedad",
            "detected": "Detectado",
            "metric": "Métrica",
            "value": "Valor",
            "indicators": "Indicadores Activados",
            "description": "Descripción",
            "technicalDetails": "Detalles Técnicos",
        },
        "severity": {
            "critical": "Crítico",
            "high": "Alto",
            "medium": "Medio",
            "low": "Bajo",
        },
        "category": {
            "critical_issue": "Problema Crítico",
            "performance_degradation": "Degradación del Rendimiento",
            "performance": "Rendimiento",
            "security_alert": "Alerta de Seguridad",
        },
        "phrases": {
            "monitoringSituation": "Nuestro equipo técnico está monitoreando la situación.",
            "noActionRequired": "No se requiere ninguna acción inmediata de su parte.",
            "pleaseContact": "Por favor contáctenos si tiene alguna inquietud.",
            "whatThisMeans": "Qué significa esto:",
            "noTechnicalDetails": "Sin detalles técnicos adicionales",
        },
        "client": {
            "intro": "Hemos detectado un problema en uno de sus sistemas monitoreados.",
            "performanceImpact": "Sus aplicaciones pueden funcionar más lento de lo habitual",
            "responseDelays": "Los tiempos de respuesta del sistema pueden retrasarse",
        },
        "employee": {
            "intro": "Se ha activado una alerta del sistema que requiere atención.",
            "acknowledgement": "Por favor reconozca esta alerta en el panel de administración.",
        },
        "sms": {
            "alert": "Alerta {severity}: {agentName} - {alertType}. Revisar panel.",
        },
        "actions": {
            "viewDashboard": "Ver Panel de Control",
        },
        "footer": {
            "tagline": "Soporte Profesional de TI",
            "rights": "Todos los derechos reservados.",
        },
    },
}

_MONTHS = {
    "en": ("January", "February", "March", "April", "May", "June", "July",
           "August", "September", "October", "November", "December"),
    "es": ("enero", "febrero", "marzo", "abril", "mayo", "junio", "julio",
           "agosto", "septiembre", "octubre", "noviembre", "diciembre"),
}


def interpolate(template: str, params: Optional[Mapping[str, Any]] = None) -> str:
    """Replace ``{name}`` placeholders; unknown placeholders are kept verbatim."""
    params = params or {}

    def _sub(match: "re.Match[str]") -> str:
        key = match.group(1)
        value = params.get(key)
        return match.group(0) if value is None else str(value)

    return _PLACEHOLDER.sub(_sub, template)


class PhraseTable:
    """Locale-aware phrase lookup used by the email and SMS builders."""

    def __init__(
        self,
        translations: Optional[Mapping[str, Mapping[str, Any]]] = None,
        default_locale: Optional[str] = None,
        supported_locales: Optional[Sequence[str]] = None,
    ):
        self._translations = translations or TRANSLATIONS
        self.default_locale = default_locale or settings.DEFAULT_LOCALE
        self.supported_locales = tuple(supported_locales or settings.SUPPORTED_LOCALES)

    def resolve_locale(self, locale: Optional[str]) -> str:
        """Map a requested language onto a supported locale (``es-MX`` -> ``es``)."""
        if locale:
            base = locale.replace("_", "-").split("-")[0].lower()
            if base in self.supported_locales and base in self._translations:
                return base
        return self.default_locale

    def lookup(self, locale: str, key: str, params: Optional[Mapping[str, Any]] = None) -> str:
        lang = self.resolve_locale(locale)
        node: Any = self._translations.get(lang, {})

        for part in key.split("."):
            if isinstance(node, Mapping) and part in node:
                node = node[part]
            else:
                logger.warning("Phrase key not found: %s (%s)", key, lang)
                return key

        if not isinstance(node, str):
            logger.warning("Phrase key is not a string: %s (%s)", key, lang)
            return key

        return interpolate(node, params)

    def severity_label(self, severity: str, locale: str) -> str:
        return self.lookup(locale, f"severity.{severity}")

    def category_label(self, category: str, locale: str) -> str:
        return self.lookup(locale, f"category.{category}")

    def email_subject(self, kind: str, locale: str, params: Mapping[str, Any]) -> str:
        return self.lookup(locale, f"subject.{kind}", params)

    def sms_text(self, kind: str, locale: str, params: Mapping[str, Any]) -> str:
        return self.lookup(locale, f"sms.{kind}", params)

    def format_date_time(self, ts: datetime, locale: str) -> str:
        """``October 19, 2026 at 03:04 PM UTC`` / ``19 de octubre de 2026, 15:04 UTC``."""
        if ts.tzinfo is None:
            ts = ts.replace(tzinfo=timezone.utc)
        lang = self.resolve_locale(locale)
        month = _MONTHS.get(lang, _MONTHS["en"])[ts.month - 1]
        zone = ts.tzname() or "UTC"

        if lang == "es":
            return f"{ts.day} de {month} de {ts.year}, {ts:%H:%M} {zone}"
        return f"{month} {ts.day}, {ts.year} at {ts:%I:%M %p} {zone}"
