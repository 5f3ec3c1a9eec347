"""
Health check aggregation — deep health probe for the dispatch service.

Checks:
    • Database connectivity (SELECT 1 through the session factory)
    • Reminder scheduler running state
    • Email / SMS provider configuration

Returns a structured health report suitable for:
    - Kubernetes liveness/readiness probes
    - Load balancer health checks
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backend.msp.core.config import Settings, settings

logger = logging.getLogger(__name__)


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"  # partial functionality
    UNHEALTHY = "unhealthy"


@dataclass
class ComponentHealth:
    name: str
    status: HealthStatus = HealthStatus.HEALTHY
    latency_ms: float = 0.0
    message: str = ""
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "name": self.name,
            "status": self.status.value,
            "latency_ms": round(self.latency_ms, 2),
        }
        if self.message:
            d["message"] = self.message
        if self.details:
            d["details"] = self.details
        return d


@dataclass
class HealthReport:
    status: HealthStatus = HealthStatus.HEALTHY
    version: str = settings.APP_VERSION
    environment: str = settings.ENVIRONMENT
    timestamp: str = ""
    uptime_seconds: float = 0.0
    components: List[ComponentHealth] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "version": self.version,
            "environment": self.environment,
            "timestamp": self.timestamp or datetime.now(timezone.utc).isoformat(),
            "uptime_seconds": round(self.uptime_seconds, 1),
            "components": [c.to_dict() for c in self.components],
        }


_start_time = time.monotonic()


async def check_database(session_factory: async_sessionmaker[AsyncSession]) -> ComponentHealth:
    comp = ComponentHealth(name="database")
    start = time.monotonic()
    try:
        async with session_factory() as session:
            await session.execute(text("SELECT 1"))
        comp.message = "Connection pool available"
    except Exception as e:
        logger.warning("Database health check failed: %s", e)
        comp.status = HealthStatus.UNHEALTHY
        comp.message = str(e)
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


def check_scheduler(running: Optional[bool], enabled: bool) -> ComponentHealth:
    comp = ComponentHealth(name="reminder_scheduler")
    if not enabled:
        comp.message = "Disabled by configuration"
    elif running:
        comp.message = "Running"
    else:
        comp.status = HealthStatus.DEGRADED
        comp.message = "Not running"
    return comp


def check_channels(config: Settings = settings) -> ComponentHealth:
    comp = ComponentHealth(name="channels")
    comp.details = {"email": config.EMAIL_PROVIDER, "sms": config.SMS_PROVIDER}

    problems = []
    if config.EMAIL_PROVIDER == "smtp" and not config.SMTP_HOST:
        problems.append("SMTP_HOST missing")
    if config.SMS_PROVIDER == "twilio" and not (
        config.TWILIO_ACCOUNT_SID and config.TWILIO_AUTH_TOKEN and config.TWILIO_FROM_NUMBER
    ):
        problems.append("Twilio credentials missing")

    if problems:
        comp.status = HealthStatus.DEGRADED
        comp.message = "; ".join(problems)
    else:
        comp.message = "Providers configured"
    return comp


async def run_health_check(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    scheduler_running: Optional[bool] = None,
    config: Settings = settings,
) -> HealthReport:
    """Run all health checks and aggregate into a report."""
    report = HealthReport(
        timestamp=datetime.now(timezone.utc).isoformat(),
        uptime_seconds=time.monotonic() - _start_time,
    )

    report.components.append(await check_database(session_factory))
    report.components.append(check_scheduler(scheduler_running, config.WORKFLOW_SCHEDULER_ENABLED))
    report.components.append(check_channels(config))

    statuses = [c.status for c in report.components]
    if HealthStatus.UNHEALTHY in statuses:
        report.status = HealthStatus.UNHEALTHY
    elif HealthStatus.DEGRADED in statuses:
        report.status = HealthStatus.DEGRADED
    else:
        report.status = HealthStatus.HEALTHY

    return report
