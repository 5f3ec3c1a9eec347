"""
quiet_hours.py — Suppress staff notifications inside local quiet windows.

Applied to the employee audience only. Client-visible alerts are never
held back on a schedule.

Window semantics (local wall-clock minutes since midnight):

    start <= end    suppressed when  start <= now < end
    start >  end    suppressed when  now >= start  or  now < end   (wraps midnight)

    22:00–06:00  →  23:30 suppressed, 05:59 suppressed, 06:00 active, 12:00 active
    09:00–17:00  →  12:00 suppressed, 17:00 active

A window that cannot be parsed or a timezone that cannot be loaded fails
OPEN: the subscriber stays active and a warning is logged.
"""

from __future__ import annotations

import logging
from datetime import datetime, time, timezone
from typing import Callable, List, Optional, Sequence
from zoneinfo import ZoneInfo

from backend.msp.alerts.models import ClockValue, EmployeeSubscription
from backend.msp.core.config import settings

logger = logging.getLogger(__name__)

MINUTES_PER_DAY = 24 * 60


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_clock(value: ClockValue) -> int:
    """
    Convert ``"HH:MM"``, ``"HH:MM:SS"`` or a ``datetime.time`` to minutes since midnight.

    Raises
    ------
    ValueError
        If the value is not a valid wall-clock time.
    """
    if isinstance(value, time):
        return value.hour * 60 + value.minute

    parts = str(value).strip().split(":")
    if len(parts) not in (2, 3):
        raise ValueError(f"Invalid clock value: {value!r}")

    hour, minute = int(parts[0]), int(parts[1])
    if not (0 <= hour < 24 and 0 <= minute < 60):
        raise ValueError(f"Clock value out of range: {value!r}")
    return hour * 60 + minute


def is_within_window(current_minutes: int, start_minutes: int, end_minutes: int) -> bool:
    if start_minutes <= end_minutes:
        return start_minutes <= current_minutes < end_minutes
    return current_minutes >= start_minutes or current_minutes < end_minutes


class QuietHoursFilter:
    """Drops employee subscriptions that are currently inside their quiet window."""

    def __init__(
        self,
        fallback_timezone: Optional[str] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.fallback_timezone = fallback_timezone or settings.QUIET_HOURS_FALLBACK_TIMEZONE
        self._clock = clock

    def is_active(
        self,
        subscription: EmployeeSubscription,
        now: Optional[datetime] = None,
    ) -> bool:
        """True when the subscriber may be notified at ``now``."""
        window = subscription.quiet_hours
        if window is None or not window.start or not window.end:
            return True

        now = now or self._clock()
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)

        try:
            local = now.astimezone(ZoneInfo(window.timezone or self.fallback_timezone))
            current = local.hour * 60 + local.minute
            suppressed = is_within_window(
                current, parse_clock(window.start), parse_clock(window.end),
            )
        except Exception as exc:
            logger.warning(
                "Quiet hours check failed for subscription %s (%s) — allowing notification",
                subscription.subscription_id, exc,
                extra={"subscription_id": subscription.subscription_id},
            )
            return True

        if suppressed:
            logger.debug(
                "Subscription %s suppressed by quiet hours %s–%s",
                subscription.subscription_id, window.start, window.end,
            )
        return not suppressed

    def filter(
        self,
        subscriptions: Sequence[EmployeeSubscription],
        now: Optional[datetime] = None,
    ) -> List[EmployeeSubscription]:
        now = now or self._clock()
        return [s for s in subscriptions if self.is_active(s, now)]
