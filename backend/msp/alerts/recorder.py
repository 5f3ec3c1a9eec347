"""
recorder.py — Durable delivery log writes.

Every finished attempt becomes one ``alert_notifications`` row. A write
failure never reaches the dispatcher: it is logged, and once
``RECORDER_FAILURE_ALERT_THRESHOLD`` writes have failed in a row an error
is logged so the outage is visible in monitoring. The counter resets on
the next successful write.
"""

from __future__ import annotations

import logging
from typing import Optional

from backend.msp.alerts.models import DeliveryAttempt
from backend.msp.alerts.store import AlertStore
from backend.msp.core.config import settings

logger = logging.getLogger(__name__)


class DeliveryRecorder:
    """Best-effort writer for delivery attempts."""

    def __init__(self, store: AlertStore, failure_threshold: Optional[int] = None):
        self._store = store
        self.failure_threshold = failure_threshold or settings.RECORDER_FAILURE_ALERT_THRESHOLD
        self.consecutive_failures = 0

    async def record(self, attempt: DeliveryAttempt) -> bool:
        """Persist ``attempt``; returns False when the write failed."""
        try:
            await self._store.insert_delivery(attempt)
        except Exception as exc:
            self.consecutive_failures += 1
            logger.warning(
                "Failed to record %s delivery for subscription %s: %s",
                attempt.channel.value, attempt.subscription_id, exc,
                extra={
                    "occurrence_id": attempt.occurrence_id,
                    "subscription_id": attempt.subscription_id,
                    "channel": attempt.channel.value,
                },
            )
            if self.consecutive_failures == self.failure_threshold:
                logger.error(
                    "Delivery log unavailable: %d consecutive write failures",
                    self.consecutive_failures,
                )
            return False

        if self.consecutive_failures:
            logger.info(
                "Delivery log writes recovered after %d failures",
                self.consecutive_failures,
            )
        self.consecutive_failures = 0
        return True
