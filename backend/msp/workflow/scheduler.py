"""
scheduler.py — Periodic service-request reminder sweep.

═══════════════════════════════════════════════════════════════════════════
TICK
═══════════════════════════════════════════════════════════════════════════

    rows = due actions (actionable state, not soft-deleted, due <= now)
    for row in rows:                               (each row isolated)
        attempt = counter + 1
        if attempt > ceiling:
            CAS clear action + due timestamp       → cleared, no handler
        elif CAS claim counter = attempt, due += interval:
            handler(request_id, attempt)           → reminded
        else:
            skipped                                (lost the race)

The claim is written before the handler runs, so a reminder is sent at
most once per attempt number even when two schedulers overlap. A handler
that raises after a successful claim leaves the attempt consumed.

═══════════════════════════════════════════════════════════════════════════
TIMER
═══════════════════════════════════════════════════════════════════════════

    start()  → tick immediately, then every interval_seconds
    stop()   → finish the in-flight tick, then exit (idempotent)
    run_once() while a tick is running → skipped report, nothing touched
"""

from __future__ import annotations

import asyncio
import logging
import signal
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from backend.msp.core.config import settings
from backend.msp.core.logging_config import log_context
from backend.msp.workflow.handlers import TimeoutHandlers
from backend.msp.workflow.models import (
    ReminderPolicy,
    RuleOverride,
    ScheduledAction,
    WorkflowState,
    default_policies,
    effective_policy,
)
from backend.msp.workflow.store import WorkflowStore

logger = logging.getLogger(__name__)

_STOP_SIGNALS = (signal.SIGTERM, signal.SIGINT)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class TickReport:
    """Outcome of one sweep."""
    tick_id: str
    started_at: datetime
    completed_at: Optional[datetime] = None
    due: int = 0
    reminded: int = 0
    cleared: int = 0
    skipped: int = 0
    failed: int = 0
    busy: bool = False
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tick_id": self.tick_id,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "due": self.due,
            "reminded": self.reminded,
            "cleared": self.cleared,
            "skipped": self.skipped,
            "failed": self.failed,
            "busy": self.busy,
            "error": self.error,
        }


@dataclass
class SchedulerStatus:
    running: bool
    interval_seconds: float
    ticks_completed: int
    tick_in_progress: bool
    last_tick: Optional[TickReport] = None
    policies: Dict[str, ReminderPolicy] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "running": self.running,
            "interval_seconds": self.interval_seconds,
            "ticks_completed": self.ticks_completed,
            "tick_in_progress": self.tick_in_progress,
            "last_tick": self.last_tick.to_dict() if self.last_tick else None,
            "policies": {
                name: {"max_retries": p.max_retries, "interval_minutes": p.interval_minutes}
                for name, p in self.policies.items()
            },
        }


class ReminderScheduler:
    """
    Sends acknowledgment and start reminders for service requests.

    Usage:
        scheduler = ReminderScheduler(store, handlers)

        # Start the timer (first sweep runs immediately)
        await scheduler.start()

        # Sweep on demand
        report = await scheduler.run_once()

        # Stop the timer
        await scheduler.stop()
    """

    def __init__(
        self,
        store: WorkflowStore,
        handlers: TimeoutHandlers,
        *,
        interval_seconds: Optional[float] = None,
        policies: Optional[Dict[ScheduledAction, ReminderPolicy]] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._store = store
        self._handlers = handlers
        self.interval_seconds = interval_seconds or settings.WORKFLOW_SCHEDULER_INTERVAL_SECONDS
        self.policies = policies or default_policies()
        self._clock = clock

        self._running = False
        self._scheduler_task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._shutdown_task: Optional[asyncio.Future] = None
        self._tick_lock = asyncio.Lock()
        self._ticks_completed = 0
        self._last_tick: Optional[TickReport] = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the timer; a second call while running only logs a warning."""
        if self._running:
            logger.warning("Reminder scheduler already running")
            return

        self._running = True
        self._stop_event = asyncio.Event()
        self._scheduler_task = asyncio.create_task(self._run_scheduler())
        logger.info("Reminder scheduler started (interval=%.0fs)", self.interval_seconds)

    async def stop(self) -> None:
        """Stop the timer after the in-flight tick completes."""
        if not self._running:
            return

        self._running = False
        if self._stop_event is not None:
            self._stop_event.set()
        if self._scheduler_task is not None:
            await self._scheduler_task
            self._scheduler_task = None
        logger.info("Reminder scheduler stopped")

    async def wait_stopped(self) -> None:
        """Block until the timer loop exits and any signal-driven stop has finished."""
        if self._scheduler_task is not None:
            await asyncio.shield(self._scheduler_task)
        if self._shutdown_task is not None:
            await self._shutdown_task

    def install_signal_handlers(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        """Stop gracefully on SIGTERM / SIGINT (worker process only)."""
        loop = loop or asyncio.get_running_loop()
        for sig in _STOP_SIGNALS:
            loop.add_signal_handler(sig, self._on_signal, sig)

    def remove_signal_handlers(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        loop = loop or asyncio.get_running_loop()
        for sig in _STOP_SIGNALS:
            loop.remove_signal_handler(sig)

    def _on_signal(self, sig: signal.Signals) -> None:
        logger.info("Received %s — stopping reminder scheduler", sig.name)
        self._shutdown_task = asyncio.ensure_future(self.stop())

    def status(self) -> SchedulerStatus:
        return SchedulerStatus(
            running=self._running,
            interval_seconds=self.interval_seconds,
            ticks_completed=self._ticks_completed,
            tick_in_progress=self._tick_lock.locked(),
            last_tick=self._last_tick,
            policies={action.value: policy for action, policy in self.policies.items()},
        )

    async def _run_scheduler(self) -> None:
        """Main timer loop."""
        assert self._stop_event is not None
        while not self._stop_event.is_set():
            try:
                await self.run_once()
            except Exception as e:
                logger.exception("Reminder scheduler error: %s", e)

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                pass

    # ═══════════════════════════════════════════════════════════════════
    # Sweep
    # ═══════════════════════════════════════════════════════════════════

    async def run_once(self) -> TickReport:
        """Run one sweep now; returns a ``busy`` report if a sweep is already running."""
        report = TickReport(tick_id=uuid.uuid4().hex[:8], started_at=self._clock())

        if self._tick_lock.locked():
            logger.info("Reminder sweep already in progress — skipping tick %s", report.tick_id)
            report.busy = True
            report.completed_at = self._clock()
            return report

        async with self._tick_lock:
            with log_context(tick_id=report.tick_id):
                await self._sweep(report)

        if report.due:
            logger.info(
                "Reminder sweep %s: %d due, %d reminded, %d cleared, %d skipped, %d failed",
                report.tick_id, report.due, report.reminded, report.cleared,
                report.skipped, report.failed,
            )
        return report

    async def _sweep(self, report: TickReport) -> None:
        now = report.started_at

        try:
            due = await self._store.fetch_due_actions(now)
        except Exception as exc:
            logger.exception("Failed to load due workflow actions")
            report.error = str(exc)
            report.completed_at = self._clock()
            self._last_tick = report
            return

        report.due = len(due)
        overrides = await self._load_overrides() if due else {}

        for state in due:
            try:
                outcome = await self._process(state, now, overrides)
            except Exception as exc:
                report.failed += 1
                logger.exception(
                    "Reminder for service request %s failed: %s",
                    state.service_request_id, exc,
                    extra={"service_request_id": state.service_request_id},
                )
                continue

            if outcome == "reminded":
                report.reminded += 1
            elif outcome == "cleared":
                report.cleared += 1
            else:
                report.skipped += 1

        report.completed_at = self._clock()
        self._ticks_completed += 1
        self._last_tick = report

    async def _load_overrides(self) -> Dict[ScheduledAction, RuleOverride]:
        try:
            return await self._store.get_rule_overrides()
        except Exception as exc:
            logger.warning("Could not load workflow notification rules, using defaults: %s", exc)
            return {}

    def policy_for(
        self,
        action: ScheduledAction,
        overrides: Optional[Dict[ScheduledAction, RuleOverride]] = None,
    ) -> ReminderPolicy:
        return effective_policy(self.policies[action], (overrides or {}).get(action))

    async def _process(
        self,
        state: WorkflowState,
        now: datetime,
        overrides: Dict[ScheduledAction, RuleOverride],
    ) -> str:
        action = state.next_action
        if action is None:
            return "skipped"

        policy = self.policy_for(action, overrides)
        attempt = state.reminder_count(action) + 1
        log_extra = {"service_request_id": state.service_request_id, "attempt": attempt}

        if attempt > policy.max_retries:
            if await self._store.clear_scheduled_action(state):
                logger.info(
                    "Service request %s reached max %s (%d) — clearing scheduled action",
                    state.service_request_id, action.value, policy.max_retries,
                    extra=log_extra,
                )
                return "cleared"
            return "skipped"

        claimed = await self._store.claim_reminder(
            state, attempt, sent_at=now, next_due_at=now + policy.interval,
        )
        if not claimed:
            logger.debug(
                "Service request %s changed since read — skipping %s",
                state.service_request_id, action.value, extra=log_extra,
            )
            return "skipped"

        if action is ScheduledAction.SEND_ACKNOWLEDGMENT_REMINDER:
            await self._handlers.on_acknowledgment_timeout(state.service_request_id, attempt)
        else:
            await self._handlers.on_start_timeout(state.service_request_id, attempt)
        return "reminded"
