"""
test_reminder_scheduler.py — Service-request reminder sweeps and the timer.

Covers:
    • Retry ceiling: remind up to the ceiling, then clear the action
    • Compare-and-set claims (lost races are skipped, never double-sent)
    • Rule overrides and default policies
    • Per-row failure isolation and fetch failures
    • Timer lifecycle: immediate tick, idempotent stop, skip-if-busy, SIGTERM
    • Reminder handlers: admin broadcast, staff email, fan-out

Run with:
    pytest tests/test_reminder_scheduler.py -v
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import os
import signal
from datetime import timedelta

import pytest

from backend.msp.core.config import Settings
from backend.msp.core.errors import ChannelDeliveryError, SchedulerError
from backend.msp.core.logging_config import get_log_context, log_context
from backend.msp.worker import run_worker
from backend.msp.workflow.handlers import (
    EmailReminderHandlers,
    FanOutReminderHandlers,
    RealtimeReminderHandlers,
)
from backend.msp.workflow.models import (
    LifecycleState,
    ReminderPolicy,
    RuleOverride,
    ScheduledAction,
    default_policies,
    effective_policy,
)
from backend.msp.workflow.scheduler import ReminderScheduler
from tests.factories import (
    FIXED_NOW,
    FakeEmailTransport,
    FakeRealtimeHub,
    InMemoryWorkflowStore,
    RecordingHandlers,
    _make_reminder_target,
    _make_state,
)

ACK = ScheduledAction.SEND_ACKNOWLEDGMENT_REMINDER
START = ScheduledAction.SEND_START_REMINDER

POLICIES = {
    ACK: ReminderPolicy(max_retries=5, interval_minutes=2),
    START: ReminderPolicy(max_retries=3, interval_minutes=10),
}


def _make_scheduler(store, handlers=None, **kwargs) -> ReminderScheduler:
    kwargs.setdefault("policies", POLICIES)
    kwargs.setdefault("clock", lambda: FIXED_NOW)
    return ReminderScheduler(store, handlers or RecordingHandlers(), **kwargs)


class GatedWorkflowStore(InMemoryWorkflowStore):
    """Blocks inside ``fetch_due_actions`` until released."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def fetch_due_actions(self, now):
        self.entered.set()
        await self.release.wait()
        return await super().fetch_due_actions(now)


class StealingWorkflowStore(InMemoryWorkflowStore):
    """Another writer bumps the row between the read and the claim."""

    async def claim_reminder(self, state, attempt, *, sent_at, next_due_at):
        current = self.rows[state.service_request_id]
        self.rows[state.service_request_id] = dataclasses.replace(
            current, next_action_at=current.next_action_at + timedelta(seconds=1),
        )
        return await super().claim_reminder(
            state, attempt, sent_at=sent_at, next_due_at=next_due_at,
        )


# ═══════════════════════════════════════════════════════════════════════════
# Section 1: Policies
# ═══════════════════════════════════════════════════════════════════════════

class TestPolicies:

    def test_defaults_from_settings(self):
        config = Settings(
            ACK_REMINDER_MAX_RETRIES=4, ACK_REMINDER_INTERVAL_MINUTES=1,
            START_REMINDER_MAX_RETRIES=2, START_REMINDER_INTERVAL_MINUTES=15,
        )
        policies = default_policies(config)

        assert policies[ACK] == ReminderPolicy(max_retries=4, interval_minutes=1)
        assert policies[START] == ReminderPolicy(max_retries=2, interval_minutes=15)

    def test_override_replaces_values(self):
        policy = effective_policy(POLICIES[ACK], RuleOverride(max_retry_count=2, retry_interval_minutes=7))
        assert policy == ReminderPolicy(max_retries=2, interval_minutes=7)
        assert policy.interval == timedelta(minutes=7)

    @pytest.mark.parametrize("override", [
        None,
        RuleOverride(),
        RuleOverride(max_retry_count=0, retry_interval_minutes=0),
    ])
    def test_missing_or_zero_override_keeps_default(self, override):
        assert effective_policy(POLICIES[ACK], override) == POLICIES[ACK]

    def test_trigger_events(self):
        assert ACK.trigger_event == "acknowledgment_timeout"
        assert START.trigger_event == "start_timeout"


# ═══════════════════════════════════════════════════════════════════════════
# Section 2: Retry Ceiling
# ═══════════════════════════════════════════════════════════════════════════

class TestRetryCeiling:

    async def test_first_reminder(self):
        store = InMemoryWorkflowStore([_make_state()])
        handlers = RecordingHandlers()

        report = await _make_scheduler(store, handlers).run_once()

        assert report.due == 1
        assert report.reminded == 1
        assert handlers.calls == [("acknowledgment", 9001, 1)]

        row = store.rows[9001]
        assert row.acknowledgment_reminder_count == 1
        assert row.last_acknowledgment_reminder_sent_at == FIXED_NOW
        assert row.next_action_at == FIXED_NOW + timedelta(minutes=2)
        assert row.next_action is ACK

    async def test_last_reminder_then_clear(self):
        store = InMemoryWorkflowStore([_make_state(acknowledgment_reminder_count=4)])
        handlers = RecordingHandlers()
        clock = {"now": FIXED_NOW}
        scheduler = _make_scheduler(store, handlers, clock=lambda: clock["now"])

        first = await scheduler.run_once()
        assert first.reminded == 1
        assert handlers.calls == [("acknowledgment", 9001, 5)]
        assert store.rows[9001].acknowledgment_reminder_count == 5

        clock["now"] = FIXED_NOW + timedelta(minutes=2)
        second = await scheduler.run_once()

        assert second.cleared == 1
        assert second.reminded == 0
        assert handlers.calls == [("acknowledgment", 9001, 5)]
        assert store.rows[9001].next_action is None
        assert store.rows[9001].next_action_at is None

        third = await scheduler.run_once()
        assert third.due == 0

    async def test_start_reminder_uses_its_own_ceiling(self):
        state = _make_state(
            current_state=LifecycleState.ACKNOWLEDGED.value,
            next_action=START,
            start_reminder_count=3,
            acknowledgment_reminder_count=1,
        )
        store = InMemoryWorkflowStore([state])
        handlers = RecordingHandlers()

        report = await _make_scheduler(store, handlers).run_once()

        assert report.cleared == 1
        assert handlers.calls == []

    async def test_start_reminder_sent_with_start_interval(self):
        state = _make_state(current_state=LifecycleState.ACKNOWLEDGED.value, next_action=START)
        store = InMemoryWorkflowStore([state])
        handlers = RecordingHandlers()

        await _make_scheduler(store, handlers).run_once()

        assert handlers.calls == [("start", 9001, 1)]
        assert store.rows[9001].start_reminder_count == 1
        assert store.rows[9001].acknowledgment_reminder_count == 0
        assert store.rows[9001].next_action_at == FIXED_NOW + timedelta(minutes=10)

    async def test_rule_override_lowers_ceiling(self):
        store = InMemoryWorkflowStore([_make_state(acknowledgment_reminder_count=2)])
        store.overrides[ACK] = RuleOverride(max_retry_count=2)
        handlers = RecordingHandlers()

        report = await _make_scheduler(store, handlers).run_once()

        assert report.cleared == 1
        assert handlers.calls == []

    async def test_zero_override_uses_default_ceiling(self):
        store = InMemoryWorkflowStore([_make_state(acknowledgment_reminder_count=2)])
        store.overrides[ACK] = RuleOverride(max_retry_count=0, retry_interval_minutes=0)
        handlers = RecordingHandlers()

        report = await _make_scheduler(store, handlers).run_once()

        assert report.reminded == 1
        assert handlers.calls == [("acknowledgment", 9001, 3)]
        assert store.rows[9001].next_action_at == FIXED_NOW + timedelta(minutes=2)

    async def test_override_load_failure_falls_back(self, caplog):
        store = InMemoryWorkflowStore([_make_state()])

        async def broken():
            raise RuntimeError("rules table missing")

        store.get_rule_overrides = broken

        with caplog.at_level(logging.WARNING, logger="backend.msp.workflow.scheduler"):
            report = await _make_scheduler(store).run_once()

        assert report.reminded == 1
        assert "using defaults" in caplog.text


# ═══════════════════════════════════════════════════════════════════════════
# Section 3: Row Selection and Isolation
# ═══════════════════════════════════════════════════════════════════════════

class TestRowSelection:

    async def test_only_due_actionable_rows(self):
        future = _make_state(service_request_id=2, next_action_at=FIXED_NOW + timedelta(minutes=1))
        closed = _make_state(service_request_id=3, current_state=LifecycleState.CLOSED.value)
        started = _make_state(service_request_id=4, current_state=LifecycleState.STARTED.value)
        no_action = _make_state(service_request_id=5, next_action=None)
        deleted = _make_state(service_request_id=6)
        store = InMemoryWorkflowStore([_make_state(), future, closed, started, no_action, deleted])
        store.deleted.add(6)
        handlers = RecordingHandlers()

        report = await _make_scheduler(store, handlers).run_once()

        assert report.due == 1
        assert handlers.calls == [("acknowledgment", 9001, 1)]

    async def test_due_exactly_now_is_included(self):
        store = InMemoryWorkflowStore([_make_state(next_action_at=FIXED_NOW)])
        report = await _make_scheduler(store).run_once()
        assert report.reminded == 1

    async def test_handler_failure_isolated(self):
        store = InMemoryWorkflowStore([
            _make_state(service_request_id=1),
            _make_state(service_request_id=2),
        ])
        handlers = RecordingHandlers(fail_for=[1])

        report = await _make_scheduler(store, handlers).run_once()

        assert report.failed == 1
        assert report.reminded == 1
        assert handlers.calls == [("acknowledgment", 2, 1)]
        # the claim landed before the handler raised
        assert store.rows[1].acknowledgment_reminder_count == 1

    async def test_lost_race_is_skipped(self):
        store = StealingWorkflowStore([_make_state()])
        handlers = RecordingHandlers()

        report = await _make_scheduler(store, handlers).run_once()

        assert report.skipped == 1
        assert handlers.calls == []
        assert store.rows[9001].acknowledgment_reminder_count == 0

    async def test_stale_snapshot_not_claimed_twice(self):
        state = _make_state()
        store = InMemoryWorkflowStore([state])

        assert await store.claim_reminder(
            state, 1, sent_at=FIXED_NOW, next_due_at=FIXED_NOW + timedelta(minutes=2),
        )
        assert not await store.claim_reminder(
            state, 1, sent_at=FIXED_NOW, next_due_at=FIXED_NOW + timedelta(minutes=2),
        )

    async def test_fetch_failure_reported(self):
        store = InMemoryWorkflowStore([_make_state()])
        store.fail_fetch = True
        scheduler = _make_scheduler(store)

        report = await scheduler.run_once()

        assert report.error == "database unavailable"
        assert report.due == 0
        assert scheduler.status().last_tick is report


# ═══════════════════════════════════════════════════════════════════════════
# Section 4: Timer Lifecycle
# ═══════════════════════════════════════════════════════════════════════════

class TestTimerLifecycle:

    async def test_start_runs_immediate_tick(self):
        store = InMemoryWorkflowStore([_make_state()])
        handlers = RecordingHandlers()
        scheduler = _make_scheduler(store, handlers, interval_seconds=3600)

        await scheduler.start()
        for _ in range(50):
            if scheduler.status().ticks_completed:
                break
            await asyncio.sleep(0.01)
        await scheduler.stop()

        assert store.fetch_calls == 1
        assert handlers.calls == [("acknowledgment", 9001, 1)]
        assert scheduler.running is False

    async def test_start_twice_warns(self, caplog):
        scheduler = _make_scheduler(InMemoryWorkflowStore(), interval_seconds=3600)

        await scheduler.start()
        with caplog.at_level(logging.WARNING, logger="backend.msp.workflow.scheduler"):
            await scheduler.start()
        await scheduler.stop()

        assert "already running" in caplog.text

    async def test_stop_is_idempotent(self):
        scheduler = _make_scheduler(InMemoryWorkflowStore(), interval_seconds=3600)

        await scheduler.stop()
        await scheduler.start()
        await scheduler.stop()
        await scheduler.stop()

        assert scheduler.running is False

    async def test_overlapping_tick_is_skipped(self):
        store = GatedWorkflowStore([_make_state()])
        handlers = RecordingHandlers()
        scheduler = _make_scheduler(store, handlers)

        first = asyncio.create_task(scheduler.run_once())
        await store.entered.wait()

        busy = await scheduler.run_once()
        assert busy.busy is True
        assert busy.due == 0
        assert scheduler.status().tick_in_progress is True

        store.release.set()
        report = await first

        assert report.reminded == 1
        assert handlers.calls == [("acknowledgment", 9001, 1)]
        assert scheduler.status().ticks_completed == 1

    async def test_status_serializes(self):
        scheduler = _make_scheduler(InMemoryWorkflowStore([_make_state()]), interval_seconds=30)
        await scheduler.run_once()

        body = scheduler.status().to_dict()

        assert body["running"] is False
        assert body["interval_seconds"] == 30
        assert body["ticks_completed"] == 1
        assert body["last_tick"]["reminded"] == 1
        assert body["policies"]["send_acknowledgment_reminder"] == {
            "max_retries": 5, "interval_minutes": 2,
        }

    async def test_termination_signal_stops_after_tick(self):
        store = InMemoryWorkflowStore([_make_state()])
        handlers = RecordingHandlers()
        scheduler = _make_scheduler(store, handlers, interval_seconds=3600)

        await scheduler.start()
        while not scheduler.status().ticks_completed:
            await asyncio.sleep(0.01)
        scheduler._on_signal(signal.SIGTERM)
        await asyncio.wait_for(scheduler.wait_stopped(), timeout=5)

        assert scheduler.running is False
        assert handlers.calls == [("acknowledgment", 9001, 1)]

    async def test_worker_exits_on_sigterm(self):
        handlers = RecordingHandlers()
        scheduler = _make_scheduler(InMemoryWorkflowStore([_make_state()]), handlers, interval_seconds=3600)

        worker = asyncio.create_task(run_worker(scheduler))
        for _ in range(100):
            if scheduler.status().ticks_completed:
                break
            await asyncio.sleep(0.01)
        os.kill(os.getpid(), signal.SIGTERM)
        await asyncio.wait_for(worker, timeout=5)

        assert scheduler.running is False
        assert handlers.calls == [("acknowledgment", 9001, 1)]

    async def test_tick_log_context_is_scoped(self):
        seen = {}

        class ContextCapturingHandlers(RecordingHandlers):
            async def on_acknowledgment_timeout(self, service_request_id, attempt):
                seen.update(get_log_context())

        scheduler = _make_scheduler(InMemoryWorkflowStore([_make_state()]), ContextCapturingHandlers())

        with log_context(request_id="req-9"):
            report = await scheduler.run_once()
            assert get_log_context() == {"request_id": "req-9"}

        assert seen == {"request_id": "req-9", "tick_id": report.tick_id}


# ═══════════════════════════════════════════════════════════════════════════
# Section 5: Reminder Handlers
# ═══════════════════════════════════════════════════════════════════════════

class TestRealtimeReminderHandlers:

    async def test_reminders_broadcast_to_admins(self):
        hub = FakeRealtimeHub()
        store = InMemoryWorkflowStore([
            _make_state(),
            _make_state(
                service_request_id=9002,
                current_state=LifecycleState.ACKNOWLEDGED.value,
                next_action=START,
                start_reminder_count=1,
            ),
        ])

        await _make_scheduler(store, RealtimeReminderHandlers(hub)).run_once()

        assert hub.admin_events == [
            {"type": "workflow:reminder",
             "data": {"service_request_id": 9001, "reminder": "acknowledgment", "attempt": 1}},
            {"type": "workflow:reminder",
             "data": {"service_request_id": 9002, "reminder": "start", "attempt": 2}},
        ]


class TestEmailReminderHandlers:

    def _handlers(self, store, email):
        return EmailReminderHandlers(
            store, email,
            from_address="workflow@msp.example",
            dashboard_url="https://backoffice.test/employees",
            company_name="Acme MSP",
        )

    async def test_acknowledgment_reminder_emails_each_recipient(self):
        store = InMemoryWorkflowStore([_make_state()])
        store.targets[(9001, ACK)] = _make_reminder_target(9001, "dana@msp.example", "sam@msp.example")
        email = FakeEmailTransport()

        report = await _make_scheduler(store, self._handlers(store, email)).run_once()

        assert report.reminded == 1
        assert [m.to for m in email.sent] == ["dana@msp.example", "sam@msp.example"]
        message = email.sent[0]
        assert message.from_address == "workflow@msp.example"
        assert message.subject == "REMINDER: Service Request #SR-9001 Needs Acknowledgment (Attempt 1)"
        assert "Hello Dana," in message.text
        assert "Printer offline" in message.html
        assert "https://backoffice.test/employees" in message.text

    async def test_start_reminder_goes_to_acknowledger(self):
        store = InMemoryWorkflowStore([_make_state(
            current_state=LifecycleState.ACKNOWLEDGED.value,
            next_action=START,
            start_reminder_count=2,
        )])
        store.targets[(9001, START)] = _make_reminder_target(9001, "tech@msp.example")
        email = FakeEmailTransport()

        await _make_scheduler(store, self._handlers(store, email)).run_once()

        assert [m.subject for m in email.sent] == ["Reminder: Start Service Request #SR-9001 (Attempt 3)"]

    async def test_no_recipients_counts_as_failure(self):
        store = InMemoryWorkflowStore([_make_state()])
        email = FakeEmailTransport()

        report = await _make_scheduler(store, self._handlers(store, email)).run_once()

        assert report.failed == 1
        assert report.reminded == 0
        assert email.sent == []

    async def test_partial_send_failure_still_reminds(self):
        store = InMemoryWorkflowStore([_make_state()])
        store.targets[(9001, ACK)] = _make_reminder_target(9001, "dana@msp.example", "sam@msp.example")
        email = FakeEmailTransport(fail_for=["dana@msp.example"])

        report = await _make_scheduler(store, self._handlers(store, email)).run_once()

        assert report.reminded == 1
        assert [m.to for m in email.sent] == ["sam@msp.example"]

    async def test_all_sends_failing_raises(self):
        store = InMemoryWorkflowStore()
        store.targets[(9001, ACK)] = _make_reminder_target(9001, "dana@msp.example")
        handlers = self._handlers(store, FakeEmailTransport(fail_for=["dana@msp.example"]))

        with pytest.raises(ChannelDeliveryError, match="550 mailbox unavailable"):
            await handlers.on_acknowledgment_timeout(9001, 1)

    async def test_missing_target_raises(self):
        handlers = self._handlers(InMemoryWorkflowStore(), FakeEmailTransport())

        with pytest.raises(SchedulerError, match="No recipients"):
            await handlers.on_start_timeout(404, 1)

    async def test_every_attempt_reaches_staff_until_ceiling(self):
        store = InMemoryWorkflowStore([_make_state()])
        store.targets[(9001, ACK)] = _make_reminder_target(9001, "dana@msp.example")
        email = FakeEmailTransport()
        now = FIXED_NOW

        scheduler = _make_scheduler(store, self._handlers(store, email), clock=lambda: now)
        for sweep in range(7):
            now = FIXED_NOW + timedelta(minutes=3 * sweep)
            await scheduler.run_once()

        assert [m.subject.rsplit("(", 1)[1] for m in email.sent] == [
            "Attempt 1)", "Attempt 2)", "Attempt 3)", "Attempt 4)", "Attempt 5)",
        ]
        final = store.rows[9001]
        assert final.acknowledgment_reminder_count == 5
        assert final.next_action is None


class TestFanOutReminderHandlers:

    async def test_all_handlers_run(self):
        hub = FakeRealtimeHub()
        recording = RecordingHandlers()

        await FanOutReminderHandlers([RealtimeReminderHandlers(hub), recording]).on_start_timeout(9001, 2)

        assert recording.calls == [("start", 9001, 2)]
        assert hub.admin_events[0]["data"] == {"service_request_id": 9001, "reminder": "start", "attempt": 2}

    async def test_one_failure_is_tolerated(self):
        recording = RecordingHandlers()
        fan_out = FanOutReminderHandlers([RecordingHandlers(fail_for=[9001]), recording])

        await fan_out.on_acknowledgment_timeout(9001, 1)

        assert recording.calls == [("acknowledgment", 9001, 1)]

    async def test_all_failing_raises_first_error(self):
        fan_out = FanOutReminderHandlers([RecordingHandlers(fail_for=[9001]), RecordingHandlers(fail_for=[9001])])

        with pytest.raises(RuntimeError, match="handler exploded"):
            await fan_out.on_acknowledgment_timeout(9001, 1)
