"""
test_api.py — HTTP and WebSocket surface.

The app is built with ``create_app`` and in-memory collaborators, so no
database or external provider is needed (the readiness check gets a
throwaway SQLite session factory).

Run with:
    pytest tests/test_api.py -v
"""

from __future__ import annotations

import logging

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import create_async_engine

from backend.msp.alerts.alert_service import AlertNotificationService
from backend.msp.alerts.channels.realtime import RealtimeHub
from backend.msp.alerts.dispatcher import ChannelDispatcher
from backend.msp.alerts.quiet_hours import QuietHoursFilter
from backend.msp.alerts.recorder import DeliveryRecorder
from backend.msp.alerts.resolver import SubscriberResolver
from backend.msp.core.database import build_session_factory
from backend.msp.core.logging_config import get_log_context
from backend.msp.core.middleware import RequestCorrelationMiddleware
from backend.msp.main import create_app
from backend.msp.workflow.scheduler import ReminderScheduler
from tests.factories import (
    FIXED_NOW,
    InMemoryWorkflowStore,
    RecordingHandlers,
    _make_employee_subscription,
    _make_occurrence,
    _make_state,
)


@pytest.fixture
def realtime_hub() -> RealtimeHub:
    return RealtimeHub()


@pytest.fixture
def workflow_store() -> InMemoryWorkflowStore:
    return InMemoryWorkflowStore([_make_state()])


@pytest.fixture
def api_service(alert_store, realtime_hub, email, sms, phrases) -> AlertNotificationService:
    dispatcher = ChannelDispatcher(
        realtime=realtime_hub,
        email=email,
        sms=sms,
        phrases=phrases,
        recorder=DeliveryRecorder(alert_store),
        from_address="alerts@msp.example",
        clock=lambda: FIXED_NOW,
    )
    return AlertNotificationService(
        store=alert_store,
        resolver=SubscriberResolver(alert_store),
        quiet_hours=QuietHoursFilter(fallback_timezone="UTC", clock=lambda: FIXED_NOW),
        dispatcher=dispatcher,
    )


@pytest.fixture
def client(tmp_path, api_service, realtime_hub, workflow_store):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'health.db'}")
    app = create_app(
        alert_service=api_service,
        scheduler=ReminderScheduler(
            workflow_store, RecordingHandlers(), clock=lambda: FIXED_NOW,
        ),
        realtime_hub=realtime_hub,
        session_factory=build_session_factory(engine),
        start_scheduler=False,
    )
    with TestClient(app) as test_client:
        yield test_client


def _seed(store, *employees):
    store.occurrences[101] = _make_occurrence()
    store.employees.extend(employees)


# ═══════════════════════════════════════════════════════════════════════════
# Section 1: Alert Dispatch
# ═══════════════════════════════════════════════════════════════════════════

class TestAlertRoutes:

    def test_notify(self, client, alert_store, email):
        _seed(alert_store, _make_employee_subscription(notify_realtime=False))

        resp = client.post("/api/v1/alerts/occurrences/101/notify")

        assert resp.status_code == 200
        assert resp.json() == {
            "success": True,
            "employees": {"sent": 1, "failed": 0},
            "clients": {"sent": 0, "failed": 0},
            "total": {"sent": 1, "failed": 0},
        }
        assert len(email.sent) == 1

    def test_notify_unknown_occurrence_reports_error(self, client):
        resp = client.post("/api/v1/alerts/occurrences/999/notify")

        assert resp.status_code == 200
        body = resp.json()
        assert body["success"] is False
        assert "not found" in body["error"]

    def test_notify_rejects_non_positive_id(self, client):
        assert client.post("/api/v1/alerts/occurrences/0/notify").status_code == 422

    def test_deliveries(self, client, alert_store):
        _seed(alert_store, _make_employee_subscription(notify_realtime=False))
        client.post("/api/v1/alerts/occurrences/101/notify")

        resp = client.get("/api/v1/alerts/occurrences/101/deliveries")

        assert resp.status_code == 200
        body = resp.json()
        assert body["count"] == 1
        record = body["deliveries"][0]
        assert record["channel"] == "email"
        assert record["status"] == "sent"
        assert record["recipient_type"] == "employee"
        assert record["sent_at"] == FIXED_NOW.isoformat()

    def test_deliveries_unknown_occurrence(self, client):
        resp = client.get("/api/v1/alerts/occurrences/999/deliveries")

        assert resp.status_code == 404
        error = resp.json()["error"]
        assert error["code"] == "NOT_FOUND"
        assert error["details"]["occurrence_id"] == 999

    def test_channels(self, client):
        body = client.get("/api/v1/alerts/channels").json()

        delivered = {c["name"]: c["delivered"] for c in body["channels"]}
        assert delivered == {
            "websocket": True, "email": True, "sms": True, "browser": False, "push": False,
        }
        assert body["recipient_types"] == ["employee", "client"]


# ═══════════════════════════════════════════════════════════════════════════
# Section 2: Workflow Scheduler
# ═══════════════════════════════════════════════════════════════════════════

class TestWorkflowRoutes:

    def test_status_before_any_tick(self, client):
        body = client.get("/api/v1/workflow/scheduler").json()

        assert body["running"] is False
        assert body["ticks_completed"] == 0
        assert body["last_tick"] is None
        assert set(body["policies"]) == {"send_acknowledgment_reminder", "send_start_reminder"}

    def test_run_once(self, client, workflow_store):
        resp = client.post("/api/v1/workflow/scheduler/run")

        assert resp.status_code == 200
        body = resp.json()
        assert body["due"] == 1
        assert body["reminded"] == 1
        assert body["busy"] is False
        assert workflow_store.rows[9001].acknowledgment_reminder_count == 1

        status = client.get("/api/v1/workflow/scheduler").json()
        assert status["ticks_completed"] == 1
        assert status["last_tick"]["tick_id"] == body["tick_id"]


# ═══════════════════════════════════════════════════════════════════════════
# Section 3: Realtime, Health, Middleware
# ═══════════════════════════════════════════════════════════════════════════

class TestRealtimeSocket:

    def test_ping_pong(self, client, realtime_hub):
        with client.websocket_connect("/api/v1/realtime/admin") as ws:
            ws.send_text("ping")
            assert ws.receive_text() == "pong"
            assert realtime_hub.admin_count == 1

    def test_admin_receives_alert_event(self, client, alert_store):
        _seed(alert_store, _make_employee_subscription(notify_email=False))

        with client.websocket_connect("/api/v1/realtime/admin") as ws:
            ws.send_text("ping")
            assert ws.receive_text() == "pong"

            client.post("/api/v1/alerts/occurrences/101/notify")
            event = ws.receive_json()

        assert event["type"] == "alert:created"
        assert event["data"]["alert"]["id"] == 101


class TestHealthAndMiddleware:

    def test_root(self, client):
        body = client.get("/").json()
        assert "alert-dispatch" in body["modules"]

    def test_liveness(self, client):
        assert client.get("/health/live").json() == {"status": "alive"}

    def test_readiness_reports_components(self, client):
        resp = client.get("/health/ready")

        assert resp.status_code == 200
        components = {c["name"]: c for c in resp.json()["components"]}
        assert components["database"]["status"] == "healthy"
        assert set(components) == {"database", "reminder_scheduler", "channels"}

    def test_request_id_headers(self, client):
        resp = client.get("/api/v1/alerts/channels", headers={"X-Request-ID": "req-123"})

        assert resp.headers["X-Request-ID"] == "req-123"
        assert "X-Process-Time" in resp.headers

    def test_request_id_generated_when_absent(self, client):
        resp = client.get("/api/v1/alerts/channels")

        assert len(resp.headers["X-Request-ID"]) == 16


async def _asgi_call(middleware, path="/api/v1/alerts/channels", headers=()):
    sent = []

    async def receive():
        return {"type": "http.request", "body": b"", "more_body": False}

    async def send(message):
        sent.append(message)

    scope = {
        "type": "http",
        "method": "GET",
        "path": path,
        "headers": list(headers),
        "client": ("10.0.0.8", 51000),
    }
    await middleware(scope, receive, send)
    return sent


class TestRequestCorrelation:

    async def test_context_bound_only_while_handling(self):
        seen = {}

        async def app(scope, receive, send):
            seen.update(get_log_context())
            await send({"type": "http.response.start", "status": 204, "headers": []})
            await send({"type": "http.response.body", "body": b""})

        sent = await _asgi_call(RequestCorrelationMiddleware(app), headers=[(b"x-request-id", b"req-55")])

        assert seen == {"request_id": "req-55", "endpoint": "/api/v1/alerts/channels", "method": "GET"}
        assert get_log_context() == {}
        response_headers = dict(sent[0]["headers"])
        assert response_headers[b"x-request-id"] == b"req-55"
        assert response_headers[b"x-process-time"].endswith(b"ms")

    async def test_unhandled_error_is_logged_and_context_restored(self, caplog):
        async def app(scope, receive, send):
            raise RuntimeError("boom")

        with caplog.at_level(logging.ERROR, logger="backend.msp.core.middleware"):
            with pytest.raises(RuntimeError, match="boom"):
                await _asgi_call(RequestCorrelationMiddleware(app))

        assert get_log_context() == {}
        assert "GET /api/v1/alerts/channels → 500" in caplog.text
