"""Shared fixtures: an alert service wired to in-memory collaborators."""

from __future__ import annotations

import pytest

from backend.msp.alerts.alert_service import AlertNotificationService
from backend.msp.alerts.dispatcher import ChannelDispatcher
from backend.msp.alerts.phrases import PhraseTable
from backend.msp.alerts.quiet_hours import QuietHoursFilter
from backend.msp.alerts.recorder import DeliveryRecorder
from backend.msp.alerts.resolver import SubscriberResolver
from tests.factories import (
    FIXED_NOW,
    FakeEmailTransport,
    FakeRealtimeHub,
    FakeSmsTransport,
    InMemoryAlertStore,
)


@pytest.fixture
def phrases() -> PhraseTable:
    return PhraseTable(default_locale="en", supported_locales=["en", "es"])


@pytest.fixture
def alert_store() -> InMemoryAlertStore:
    return InMemoryAlertStore()


@pytest.fixture
def hub() -> FakeRealtimeHub:
    return FakeRealtimeHub()


@pytest.fixture
def email() -> FakeEmailTransport:
    return FakeEmailTransport()


@pytest.fixture
def sms() -> FakeSmsTransport:
    return FakeSmsTransport()


@pytest.fixture
def recorder(alert_store) -> DeliveryRecorder:
    return DeliveryRecorder(alert_store, failure_threshold=3)


@pytest.fixture
def dispatcher(hub, email, sms, phrases, recorder) -> ChannelDispatcher:
    return ChannelDispatcher(
        realtime=hub,
        email=email,
        sms=sms,
        phrases=phrases,
        recorder=recorder,
        from_address="alerts@msp.example",
        clock=lambda: FIXED_NOW,
    )


@pytest.fixture
def service(alert_store, dispatcher) -> AlertNotificationService:
    return AlertNotificationService(
        store=alert_store,
        resolver=SubscriberResolver(alert_store),
        quiet_hours=QuietHoursFilter(fallback_timezone="UTC", clock=lambda: FIXED_NOW),
        dispatcher=dispatcher,
    )
