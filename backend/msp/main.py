"""
FastAPI application entry point.

Run with:
    uvicorn backend.msp.main:app --reload --port 8000

Or from the project root:
    python -m uvicorn backend.msp.main:app --reload

The reminder scheduler runs inside the API process when
WORKFLOW_SCHEDULER_ENABLED is true. To run it as its own process instead,
disable it here and start ``python -m backend.msp.worker``.
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

# ── Core infrastructure ──
from backend.msp.core.config import settings
from backend.msp.core.database import close_db, get_session_factory
from backend.msp.core.errors import register_error_handlers
from backend.msp.core.health import HealthStatus, run_health_check
from backend.msp.core.logging_config import get_logger, setup_logging
from backend.msp.core.middleware import RequestCorrelationMiddleware

# ── Services ──
from backend.msp.alerts.alert_service import AlertNotificationService, build_alert_service
from backend.msp.alerts.channels.email_alert import EmailTransport
from backend.msp.alerts.channels.realtime import RealtimeHub
from backend.msp.alerts.channels.sms_gateway import SmsTransport
from backend.msp.alerts.dispatcher import ChannelDispatcher
from backend.msp.alerts.phrases import PhraseTable
from backend.msp.alerts.recorder import DeliveryRecorder
from backend.msp.alerts.store import SqlAlertStore
from backend.msp.workflow.handlers import (
    EmailReminderHandlers,
    FanOutReminderHandlers,
    RealtimeReminderHandlers,
)
from backend.msp.workflow.scheduler import ReminderScheduler
from backend.msp.workflow.store import SqlWorkflowStore

# ── API routers ──
from backend.msp.api.v1.alerts import router as alert_router
from backend.msp.api.v1.realtime import router as realtime_router
from backend.msp.api.v1.workflow import router as workflow_router

# ── Initialise logging ──
setup_logging()
logger = get_logger(__name__)


def build_default_services(
    session_factory: async_sessionmaker[AsyncSession],
    hub: RealtimeHub,
) -> tuple:
    """Wire the SQL-backed alert service and reminder scheduler."""
    alert_store = SqlAlertStore(session_factory)
    email = EmailTransport.from_settings()
    dispatcher = ChannelDispatcher(
        realtime=hub,
        email=email,
        sms=SmsTransport.from_settings(),
        phrases=PhraseTable(),
        recorder=DeliveryRecorder(alert_store),
    )
    alert_service = build_alert_service(alert_store, dispatcher)

    workflow_store = SqlWorkflowStore(session_factory)
    scheduler = ReminderScheduler(
        workflow_store,
        FanOutReminderHandlers([
            RealtimeReminderHandlers(hub),
            EmailReminderHandlers(workflow_store, email),
        ]),
    )
    return alert_service, scheduler


def create_app(
    *,
    alert_service: Optional[AlertNotificationService] = None,
    scheduler: Optional[ReminderScheduler] = None,
    realtime_hub: Optional[RealtimeHub] = None,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    start_scheduler: Optional[bool] = None,
) -> FastAPI:
    """Build the application; injected services replace the SQL-backed defaults."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(
            "Starting %s v%s [%s]",
            settings.APP_NAME, settings.APP_VERSION, settings.ENVIRONMENT,
        )
        state = app.state
        state.realtime_hub = realtime_hub or RealtimeHub()
        state.session_factory = session_factory
        state.alert_service = alert_service
        state.scheduler = scheduler

        owns_db = state.session_factory is None
        if state.alert_service is None or state.scheduler is None:
            state.session_factory = state.session_factory or get_session_factory()
            default_service, default_scheduler = build_default_services(
                state.session_factory, state.realtime_hub,
            )
            state.alert_service = state.alert_service or default_service
            state.scheduler = state.scheduler or default_scheduler

        run_scheduler = settings.WORKFLOW_SCHEDULER_ENABLED if start_scheduler is None else start_scheduler
        if run_scheduler:
            await state.scheduler.start()

        yield

        await state.scheduler.stop()
        if owns_db and state.session_factory is not None:
            await close_db()
        logger.info("Shutting down %s", settings.APP_NAME)

    application = FastAPI(
        title=settings.APP_NAME,
        description=(
            "Alert occurrence notification dispatch for the MSP back office: "
            "subscriber resolution, staff quiet hours, realtime / email / SMS "
            "delivery with a durable delivery log, and service-request "
            "acknowledgment and start reminders."
        ),
        version=settings.APP_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    application.add_middleware(RequestCorrelationMiddleware)
    register_error_handlers(application)

    application.include_router(alert_router)
    application.include_router(workflow_router)
    application.include_router(realtime_router)

    @application.get("/", tags=["root"])
    async def root():
        return {
            "service": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "environment": settings.ENVIRONMENT,
            "modules": ["alert-dispatch", "delivery-log", "workflow-reminders", "realtime"],
            "docs": "/docs",
        }

    @application.get("/health/live", tags=["health"])
    async def liveness():
        """Kubernetes liveness probe — is the process alive?"""
        return {"status": "alive"}

    @application.get("/health/ready", tags=["health"])
    async def readiness():
        """Readiness probe — database, scheduler and channel configuration."""
        factory = application.state.session_factory or get_session_factory()
        report = await run_health_check(
            factory, scheduler_running=application.state.scheduler.running,
        )
        if report.status == HealthStatus.UNHEALTHY:
            return JSONResponse(status_code=503, content=report.to_dict())
        return report.to_dict()

    return application


app = create_app()
