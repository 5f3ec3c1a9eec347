"""
Standalone reminder worker.

Run with:
    python -m backend.msp.worker

Runs only the ReminderScheduler (no HTTP). Reminders are emailed to the
responsible staff through the configured EMAIL_PROVIDER; there are no
admin sessions in this process to broadcast to. SIGTERM / SIGINT finish
the in-flight sweep and exit.
"""

from __future__ import annotations

import asyncio
from typing import Optional

from backend.msp.alerts.channels.email_alert import EmailTransport
from backend.msp.core.config import settings
from backend.msp.core.database import close_db, get_session_factory
from backend.msp.core.logging_config import get_logger, setup_logging
from backend.msp.workflow.handlers import EmailReminderHandlers
from backend.msp.workflow.scheduler import ReminderScheduler
from backend.msp.workflow.store import SqlWorkflowStore

logger = get_logger(__name__)


def build_worker_scheduler() -> ReminderScheduler:
    store = SqlWorkflowStore(get_session_factory())
    email = EmailTransport.from_settings()
    if email.provider == "simulation":
        logger.warning("EMAIL_PROVIDER is 'simulation' — reminders will only be logged")
    return ReminderScheduler(store, EmailReminderHandlers(store, email))


async def run_worker(scheduler: Optional[ReminderScheduler] = None) -> None:
    scheduler = scheduler or build_worker_scheduler()
    scheduler.install_signal_handlers()

    logger.info("Starting reminder worker [%s]", settings.ENVIRONMENT)
    await scheduler.start()
    try:
        await scheduler.wait_stopped()
    finally:
        await scheduler.stop()
        scheduler.remove_signal_handlers()
        await close_db()
    logger.info("Reminder worker exited")


def main() -> None:
    setup_logging()
    asyncio.run(run_worker())


if __name__ == "__main__":
    main()
