"""
Reminder worker process.

Purpose:
- Build the collaborator container once
- Run the scheduler loop (daily at RUN_HOUR_UTC, or every RUN_INTERVAL_SEC)
- Stop gracefully on SIGINT/SIGTERM: the in-flight run finishes the units
  it already started, no new run is triggered

Usage:
- python -m workers.reminder_worker
"""
import asyncio
import logging
import signal

from config.settings import settings
from core.container import build_container
from core.db import create_all
from core.logging import configure_logging

logger = logging.getLogger(__name__)


async def main():
    """Entry point for running the worker."""
    configure_logging(settings.LOG_LEVEL)
    container = build_container(settings)
    scheduler = container.scheduler

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, scheduler.stop)
        except NotImplementedError:
            # Windows event loops have no signal handlers
            signal.signal(sig, lambda *_: scheduler.stop())

    if container.engine is not None and settings.DEBUG:
        # development convenience; production schemas come from create_db_schema.py
        await create_all(container.engine)

    logger.info("Reminder worker started (tz=%s)", settings.REFERENCE_TIMEZONE)
    try:
        await scheduler.run_forever()
    finally:
        await container.close()
        logger.info("Reminder worker stopped")

if __name__ == "__main__":
    asyncio.run(main())
