"""
Scheduler Entry Point — runs as its own process.

Usage:
    python -m agroalert.scheduler_main

This does NOT run a web server. It runs the APScheduler loop for alert
evaluation and dispatch.
"""

import asyncio
import signal

import structlog

from agroalert.config import settings
from agroalert.logging_config import configure_logging
from agroalert.services.notification_service import build_notification_service

logger = structlog.get_logger(__name__)


async def main():
    """Initialize and run the scheduler."""
    configure_logging(settings)
    logger.info("scheduler_starting", version=settings.app_version)

    service = await build_notification_service(settings)

    if settings.run_evaluation_on_start:
        logger.info("running_initial_evaluation")
        await service.scheduler.run_evaluation_tick()
        await service.scheduler.run_dispatch_tick()

    service.start()

    stop_event = asyncio.Event()

    def _handle_signal(signum, frame):
        logger.info("shutdown_signal_received", signal=signum)
        stop_event.set()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    logger.info("scheduler_running", msg="Waiting for jobs... Ctrl+C to stop.")

    await stop_event.wait()

    await service.close()
    logger.info("scheduler_shutdown_complete")


def run():
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
