# /backend/scheduler.py

import asyncio
import logging
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from leadflow.config.settings import settings
from leadflow.jobs.flow_jobs import expire_connector_sessions, resume_due_executions
from leadflow.utils.logging import setup_logging

logger = logging.getLogger("SchedulerService")


def build_scheduler() -> AsyncIOScheduler:
    scheduler = AsyncIOScheduler(timezone=settings.scheduler_timezone)

    # Job 1: delays, retries, expired leases and cron-triggered flows
    scheduler.add_job(
        resume_due_executions,
        'interval',
        seconds=settings.flow_scheduler_interval_seconds,
        id="resume_due_executions_job",
        max_instances=1,
        coalesce=True,
        replace_existing=True
    )
    logger.info(f"Scheduled job: resume_due_executions (every {settings.flow_scheduler_interval_seconds} seconds).")

    # Job 2: connector sessions stuck waiting for a QR scan or a connection
    scheduler.add_job(
        expire_connector_sessions,
        'interval',
        minutes=1,
        id="expire_connector_sessions_job",
        max_instances=1,
        coalesce=True,
        replace_existing=True
    )
    logger.info("Scheduled job: expire_connector_sessions (every minute).")
    return scheduler


async def main():
    setup_logging(service="scheduler")
    scheduler = build_scheduler()
    scheduler.start()
    logger.info("Scheduler started successfully. Press Ctrl+C to exit.")

    # This loop keeps the script running forever
    try:
        while True:
            await asyncio.sleep(3600)
    except (KeyboardInterrupt, SystemExit):
        scheduler.shutdown()

if __name__ == "__main__":
    asyncio.run(main())
