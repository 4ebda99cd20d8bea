# /leadflow/utils/lifecycle.py

import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI

import sentry_sdk

from leadflow.config.settings import settings
from leadflow.services.crm_service import crm_service
from leadflow.services.db_service import db_service
from leadflow.services.whatsapp_service import whatsapp_service
from leadflow.utils.alerting import alerting_service
from leadflow.utils.logging import setup_logging
from leadflow.utils.queue import message_queue

# Startup: logging, Sentry, indexes, queue workers. Shutdown: workers, then
# HTTP clients and the Mongo connection.

logger = logging.getLogger(__name__)


def setup_sentry():
    if not settings.sentry_dsn:
        return
    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        environment=settings.sentry_environment,
        traces_sample_rate=0.1,
    )
    logger.info("Sentry initialized.")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup and shutdown events."""
    setup_logging()
    setup_sentry()

    logger.info("Application starting up...")

    await db_service.create_indexes()
    await message_queue.start_workers()

    logger.info("Application startup complete. Ready to accept requests.")

    yield  # Application is now running

    logger.info("Application shutting down...")

    await message_queue.stop_workers()
    await whatsapp_service.cleanup()
    await crm_service.cleanup()
    await alerting_service.cleanup()
    if db_service.client:
        db_service.client.close()
