# /leadflow/jobs/flow_jobs.py

import logging

from leadflow.models.events import ScheduleTickEvent
from leadflow.models.execution import utcnow
from leadflow.services.flow_service import flow_engine
from leadflow.services.session_service import session_service

logger = logging.getLogger(__name__)


async def resume_due_executions():
    """
    Emits one schedule_tick: elapsed delays, retries whose backoff ran out
    and executions left behind by a crashed worker are driven again, then
    cron-triggered flows are fired.
    """
    try:
        result = await flow_engine.handle_event(ScheduleTickEvent(now=utcnow()))
    except Exception:
        logger.error("Scheduler tick failed; due executions stay due for the next tick.", exc_info=True)
        return {}
    if result.get("resumed") or result.get("fired"):
        logger.info(f"Scheduler tick: resumed {result.get('resumed', 0)}, fired {result.get('fired', 0)}")
    return result


async def expire_connector_sessions():
    """Bounded wait for connector sessions stuck in connecting/qr_code."""
    try:
        return await session_service.expire_stale(utcnow())
    except Exception:
        logger.error("Failed to expire connector sessions.", exc_info=True)
        return 0
