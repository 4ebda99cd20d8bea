# /leadflow/services/flow_service.py

from leadflow.config.settings import settings
from leadflow.flows.engine import FlowEngine
from leadflow.services.crm_service import crm_service
from leadflow.services.db_service import db_service
from leadflow.services.execution_store import execution_store
from leadflow.services.flow_repository import flow_repository
from leadflow.services.whatsapp_service import whatsapp_service
from leadflow.utils.alerting import alerting_service

# Wires the pure engine to its Mongo, WhatsApp and CRM adapters. Queue workers,
# the operator API and the scheduler all share this instance.

flow_engine = FlowEngine(
    execution_store,
    flow_repository,
    whatsapp_service,
    crm_service,
    security_log=db_service,
    alerting=alerting_service,
    max_attempts=settings.flow_max_step_attempts,
    retry_backoff_seconds=settings.flow_retry_backoff_seconds,
    max_steps=settings.flow_max_steps_per_run,
    lease_seconds=settings.flow_lease_seconds,
    batch_size=settings.flow_scheduler_batch_size,
    default_transfer_message=settings.default_transfer_message,
    scheduler_timezone=settings.scheduler_timezone,
)
