# /leadflow/routes/flows.py

import structlog
from typing import Any, Dict, Optional
from fastapi import APIRouter, Body, Depends, HTTPException, Query, Request
from pydantic import ValidationError

from leadflow.config.settings import settings
from leadflow.dependencies.tenant import get_tenant_id
from leadflow.flows.errors import TenantIsolationError
from leadflow.models.api import APIResponse
from leadflow.models.events import EventType, parse_event
from leadflow.models.execution import ExecutionStatus
from leadflow.models.flow import FlowSummary
from leadflow.services.db_service import db_service
from leadflow.services.execution_store import execution_store
from leadflow.services.flow_repository import flow_repository
from leadflow.services.flow_service import flow_engine
from leadflow.utils.metrics import tenant_violations_counter
from leadflow.utils.queue import message_queue
from leadflow.utils.request_utils import get_remote_address

# Operator API. The company always comes from the bearer token; ids in the
# path or body are only ever looked up inside that company.

router = APIRouter(
    tags=["Flows"]
)

log = structlog.get_logger(__name__)


@router.post("/flows/events", status_code=202)
async def submit_event(
    request: Request,
    body: Dict[str, Any] = Body(...),
    wait: bool = Query(False, description="Process inline and return the engine's acknowledgement"),
    tenant_id: str = Depends(get_tenant_id),
):
    """Generic event ingestion (new_lead, keyword, stage_change, continue_execution, inbound_message)."""
    claimed = body.get("company_id")
    if claimed and claimed != tenant_id:
        tenant_violations_counter.labels(event_type=str(body.get("event_type"))).inc()
        await db_service.log_security_event(
            "tenant_isolation_violation",
            get_remote_address(request),
            {"claimed_company_id": claimed, "company_id": tenant_id, "event_type": body.get("event_type")},
        )
        raise HTTPException(status_code=403, detail="Company mismatch")
    if body.get("event_type") == EventType.SCHEDULE_TICK.value:
        raise HTTPException(status_code=422, detail="schedule_tick is emitted by the scheduler only")

    try:
        event = parse_event({**body, "company_id": tenant_id})
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=e.errors(include_url=False, include_context=False))

    if wait:
        try:
            return await flow_engine.handle_event(event)
        except Exception as e:
            raise HTTPException(status_code=503, detail="Flow engine unavailable, retry later") from e

    message_id = await message_queue.publish(event)
    log.info("Flow event accepted.", event_type=event.event_type, company_id=tenant_id)
    return {"status": "accepted", "event_type": event.event_type, "message_id": message_id}


@router.get("/flows", response_model=APIResponse)
async def list_flows(tenant_id: str = Depends(get_tenant_id)):
    """Flows with execution counts; a rising ``failed`` count is how operators spot a stopped flow."""
    flows = await flow_repository.list_flows(tenant_id)
    counts = await execution_store.count_by_status(tenant_id, [f.id for f in flows])
    summaries = [
        FlowSummary(
            id=f.id,
            name=f.name,
            is_active=f.is_active,
            trigger_type=f.trigger_type,
            executions={s.value: counts.get(f.id, {}).get(s.value, 0) for s in ExecutionStatus},
        ).model_dump()
        for f in flows
    ]
    return APIResponse(success=True, message="Flows retrieved.", data={"flows": summaries}, version=settings.api_version)


@router.get("/flows/{flow_id}/executions", response_model=APIResponse)
async def list_flow_executions(
    flow_id: str,
    status: Optional[ExecutionStatus] = None,
    limit: int = Query(50, ge=1, le=200),
    tenant_id: str = Depends(get_tenant_id),
):
    if await flow_repository.get_flow(tenant_id, flow_id) is None:
        raise HTTPException(status_code=404, detail="Flow not found")
    executions = await execution_store.list_executions(
        tenant_id, flow_id=flow_id, status=status.value if status else None, limit=limit
    )
    return APIResponse(
        success=True,
        message="Executions retrieved.",
        data={"executions": [e.model_dump(mode="json") for e in executions]},
        version=settings.api_version,
    )


async def _get_execution_or_404(tenant_id: str, execution_id: str):
    try:
        execution = await execution_store.get_execution(tenant_id, execution_id)
    except TenantIsolationError:
        # Someone else's execution looks exactly like a missing one
        execution = None
    if execution is None:
        raise HTTPException(status_code=404, detail="Execution not found")
    return execution


@router.get("/executions/{execution_id}", response_model=APIResponse)
async def get_execution(execution_id: str, tenant_id: str = Depends(get_tenant_id)):
    execution = await _get_execution_or_404(tenant_id, execution_id)
    return APIResponse(
        success=True,
        message="Execution retrieved.",
        data=execution.model_dump(mode="json"),
        version=settings.api_version,
    )


@router.get("/executions/{execution_id}/logs", response_model=APIResponse)
async def get_execution_logs(
    execution_id: str,
    limit: int = Query(200, ge=1, le=1000),
    tenant_id: str = Depends(get_tenant_id),
):
    await _get_execution_or_404(tenant_id, execution_id)
    logs = await execution_store.get_logs(tenant_id, execution_id, limit=limit)
    return APIResponse(
        success=True,
        message="Execution logs retrieved.",
        data={"logs": logs},
        version=settings.api_version,
    )
