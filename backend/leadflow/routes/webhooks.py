# /leadflow/routes/webhooks.py

import json
import structlog
from typing import Any, Dict
from fastapi import APIRouter, Depends, HTTPException, Request, Query
from fastapi.responses import JSONResponse, PlainTextResponse

from leadflow.config.settings import settings
from leadflow.models.api import LeadWebhookPayload, SessionStatusUpdate, StageChangePayload
from leadflow.models.events import NewLeadEvent, StageChangeEvent
from leadflow.models.session import SessionStatus
from leadflow.services.crm_service import FunnelResolutionError, crm_service
from leadflow.services.db_service import db_service
from leadflow.services.inbound_service import inbound_service
from leadflow.services.session_service import InvalidSessionTransition, session_service
from leadflow.utils.dependencies import (
    get_webhook_company,
    verify_api_key,
    verify_webhook_signature,
)
from leadflow.utils.metrics import response_time_histogram, tenant_violations_counter
from leadflow.utils.queue import message_queue
from leadflow.utils.rate_limiter import limiter
from leadflow.utils.request_utils import get_remote_address

# Ingestion endpoints. Each one validates and authenticates its caller, then
# hands the engine an event through the queue and answers immediately.

router = APIRouter(
    tags=["Webhooks"]
)

log = structlog.get_logger(__name__)

# --- WhatsApp Cloud API ---

@router.get("/whatsapp")
async def verify_whatsapp_webhook(
    hub_mode: str = Query(None, alias="hub.mode"),
    hub_verify_token: str = Query(None, alias="hub.verify_token"),
    hub_challenge: str = Query(None, alias="hub.challenge")
):
    """WhatsApp webhook verification (GET request)."""
    if hub_mode == "subscribe" and hub_verify_token == settings.whatsapp_verify_token:
        log.info("WhatsApp webhook verification successful.")
        return PlainTextResponse(hub_challenge)
    log.error("WhatsApp webhook verification failed.")
    raise HTTPException(status_code=403, detail="Forbidden")


@router.post("/whatsapp")
@limiter.limit(f"{settings.rate_limit_per_minute}/minute")
async def handle_whatsapp_webhook(
    request: Request,
    verified_body: bytes = Depends(verify_webhook_signature)
):
    """Inbound messages and delivery status updates."""
    with response_time_histogram.labels(endpoint="whatsapp_webhook").time():
        try:
            data = json.loads(verified_body.decode())
        except (UnicodeDecodeError, json.JSONDecodeError):
            raise HTTPException(status_code=400, detail="Invalid JSON body")

        counts = await inbound_service.process_webhook_payload(data)
        log.info("WhatsApp webhook processed.", **counts)
        return JSONResponse({"status": "success", **counts})


# --- Lead capture ---

@router.post("/leads", status_code=201)
@limiter.limit(f"{settings.rate_limit_per_minute}/minute")
async def handle_lead_webhook(
    request: Request,
    payload: LeadWebhookPayload,
    webhook_config: Dict[str, Any] = Depends(get_webhook_company)
):
    """Creates a lead (and its contact) for the secret's company and queues a new_lead event."""
    company_id = webhook_config["company_id"]
    try:
        funnel_id, stage_id = await crm_service.resolve_funnel_stage(company_id, payload, webhook_config)
    except FunnelResolutionError as e:
        raise HTTPException(status_code=422, detail=str(e))

    contact = None
    if payload.phone:
        contact = await crm_service.get_or_create_contact(company_id, payload.phone, name=payload.name, source=payload.source)
    lead = await crm_service.create_lead(
        company_id, payload, funnel_id, stage_id, contact_id=contact["_id"] if contact else None
    )

    await message_queue.publish(NewLeadEvent(
        company_id=company_id,
        lead_id=lead["_id"],
        funnel_id=funnel_id,
        stage_id=stage_id,
        contact_id=contact["_id"] if contact else None,
    ))
    log.info("Lead captured from webhook.", company_id=company_id, lead_id=lead["_id"], funnel_id=funnel_id)
    return {"success": True, "lead_id": lead["_id"], "contact_id": contact["_id"] if contact else None,
            "funnel_id": funnel_id, "stage_id": stage_id}


@router.post("/stage-change", status_code=202)
async def handle_stage_change_webhook(
    request: Request,
    payload: StageChangePayload,
    webhook_config: Dict[str, Any] = Depends(get_webhook_company)
):
    """Queues a stage_change event for a lead of the secret's company."""
    company_id = webhook_config["company_id"]
    if payload.company_id and payload.company_id != company_id:
        tenant_violations_counter.labels(event_type="stage_change").inc()
        await db_service.log_security_event(
            "tenant_isolation_violation",
            get_remote_address(request),
            {"claimed_company_id": payload.company_id, "company_id": company_id, "lead_id": payload.lead_id},
        )
        log.warning("Stage change rejected: company mismatch.", company_id=company_id, claimed=payload.company_id)
        raise HTTPException(status_code=403, detail="Company mismatch")

    await message_queue.publish(StageChangeEvent(
        company_id=company_id,
        lead_id=payload.lead_id,
        funnel_id=payload.funnel_id,
        from_stage_id=payload.from_stage_id,
        to_stage_id=payload.to_stage_id,
    ))
    return {"status": "accepted"}


# --- WhatsApp connector ---

@router.post("/connector/session", dependencies=[Depends(verify_api_key)])
async def handle_connector_session(update: SessionStatusUpdate):
    """Status report from the connector service for one WhatsApp instance."""
    try:
        status = SessionStatus(update.status)
    except ValueError:
        raise HTTPException(status_code=422, detail=f"Unknown session status: {update.status}")

    try:
        session = await session_service.transition(
            update.company_id,
            update.instance_name,
            status,
            qr_code=update.qr_code,
            phone_number=update.phone_number,
            error=update.error,
        )
    except InvalidSessionTransition as e:
        raise HTTPException(status_code=409, detail=str(e))
    return {"status": "ok", "session": session.model_dump(mode="json", exclude={"history"})}
