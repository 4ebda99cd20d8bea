# /leadflow/utils/dependencies.py

import structlog
from typing import Any, Dict
from fastapi import Request, HTTPException

from leadflow.config.settings import settings
from leadflow.services import security_service
from leadflow.services.db_service import db_service
from leadflow.utils.metrics import webhook_signature_counter
from leadflow.utils.request_utils import get_remote_address

log = structlog.get_logger(__name__)


async def verify_webhook_signature(request: Request) -> bytes:
    body = await request.body()
    signature = request.headers.get("x-hub-signature-256", "")
    if not security_service.SecurityService.verify_webhook_signature(body, signature, settings.whatsapp_app_secret):
        webhook_signature_counter.labels(status="invalid").inc()
        await db_service.log_security_event("invalid_webhook_signature", get_remote_address(request), {"signature": signature[:50]})
        log.error("Invalid webhook signature.", signature=signature[:50])
        raise HTTPException(status_code=403, detail="Invalid signature")
    webhook_signature_counter.labels(status="valid").inc()
    return body


async def get_webhook_company(request: Request) -> Dict[str, Any]:
    """Resolves the lead webhook configuration (and with it the company) from X-Webhook-Secret."""
    secret = request.headers.get("x-webhook-secret", "")
    config = await db_service.get_webhook_config(secret) if secret else None
    if not config:
        await db_service.log_security_event("invalid_webhook_secret", get_remote_address(request), {"path": request.url.path})
        log.warning("Rejected lead webhook with unknown secret.", path=request.url.path)
        raise HTTPException(status_code=401, detail="Invalid or missing webhook secret")
    return config


async def verify_api_key(request: Request):
    provided_key = request.headers.get("X-API-KEY")
    if not security_service.SecurityService.constant_time_equals(provided_key, settings.api_key):
        raise HTTPException(status_code=403, detail="Invalid or missing API key")


async def verify_metrics_access(request: Request):
    if settings.api_key:
        await verify_api_key(request)
