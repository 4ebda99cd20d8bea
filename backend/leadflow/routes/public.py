# /leadflow/routes/public.py

from datetime import datetime, timezone
from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import PlainTextResponse
from prometheus_client import generate_latest

from leadflow.config.settings import settings
from leadflow.models.api import APIResponse
from leadflow.services.cache_service import cache_service
from leadflow.services.db_service import db_service
from leadflow.services.whatsapp_service import whatsapp_service
from leadflow.utils.dependencies import verify_metrics_access

# Public endpoints: root, health probes and the API-key protected /metrics.

router = APIRouter()


@router.get("/")
async def root():
    """Root endpoint."""
    return {
        "service": "leadflow",
        "version": "1.0.0",
        "status": "operational",
        "environment": settings.environment
    }


@router.get("/health", summary="Basic Health Check")
async def health_check():
    """Basic health check for load balancers."""
    return {"status": "healthy", "timestamp": datetime.now(timezone.utc)}


@router.get("/health/ready", summary="Readiness Probe")
async def readiness_check():
    """Readiness probe checking MongoDB and Redis."""
    if not await db_service.health_check():
        raise HTTPException(status_code=503, detail="Service not ready: database unavailable")
    try:
        await cache_service.ping()
    except Exception as e:
        raise HTTPException(status_code=503, detail=f"Service not ready: {e}")
    return {"status": "ready"}


@router.get("/health/live", summary="Liveness Probe")
async def liveness_check():
    return {"status": "alive"}


@router.get("/health/detailed", response_model=APIResponse, dependencies=[Depends(verify_metrics_access)])
async def comprehensive_health_check():
    """Detailed status of every backing service."""
    health_status = {"status": "healthy", "services": {}}

    if await db_service.health_check():
        health_status["services"]["database"] = "connected"
    else:
        health_status["services"]["database"] = "error"
        health_status["status"] = "degraded"

    try:
        await cache_service.ping()
        health_status["services"]["cache"] = "connected"
    except Exception:
        health_status["services"]["cache"] = "error"
        health_status["status"] = "degraded"

    if settings.whatsapp_access_token:
        health_status["services"]["whatsapp"] = await whatsapp_service.circuit_breaker.snapshot()
    else:
        health_status["services"]["whatsapp"] = "not_configured"

    return APIResponse(
        success=True,
        message="Comprehensive health status retrieved.",
        data=health_status,
        version=settings.api_version
    )


@router.get("/metrics", tags=["Monitoring"])
async def metrics(request: Request, _: bool = Depends(verify_metrics_access)):
    """Secured Prometheus metrics endpoint."""
    return PlainTextResponse(generate_latest(), media_type="text/plain")
