# /leadflow/routes/sessions.py

from typing import Optional
from fastapi import APIRouter, Depends

from leadflow.config.settings import settings
from leadflow.dependencies.tenant import get_tenant_id
from leadflow.models.api import APIResponse
from leadflow.services.session_service import session_service

router = APIRouter(
    prefix="/sessions",
    tags=["Sessions"]
)


@router.get("/status", response_model=APIResponse)
async def get_session_status(instance_name: Optional[str] = None, tenant_id: str = Depends(get_tenant_id)):
    """Connector session state for the company's WhatsApp instances."""
    sessions = await session_service.get_status(tenant_id, instance_name)
    return APIResponse(
        success=True,
        message="Session status retrieved.",
        data={"sessions": [s.model_dump(mode="json") for s in sessions]},
        version=settings.api_version,
    )
