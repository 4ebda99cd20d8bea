# /leadflow/models/api.py

from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import List, Dict, Optional
from datetime import datetime, timezone

# Request and response bodies for the HTTP surface.

class APIResponse(BaseModel):
    success: bool
    message: str
    data: Optional[Dict] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    version: str


class LeadWebhookPayload(BaseModel):
    """Body accepted by the lead capture webhook (landing pages, form tools, Zapier)."""
    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    name: str = Field(..., min_length=1, max_length=255)
    email: Optional[str] = Field(default=None, max_length=255)
    phone: Optional[str] = Field(default=None, max_length=50)
    value: Optional[float] = Field(default=None, ge=0)
    source: str = Field(default="Webhook", max_length=100)
    tags: List[str] = Field(default_factory=list)
    notes: Optional[str] = Field(default=None, max_length=5000)
    funnel_id: Optional[str] = None
    stage_id: Optional[str] = None
    position: Optional[int] = None

    @field_validator("email")
    @classmethod
    def email_shape(cls, v):
        if v and "@" not in v:
            raise ValueError("Invalid email address")
        return v or None

    @field_validator("tags", mode="before")
    @classmethod
    def split_tags(cls, v):
        if v is None:
            return []
        if isinstance(v, str):
            v = v.split(",")
        return [str(t).strip() for t in v if str(t).strip()]


class StageChangePayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    lead_id: str
    funnel_id: Optional[str] = None
    from_stage_id: Optional[str] = None
    to_stage_id: str
    company_id: Optional[str] = None


class SessionStatusUpdate(BaseModel):
    """Status report pushed by the WhatsApp connector service."""
    company_id: str
    instance_name: str
    status: str
    qr_code: Optional[str] = None
    phone_number: Optional[str] = None
    error: Optional[str] = None
