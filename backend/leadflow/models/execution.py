# /leadflow/models/execution.py

import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ExecutionStatus(str, Enum):
    RUNNING = "running"
    WAITING = "waiting"
    COMPLETED = "completed"
    FAILED = "failed"


ACTIVE_STATUSES = (ExecutionStatus.RUNNING.value, ExecutionStatus.WAITING.value)
TERMINAL_STATUSES = (ExecutionStatus.COMPLETED.value, ExecutionStatus.FAILED.value)

# Enough to cover WhatsApp redelivery of the last few replies
CONSUMED_MESSAGE_IDS_KEPT = 20


class WaitKind(str, Enum):
    """Why a waiting execution is parked: an inbound reply, or a timer."""
    REPLY = "reply"
    TIMER = "timer"


class Execution(BaseModel):
    """
    One traversal of a flow graph for one contact.

    ``version`` is bumped by the store on every successful save and claim;
    writers must present the version they read. ``lease_until`` marks the
    execution as owned by one worker until that instant.
    """
    model_config = ConfigDict(populate_by_name=True, extra="ignore", use_enum_values=True, validate_assignment=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), alias="_id")
    company_id: str
    flow_id: str
    contact_id: str
    lead_id: Optional[str] = None
    trigger_type: Optional[str] = None

    current_node_id: str
    status: ExecutionStatus = ExecutionStatus.RUNNING
    wait_kind: Optional[WaitKind] = None
    next_action_at: Optional[datetime] = None
    lease_until: Optional[datetime] = None

    context: Dict[str, Any] = Field(default_factory=dict)
    attempts: int = 0
    step_count: int = 0
    last_error: Optional[str] = None
    is_human_takeover: bool = False
    # Most recent inbound message ids already applied to this execution
    consumed_message_ids: List[str] = Field(default_factory=list)

    version: int = 0
    started_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    @field_validator("id", "company_id", "flow_id", "contact_id", "lead_id", "current_node_id", mode="before")
    @classmethod
    def coerce_ids(cls, v):
        return str(v) if v is not None else v

    @field_validator("next_action_at", "lease_until", "started_at", "updated_at", "completed_at")
    @classmethod
    def assume_utc(cls, v):
        # Documents read without tz_aware come back naive but are stored as UTC
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def is_waiting_for_reply(self) -> bool:
        return self.status == ExecutionStatus.WAITING and self.wait_kind == WaitKind.REPLY

    def to_document(self) -> Dict[str, Any]:
        """MongoDB representation, including the derived ``is_active`` flag used by the unique index."""
        document = self.model_dump(by_alias=True)
        document["is_active"] = self.is_active
        return document


class ExecutionLogAction(str, Enum):
    ENTERED = "entered"
    EXECUTED = "executed"
    DECISION = "decision"
    SUSPENDED = "suspended"
    RESUMED = "resumed"
    COMPLETED = "completed"
    ERROR = "error"


class ExecutionLog(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    execution_id: str
    company_id: str
    flow_id: str
    contact_id: str
    node_id: Optional[str] = None
    node_type: Optional[str] = None
    action: ExecutionLogAction
    details: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)


def ceil_to_millisecond(value: datetime) -> datetime:
    """MongoDB keeps millisecond precision; rounding up keeps stored deadlines from firing early."""
    remainder = value.microsecond % 1000
    if remainder:
        return value + timedelta(microseconds=1000 - remainder)
    return value
