# /leadflow/models/events.py

"""
Inbound events consumed by the flow engine.

Events are plain data; they travel as JSON through the Redis stream and are
validated back into this union by the queue worker.
"""

from datetime import datetime
from enum import Enum
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class EventType(str, Enum):
    NEW_LEAD = "new_lead"
    KEYWORD = "keyword"
    STAGE_CHANGE = "stage_change"
    CONTINUE_EXECUTION = "continue_execution"
    SCHEDULE_TICK = "schedule_tick"
    INBOUND_MESSAGE = "inbound_message"


class _Event(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)


class NewLeadEvent(_Event):
    event_type: Literal["new_lead"] = "new_lead"
    company_id: str
    lead_id: str
    funnel_id: Optional[str] = None
    stage_id: Optional[str] = None
    contact_id: Optional[str] = None


class KeywordEvent(_Event):
    event_type: Literal["keyword"] = "keyword"
    company_id: str
    contact_id: str
    message_text: str


class StageChangeEvent(_Event):
    event_type: Literal["stage_change"] = "stage_change"
    company_id: str
    lead_id: str
    funnel_id: Optional[str] = None
    from_stage_id: Optional[str] = None
    to_stage_id: str
    contact_id: Optional[str] = None


class ContinueExecutionEvent(_Event):
    event_type: Literal["continue_execution"] = "continue_execution"
    company_id: str
    execution_id: str
    reply_text: Optional[str] = None
    button_index: Optional[int] = Field(default=None, ge=0)
    # Node the sender saw the execution parked on; a mismatch makes the resume a no-op
    expected_node_id: str


class ScheduleTickEvent(_Event):
    event_type: Literal["schedule_tick"] = "schedule_tick"
    now: Optional[datetime] = None


class InboundMessageEvent(_Event):
    """A contact's WhatsApp message, routed to a waiting execution or to keyword triggers."""
    event_type: Literal["inbound_message"] = "inbound_message"
    company_id: str
    contact_id: str
    message_text: str = ""
    button_index: Optional[int] = Field(default=None, ge=0)
    message_id: Optional[str] = None


FlowEvent = Annotated[
    Union[
        NewLeadEvent,
        KeywordEvent,
        StageChangeEvent,
        ContinueExecutionEvent,
        ScheduleTickEvent,
        InboundMessageEvent,
    ],
    Field(discriminator="event_type"),
]

event_adapter = TypeAdapter(FlowEvent)


def parse_event(data) -> BaseModel:
    """Validates a dict (or JSON string) into the matching event model."""
    if isinstance(data, (str, bytes)):
        return event_adapter.validate_json(data)
    return event_adapter.validate_python(data)
