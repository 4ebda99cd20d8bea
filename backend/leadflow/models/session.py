# /leadflow/models/session.py

from datetime import datetime
from enum import Enum
from typing import Dict, FrozenSet, Optional

from pydantic import BaseModel, ConfigDict, Field


class SessionStatus(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    QR_CODE = "qr_code"
    CONNECTED = "connected"
    ERROR = "error"


ALLOWED_TRANSITIONS: Dict[SessionStatus, FrozenSet[SessionStatus]] = {
    SessionStatus.DISCONNECTED: frozenset({SessionStatus.CONNECTING}),
    SessionStatus.CONNECTING: frozenset({SessionStatus.QR_CODE, SessionStatus.CONNECTED, SessionStatus.ERROR, SessionStatus.DISCONNECTED}),
    SessionStatus.QR_CODE: frozenset({SessionStatus.QR_CODE, SessionStatus.CONNECTED, SessionStatus.ERROR, SessionStatus.DISCONNECTED}),
    SessionStatus.CONNECTED: frozenset({SessionStatus.ERROR, SessionStatus.DISCONNECTED}),
    SessionStatus.ERROR: frozenset({SessionStatus.CONNECTING, SessionStatus.DISCONNECTED}),
}

# States that must resolve before their deadline or fall to ERROR
BOUNDED_STATES = frozenset({SessionStatus.CONNECTING, SessionStatus.QR_CODE})


class ConnectorSession(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore", use_enum_values=True)

    company_id: str
    instance_name: str
    status: SessionStatus = SessionStatus.DISCONNECTED
    qr_code: Optional[str] = None
    phone_number: Optional[str] = None
    last_error: Optional[str] = None
    expires_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    history: list = Field(default_factory=list)
