# /leadflow/services/session_service.py

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from leadflow.config.settings import settings
from leadflow.models.session import ALLOWED_TRANSITIONS, BOUNDED_STATES, ConnectorSession, SessionStatus
from leadflow.services.db_service import db_service
from leadflow.utils.metrics import database_operations_counter

logger = logging.getLogger(__name__)

HISTORY_LIMIT = 20
MAX_CAS_ATTEMPTS = 3


class InvalidSessionTransition(Exception):
    def __init__(self, current: str, requested: str):
        self.current = current
        self.requested = requested
        super().__init__(f"Cannot move connector session from {current} to {requested}")


class SessionService:
    """
    Persisted WhatsApp connector session per (company, instance).

    Status changes are compare-and-set on the stored status, so two status
    reports racing each other cannot both apply. ``connecting`` and
    ``qr_code`` carry a deadline; ``expire_stale`` moves overdue sessions to
    ``error``.
    """

    def __init__(self, db, connect_timeout_seconds: int, qr_timeout_seconds: int):
        self.db = db
        self.timeouts = {
            SessionStatus.CONNECTING: connect_timeout_seconds,
            SessionStatus.QR_CODE: qr_timeout_seconds,
        }

    @property
    def sessions(self):
        return self.db.connector_sessions

    def _deadline(self, status: SessionStatus, now: datetime) -> Optional[datetime]:
        if status in BOUNDED_STATES:
            return now + timedelta(seconds=self.timeouts[status])
        return None

    async def get_status(self, company_id: str, instance_name: Optional[str] = None) -> List[ConnectorSession]:
        query: Dict[str, Any] = {"company_id": company_id}
        if instance_name:
            query["instance_name"] = instance_name
        documents = await self.sessions.find(query, {"_id": 0}).to_list(length=100)
        return [ConnectorSession.model_validate(d) for d in documents]

    async def transition(
        self,
        company_id: str,
        instance_name: str,
        status: SessionStatus,
        qr_code: Optional[str] = None,
        phone_number: Optional[str] = None,
        error: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ConnectorSession:
        """
        Applies a status report.

        Repeating the current status is a no-op (except ``qr_code``, which
        refreshes the code and its deadline).

        Raises:
            InvalidSessionTransition: the move is not allowed from the stored status
        """
        status = SessionStatus(status)
        now = now or datetime.now(timezone.utc)

        for _ in range(MAX_CAS_ATTEMPTS):
            document = await self.sessions.find_one({"company_id": company_id, "instance_name": instance_name})
            current = SessionStatus(document["status"]) if document else SessionStatus.DISCONNECTED

            if status == current and status not in ALLOWED_TRANSITIONS[current]:
                return ConnectorSession.model_validate(document) if document else ConnectorSession(
                    company_id=company_id, instance_name=instance_name
                )
            if status not in ALLOWED_TRANSITIONS[current]:
                raise InvalidSessionTransition(current.value, status.value)

            changes: Dict[str, Any] = {
                "status": status.value,
                "expires_at": self._deadline(status, now),
                "updated_at": now,
                "qr_code": qr_code if status == SessionStatus.QR_CODE else None,
                "last_error": error if status == SessionStatus.ERROR else None,
            }
            if phone_number:
                changes["phone_number"] = phone_number

            if document is None:
                try:
                    await self.sessions.insert_one({
                        "company_id": company_id,
                        "instance_name": instance_name,
                        "phone_number": phone_number,
                        **changes,
                        "history": [{"status": status.value, "at": now}],
                    })
                except DuplicateKeyError:
                    continue
                logger.info(f"Connector session {company_id}/{instance_name}: disconnected -> {status.value}")
                return await self._load(company_id, instance_name)

            updated = await self.sessions.find_one_and_update(
                {"company_id": company_id, "instance_name": instance_name, "status": current.value},
                {
                    "$set": changes,
                    "$push": {"history": {"$each": [{"status": status.value, "at": now}], "$slice": -HISTORY_LIMIT}},
                },
                projection={"_id": 0},
                return_document=ReturnDocument.AFTER,
            )
            if updated is not None:
                logger.info(f"Connector session {company_id}/{instance_name}: {current.value} -> {status.value}")
                database_operations_counter.labels(operation="session_transition", status="success").inc()
                return ConnectorSession.model_validate(updated)
            # Someone else changed the status between our read and write; re-evaluate against the new one

        database_operations_counter.labels(operation="session_transition", status="conflict").inc()
        raise InvalidSessionTransition("concurrently modified", status.value)

    async def _load(self, company_id: str, instance_name: str) -> ConnectorSession:
        document = await self.sessions.find_one({"company_id": company_id, "instance_name": instance_name}, {"_id": 0})
        return ConnectorSession.model_validate(document)

    async def expire_stale(self, now: Optional[datetime] = None) -> int:
        """Moves sessions stuck in connecting/qr_code past their deadline to error."""
        now = now or datetime.now(timezone.utc)
        result = await self.sessions.update_many(
            {"status": {"$in": [s.value for s in BOUNDED_STATES]}, "expires_at": {"$lte": now}},
            {
                "$set": {"status": SessionStatus.ERROR.value, "last_error": "timeout", "expires_at": None,
                         "qr_code": None, "updated_at": now},
                "$push": {"history": {"$each": [{"status": SessionStatus.ERROR.value, "at": now}], "$slice": -HISTORY_LIMIT}},
            },
        )
        if result.modified_count:
            logger.warning(f"Expired {result.modified_count} connector session(s) stuck waiting for the connector")
        return result.modified_count


# Globally accessible instance
session_service = SessionService(
    db_service.db,
    settings.session_connect_timeout_seconds,
    settings.session_qr_timeout_seconds,
)
