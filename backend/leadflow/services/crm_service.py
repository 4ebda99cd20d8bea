# /leadflow/services/crm_service.py

import httpx
import logging
import tenacity
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlparse

from bson import ObjectId
from pymongo import ReturnDocument

from leadflow.flows.errors import DeliveryError, FlowConfigurationError, TenantIsolationError
from leadflow.models.api import LeadWebhookPayload
from leadflow.models.flow import ScheduleAudience
from leadflow.services.cache_service import cache_service
from leadflow.services.db_service import db_service, id_filter
from leadflow.services.security_service import EnhancedSecurityService
from leadflow.utils.circuit_breaker import RedisCircuitBreaker
from leadflow.utils.metrics import database_operations_counter

logger = logging.getLogger(__name__)

AUDIENCE_LIMIT = 5000


class FunnelResolutionError(ValueError):
    """No funnel or stage could be resolved for an incoming lead."""


class CRMService:
    """
    Contacts, leads and funnels as seen by the flow engine.

    Every write the engine performs here is idempotent ($addToSet, $pull,
    $set), because a step that crashed before being saved runs again.
    """

    def __init__(self, db):
        self.db = db
        self.http_client = httpx.AsyncClient(timeout=10.0)
        self.circuit_breaker = RedisCircuitBreaker(cache_service.redis, "crm_webhook")

    def _now_utc(self) -> datetime:
        return datetime.now(timezone.utc)

    async def _scoped_find(self, collection: str, company_id: str, record_id: str) -> Optional[Dict[str, Any]]:
        """
        Finds a record owned by ``company_id``.

        Raises:
            TenantIsolationError: the record exists under a different company
        """
        document = await self.db[collection].find_one({"_id": id_filter(record_id), "company_id": company_id})
        if document is None:
            owner = await self.db[collection].find_one({"_id": id_filter(record_id)}, {"company_id": 1})
            if owner is not None:
                raise TenantIsolationError(
                    f"{collection} record {record_id} does not belong to company {company_id}",
                    company_id=company_id,
                    details={"collection": collection, "record_id": record_id},
                )
            return None
        return db_service._serialize_id(document)

    # ==================== Contacts ====================

    async def get_contact(self, company_id: str, contact_id: str) -> Optional[Dict[str, Any]]:
        return await self._scoped_find("contacts", company_id, contact_id)

    async def get_or_create_contact(
        self, company_id: str, phone: str, name: Optional[str] = None, source: str = "whatsapp"
    ) -> Optional[Dict[str, Any]]:
        """
        Upserts a contact by normalized phone number.

        Args:
            company_id: Owning company
            phone: Phone number or WhatsApp JID in any format
            name: Display name, only stored when the contact is new or unnamed
            source: Where the contact came from

        Returns:
            The contact document, or None when the phone cannot be normalized
        """
        normalized = EnhancedSecurityService.normalize_phone(phone)
        if not normalized:
            return None

        now = self._now_utc()
        contact = await self.db.contacts.find_one_and_update(
            {"company_id": company_id, "normalized_phone": normalized},
            {
                "$setOnInsert": {
                    "company_id": company_id,
                    "normalized_phone": normalized,
                    "phone": normalized,
                    "tags": [],
                    "source": source,
                    "created_at": now,
                },
                "$set": {"last_interaction_at": now},
            },
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        if name and not contact.get("name"):
            await self.db.contacts.update_one({"_id": contact["_id"]}, {"$set": {"name": name}})
            contact["name"] = name
        database_operations_counter.labels(operation="upsert_contact", status="success").inc()
        return db_service._serialize_id(contact)

    async def get_or_create_contact_for_lead(self, company_id: str, lead: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        if not lead.get("phone"):
            return None
        contact = await self.get_or_create_contact(company_id, lead["phone"], name=lead.get("name"), source=lead.get("source") or "lead")
        if contact:
            await self.db.funnel_leads.update_one(
                {"_id": id_filter(lead["_id"]), "company_id": company_id},
                {"$set": {"contact_id": contact["_id"]}},
            )
        return contact

    async def add_tag(self, company_id: str, contact_id: str, tag: str) -> None:
        await self.db.contacts.update_one(
            {"_id": id_filter(contact_id), "company_id": company_id}, {"$addToSet": {"tags": tag}}
        )
        await self.db.funnel_leads.update_many(
            {"company_id": company_id, "contact_id": contact_id}, {"$addToSet": {"tags": tag}}
        )

    async def remove_tag(self, company_id: str, contact_id: str, tag: str) -> None:
        await self.db.contacts.update_one(
            {"_id": id_filter(contact_id), "company_id": company_id}, {"$pull": {"tags": tag}}
        )
        await self.db.funnel_leads.update_many(
            {"company_id": company_id, "contact_id": contact_id}, {"$pull": {"tags": tag}}
        )

    async def transfer_to_human(self, company_id: str, contact_id: str, execution_id: Optional[str] = None) -> None:
        await self.db.contacts.update_one(
            {"_id": id_filter(contact_id), "company_id": company_id},
            {"$set": {"human_takeover": True, "human_takeover_at": self._now_utc(), "human_takeover_execution_id": execution_id}},
        )

    # ==================== Leads & funnels ====================

    async def get_lead(self, company_id: str, lead_id: str) -> Optional[Dict[str, Any]]:
        return await self._scoped_find("funnel_leads", company_id, lead_id)

    async def _get_stage(self, company_id: str, stage_id: str) -> Optional[Dict[str, Any]]:
        stage = await self.db.funnel_stages.find_one({"_id": id_filter(stage_id)})
        if not stage:
            return None
        funnel = await self.db.funnels.find_one({"_id": id_filter(str(stage["funnel_id"])), "company_id": company_id})
        return db_service._serialize_id(stage) if funnel else None

    async def move_stage(self, company_id: str, contact_id: str, stage_id: str, lead_id: Optional[str] = None) -> None:
        stage = await self._get_stage(company_id, stage_id)
        if stage is None:
            raise FlowConfigurationError(f"Stage {stage_id} does not exist for company {company_id}")

        if lead_id:
            query = {"_id": id_filter(lead_id), "company_id": company_id}
        else:
            latest = await self.db.funnel_leads.find_one(
                {"company_id": company_id, "contact_id": contact_id}, sort=[("created_at", -1)]
            )
            if not latest:
                logger.warning(f"move_stage: contact {contact_id} has no lead in company {company_id}")
                return
            query = {"_id": latest["_id"]}

        await self.db.funnel_leads.update_one(
            query,
            {"$set": {"stage_id": stage["_id"], "funnel_id": str(stage["funnel_id"]), "updated_at": self._now_utc()}},
        )

    async def resolve_funnel_stage(
        self, company_id: str, payload: LeadWebhookPayload, webhook_config: Optional[Dict[str, Any]] = None
    ) -> Tuple[str, str]:
        """
        Picks the funnel and stage for a new lead.

        Funnel: payload, then the webhook's default, then the company's
        default funnel, then its oldest funnel. Stage: payload (when it
        belongs to the funnel), then the webhook's default, then the first
        stage by position.

        Raises:
            FunnelResolutionError: the company has no funnel or the funnel has no stages
        """
        webhook_config = webhook_config or {}
        funnel = None
        for candidate in (payload.funnel_id, webhook_config.get("default_funnel_id")):
            if candidate:
                funnel = await self.db.funnels.find_one({"_id": id_filter(candidate), "company_id": company_id})
                if funnel:
                    break
        if funnel is None:
            funnel = await self.db.funnels.find_one({"company_id": company_id, "is_default": True})
        if funnel is None:
            funnel = await self.db.funnels.find_one({"company_id": company_id}, sort=[("created_at", 1)])
        if funnel is None:
            raise FunnelResolutionError("No funnel configured for this company")
        funnel_id = str(funnel["_id"])

        stage = None
        for candidate in (payload.stage_id, webhook_config.get("default_stage_id")):
            if candidate:
                stage = await self.db.funnel_stages.find_one({"_id": id_filter(candidate), "funnel_id": id_filter(funnel_id)})
                if stage:
                    break
        if stage is None:
            stage = await self.db.funnel_stages.find_one({"funnel_id": id_filter(funnel_id)}, sort=[("position", 1)])
        if stage is None:
            raise FunnelResolutionError(f"Funnel {funnel_id} has no stages")
        return funnel_id, str(stage["_id"])

    async def create_lead(
        self,
        company_id: str,
        payload: LeadWebhookPayload,
        funnel_id: str,
        stage_id: str,
        contact_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        now = self._now_utc()
        lead = {
            "company_id": company_id,
            "funnel_id": funnel_id,
            "stage_id": stage_id,
            "contact_id": contact_id,
            "name": payload.name,
            "email": payload.email,
            "phone": EnhancedSecurityService.normalize_phone(payload.phone) if payload.phone else None,
            "value": payload.value or 0,
            "source": payload.source,
            "tags": payload.tags,
            "notes": payload.notes,
            "position": payload.position or 0,
            "created_at": now,
            "updated_at": now,
        }
        result = await self.db.funnel_leads.insert_one(lead)
        lead["_id"] = str(result.inserted_id)
        database_operations_counter.labels(operation="create_lead", status="success").inc()
        return lead

    async def list_audience(self, company_id: str, audience: ScheduleAudience) -> List[Dict[str, Any]]:
        """
        Contacts targeted by a scheduled flow. Tag and funnel/stage filters
        combine; an audience without filters targets nobody.
        """
        if not (audience.tag or audience.funnel_id or audience.stage_id):
            logger.warning(f"Scheduled flow for company {company_id} has an empty audience")
            return []

        contact_query: Dict[str, Any] = {"company_id": company_id}
        if audience.tag:
            contact_query["tags"] = audience.tag

        lead_by_contact: Dict[str, str] = {}
        if audience.funnel_id or audience.stage_id:
            lead_query: Dict[str, Any] = {"company_id": company_id, "contact_id": {"$ne": None}}
            if audience.funnel_id:
                lead_query["funnel_id"] = audience.funnel_id
            if audience.stage_id:
                lead_query["stage_id"] = audience.stage_id
            leads = await self.db.funnel_leads.find(lead_query, {"contact_id": 1}).to_list(length=AUDIENCE_LIMIT)
            lead_by_contact = {str(lead["contact_id"]): str(lead["_id"]) for lead in leads}
            if not lead_by_contact:
                return []
            contact_query["_id"] = {"$in": [c for cid in lead_by_contact for c in _id_variants(cid)]}

        contacts = await self.db.contacts.find(contact_query).to_list(length=AUDIENCE_LIMIT)
        audience_contacts = []
        for contact in contacts:
            contact = db_service._serialize_id(contact)
            contact["lead_id"] = lead_by_contact.get(contact["_id"])
            audience_contacts.append(contact)
        return audience_contacts

    # ==================== Outbound webhooks ====================

    @tenacity.retry(
        retry=tenacity.retry_if_exception_type((httpx.RequestError, httpx.TimeoutException)),
        stop=tenacity.stop_after_attempt(3),
        wait=tenacity.wait_exponential(multiplier=1, min=1, max=5),
        before_sleep=tenacity.before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    async def _post(self, url: str, payload: Dict[str, Any], headers: Dict[str, str]) -> httpx.Response:
        return await self.circuit_breaker.call(
            self.http_client.post, url, json=payload, headers=headers, scope=urlparse(url).netloc or None
        )

    async def call_webhook(self, url: str, payload: Dict[str, Any], idempotency_key: str) -> int:
        """
        POSTs a flow payload to a customer endpoint. Receivers de-duplicate on
        the Idempotency-Key header.

        Raises:
            DeliveryError: network failure or a non-2xx response
        """
        headers = {"Content-Type": "application/json", "Idempotency-Key": idempotency_key}
        try:
            response = await self._post(url, payload, headers)
        except Exception as e:
            raise DeliveryError(f"Webhook {url} failed: {e}") from e
        if not 200 <= response.status_code < 300:
            raise DeliveryError(f"Webhook {url} answered {response.status_code}")
        logger.info(f"Flow webhook delivered to {url} ({response.status_code})")
        return response.status_code

    async def cleanup(self):
        await self.http_client.aclose()


def _id_variants(value: str) -> list:
    return [value, ObjectId(value)] if ObjectId.is_valid(value) else [value]


# Globally accessible instance
crm_service = CRMService(db_service.db)
