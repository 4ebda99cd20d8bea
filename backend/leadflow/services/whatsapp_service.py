# /leadflow/services/whatsapp_service.py

import httpx
import json
import logging
import tenacity
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from leadflow.config.settings import settings
from leadflow.config.strings import (
    EMPTY_INTERACTIVE_BODY,
    MAX_BUTTON_TITLE_LENGTH,
    MAX_REPLY_BUTTONS,
    QUESTION_OPTION_LINE,
)
from leadflow.flows.errors import DeliveryError
from leadflow.flows.interpreter import button_handle
from leadflow.services.cache_service import cache_service
from leadflow.services.db_service import db_service
from leadflow.utils.alerting import alerting_service
from leadflow.utils.circuit_breaker import RedisCircuitBreaker
from leadflow.utils.metrics import outbound_messages_counter

logger = logging.getLogger(__name__)

CAPTIONED_MEDIA = {"image", "video", "document"}


class WhatsAppService:
    """
    Outbound gateway over the WhatsApp Cloud API.

    Each company sends from its own phone number id; a company-level access
    token overrides the platform token. ``send`` returns the WhatsApp message
    id or raises DeliveryError so the engine can retry the step.
    """

    def __init__(self, access_token: str, base_url: str):
        self.access_token = access_token
        self.base_url = base_url.rstrip("/")
        self.http_client = httpx.AsyncClient(timeout=15.0)
        self.circuit_breaker = RedisCircuitBreaker(cache_service.redis, "whatsapp")

    @tenacity.retry(
        retry=tenacity.retry_if_exception_type((httpx.RequestError, httpx.TimeoutException)),
        stop=tenacity.stop_after_attempt(3),
        wait=tenacity.wait_exponential(multiplier=2, min=1, max=10),
        before_sleep=tenacity.before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    async def resilient_api_call(self, func, *args, **kwargs):
        return await self.circuit_breaker.call(func, *args, **kwargs)

    def build_payload(
        self,
        to_phone: str,
        text: str,
        buttons: Optional[List[str]] = None,
        media_url: Optional[str] = None,
        media_type: Optional[str] = None,
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": to_phone,
        }

        if buttons and len(buttons) <= MAX_REPLY_BUTTONS and not media_url:
            payload["type"] = "interactive"
            payload["interactive"] = {
                "type": "button",
                "body": {"text": (text or EMPTY_INTERACTIVE_BODY)[:1024]},
                "action": {"buttons": [
                    {"type": "reply", "reply": {"id": button_handle(i), "title": title[:MAX_BUTTON_TITLE_LENGTH]}}
                    for i, title in enumerate(buttons)
                ]},
            }
            return payload

        if buttons:
            # Too many choices for reply buttons (or a media message): offer them as a numbered list
            lines = [QUESTION_OPTION_LINE.format(index=i + 1, option=b) for i, b in enumerate(buttons)]
            text = f"{text}\n\n" + "\n".join(lines) if text else "\n".join(lines)

        if media_url:
            kind = media_type or "image"
            media: Dict[str, Any] = {"link": media_url}
            if text and kind in CAPTIONED_MEDIA:
                media["caption"] = text[:1024]
            payload["type"] = kind
            payload[kind] = media
        else:
            payload["type"] = "text"
            payload["text"] = {"body": text[:4096]}
        return payload

    async def send(
        self,
        company_id: str,
        contact: Dict[str, Any],
        text: str,
        buttons: Optional[List[str]] = None,
        media_url: Optional[str] = None,
        media_type: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> str:
        to_phone = contact.get("normalized_phone") or contact.get("phone")
        if not to_phone:
            raise DeliveryError(f"Contact {contact.get('_id')} has no phone number")

        company = await db_service.get_company(company_id) or {}
        phone_number_id = company.get("whatsapp_phone_number_id")
        if not phone_number_id:
            raise DeliveryError(f"Company {company_id} has no WhatsApp phone number configured")

        payload = self.build_payload(to_phone, text, buttons, media_url, media_type)
        message_id = await self.send_whatsapp_request(
            phone_number_id,
            payload,
            access_token=company.get("whatsapp_access_token") or self.access_token,
        )
        if not message_id:
            outbound_messages_counter.labels(status="failed", message_type=payload["type"]).inc()
            raise DeliveryError(f"WhatsApp did not accept the message to {to_phone}")

        outbound_messages_counter.labels(status="sent", message_type=payload["type"]).inc()
        await db_service.log_message({
            "wamid": message_id,
            "company_id": company_id,
            "contact_id": str(contact.get("_id")) if contact.get("_id") else None,
            "phone": to_phone,
            "direction": "outbound",
            "message_type": payload["type"],
            "content": json.dumps(payload.get(payload["type"], {}), ensure_ascii=False),
            "status": "sent",
            "timestamp": datetime.now(timezone.utc),
            "metadata": metadata or {},
        })
        return message_id

    async def send_whatsapp_request(self, phone_number_id: str, payload: dict, access_token: Optional[str] = None) -> Optional[str]:
        """Posts one message to the Cloud API. Returns the wamid, or None on any failure."""
        to_phone = payload.get("to")
        try:
            url = f"{self.base_url}/{phone_number_id}/messages"
            headers = {"Authorization": f"Bearer {access_token or self.access_token}", "Content-Type": "application/json"}
            response = await self.resilient_api_call(self.http_client.post, url, json=payload, headers=headers)

            if response.status_code == 200:
                message_id = (response.json().get("messages") or [{}])[0].get("id")
                logger.info(f"WhatsApp message sent to {to_phone}, wamid: {message_id}")
                return message_id

            try:
                error_message = (response.json().get("error") or {}).get("message", "Unknown error")
            except ValueError:
                error_message = response.text
            logger.error(f"whatsapp_send_failed to {to_phone}: {response.status_code} - {error_message}")
            if response.status_code == 401:
                await alerting_service.send_critical_alert("WhatsApp authentication failed", {"phone_number_id": phone_number_id})
            return None
        except Exception as e:
            logger.error(f"whatsapp_send_error to {to_phone}: {e}", exc_info=True)
            return None

    async def cleanup(self):
        await self.http_client.aclose()


# Globally accessible instance
whatsapp_service = WhatsAppService(settings.whatsapp_access_token, settings.whatsapp_api_base_url)
