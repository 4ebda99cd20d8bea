# /leadflow/services/inbound_service.py

import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

from leadflow.models.events import InboundMessageEvent
from leadflow.services.cache_service import cache_service
from leadflow.services.crm_service import crm_service
from leadflow.services.db_service import db_service
from leadflow.utils.queue import message_queue

logger = logging.getLogger(__name__)

DEDUPE_TTL_SECONDS = 3600
_CHOICE_ID = re.compile(r"^(?:button|option)-(\d+)$")


def get_message_content(message: Dict[str, Any]) -> Tuple[str, Optional[int]]:
    """
    Extracts the text and, for interactive replies, the chosen button index
    from a WhatsApp message.
    """
    msg_type = message.get("type")
    if msg_type == "text":
        return message.get("text", {}).get("body", ""), None
    if msg_type == "interactive":
        interactive = message.get("interactive", {})
        reply = interactive.get(interactive.get("type"), {}) if interactive.get("type") in ("button_reply", "list_reply") else {}
        match = _CHOICE_ID.match(reply.get("id") or "")
        return reply.get("title", ""), int(match.group(1)) if match else None
    if msg_type == "button":
        # Quick-reply buttons on template messages
        return message.get("button", {}).get("text", ""), None
    if msg_type in ("image", "video", "document"):
        return message.get(msg_type, {}).get("caption", ""), None
    return "", None


class InboundService:
    """Turns Cloud API webhook payloads into flow events."""

    async def process_webhook_payload(self, data: Dict[str, Any]) -> Dict[str, int]:
        counts = {"messages": 0, "statuses": 0, "skipped": 0}
        for entry in data.get("entry", []):
            for change in entry.get("changes", []):
                if change.get("field") != "messages":
                    continue
                value = change.get("value", {})

                for status_data in value.get("statuses", []):
                    wamid, status = status_data.get("id"), status_data.get("status")
                    if wamid and status:
                        await db_service.update_message_status(wamid, status)
                        counts["statuses"] += 1

                for message in value.get("messages", []):
                    if await self.process_message(message, value):
                        counts["messages"] += 1
                    else:
                        counts["skipped"] += 1
        return counts

    async def process_message(self, message: Dict[str, Any], value: Dict[str, Any]) -> bool:
        """Returns True when the message was queued for the engine."""
        from_number, wamid = message.get("from"), message.get("id")
        phone_number_id = value.get("metadata", {}).get("phone_number_id")
        if not from_number or not wamid:
            logger.warning("Webhook message missing 'from' or 'id'.")
            return False

        company = await db_service.get_company_by_phone_number_id(phone_number_id)
        if not company:
            logger.warning(f"No company owns WhatsApp phone number id {phone_number_id}; message {wamid} ignored")
            return False

        if not await cache_service.claim_once(f"processed:{phone_number_id}:{wamid}", ttl=DEDUPE_TTL_SECONDS):
            logger.info(f"Duplicate message {wamid} received, ignoring.")
            return False

        profile_name = (value.get("contacts") or [{}])[0].get("profile", {}).get("name")
        contact = await crm_service.get_or_create_contact(company["_id"], from_number, name=profile_name)
        if contact is None:
            logger.warning(f"Could not normalize sender of message {wamid}")
            return False

        text, button_index = get_message_content(message)
        await db_service.log_message({
            "wamid": wamid,
            "company_id": company["_id"],
            "contact_id": contact["_id"],
            "phone": contact["normalized_phone"],
            "direction": "inbound",
            "message_type": message.get("type", "unknown"),
            "content": text,
            "status": "received",
            "timestamp": datetime.now(timezone.utc),
        })

        if not text and button_index is None:
            logger.info(f"Message {wamid} has no text content; not routed to flows")
            return False

        await message_queue.publish(InboundMessageEvent(
            company_id=company["_id"],
            contact_id=contact["_id"],
            message_text=text,
            button_index=button_index,
            message_id=wamid,
        ))
        return True


# Globally accessible instance
inbound_service = InboundService()
