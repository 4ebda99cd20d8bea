# backend/tests/unit/test_inbound_service.py

import pytest
from unittest.mock import AsyncMock

from leadflow.services.inbound_service import get_message_content, inbound_service

COMPANY = {"_id": "company-1", "whatsapp_phone_number_id": "pn-1"}
CONTACT = {"_id": "contact-1", "normalized_phone": "5511999990001"}


def webhook(message, statuses=None):
    return {
        "entry": [{
            "changes": [{
                "field": "messages",
                "value": {
                    "metadata": {"phone_number_id": "pn-1"},
                    "contacts": [{"profile": {"name": "Maria"}}],
                    "messages": [message] if message else [],
                    "statuses": statuses or [],
                },
            }],
        }],
    }


@pytest.fixture
def mocks(mocker):
    return {
        "company": mocker.patch("leadflow.services.inbound_service.db_service.get_company_by_phone_number_id",
                                new_callable=AsyncMock, return_value=COMPANY),
        "claim": mocker.patch("leadflow.services.inbound_service.cache_service.claim_once",
                              new_callable=AsyncMock, return_value=True),
        "contact": mocker.patch("leadflow.services.inbound_service.crm_service.get_or_create_contact",
                                new_callable=AsyncMock, return_value=CONTACT),
        "log": mocker.patch("leadflow.services.inbound_service.db_service.log_message", new_callable=AsyncMock),
        "status": mocker.patch("leadflow.services.inbound_service.db_service.update_message_status", new_callable=AsyncMock),
        "publish": mocker.patch("leadflow.services.inbound_service.message_queue.publish",
                                new_callable=AsyncMock, return_value="1-0"),
    }


class TestMessageContent:

    def test_text(self):
        assert get_message_content({"type": "text", "text": {"body": "oi"}}) == ("oi", None)

    def test_button_reply_carries_index(self):
        message = {"type": "interactive", "interactive": {"type": "button_reply", "button_reply": {"id": "button-2", "title": "Suporte"}}}
        assert get_message_content(message) == ("Suporte", 2)

    def test_list_reply_with_foreign_id(self):
        message = {"type": "interactive", "interactive": {"type": "list_reply", "list_reply": {"id": "sku-9", "title": "Plano Pro"}}}
        assert get_message_content(message) == ("Plano Pro", None)

    def test_captions_and_unsupported_types(self):
        assert get_message_content({"type": "image", "image": {"caption": "foto"}}) == ("foto", None)
        assert get_message_content({"type": "sticker", "sticker": {}}) == ("", None)


@pytest.mark.asyncio
async def test_text_message_is_published_for_the_engine(mocks):
    counts = await inbound_service.process_webhook_payload(webhook({"from": "5511999990001", "id": "wamid.1", "type": "text",
                                                                     "text": {"body": "quero a promo"}}))

    assert counts == {"messages": 1, "statuses": 0, "skipped": 0}
    mocks["claim"].assert_awaited_once_with("processed:pn-1:wamid.1", ttl=3600)
    mocks["contact"].assert_awaited_once_with("company-1", "5511999990001", name="Maria")
    event = mocks["publish"].await_args.args[0]
    assert event.event_type == "inbound_message"
    assert event.company_id == "company-1"
    assert event.contact_id == "contact-1"
    assert event.message_text == "quero a promo"


@pytest.mark.asyncio
async def test_duplicate_delivery_is_skipped(mocks):
    mocks["claim"].return_value = False

    counts = await inbound_service.process_webhook_payload(webhook({"from": "5511999990001", "id": "wamid.1", "type": "text",
                                                                     "text": {"body": "oi"}}))

    assert counts["skipped"] == 1
    mocks["publish"].assert_not_awaited()
    mocks["log"].assert_not_awaited()


@pytest.mark.asyncio
async def test_unknown_phone_number_id_is_skipped(mocks):
    mocks["company"].return_value = None

    counts = await inbound_service.process_webhook_payload(webhook({"from": "5511999990001", "id": "wamid.1", "type": "text",
                                                                     "text": {"body": "oi"}}))

    assert counts["skipped"] == 1
    mocks["claim"].assert_not_awaited()


@pytest.mark.asyncio
async def test_media_without_caption_is_logged_but_not_routed(mocks):
    counts = await inbound_service.process_webhook_payload(webhook({"from": "5511999990001", "id": "wamid.2", "type": "audio",
                                                                     "audio": {"id": "media-1"}}))

    assert counts["skipped"] == 1
    mocks["log"].assert_awaited_once()
    mocks["publish"].assert_not_awaited()


@pytest.mark.asyncio
async def test_statuses_update_outbound_messages(mocks):
    counts = await inbound_service.process_webhook_payload(webhook(None, statuses=[{"id": "wamid.9", "status": "read"}]))

    assert counts == {"messages": 0, "statuses": 1, "skipped": 0}
    mocks["status"].assert_awaited_once_with("wamid.9", "read")
