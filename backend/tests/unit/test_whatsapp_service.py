# backend/tests/unit/test_whatsapp_service.py

import pytest
from unittest.mock import AsyncMock

from leadflow.flows.errors import DeliveryError
from leadflow.services.whatsapp_service import whatsapp_service

CONTACT = {"_id": "contact-1", "name": "Maria", "normalized_phone": "5511999990001"}


class TestBuildPayload:

    def test_reply_buttons(self):
        payload = whatsapp_service.build_payload("5511999990001", "Escolha", ["Sim", "Uma opção com título bem comprido"])

        assert payload["type"] == "interactive"
        buttons = payload["interactive"]["action"]["buttons"]
        assert [b["reply"]["id"] for b in buttons] == ["button-0", "button-1"]
        assert len(buttons[1]["reply"]["title"]) == 20

    def test_empty_body_gets_default_prompt(self):
        payload = whatsapp_service.build_payload("5511999990001", "", ["Sim"])
        assert payload["interactive"]["body"]["text"] == "Escolha uma opção:"

    def test_too_many_buttons_become_numbered_text(self):
        payload = whatsapp_service.build_payload("5511999990001", "Plano?", ["A", "B", "C", "D"])

        assert payload["type"] == "text"
        assert payload["text"]["body"] == "Plano?\n\n1. A\n2. B\n3. C\n4. D"

    def test_media_with_caption(self):
        payload = whatsapp_service.build_payload("5511999990001", "Catálogo", media_url="https://cdn.example.com/c.pdf",
                                                 media_type="document")
        assert payload["type"] == "document"
        assert payload["document"] == {"link": "https://cdn.example.com/c.pdf", "caption": "Catálogo"}

    def test_audio_has_no_caption(self):
        payload = whatsapp_service.build_payload("5511999990001", "ouça", media_url="https://cdn.example.com/a.ogg",
                                                 media_type="audio")
        assert payload["audio"] == {"link": "https://cdn.example.com/a.ogg"}


class TestSend:

    @pytest.mark.asyncio
    async def test_contact_without_phone(self):
        with pytest.raises(DeliveryError, match="no phone number"):
            await whatsapp_service.send("company-1", {"_id": "contact-1"}, "Oi")

    @pytest.mark.asyncio
    async def test_company_without_whatsapp_number(self, mocker):
        mocker.patch("leadflow.services.whatsapp_service.db_service.get_company", new_callable=AsyncMock, return_value={})

        with pytest.raises(DeliveryError, match="no WhatsApp phone number"):
            await whatsapp_service.send("company-1", CONTACT, "Oi")

    @pytest.mark.asyncio
    async def test_sends_with_company_token_and_logs(self, mocker):
        mocker.patch(
            "leadflow.services.whatsapp_service.db_service.get_company",
            new_callable=AsyncMock,
            return_value={"_id": "company-1", "whatsapp_phone_number_id": "pn-1", "whatsapp_access_token": "company-token"},
        )
        mock_log = mocker.patch("leadflow.services.whatsapp_service.db_service.log_message", new_callable=AsyncMock)
        mock_request = mocker.patch.object(whatsapp_service, "send_whatsapp_request", new_callable=AsyncMock, return_value="wamid.1")

        message_id = await whatsapp_service.send("company-1", CONTACT, "Oi", metadata={"execution_id": "e1"})

        assert message_id == "wamid.1"
        args, kwargs = mock_request.await_args
        assert args[0] == "pn-1"
        assert args[1]["to"] == "5511999990001"
        assert kwargs["access_token"] == "company-token"
        logged = mock_log.await_args.args[0]
        assert logged["direction"] == "outbound"
        assert logged["metadata"] == {"execution_id": "e1"}

    @pytest.mark.asyncio
    async def test_rejected_message_raises_delivery_error(self, mocker):
        mocker.patch(
            "leadflow.services.whatsapp_service.db_service.get_company",
            new_callable=AsyncMock,
            return_value={"_id": "company-1", "whatsapp_phone_number_id": "pn-1"},
        )
        mocker.patch.object(whatsapp_service, "send_whatsapp_request", new_callable=AsyncMock, return_value=None)

        with pytest.raises(DeliveryError):
            await whatsapp_service.send("company-1", CONTACT, "Oi")
