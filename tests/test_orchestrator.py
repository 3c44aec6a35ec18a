"""Tests for routing inbound channel messages to conversations."""
import asyncio

import httpx
import pytest

from channels.base import ChannelRegistry, InboundMessage
from channels.whatsapp_adapter import WhatsAppAdapter
from core.errors import ChatbotNotFoundError
from core.orchestrator import Orchestrator
from models.schemas import ChannelType, ConversationStatus
from conftest import make_chatbot


@pytest.fixture
def sent():
    return []


@pytest.fixture
def orchestrator(engine, store, sent):
    def handler(request: httpx.Request):
        sent.append(request)
        return httpx.Response(200, json={"messages": [{"id": f"wamid.{len(sent)}"}]})

    registry = ChannelRegistry()
    registry.register(WhatsAppAdapter(transport=httpx.MockTransport(handler)))
    return Orchestrator(engine, store, registry)


def wa_message(content, sender="919876543210", message_id=""):
    return InboundMessage(channel=ChannelType.WHATSAPP, sender_id=sender, content=content,
                          message_id=message_id)


WA_CREDS = {"whatsapp": {"phone_number_id": "PNID", "access_token": "tok"}}


class TestOrchestrator:
    @pytest.mark.asyncio
    async def test_first_message_opens_conversation(self, orchestrator, store, linear_flow, sent):
        await store.save_chatbot(make_chatbot(linear_flow, channels=WA_CREDS))

        result = await orchestrator.handle_inbound_message("bot_1", wa_message("hi"))

        assert result["created"]
        assert [o.content for o in result["outputs"]] == ["Welcome to Acme, {name}!",
                                                          "Which team do you need?"]
        assert len(result["delivery"]) == 2 and len(sent) == 2
        state = await store.load_state(result["conversation_id"])
        assert state.channel == ChannelType.WHATSAPP
        assert state.user_identifier == "919876543210"
        assert state.history[0].content == "hi"

    @pytest.mark.asyncio
    async def test_follow_up_reuses_conversation(self, orchestrator, store, linear_flow):
        await store.save_chatbot(make_chatbot(linear_flow, channels=WA_CREDS))
        first = await orchestrator.handle_inbound_message("bot_1", wa_message("hi"))

        second = await orchestrator.handle_inbound_message("bot_1", wa_message("support"))

        assert not second["created"]
        assert second["conversation_id"] == first["conversation_id"]
        assert second["outputs"][0].content == "Support is open 9-5."

    @pytest.mark.asyncio
    async def test_new_conversation_after_end(self, orchestrator, store, linear_flow):
        await store.save_chatbot(make_chatbot(linear_flow, channels=WA_CREDS))
        first = await orchestrator.handle_inbound_message("bot_1", wa_message("hi"))
        await orchestrator.handle_inbound_message("bot_1", wa_message("sales"))
        assert (await store.load_state(first["conversation_id"])).status == ConversationStatus.ENDED

        third = await orchestrator.handle_inbound_message("bot_1", wa_message("hi again"))

        assert third["created"]
        assert third["conversation_id"] != first["conversation_id"]

    @pytest.mark.asyncio
    async def test_simultaneous_first_messages_share_conversation(self, orchestrator, store, linear_flow):
        await store.save_chatbot(make_chatbot(linear_flow, channels=WA_CREDS))

        a, b = await asyncio.gather(
            orchestrator.handle_inbound_message("bot_1", wa_message("hi"), deliver=False),
            orchestrator.handle_inbound_message("bot_1", wa_message("hello"), deliver=False),
        )

        assert a["conversation_id"] == b["conversation_id"]
        assert [a["created"], b["created"]].count(True) == 1

    @pytest.mark.asyncio
    async def test_unpublished_chatbot_rejected(self, orchestrator, store, linear_flow):
        await store.save_chatbot(make_chatbot(linear_flow, is_published=False))
        with pytest.raises(ChatbotNotFoundError):
            await orchestrator.handle_inbound_message("bot_1", wa_message("hi"))

    @pytest.mark.asyncio
    async def test_handle_webhook_payload(self, orchestrator, store, linear_flow):
        await store.save_chatbot(make_chatbot(linear_flow, channels=WA_CREDS))
        payload = {"entry": [{"changes": [{"value": {"messages": [
            {"from": "15550001111", "id": "wamid.in", "type": "text", "text": {"body": "hi"}},
        ]}}]}]}

        results = await orchestrator.handle_webhook("bot_1", ChannelType.WHATSAPP, payload)

        assert len(results) == 1
        found = await store.find_active_conversation("bot_1", "whatsapp", "15550001111")
        assert found is not None and found.active_node_id == "dept"

    @pytest.mark.asyncio
    async def test_unregistered_channel(self, orchestrator):
        assert await orchestrator.handle_webhook("bot_1", ChannelType.FACEBOOK, {}) == []

    @pytest.mark.asyncio
    async def test_open_session_for_widget(self, orchestrator, store, linear_flow):
        await store.save_chatbot(make_chatbot(linear_flow))

        conversation_id, outputs = await orchestrator.open_session("bot_1", ChannelType.WEB, "ws_1")
        again_id, again = await orchestrator.open_session("bot_1", ChannelType.WEB, "ws_1")

        assert len(outputs) == 2
        assert again_id == conversation_id
        assert [o.content for o in again] == ["Which team do you need?"]
