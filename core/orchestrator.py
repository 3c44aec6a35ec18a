"""
Orchestrator: glue between channel adapters and the conversation engine.

Inbound:  webhook / widget request → adapter parses InboundMessage
          → find (or open) the user's conversation for this chatbot+channel
          → ConversationEngine.process_turn
          → adapter renders and delivers the replies

The orchestrator owns the "which conversation is this?" question; the
engine never sees channel identities. An ended conversation is left as
history and the user's next message opens a fresh one.
"""
from __future__ import annotations

from typing import Any, Optional

import structlog

from channels.base import ChannelAdapter, ChannelRegistry, InboundMessage
from core.engine import ConversationEngine
from core.errors import ChatbotNotFoundError
from core.locks import ConversationLocks
from models.schemas import BotOutput, ChannelType, ChatbotRecord, ConversationState

logger = structlog.get_logger()


class Orchestrator:
    def __init__(
        self,
        engine: ConversationEngine,
        store,
        channels: ChannelRegistry,
        routing_locks: Optional[ConversationLocks] = None,
    ):
        self.engine = engine
        self.store = store
        self.channels = channels
        # Serialises "find or create" per user so two first messages open one conversation
        self._routing_locks = routing_locks or ConversationLocks()

    async def get_published_chatbot(self, chatbot_id: str) -> ChatbotRecord:
        record = await self.store.get_chatbot(chatbot_id)
        if record is None or not record.is_published:
            raise ChatbotNotFoundError(chatbot_id)
        return record

    async def resolve_conversation(
        self, chatbot_id: str, channel: ChannelType, user_identifier: str,
    ) -> tuple[ConversationState, bool]:
        """Return the user's open conversation, creating one if needed."""
        key = f"{chatbot_id}:{channel.value}:{user_identifier}"
        async with self._routing_locks.hold(key):
            state = await self.store.find_active_conversation(chatbot_id, channel.value, user_identifier)
            if state is not None:
                return state, False
            state = ConversationState(chatbot_id=chatbot_id, channel=channel,
                                      user_identifier=user_identifier)
            await self.store.register_conversation(state)
            return state, True

    async def handle_inbound_message(
        self, chatbot_id: str, message: InboundMessage, deliver: bool = True,
    ) -> dict[str, Any]:
        """
        Main entry point for inbound messages across all channels.

        Returns the conversation id, the engine outputs and, when
        ``deliver`` is set, the adapter's per-message delivery results.
        """
        chatbot = await self.get_published_chatbot(chatbot_id)
        logger.info("inbound_message", chatbot_id=chatbot_id, channel=message.channel.value,
                    sender=message.sender_id, content=message.content[:100])

        state, created = await self.resolve_conversation(chatbot_id, message.channel, message.sender_id)
        if created and message.sender_name:
            logger.info("conversation_opened", conversation_id=state.conversation_id,
                        sender_name=message.sender_name)

        outputs = await self.engine.process_turn(state.conversation_id, chatbot_id, message.content)

        delivery: list[dict[str, Any]] = []
        adapter = self.channels.get(message.channel)
        if deliver and adapter is not None and outputs:
            credentials = chatbot.channels.get(message.channel.value, {})
            delivery = await adapter.send(message.sender_id, outputs, credentials)

        return {
            "conversation_id": state.conversation_id,
            "created": created,
            "outputs": outputs,
            "delivery": delivery,
        }

    async def handle_webhook(self, chatbot_id: str, channel: ChannelType,
                             payload: dict[str, Any]) -> list[dict[str, Any]]:
        """Parse a channel webhook payload and run every message it carries."""
        adapter: Optional[ChannelAdapter] = self.channels.get(channel)
        if adapter is None:
            logger.warning("channel_not_registered", channel=channel.value)
            return []
        results = []
        for message in await adapter.handle_inbound(payload):
            results.append(await self.handle_inbound_message(chatbot_id, message))
        return results

    async def open_session(self, chatbot_id: str, channel: ChannelType,
                           user_identifier: str) -> tuple[str, list[BotOutput]]:
        """Open (or re-show) a conversation without a user message; used by the widget."""
        await self.get_published_chatbot(chatbot_id)
        state, _ = await self.resolve_conversation(chatbot_id, channel, user_identifier)
        outputs = await self.engine.process_turn(state.conversation_id, chatbot_id, None)
        return state.conversation_id, outputs
