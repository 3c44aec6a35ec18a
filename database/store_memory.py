"""
InMemoryConversationStore: Dict-backed store for development and testing.

Features:
  - Zero dependencies (no database, no Redis)
  - Records are kept as JSON-ready dicts, so the file backend can dump
    them unchanged
  - Safe within one event loop; the engine's per-conversation lock
    serialises writes to a given conversation
  - All data lost on process restart
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

import structlog

from database.store_base import BaseConversationStore
from models.schemas import ChatbotRecord, ConversationState, ConversationStatus, TurnEvent

logger = structlog.get_logger()

_OPEN_STATUSES = (
    ConversationStatus.NOT_STARTED.value,
    ConversationStatus.ACTIVE.value,
    ConversationStatus.HANDOFF.value,
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _user_key(chatbot_id: str, channel: str, user_identifier: str) -> str:
    return f"{chatbot_id}:{channel}:{user_identifier}"


class InMemoryConversationStore(BaseConversationStore):

    def __init__(self):
        self._chatbots: dict[str, dict] = {}            # id → chatbot dict
        self._conversations: dict[str, dict] = {}       # id → state dict
        self._events: list[dict] = []

        # Indexes
        self._user_index: dict[str, str] = {}           # "bot:channel:user" → conversation_id
        logger.info("inmemory_store_initialized")

    # ── Chatbots ──────────────────────────────────────────

    async def get_chatbot(self, chatbot_id: str) -> Optional[ChatbotRecord]:
        data = self._chatbots.get(chatbot_id)
        return ChatbotRecord.model_validate(data) if data else None

    async def save_chatbot(self, record: ChatbotRecord) -> ChatbotRecord:
        existing = self._chatbots.get(record.id)
        if existing:
            record = record.model_copy(update={"version": existing.get("version", 1) + 1})
        record = record.model_copy(update={"updated_at": _utcnow()})
        self._chatbots[record.id] = record.model_dump(mode="json")
        logger.info("chatbot_saved", chatbot_id=record.id, version=record.version)
        return record

    async def list_chatbots(self) -> list[ChatbotRecord]:
        return [ChatbotRecord.model_validate(d) for d in self._chatbots.values()]

    # ── Conversation state ────────────────────────────────

    async def load_state(self, conversation_id: str) -> Optional[ConversationState]:
        data = self._conversations.get(conversation_id)
        return ConversationState.model_validate(data) if data else None

    async def save_state(self, state: ConversationState) -> None:
        self._conversations[state.conversation_id] = state.model_dump(mode="json")
        if state.user_identifier and state.status.value in _OPEN_STATUSES:
            key = _user_key(state.chatbot_id, state.channel.value, state.user_identifier)
            self._user_index[key] = state.conversation_id

    async def register_conversation(self, state: ConversationState) -> ConversationState:
        self._conversations[state.conversation_id] = state.model_dump(mode="json")
        if state.user_identifier:
            key = _user_key(state.chatbot_id, state.channel.value, state.user_identifier)
            self._user_index[key] = state.conversation_id
        logger.info("conversation_registered", conversation_id=state.conversation_id,
                    chatbot_id=state.chatbot_id, channel=state.channel.value)
        return state

    async def find_active_conversation(
        self, chatbot_id: str, channel: str, user_identifier: str,
    ) -> Optional[ConversationState]:
        conv_id = self._user_index.get(_user_key(chatbot_id, channel, user_identifier))
        if not conv_id:
            return None
        data = self._conversations.get(conv_id)
        if not data or data.get("status") not in _OPEN_STATUSES:
            return None
        return ConversationState.model_validate(data)

    async def list_conversations(self, chatbot_id: str = "", limit: int = 100) -> list[ConversationState]:
        rows = [
            d for d in self._conversations.values()
            if not chatbot_id or d.get("chatbot_id") == chatbot_id
        ]
        rows.sort(key=lambda d: d.get("updated_at", ""), reverse=True)
        return [ConversationState.model_validate(d) for d in rows[:limit]]

    # ── Events ────────────────────────────────────────────

    async def append_event(self, event: TurnEvent) -> None:
        self._events.append(event.model_dump(mode="json"))

    async def get_events(self, conversation_id: str = "", limit: int = 200) -> list[TurnEvent]:
        rows: list[dict[str, Any]] = [
            e for e in self._events
            if not conversation_id or e.get("conversation_id") == conversation_id
        ]
        return [TurnEvent.model_validate(e) for e in rows[-limit:]]
