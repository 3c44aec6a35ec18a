"""
Abstract Conversation Store: Interface for all storage backends.

Implementations:
  - InMemoryConversationStore (dict-based, single-process, no persistence)
  - FileConversationStore     (JSON files on disk, single-process, durable)

The engine only needs chatbots (read) and conversation states
(read/write); the API and channel routers also use the conversation
lookup by (chatbot, channel, user) and the event log.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional

from models.schemas import ChatbotRecord, ConversationState, TurnEvent


class BaseConversationStore(ABC):
    """Interface that all conversation store backends must implement."""

    # ── Chatbots ──────────────────────────────────────────────

    @abstractmethod
    async def get_chatbot(self, chatbot_id: str) -> Optional[ChatbotRecord]:
        ...

    @abstractmethod
    async def save_chatbot(self, record: ChatbotRecord) -> ChatbotRecord:
        """Insert or replace; replacing bumps ``version``."""
        ...

    @abstractmethod
    async def list_chatbots(self) -> list[ChatbotRecord]:
        ...

    # ── Conversation state ────────────────────────────────────

    @abstractmethod
    async def load_state(self, conversation_id: str) -> Optional[ConversationState]:
        ...

    @abstractmethod
    async def save_state(self, state: ConversationState) -> None:
        ...

    @abstractmethod
    async def register_conversation(self, state: ConversationState) -> ConversationState:
        """Persist a brand-new conversation and index it for lookup by user."""
        ...

    @abstractmethod
    async def find_active_conversation(
        self, chatbot_id: str, channel: str, user_identifier: str,
    ) -> Optional[ConversationState]:
        ...

    @abstractmethod
    async def list_conversations(self, chatbot_id: str = "", limit: int = 100) -> list[ConversationState]:
        ...

    # ── Events ────────────────────────────────────────────────

    @abstractmethod
    async def append_event(self, event: TurnEvent) -> None:
        ...

    @abstractmethod
    async def get_events(self, conversation_id: str = "", limit: int = 200) -> list[TurnEvent]:
        ...
