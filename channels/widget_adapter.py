"""
Web Widget Channel: the embeddable chat bubble served by the HTTP API.

Each embed gets its own WidgetSession value object instead of shared
page-level state, so several widgets (even for different chatbots) can
live on one page without clobbering each other.

The widget speaks JSON over HTTP: replies are returned in the response
body rather than pushed, so delivery is a no-op.
"""
from __future__ import annotations

import uuid
from typing import Any, Optional

from pydantic import BaseModel, Field

from channels.base import ChannelAdapter, InboundMessage
from models.schemas import BotOutput, ChannelType, ChatbotRecord


class WidgetSession(BaseModel):
    """Per-embed widget configuration and identity."""
    chatbot_id: str
    session_id: str = Field(default_factory=lambda: f"ws_{uuid.uuid4().hex[:16]}")
    title: str = "Chat with us"
    subtitle: str = "We're here to help"
    welcome_message: str = "Hello! How can I help you today?"
    primary_color: str = "#3B82F6"
    position: str = "bottom-right"
    auto_open: bool = False

    @classmethod
    def for_chatbot(cls, record: ChatbotRecord, session_id: Optional[str] = None,
                    **overrides: Any) -> "WidgetSession":
        values: dict[str, Any] = {"chatbot_id": record.id, "title": record.name or "Chat with us"}
        if record.description:
            values["subtitle"] = record.description
        if session_id:
            values["session_id"] = session_id
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)

    def public_config(self) -> dict[str, Any]:
        return {
            "chatbotId": self.chatbot_id,
            "sessionId": self.session_id,
            "title": self.title,
            "subtitle": self.subtitle,
            "welcomeMessage": self.welcome_message,
            "primaryColor": self.primary_color,
            "position": self.position,
            "autoOpen": self.auto_open,
        }


class WidgetAdapter(ChannelAdapter):
    channel_type = ChannelType.WEB

    async def _parse_inbound(self, raw_payload: dict[str, Any]) -> list[InboundMessage]:
        session_id = raw_payload.get("session_id") or raw_payload.get("sessionId") or ""
        content = raw_payload.get("message")
        if not session_id or content is None:
            return []
        return [InboundMessage(
            channel=self.channel_type,
            sender_id=session_id,
            content=str(content),
            message_id=raw_payload.get("message_id") or raw_payload.get("messageId") or "",
        )]

    def render(self, recipient: str, outputs: list[BotOutput]) -> list[dict[str, Any]]:
        return [out.to_wire() for out in outputs]
