"""
WhatsApp Channel Adapter: WhatsApp Business Cloud API integration.

Provides:
- Phone number normalization
- Webhook verification (hub.verify_token challenge)
- Inbound: text and interactive replies (button_reply, list_reply);
  status updates are ignored; other media arrive as a bracketed placeholder
- Outbound: plain text, reply buttons (up to 3 options), list messages
  (up to 10 options), or a numbered text list beyond that
"""
from __future__ import annotations

import re
from typing import Any

import structlog

from channels.base import ChannelAdapter, ChannelError, InboundMessage, numbered_options
from models.schemas import BotOutput, ChannelType

logger = structlog.get_logger()

DEFAULT_API_BASE = "https://graph.facebook.com/v18.0"

MAX_BUTTONS = 3
MAX_LIST_ROWS = 10
BUTTON_TITLE_LIMIT = 20
ROW_TITLE_LIMIT = 24


def normalize_phone(phone: str) -> str:
    """Normalize phone to digits only, stripping +, spaces, dashes."""
    return re.sub(r"[^\d]", "", phone or "")


class WhatsAppAdapter(ChannelAdapter):
    """WhatsApp Business Cloud API adapter."""

    channel_type = ChannelType.WHATSAPP

    # ── Inbound parsing ───────────────────────────────────────

    async def _parse_inbound(self, raw_payload: dict[str, Any]) -> list[InboundMessage]:
        """Parse a Cloud API webhook payload; one payload may carry several messages."""
        messages: list[InboundMessage] = []
        for entry in raw_payload.get("entry") or []:
            for change in entry.get("changes") or []:
                value = change.get("value") or {}

                # Status updates (delivered/read): not messages
                if "messages" not in value:
                    continue

                names = {
                    c.get("wa_id", ""): (c.get("profile") or {}).get("name", "")
                    for c in value.get("contacts") or []
                }
                phone_number_id = (value.get("metadata") or {}).get("phone_number_id", "")

                for msg in value.get("messages") or []:
                    parsed = self._parse_message(msg)
                    if parsed is None:
                        continue
                    content, extra = parsed
                    sender = normalize_phone(msg.get("from", ""))
                    messages.append(InboundMessage(
                        channel=self.channel_type,
                        sender_id=sender,
                        content=content,
                        message_id=msg.get("id", ""),
                        sender_name=names.get(msg.get("from", ""), ""),
                        metadata={"phone_number_id": phone_number_id, **extra},
                    ))
        return messages

    def _parse_message(self, msg: dict[str, Any]):
        msg_type = msg.get("type", "text")

        if msg_type == "text":
            return msg.get("text", {}).get("body", ""), {"message_type": "text"}

        if msg_type == "interactive":
            interactive = msg.get("interactive", {})
            itype = interactive.get("type", "")
            if itype == "button_reply":
                reply = interactive.get("button_reply", {})
                return reply.get("title", ""), {"message_type": "button_reply",
                                                "button_id": reply.get("id", "")}
            if itype == "list_reply":
                reply = interactive.get("list_reply", {})
                return reply.get("title", ""), {"message_type": "list_reply",
                                                "list_item_id": reply.get("id", "")}
            return None

        if msg_type == "button":
            # Quick-reply button on a template message
            return msg.get("button", {}).get("text", ""), {"message_type": "button"}

        logger.info("whatsapp_unsupported_message", message_type=msg_type)
        return f"[{msg_type}]", {"message_type": msg_type}

    # ── Render ────────────────────────────────────────────────

    def render(self, recipient: str, outputs: list[BotOutput]) -> list[dict[str, Any]]:
        to = normalize_phone(recipient)
        payloads = []
        for out in outputs:
            base = {"messaging_product": "whatsapp", "recipient_type": "individual", "to": to}
            options = out.options

            if not options or len(options) > MAX_LIST_ROWS:
                payloads.append({**base, "type": "text",
                                 "text": {"body": numbered_options(out.content, options)}})

            elif len(options) <= MAX_BUTTONS:
                payloads.append({**base, "type": "interactive", "interactive": {
                    "type": "button",
                    "body": {"text": out.content or "Please choose an option:"},
                    "action": {"buttons": [
                        {"type": "reply",
                         "reply": {"id": f"opt_{i}", "title": opt[:BUTTON_TITLE_LIMIT]}}
                        for i, opt in enumerate(options, start=1)
                    ]},
                }})

            else:
                payloads.append({**base, "type": "interactive", "interactive": {
                    "type": "list",
                    "body": {"text": out.content or "Please choose an option:"},
                    "action": {
                        "button": "Choose",
                        "sections": [{"title": "Options", "rows": [
                            {"id": f"opt_{i}", "title": opt[:ROW_TITLE_LIMIT]}
                            for i, opt in enumerate(options, start=1)
                        ]}],
                    },
                }})
        return payloads

    # ── Send ──────────────────────────────────────────────────

    async def _deliver(self, payload: dict[str, Any], creds: dict[str, Any]) -> dict[str, Any]:
        phone_number_id = creds.get("phone_number_id", "")
        access_token = creds.get("access_token", "")
        if not phone_number_id or not access_token:
            raise ChannelError("WhatsApp credentials missing", self.channel_type.value)

        url = f"{creds.get('api_base', DEFAULT_API_BASE)}/{phone_number_id}/messages"
        data = await self._post_json(url, payload,
                                     headers={"Authorization": f"Bearer {access_token}"})
        msg_id = ((data.get("messages") or [{}])[0]).get("id", "")
        logger.info("whatsapp_message_sent", to=payload.get("to"), msg_id=msg_id,
                    type=payload.get("type"))
        return {"status": "sent", "channel_message_id": msg_id}
