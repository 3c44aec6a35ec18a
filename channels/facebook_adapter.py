"""
Facebook Messenger Channel Adapter: Send/Receive API integration.

Inbound: ``entry[].messaging[]`` text messages, quick-reply taps and
postbacks (postbacks are handled as if the user typed the payload).
Echoes of the page's own messages are skipped.

Outbound: text, with options attached as quick replies (up to 13).
"""
from __future__ import annotations

from typing import Any

import structlog

from channels.base import ChannelAdapter, ChannelError, InboundMessage, numbered_options
from models.schemas import BotOutput, ChannelType

logger = structlog.get_logger()

DEFAULT_API_BASE = "https://graph.facebook.com/v18.0"

MAX_QUICK_REPLIES = 13
QUICK_REPLY_TITLE_LIMIT = 20


class FacebookAdapter(ChannelAdapter):
    channel_type = ChannelType.FACEBOOK

    async def _parse_inbound(self, raw_payload: dict[str, Any]) -> list[InboundMessage]:
        if raw_payload.get("object") not in (None, "page"):
            return []

        messages: list[InboundMessage] = []
        for entry in raw_payload.get("entry") or []:
            for messaging in entry.get("messaging") or []:
                sender = (messaging.get("sender") or {}).get("id", "")
                if not sender:
                    continue

                if "message" in messaging:
                    message = messaging["message"]
                    if message.get("is_echo"):
                        continue
                    quick_reply = (message.get("quick_reply") or {}).get("payload", "")
                    content = quick_reply or message.get("text", "")
                    if not content:
                        continue
                    messages.append(InboundMessage(
                        channel=self.channel_type, sender_id=sender, content=content,
                        message_id=message.get("mid", ""),
                        metadata={"message_type": "quick_reply" if quick_reply else "text"},
                    ))

                elif "postback" in messaging:
                    postback = messaging["postback"]
                    content = postback.get("payload") or postback.get("title", "")
                    messages.append(InboundMessage(
                        channel=self.channel_type, sender_id=sender, content=content,
                        message_id=postback.get("mid", ""),
                        metadata={"message_type": "postback", "title": postback.get("title", "")},
                    ))
        return messages

    def render(self, recipient: str, outputs: list[BotOutput]) -> list[dict[str, Any]]:
        payloads = []
        for out in outputs:
            message: dict[str, Any]
            if out.options and len(out.options) <= MAX_QUICK_REPLIES:
                message = {
                    "text": out.content or "Please choose an option:",
                    "quick_replies": [
                        {"content_type": "text", "title": opt[:QUICK_REPLY_TITLE_LIMIT], "payload": opt}
                        for opt in out.options
                    ],
                }
            else:
                message = {"text": numbered_options(out.content, out.options)}
            payloads.append({
                "recipient": {"id": recipient},
                "messaging_type": "RESPONSE",
                "message": message,
            })
        return payloads

    async def _deliver(self, payload: dict[str, Any], creds: dict[str, Any]) -> dict[str, Any]:
        token = creds.get("page_access_token", "")
        if not token:
            raise ChannelError("Facebook page access token missing", self.channel_type.value)
        url = f"{creds.get('api_base', DEFAULT_API_BASE)}/me/messages"
        data = await self._post_json(url, payload, params={"access_token": token})
        logger.info("facebook_message_sent", recipient=payload["recipient"]["id"],
                    msg_id=data.get("message_id", ""))
        return {"status": "sent", "channel_message_id": data.get("message_id", "")}
