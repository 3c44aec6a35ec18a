"""
Channel Adapters: shared base for every transport the engine is exposed on.

A channel adapter does four things and nothing else:
  - verifies webhook subscriptions for the transport
  - turns the native inbound payload into InboundMessage objects
  - renders BotOutput lists into the transport's message format
  - delivers rendered messages

No flow logic lives here; adapters hand text to the engine and render
whatever comes back.

Provides:
- ChannelError: structured error for send/parse failures
- MessageDeduplicator: TTL seen-set so webhook redeliveries are dropped
- InputSanitizer: strips control characters and bounds message length
- ChannelAdapter: abstract base
- ChannelRegistry: adapter lookup by channel type
"""
from __future__ import annotations

import abc
import time
from typing import Any, Optional

import httpx
import structlog
from pydantic import BaseModel
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from models.schemas import BotOutput, ChannelType

logger = structlog.get_logger()


# ══════════════════════════════════════════════════════════════
#  ERRORS
# ══════════════════════════════════════════════════════════════

class ChannelError(Exception):
    """Base exception for all channel operations."""

    def __init__(self, message: str, channel: str = "", retryable: bool = False):
        self.channel = channel
        self.retryable = retryable
        super().__init__(message)


# ══════════════════════════════════════════════════════════════
#  INBOUND MESSAGE
# ══════════════════════════════════════════════════════════════

class InboundMessage(BaseModel):
    """A user message, normalised across channels."""
    channel: ChannelType
    sender_id: str                            # phone, PSID or widget session id
    content: str
    message_id: str = ""
    sender_name: str = ""
    metadata: dict[str, Any] = {}


# ══════════════════════════════════════════════════════════════
#  MESSAGE DEDUPLICATOR
# ══════════════════════════════════════════════════════════════

class MessageDeduplicator:
    """TTL-based seen-set for deduplicating inbound messages."""

    def __init__(self, ttl_seconds: float = 300.0, max_size: int = 5000):
        self.ttl = ttl_seconds
        self.max_size = max_size
        self._seen: dict[str, float] = {}

    def is_duplicate(self, key: str) -> bool:
        self._prune()
        if key in self._seen:
            return True
        self._seen[key] = time.monotonic()
        return False

    def _prune(self):
        cutoff = time.monotonic() - self.ttl
        expired = [k for k, t in self._seen.items() if t < cutoff]
        for k in expired:
            del self._seen[k]
        if len(self._seen) > self.max_size:
            # Drop the oldest entries first
            for k in sorted(self._seen, key=self._seen.get)[: len(self._seen) - self.max_size]:
                del self._seen[k]


# ══════════════════════════════════════════════════════════════
#  INPUT SANITIZER
# ══════════════════════════════════════════════════════════════

class InputSanitizer:
    def __init__(self, max_length: int = 4000):
        self.max_length = max_length

    def sanitize(self, content: str) -> str:
        if not content:
            return ""
        content = "".join(
            c for c in content if c in ("\n", "\t", "\r") or (ord(c) >= 32)
        )
        if len(content) > self.max_length:
            content = content[: self.max_length]
        return content.strip()

    def sanitize_metadata(self, metadata: dict[str, Any]) -> dict[str, Any]:
        safe = {}
        for k, v in metadata.items():
            if isinstance(v, (str, int, float, bool)):
                safe[k] = v
            elif isinstance(v, dict):
                safe[k] = self.sanitize_metadata(v)
            elif isinstance(v, list):
                safe[k] = [
                    self.sanitize_metadata(i) if isinstance(i, dict) else i
                    for i in v[:50]
                ]
            else:
                safe[k] = str(v)[:500]
        return safe


def numbered_options(content: str, options: list[str]) -> str:
    """Plain-text rendering of a prompt with options, for transports without buttons."""
    if not options:
        return content
    lines = [f"{i}. {opt}" for i, opt in enumerate(options, start=1)]
    return f"{content}\n\n" + "\n".join(lines) if content else "\n".join(lines)


# ══════════════════════════════════════════════════════════════
#  CHANNEL ADAPTER: Abstract Base
# ══════════════════════════════════════════════════════════════

class ChannelAdapter(abc.ABC):
    """
    Base class for all channel adapters.

    Subclasses implement _parse_inbound, render and _deliver. The base
    class dedups and sanitises inbound messages and wraps delivery with
    a retry on transport errors.
    """

    channel_type: ChannelType

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._initialized = False
        self._config: dict[str, Any] = {}
        self._verify_token: str = ""
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._deduplicator = MessageDeduplicator()
        self._sanitizer = InputSanitizer()

    async def initialize(self, config: dict[str, Any]) -> None:
        self._config = dict(config or {})
        self._verify_token = self._config.get("verify_token", "")
        self._initialized = True

    @property
    def is_configured(self) -> bool:
        return self._initialized

    # ── Webhook verification ──────────────────────────────────

    def verify_webhook(self, params: dict[str, Any], verify_token: str = "") -> Optional[str]:
        """
        Verify a Meta-style webhook subscription.
        Returns the challenge string on success, None on failure.
        """
        expected = verify_token or self._verify_token
        mode = params.get("hub.mode", "")
        token = params.get("hub.verify_token", "")
        challenge = params.get("hub.challenge", "")
        if mode == "subscribe" and expected and token == expected:
            return challenge
        logger.warning("webhook_verification_failed", channel=self.channel_type.value, mode=mode)
        return None

    # ── Inbound ───────────────────────────────────────────────

    async def handle_inbound(self, raw_payload: dict[str, Any]) -> list[InboundMessage]:
        """Parse, dedup and sanitise every user message in a webhook payload."""
        accepted: list[InboundMessage] = []
        for msg in await self._parse_inbound(raw_payload):
            if msg.message_id and self._deduplicator.is_duplicate(msg.message_id):
                logger.info("inbound_duplicate_dropped", channel=self.channel_type.value,
                            message_id=msg.message_id)
                continue
            msg.content = self._sanitizer.sanitize(msg.content)
            msg.metadata = self._sanitizer.sanitize_metadata(msg.metadata)
            if not msg.content:
                continue
            accepted.append(msg)
        return accepted

    @abc.abstractmethod
    async def _parse_inbound(self, raw_payload: dict[str, Any]) -> list[InboundMessage]:
        ...

    # ── Outbound ──────────────────────────────────────────────

    @abc.abstractmethod
    def render(self, recipient: str, outputs: list[BotOutput]) -> list[dict[str, Any]]:
        """Translate engine outputs into native message payloads."""
        ...

    async def send(self, recipient: str, outputs: list[BotOutput],
                   credentials: Optional[dict[str, Any]] = None) -> list[dict[str, Any]]:
        """Render and deliver; per-message failures are reported, not raised."""
        creds = {**self._config, **(credentials or {})}
        results = []
        for payload in self.render(recipient, outputs):
            try:
                results.append(await self._deliver_with_retry(payload, creds))
            except (ChannelError, httpx.HTTPError) as e:
                logger.error("channel_send_failed", channel=self.channel_type.value,
                             recipient=recipient, error=str(e))
                results.append({"status": "failed", "error": str(e)})
        return results

    async def _deliver_with_retry(self, payload: dict[str, Any], creds: dict[str, Any]) -> dict[str, Any]:
        @retry(
            stop=stop_after_attempt(3),
            wait=wait_exponential(multiplier=0.5, max=5),
            retry=retry_if_exception_type(httpx.TransportError),
            reraise=True,
        )
        async def _attempt():
            return await self._deliver(payload, creds)
        return await _attempt()

    async def _deliver(self, payload: dict[str, Any], creds: dict[str, Any]) -> dict[str, Any]:
        return {"status": "rendered", "payload": payload}

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(transport=self._transport, timeout=15.0)
        return self._client

    async def _post_json(self, url: str, payload: dict[str, Any], headers: dict[str, str] = None,
                         params: dict[str, str] = None) -> dict[str, Any]:
        client = await self._get_client()
        resp = await client.post(url, json=payload, headers=headers or {}, params=params)
        if resp.status_code >= 400:
            raise ChannelError(f"{self.channel_type.value} API returned {resp.status_code}: {resp.text[:200]}",
                               self.channel_type.value, retryable=resp.status_code >= 500)
        return resp.json() if resp.content else {}

    # ── Lifecycle ─────────────────────────────────────────────

    async def health_check(self) -> dict[str, Any]:
        return {"channel": self.channel_type.value, "initialized": self._initialized}

    async def shutdown(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()


# ══════════════════════════════════════════════════════════════
#  CHANNEL REGISTRY
# ══════════════════════════════════════════════════════════════

class ChannelRegistry:
    def __init__(self):
        self._adapters: dict[ChannelType, ChannelAdapter] = {}

    def register(self, adapter: ChannelAdapter):
        self._adapters[adapter.channel_type] = adapter

    def get(self, channel_type: ChannelType) -> Optional[ChannelAdapter]:
        return self._adapters.get(channel_type)

    def get_available(self) -> list[ChannelType]:
        return list(self._adapters.keys())

    async def health_check_all(self) -> dict[str, Any]:
        return {ch.value: await a.health_check() for ch, a in self._adapters.items()}

    async def initialize_all(self, configs: dict[str, Any]):
        for ch, adapter in self._adapters.items():
            ch_cfg = configs.get(ch.value, {})
            # ChannelConfig dataclass → dict so adapters can call .get()
            if hasattr(ch_cfg, "credentials"):
                ch_cfg = ch_cfg.credentials
            try:
                await adapter.initialize(ch_cfg)
            except (ChannelError, ValueError, KeyError) as e:
                logger.error("channel_init_failed", channel=ch.value, error=str(e))

    async def shutdown_all(self):
        for ch, a in self._adapters.items():
            try:
                await a.shutdown()
            except (ChannelError, httpx.HTTPError) as e:
                logger.warning("channel_shutdown_failed", channel=ch.value, error=str(e))
