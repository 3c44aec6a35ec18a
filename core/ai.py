"""
AI response generation for ai_response nodes.

The engine only sees the AIGenerator interface; the concrete LLMGenerator
talks to OpenAI or Anthropic depending on ``llm.provider``. Provider SDKs
are imported lazily so deployments without an AI key never load them.

When no client is configured, or the call fails, callers fall back to
fallback_response(): a keyword-based canned answer that keeps the
conversation moving.
"""
from __future__ import annotations

import abc
import json
from typing import Any, Optional

import structlog
from pydantic import BaseModel

from config.settings import LLMConfig, get_settings
from models.schemas import HistoryMessage

logger = structlog.get_logger()

DEFAULT_SYSTEM_PROMPT = "You are a helpful AI assistant for a business chatbot."


class AIResult(BaseModel):
    text: str
    intent: str = "general_inquiry"
    confidence: float = 0.7
    fallback: bool = False


# keyword → (intent, confidence, canned reply); first hit wins
_KEYWORD_INTENTS: list[tuple[tuple[str, ...], str, float, str]] = [
    (("hello", "hi"), "greeting", 0.9,
     "Hello! How can I help you today?"),
    (("help",), "help_request", 0.8,
     "I'd be happy to help you! What do you need assistance with?"),
    (("price", "cost"), "pricing_inquiry", 0.8,
     "For pricing information, please contact our sales team or check our website."),
    (("thank",), "gratitude", 0.9,
     "You're welcome! Is there anything else I can help you with?"),
]

_GENERAL_REPLY = (
    "I understand you're asking about that. For the most accurate information, "
    "I'd recommend speaking with one of our team members who can provide detailed assistance."
)


def detect_intent(user_input: str) -> tuple[str, float]:
    """Cheap keyword intent used as telemetry alongside real LLM replies."""
    text = (user_input or "").lower()
    for keywords, intent, confidence, _ in _KEYWORD_INTENTS:
        if any(k in text for k in keywords):
            return intent, confidence
    return "general_inquiry", 0.7


def fallback_response(user_input: str) -> AIResult:
    """Deterministic local answer used when the AI collaborator is unavailable."""
    text = (user_input or "").lower()
    for keywords, intent, confidence, reply in _KEYWORD_INTENTS:
        if any(k in text for k in keywords):
            return AIResult(text=reply, intent=intent, confidence=confidence, fallback=True)
    return AIResult(text=_GENERAL_REPLY, intent="general_inquiry", confidence=0.6, fallback=True)


def build_system_prompt(custom_prompt: str, variables: dict[str, Any]) -> str:
    prompt = custom_prompt or DEFAULT_SYSTEM_PROMPT
    if variables:
        prompt += f"\n\nConversation Variables: {json.dumps(variables, default=str)}"
    return prompt


def history_to_messages(history: list[HistoryMessage], user_input: str) -> list[dict[str, str]]:
    messages = [
        {"role": "user" if m.sender == "user" else "assistant", "content": m.content}
        for m in history
    ]
    messages.append({"role": "user", "content": user_input})
    return messages


class AIGenerator(abc.ABC):
    """Interface the ai_response processor depends on."""

    @abc.abstractmethod
    async def generate(
        self,
        system_prompt: str,
        user_input: str,
        history: list[HistoryMessage],
        variables: dict[str, Any],
    ) -> AIResult:
        ...


class FallbackGenerator(AIGenerator):
    """Always answers with the keyword fallback. Used when no LLM is configured."""

    async def generate(self, system_prompt, user_input, history, variables) -> AIResult:
        return fallback_response(user_input)


class LLMGenerator(AIGenerator):
    """
    Generates replies with OpenAI or Anthropic chat models.

    Errors from the provider propagate; the node processor owns the
    timeout and the switch to the fallback answer.
    """

    def __init__(self, config: Optional[LLMConfig] = None):
        self._config = config or get_settings().llm
        self._client = None
        self._provider = self._config.provider

    @property
    def is_openai(self) -> bool:
        return self._provider == "openai"

    @property
    def configured(self) -> bool:
        return bool(self._config.api_key)

    async def _get_client(self):
        if self._client is None and self.configured:
            if self.is_openai:
                from openai import AsyncOpenAI
                self._client = AsyncOpenAI(api_key=self._config.api_key)
            else:
                import anthropic
                self._client = anthropic.AsyncAnthropic(api_key=self._config.api_key)
            logger.info("llm_client_initialized", provider=self._provider,
                        model=self._config.model)
        return self._client

    async def _call_llm(self, system: str, messages: list[dict[str, str]]) -> str:
        """Unified call for both provider APIs."""
        client = await self._get_client()
        if client is None:
            return ""

        if self.is_openai:
            # OpenAI: system prompt travels as the first message
            response = await client.chat.completions.create(
                model=self._config.model,
                max_tokens=self._config.max_tokens,
                temperature=self._config.temperature,
                messages=[{"role": "system", "content": system}] + messages,
            )
            return response.choices[0].message.content or ""

        # Anthropic: system prompt is a separate parameter
        response = await client.messages.create(
            model=self._config.model,
            max_tokens=self._config.max_tokens,
            temperature=self._config.temperature,
            system=system,
            messages=messages,
        )
        return response.content[0].text

    async def generate(self, system_prompt, user_input, history, variables) -> AIResult:
        if not self.configured:
            logger.info("llm_not_configured_using_fallback")
            return fallback_response(user_input)

        text = await self._call_llm(
            system=build_system_prompt(system_prompt, variables),
            messages=history_to_messages(history, user_input),
        )
        if not text:
            return fallback_response(user_input)
        intent, confidence = detect_intent(user_input)
        return AIResult(text=text, intent=intent, confidence=confidence)


def create_ai_generator(config: Optional[LLMConfig] = None) -> AIGenerator:
    config = config or get_settings().llm
    if not config.api_key:
        logger.info("ai_generator_created", provider="fallback")
        return FallbackGenerator()
    logger.info("ai_generator_created", provider=config.provider, model=config.model)
    return LLMGenerator(config)
