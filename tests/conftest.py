"""Shared test fixtures for the BotForge flow engine."""
import asyncio
from typing import Any, Optional

import pytest

from config.settings import EngineConfig
from core.ai import AIGenerator, AIResult
from core.engine import ConversationEngine
from core.errors import WebhookError
from core.events import CompositeEventSink, LoggingEventSink, StoreEventSink
from core.locks import ConversationLocks
from core.processors import NodeProcessor
from core.webhook import WebhookClient, WebhookResponse
from database.store_memory import InMemoryConversationStore
from models.schemas import ChatbotRecord


# ──────────────────────────────────────────────────────────────
#  Fake collaborators
# ──────────────────────────────────────────────────────────────

class FakeAI(AIGenerator):
    """Scripted AI: echoes the input unless told to be slow or to fail."""

    def __init__(self, reply: str = "AI says: {input}", delay: float = 0.0,
                 error: Optional[Exception] = None):
        self.reply = reply
        self.delay = delay
        self.error = error
        self.calls: list[dict[str, Any]] = []
        self.active = 0
        self.max_active = 0

    async def generate(self, system_prompt, user_input, history, variables) -> AIResult:
        self.calls.append({"system_prompt": system_prompt, "user_input": user_input,
                           "history": list(history), "variables": dict(variables)})
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.error is not None:
                raise self.error
            return AIResult(text=self.reply.replace("{input}", user_input),
                            intent="general_inquiry", confidence=0.95)
        finally:
            self.active -= 1


class FakeWebhookClient(WebhookClient):
    """Returns a canned response, sleeps, or raises; records every request."""

    def __init__(self, status: int = 200, body: Any = None, delay: float = 0.0,
                 error: Optional[Exception] = None):
        self.status = status
        self.body = body if body is not None else {"ok": True}
        self.delay = delay
        self.error = error
        self.requests: list[dict[str, Any]] = []

    async def request(self, url, method="POST", headers=None, body=None, timeout=30.0):
        self.requests.append({"url": url, "method": method, "headers": dict(headers or {}),
                              "body": body, "timeout": timeout})
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return WebhookResponse(status=self.status, body=self.body)


class FailingSaveStore(InMemoryConversationStore):
    """Memory store whose save_state can be switched to fail."""

    def __init__(self):
        super().__init__()
        self.fail_saves = False

    async def save_state(self, state):
        if self.fail_saves:
            raise RuntimeError("disk full")
        await super().save_state(state)


# ──────────────────────────────────────────────────────────────
#  Flow builders
# ──────────────────────────────────────────────────────────────

def node(node_id: str, kind: str, **data) -> dict[str, Any]:
    """Builder-shaped node: kind under data.nodeType, payload under data."""
    return {"id": node_id, "type": "custom", "position": {"x": 0, "y": 0},
            "data": {"nodeType": kind, **data}}


def edge(source: str, target: str, condition: Optional[str] = None) -> dict[str, Any]:
    e = {"id": f"{source}-{target}", "source": source, "target": target}
    if condition is not None:
        e["condition"] = condition
    return e


def make_chatbot(flow: dict[str, Any], chatbot_id: str = "bot_1", **overrides) -> ChatbotRecord:
    values = {
        "id": chatbot_id,
        "name": "Test Bot",
        "flow": flow,
        "fallback_message": "Sorry, something broke. A human will take over.",
        "closing_message": "Bye {first_name}!",
        "is_published": True,
    }
    values.update(overrides)
    return ChatbotRecord(**values)


@pytest.fixture
def linear_flow():
    """start → greeting → department question → one message per branch."""
    return {
        "nodes": [
            node("start", "start"),
            node("greet", "message", content="Welcome to Acme, {name}!"),
            node("dept", "question", content="Which team do you need?",
                 options=["Sales", "Support"], variable="department"),
            node("sales", "message", content="Connecting you to {department}."),
            node("support", "message", content="Support is open 9-5."),
        ],
        "edges": [
            edge("start", "greet"),
            edge("greet", "dept"),
            edge("dept", "sales", "Sales"),
            edge("dept", "support", "Support"),
        ],
    }


@pytest.fixture
def lead_flow():
    return {
        "nodes": [
            node("start", "start"),
            node("lead", "lead_capture",
                 fields=[{"name": "full_name", "type": "text", "required": True, "label": "full name"}]),
            node("thanks", "message", content="Thanks {first_name}, we'll be in touch."),
        ],
        "edges": [edge("start", "lead"), edge("lead", "thanks")],
    }


@pytest.fixture
def conditional_flow():
    return {
        "nodes": [
            node("start", "start"),
            node("plan", "question", content="Which plan are you on?",
                 options=["Pro", "Free"], variable="plan"),
            node("route", "conditional", conditions=[
                {"variable": "plan", "operator": "equals", "value": "pro", "action": "priority"},
            ]),
            node("vip", "message", content="Priority support coming up."),
            node("std", "message", content="Standard support coming up."),
        ],
        "edges": [
            edge("start", "plan"),
            edge("plan", "route"),
            edge("route", "vip", "priority"),
            edge("route", "std"),
        ],
    }


@pytest.fixture
def webhook_flow():
    return {
        "nodes": [
            node("start", "start"),
            node("email", "lead_capture", fields=[{"name": "email", "label": "email"}]),
            node("hook", "api_webhook", apiConfig={
                "url": "https://hooks.example.com/leads",
                "method": "POST",
                "body": '{"email": "{email}"}',
                "timeout": 0.05,
                "responseMapping": {"crm_id": "data.id"},
            }),
            node("check", "conditional", conditions=[
                {"variable": "webhook_status", "operator": "equals", "value": "failed",
                 "action": "failed"},
            ]),
            node("sorry", "message", content="We could not save that right now, we'll retry."),
            node("saved", "message", content="Saved as {crm_id}."),
        ],
        "edges": [
            edge("start", "email"),
            edge("email", "hook"),
            edge("hook", "check"),
            edge("check", "sorry", "failed"),
            edge("check", "saved"),
        ],
    }


# ──────────────────────────────────────────────────────────────
#  Engine fixtures
# ──────────────────────────────────────────────────────────────

@pytest.fixture
def engine_config():
    return EngineConfig(ai_timeout_seconds=0.2, lock_timeout_seconds=2.0)


@pytest.fixture
def store():
    return FailingSaveStore()


@pytest.fixture
def fake_ai():
    return FakeAI()


@pytest.fixture
def fake_webhooks():
    return FakeWebhookClient(body={"data": {"id": "crm_42"}})


@pytest.fixture
def engine(store, fake_ai, fake_webhooks, engine_config):
    processor = NodeProcessor(
        ai=fake_ai,
        webhooks=fake_webhooks,
        ai_timeout_seconds=engine_config.ai_timeout_seconds,
        reprompt_message=engine_config.reprompt_message,
        history_window=engine_config.ai_history_window,
    )
    return ConversationEngine(
        store,
        processor=processor,
        events=CompositeEventSink(LoggingEventSink(), StoreEventSink(store)),
        locks=ConversationLocks(engine_config.lock_timeout_seconds),
        config=engine_config,
    )
