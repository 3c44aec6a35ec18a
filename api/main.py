"""
FastAPI Application: builder API, web widget and channel webhooks.

Provides:
- Chatbot management: save (validated) and read flows
- Web widget: public config and the chat endpoint
- Conversation inspection, direct turns and hand-back from a human agent
- Webhook endpoints for WhatsApp and Facebook Messenger
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Optional

import structlog

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel

from channels.base import ChannelAdapter, ChannelRegistry
from channels.facebook_adapter import FacebookAdapter
from channels.whatsapp_adapter import WhatsAppAdapter
from channels.widget_adapter import WidgetAdapter, WidgetSession
from config.settings import get_settings
from core.ai import create_ai_generator
from core.engine import ConversationEngine
from core.errors import (
    ChatbotNotFoundError,
    FlowDefinitionError,
    LockTimeoutError,
    StateStoreError,
)
from core.events import CompositeEventSink, LoggingEventSink, StoreEventSink
from core.flow_loader import FlowRepository, find_flow_problems, parse_flow
from core.locks import ConversationLocks
from core.orchestrator import Orchestrator
from core.processors import NodeProcessor
from core.webhook import HttpWebhookClient
from database.store_factory import create_store
from models.schemas import ChannelType, ChatbotRecord
from utils.log_config import configure_logging

settings = get_settings()
configure_logging(settings.logging.level, settings.logging.json)

logger = structlog.get_logger()

# ──────────────────────────────────────────────────────────────
#  Bootstrap
# ──────────────────────────────────────────────────────────────

store = create_store({
    "store_backend": settings.database.store_backend,
    "store_file_dir": settings.database.store_file_dir,
})
webhook_client = HttpWebhookClient(max_attempts=settings.webhooks.max_attempts)
node_processor = NodeProcessor(
    ai=create_ai_generator(settings.llm),
    webhooks=webhook_client,
    ai_timeout_seconds=settings.engine.ai_timeout_seconds,
    reprompt_message=settings.engine.reprompt_message,
    history_window=settings.engine.ai_history_window,
)
flow_repository = FlowRepository(store)
conversation_engine = ConversationEngine(
    store,
    processor=node_processor,
    flows=flow_repository,
    events=CompositeEventSink(LoggingEventSink(), StoreEventSink(store)),
    locks=ConversationLocks(settings.engine.lock_timeout_seconds),
    config=settings.engine,
)

# Register channel adapters
channel_registry = ChannelRegistry()
whatsapp_adapter = WhatsAppAdapter()
facebook_adapter = FacebookAdapter()
widget_adapter = WidgetAdapter()

channel_registry.register(whatsapp_adapter)
channel_registry.register(facebook_adapter)
channel_registry.register(widget_adapter)

orchestrator = Orchestrator(conversation_engine, store, channel_registry)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await channel_registry.initialize_all(settings.channels)
    logger.info("botforge_started",
                store_backend=type(store).__name__,
                channels=[c.value for c in channel_registry.get_available()])
    yield

    await webhook_client.close()
    await channel_registry.shutdown_all()
    logger.info("botforge_stopped")


# ──────────────────────────────────────────────────────────────
#  App
# ──────────────────────────────────────────────────────────────

app = FastAPI(
    title="BotForge API",
    description="Flow execution engine for no-code chatbots",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ChatbotNotFoundError)
async def chatbot_not_found_handler(request: Request, exc: ChatbotNotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(FlowDefinitionError)
async def flow_definition_handler(request: Request, exc: FlowDefinitionError):
    return JSONResponse(status_code=422, content={
        "detail": str(exc), "error_type": type(exc).__name__, "node_id": exc.node_id,
    })


@app.exception_handler(LockTimeoutError)
async def lock_timeout_handler(request: Request, exc: LockTimeoutError):
    logger.warning("turn_rejected_busy", conversation_id=exc.conversation_id)
    return JSONResponse(status_code=503, content={"detail": str(exc), "retryable": True})


@app.exception_handler(StateStoreError)
async def state_store_handler(request: Request, exc: StateStoreError):
    logger.error("state_store_failed", conversation_id=exc.conversation_id, error=str(exc))
    return JSONResponse(status_code=503, content={"detail": "Conversation storage unavailable",
                                                  "retryable": True})


# ──────────────────────────────────────────────────────────────
#  Request/Response Models
# ──────────────────────────────────────────────────────────────

class ChatbotUpsertRequest(BaseModel):
    name: str
    description: str = ""
    flow: dict[str, Any] = {}
    fallback_message: str = ""
    closing_message: str = ""
    ai_model: str = ""
    is_published: bool = False
    channels: dict[str, dict[str, Any]] = {}


class WidgetChatRequest(BaseModel):
    session_id: str
    message: Optional[str] = None


class TurnRequest(BaseModel):
    chatbot_id: str
    message: Optional[str] = None


class ResumeRequest(BaseModel):
    node_id: Optional[str] = None


def _chatbot_summary(record: ChatbotRecord) -> dict[str, Any]:
    return {
        "id": record.id,
        "name": record.name,
        "is_published": record.is_published,
        "version": record.version,
        "updated_at": record.updated_at.isoformat(),
    }


# ══════════════════════════════════════════════════════════════
#  HEALTH
# ══════════════════════════════════════════════════════════════

@app.get("/health")
async def health():
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "channels": await channel_registry.health_check_all(),
    }


# ══════════════════════════════════════════════════════════════
#  CHATBOTS
# ══════════════════════════════════════════════════════════════

@app.get("/api/chatbots")
async def list_chatbots():
    return [_chatbot_summary(r) for r in await store.list_chatbots()]


@app.put("/api/chatbots/{chatbot_id}")
async def save_chatbot(chatbot_id: str, req: ChatbotUpsertRequest):
    """Validate and store a chatbot; a broken flow is rejected with 422."""
    flow = parse_flow(req.flow, chatbot_id=chatbot_id)
    _, warnings = find_flow_problems(flow)

    record = await store.save_chatbot(ChatbotRecord(id=chatbot_id, **req.model_dump()))
    flow_repository.invalidate(chatbot_id)
    return {**_chatbot_summary(record), "warnings": warnings}


@app.get("/api/chatbots/{chatbot_id}")
async def get_chatbot(chatbot_id: str):
    record = await flow_repository.get_chatbot(chatbot_id)
    return record.model_dump(mode="json", exclude={"channels"})


@app.post("/api/chatbots/validate")
async def validate_chatbot_flow(flow: dict[str, Any]):
    """Dry-run validation for the builder; never stores anything."""
    try:
        parsed = parse_flow(flow)
    except FlowDefinitionError as e:
        return {"valid": False, "errors": [str(e)], "warnings": []}
    errors, warnings = find_flow_problems(parsed)
    return {"valid": not errors, "errors": errors, "warnings": warnings}


# ══════════════════════════════════════════════════════════════
#  WEB WIDGET
# ══════════════════════════════════════════════════════════════

@app.get("/api/widget/{chatbot_id}/config")
async def widget_config(chatbot_id: str, session_id: Optional[str] = None):
    record = await orchestrator.get_published_chatbot(chatbot_id)
    return WidgetSession.for_chatbot(record, session_id=session_id).public_config()


@app.post("/api/widget/{chatbot_id}/chat")
async def widget_chat(chatbot_id: str, req: WidgetChatRequest):
    """
    One widget exchange. Omitting ``message`` opens the session (or
    re-shows the pending prompt); otherwise the message is the user's turn.
    """
    messages = await widget_adapter.handle_inbound(req.model_dump())
    if messages:
        result = await orchestrator.handle_inbound_message(chatbot_id, messages[0], deliver=False)
        conversation_id, outputs = result["conversation_id"], result["outputs"]
    else:
        conversation_id, outputs = await orchestrator.open_session(
            chatbot_id, ChannelType.WEB, req.session_id)

    state = await store.load_state(conversation_id)
    return {
        "conversationId": conversation_id,
        "sessionId": req.session_id,
        "status": state.status.value if state else "not_started",
        "messages": widget_adapter.render(req.session_id, outputs),
    }


# ══════════════════════════════════════════════════════════════
#  CONVERSATIONS
# ══════════════════════════════════════════════════════════════

@app.get("/api/conversations")
async def list_conversations(chatbot_id: str = "", limit: int = Query(50, le=200)):
    convs = await store.list_conversations(chatbot_id=chatbot_id, limit=limit)
    return [c.model_dump(mode="json", exclude={"history"}) for c in convs]


@app.get("/api/conversations/{conversation_id}")
async def get_conversation(conversation_id: str):
    state = await store.load_state(conversation_id)
    if not state:
        raise HTTPException(404, "Conversation not found")
    return state.model_dump(mode="json")


@app.get("/api/conversations/{conversation_id}/events")
async def get_conversation_events(conversation_id: str, limit: int = Query(200, le=1000)):
    events = await store.get_events(conversation_id=conversation_id, limit=limit)
    return [e.model_dump(mode="json") for e in events]


@app.post("/api/conversations/{conversation_id}/turn")
async def run_turn(conversation_id: str, req: TurnRequest):
    """Drive a conversation directly by id (builder preview, tests, integrations)."""
    outputs = await conversation_engine.process_turn(conversation_id, req.chatbot_id, req.message)
    return {"conversationId": conversation_id, "messages": [o.to_wire() for o in outputs]}


@app.post("/api/conversations/{conversation_id}/resume")
async def resume_conversation(conversation_id: str, req: ResumeRequest):
    state = await store.load_state(conversation_id)
    if not state:
        raise HTTPException(404, "Conversation not found")
    outputs = await conversation_engine.resume_conversation(conversation_id, req.node_id)
    return {"conversationId": conversation_id, "messages": [o.to_wire() for o in outputs]}


# ══════════════════════════════════════════════════════════════
#  WEBHOOKS: WhatsApp / Facebook
# ══════════════════════════════════════════════════════════════

async def _verify(adapter: ChannelAdapter, chatbot_id: str, request: Request):
    record = await store.get_chatbot(chatbot_id)
    creds = record.channels.get(adapter.channel_type.value, {}) if record else {}
    challenge = adapter.verify_webhook(dict(request.query_params), creds.get("verify_token", ""))
    if challenge is None:
        raise HTTPException(403, "Verification failed")
    return PlainTextResponse(challenge)


async def _receive(channel: ChannelType, chatbot_id: str, request: Request):
    try:
        payload = await request.json()
    except ValueError:
        raise HTTPException(400, "Invalid JSON body")
    results = await orchestrator.handle_webhook(chatbot_id, channel, payload)
    return {"status": "ok", "processed": len(results)}


@app.get("/webhooks/whatsapp/{chatbot_id}")
async def whatsapp_verify(chatbot_id: str, request: Request):
    return await _verify(whatsapp_adapter, chatbot_id, request)


@app.post("/webhooks/whatsapp/{chatbot_id}")
async def whatsapp_webhook(chatbot_id: str, request: Request):
    return await _receive(ChannelType.WHATSAPP, chatbot_id, request)


@app.get("/webhooks/facebook/{chatbot_id}")
async def facebook_verify(chatbot_id: str, request: Request):
    return await _verify(facebook_adapter, chatbot_id, request)


@app.post("/webhooks/facebook/{chatbot_id}")
async def facebook_webhook(chatbot_id: str, request: Request):
    return await _receive(ChannelType.FACEBOOK, chatbot_id, request)
