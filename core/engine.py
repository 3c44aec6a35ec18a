"""
Conversation Engine: advances a conversation one user turn at a time.

One engine instance serves every channel. A turn:
  1. takes the conversation's lock (turns on one conversation never overlap)
  2. loads the chatbot, its parsed flow and the conversation state
  3. feeds the user's input to the node that was waiting for it
  4. follows edges through non-interactive nodes until one needs input,
     the flow hands off to a human, or the path ends
  5. saves the new state in one write and returns the bot outputs

Turns are all-or-nothing. Processors return mutations instead of writing
state, and everything is applied to a working copy that is saved only
when the turn finishes. A broken flow (dangling edge, cycle, missing
start) throws the copy away, parks the conversation in handoff and shows
the chatbot's fallback message. Store and lock failures propagate and
nothing is saved.

The turn coroutine is shielded from caller cancellation, so a client
disconnect can drop the reply but never a half-written state.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

import structlog

from config.settings import EngineConfig, get_settings
from core.errors import (
    FlowDefinitionError,
    FlowCycleError,
    MissingStartNodeError,
    StateStoreError,
)
from core.events import EventSink, LoggingEventSink
from core.flow_loader import FlowRepository
from core.locks import ConversationLocks
from core.navigator import FlowNavigator
from core.processors import NodeContext, NodeProcessor
from core.templating import substitute
from core.variables import VariableStore
from models.schemas import (
    BotOutput,
    ChatbotRecord,
    ConversationState,
    ConversationStatus,
    FlowGraph,
    HistoryMessage,
    Node,
    NodeResult,
    TurnEvent,
    TurnEventType,
)

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class _Turn:
    """Working copy of one turn; discarded whole on a flow error."""
    state: ConversationState
    chatbot: ChatbotRecord
    variables: VariableStore
    outputs: list[BotOutput] = field(default_factory=list)
    events: list[TurnEvent] = field(default_factory=list)

    def event(self, event_type: TurnEventType, node_id: str = "", **payload: Any) -> None:
        self.events.append(TurnEvent(
            event_type=event_type,
            conversation_id=self.state.conversation_id,
            chatbot_id=self.state.chatbot_id,
            node_id=node_id,
            payload=payload,
        ))

    def say(self, output: BotOutput) -> None:
        self.outputs.append(output)
        self.state.history.append(HistoryMessage(sender="bot", content=output.content,
                                                 node_id=output.node_id))
        self.event(TurnEventType.MESSAGE_SENT, node_id=output.node_id, content=output.content)


class ConversationEngine:
    """
    Orchestrates processors and the navigator over persisted state.

    All collaborators are injected; anything omitted is built from
    settings with an in-process default.
    """

    def __init__(
        self,
        store,
        processor: Optional[NodeProcessor] = None,
        flows: Optional[FlowRepository] = None,
        navigator: Optional[FlowNavigator] = None,
        events: Optional[EventSink] = None,
        locks: Optional[ConversationLocks] = None,
        config: Optional[EngineConfig] = None,
    ):
        self._config = config or get_settings().engine
        self._store = store
        self._flows = flows or FlowRepository(store)
        self._processor = processor or NodeProcessor(
            ai_timeout_seconds=self._config.ai_timeout_seconds,
            reprompt_message=self._config.reprompt_message,
            history_window=self._config.ai_history_window,
        )
        self._navigator = navigator or FlowNavigator()
        self._events = events or LoggingEventSink()
        self._locks = locks or ConversationLocks(self._config.lock_timeout_seconds)

    @property
    def flows(self) -> FlowRepository:
        return self._flows

    # ══════════════════════════════════════════════════════════
    #  PUBLIC ENTRY POINTS
    # ══════════════════════════════════════════════════════════

    async def process_turn(
        self, conversation_id: str, chatbot_id: str, user_input: Optional[str] = None,
    ) -> list[BotOutput]:
        """
        Run one turn and return the bot's replies, in order.

        ``user_input=None`` opens a conversation (or re-presents the
        pending prompt of an active one) without consuming any answer.
        """
        task = asyncio.ensure_future(self._locked(conversation_id, self._run_turn,
                                                  conversation_id, chatbot_id, user_input))
        return await asyncio.shield(task)

    async def resume_conversation(
        self, conversation_id: str, node_id: Optional[str] = None,
    ) -> list[BotOutput]:
        """
        Hand a conversation back from a human agent.

        Continues from ``node_id`` when given, otherwise from the node after
        the one that requested the handoff.
        """
        task = asyncio.ensure_future(self._locked(conversation_id, self._run_resume,
                                                  conversation_id, node_id))
        return await asyncio.shield(task)

    async def _locked(self, conversation_id: str, fn, *args) -> list[BotOutput]:
        async with self._locks.hold(conversation_id):
            return await fn(*args)

    # ══════════════════════════════════════════════════════════
    #  TURN
    # ══════════════════════════════════════════════════════════

    async def _run_turn(
        self, conversation_id: str, chatbot_id: str, user_input: Optional[str],
    ) -> list[BotOutput]:
        chatbot = await self._flows.get_chatbot(chatbot_id)
        original = await self._load_state(conversation_id, chatbot_id)

        if original.status in (ConversationStatus.ENDED, ConversationStatus.HANDOFF):
            logger.info("turn_ignored", conversation_id=conversation_id,
                        status=original.status.value)
            return []

        turn = self._begin(original, chatbot, user_input)
        try:
            flow = self._flows.flow_for(chatbot)
            if original.status == ConversationStatus.NOT_STARTED:
                await self._start(turn, flow)
            else:
                await self._answer(turn, flow, user_input)
        except FlowDefinitionError as e:
            turn = self._fail(original, chatbot, user_input, e)

        return await self._commit(turn)

    async def _run_resume(self, conversation_id: str, node_id: Optional[str]) -> list[BotOutput]:
        original = await self._load_state(conversation_id, "")
        if original.status != ConversationStatus.HANDOFF:
            logger.info("resume_ignored", conversation_id=conversation_id,
                        status=original.status.value)
            return []

        chatbot = await self._flows.get_chatbot(original.chatbot_id)
        turn = self._begin(original, chatbot, None)
        turn.state.status = ConversationStatus.ACTIVE
        turn.state.handoff_reason = ""
        try:
            flow = self._flows.flow_for(chatbot)
            if node_id:
                await self._chain(turn, flow, node_id)
            elif original.active_node_id and original.active_node_id in flow.nodes:
                await self._follow(turn, flow, original.active_node_id, None)
            else:
                await self._start(turn, flow)
        except FlowDefinitionError as e:
            turn = self._fail(original, chatbot, None, e)

        logger.info("conversation_resumed", conversation_id=conversation_id,
                    node_id=turn.state.active_node_id)
        return await self._commit(turn)

    def _begin(self, original: ConversationState, chatbot: ChatbotRecord,
               user_input: Optional[str]) -> _Turn:
        state = original.model_copy(deep=True)
        turn = _Turn(state=state, chatbot=chatbot, variables=VariableStore(state.variables))
        if user_input is not None:
            state.history.append(HistoryMessage(sender="user", content=user_input,
                                                node_id=state.active_node_id or ""))
            turn.event(TurnEventType.MESSAGE_RECEIVED, node_id=state.active_node_id or "",
                       content=user_input)
        return turn

    async def _start(self, turn: _Turn, flow: FlowGraph) -> None:
        start = flow.start_node()
        if start is None:
            raise MissingStartNodeError(turn.chatbot.id)
        if turn.state.status == ConversationStatus.NOT_STARTED:
            turn.state.status = ConversationStatus.ACTIVE
            turn.event(TurnEventType.CONVERSATION_STARTED, node_id=start.id)
        await self._chain(turn, flow, start.id)

    async def _answer(self, turn: _Turn, flow: FlowGraph, user_input: Optional[str]) -> None:
        active_id = turn.state.active_node_id
        if active_id is None:
            # Active but never parked on a node: treat like a fresh start
            await self._start(turn, flow)
            return

        node = self._navigator.resolve(flow, active_id)
        if user_input is None:
            # Re-present the pending prompt without consuming anything
            result = await self._processor.process(node, None, self._context(turn, node))
            result.progress = None
            self._apply(turn, node, result)
            return

        result = await self._processor.process(node, user_input, self._context(turn, node))
        self._apply(turn, node, result)
        if result.retry:
            return
        if result.handoff:
            self._handoff(turn, node)
            return
        await self._follow(turn, flow, node.id, result.action)

    async def _follow(self, turn: _Turn, flow: FlowGraph, from_id: str,
                      action: Optional[str]) -> None:
        next_id = self._navigator.next(flow, from_id, action)
        if next_id is None:
            self._end(turn, from_id)
            return
        await self._chain(turn, flow, next_id, source=from_id)

    async def _chain(self, turn: _Turn, flow: FlowGraph, node_id: str, source: str = "") -> None:
        """Enter ``node_id`` and keep auto-advancing until input is needed or the path ends."""
        visited: list[str] = []
        current: Optional[str] = node_id
        while current is not None:
            if current in visited:
                raise FlowCycleError(current, visited)
            node = self._navigator.resolve(flow, current, source=source)
            visited.append(current)

            result = await self._processor.process(node, None, self._context(turn, node))
            self._apply(turn, node, result)

            if result.handoff:
                self._handoff(turn, node)
                return
            if result.is_interactive:
                turn.state.active_node_id = node.id
                return

            source = node.id
            current = self._navigator.next(flow, node.id, result.action)

        self._end(turn, source)

    # ══════════════════════════════════════════════════════════
    #  STATE TRANSITIONS
    # ══════════════════════════════════════════════════════════

    def _context(self, turn: _Turn, node: Node) -> NodeContext:
        return NodeContext(
            variables=turn.variables,
            conversation_id=turn.state.conversation_id,
            chatbot=turn.chatbot,
            history=list(turn.state.history),
            progress=turn.state.node_progress.get(node.id, 0),
        )

    def _apply(self, turn: _Turn, node: Node, result: NodeResult) -> None:
        for m in result.mutations:
            if m.aliased:
                turn.variables.set_with_aliases([m.key], m.value)
            else:
                turn.variables.set(m.key, m.value)
        if result.progress is not None:
            turn.state.node_progress[node.id] = result.progress
        for output in result.outputs:
            turn.say(output)
        for e in result.events:
            turn.event(TurnEventType(e["event_type"]), node_id=node.id, **e.get("payload", {}))

    def _handoff(self, turn: _Turn, node: Node) -> None:
        reason = ""
        cfg = getattr(node, "handoff_config", None)
        if cfg is not None:
            reason = cfg.reason
        turn.state.status = ConversationStatus.HANDOFF
        turn.state.active_node_id = node.id
        turn.state.handoff_reason = reason or "requested"
        logger.info("conversation_handoff", conversation_id=turn.state.conversation_id,
                    node_id=node.id, reason=turn.state.handoff_reason)

    def _end(self, turn: _Turn, last_node_id: str) -> None:
        text = turn.chatbot.closing_message or self._config.default_closing_message
        turn.say(BotOutput(node_id=last_node_id, content=substitute(text, turn.variables)))
        turn.state.status = ConversationStatus.ENDED
        turn.state.active_node_id = None
        turn.event(TurnEventType.CONVERSATION_ENDED, node_id=last_node_id)
        logger.info("conversation_ended", conversation_id=turn.state.conversation_id,
                    last_node_id=last_node_id)

    def _fail(self, original: ConversationState, chatbot: ChatbotRecord,
              user_input: Optional[str], error: FlowDefinitionError) -> _Turn:
        """Discard the turn's work and park the conversation with a human."""
        logger.error("flow_definition_error", conversation_id=original.conversation_id,
                     chatbot_id=chatbot.id, error_type=type(error).__name__,
                     node_id=error.node_id, error=str(error))
        turn = self._begin(original, chatbot, user_input)
        turn.state.status = ConversationStatus.HANDOFF
        turn.state.handoff_reason = "flow_error"
        turn.event(TurnEventType.FLOW_ERROR, node_id=error.node_id,
                   error_type=type(error).__name__, error=str(error))
        turn.event(TurnEventType.HANDOFF_REQUESTED, node_id=error.node_id, reason="flow_error")
        text = chatbot.fallback_message or self._config.default_fallback_message
        turn.say(BotOutput(node_id=original.active_node_id or "", content=text))
        return turn

    # ══════════════════════════════════════════════════════════
    #  PERSISTENCE
    # ══════════════════════════════════════════════════════════

    async def _load_state(self, conversation_id: str, chatbot_id: str) -> ConversationState:
        try:
            state = await self._store.load_state(conversation_id)
        except StateStoreError:
            raise
        except Exception as e:
            raise StateStoreError(f"Failed to load conversation {conversation_id}: {e}",
                                  conversation_id=conversation_id) from e

        if state is None:
            if not chatbot_id:
                raise StateStoreError(f"Conversation {conversation_id} not found",
                                      conversation_id=conversation_id)
            return ConversationState(conversation_id=conversation_id, chatbot_id=chatbot_id)
        if chatbot_id and state.chatbot_id != chatbot_id:
            logger.warning("conversation_chatbot_mismatch", conversation_id=conversation_id,
                           stored=state.chatbot_id, requested=chatbot_id)
        return state

    async def _commit(self, turn: _Turn) -> list[BotOutput]:
        state = turn.state
        state.variables = turn.variables.as_dict()
        state.turn_count += 1
        state.updated_at = _utcnow()
        limit = self._config.history_limit
        if limit and len(state.history) > limit:
            state.history = state.history[-limit:]

        try:
            await self._store.save_state(state)
        except StateStoreError:
            raise
        except Exception as e:
            raise StateStoreError(f"Failed to save conversation {state.conversation_id}: {e}",
                                  conversation_id=state.conversation_id) from e

        logger.info("turn_completed", conversation_id=state.conversation_id,
                    status=state.status.value, active_node_id=state.active_node_id,
                    outputs=len(turn.outputs), turn_count=state.turn_count)
        await self._emit(turn.events)
        return turn.outputs

    async def _emit(self, events: list[TurnEvent]) -> None:
        for event in events:
            try:
                await self._events.emit(event)
            except Exception as e:
                logger.warning("turn_event_emit_failed", event_type=event.event_type.value,
                               error=str(e))
