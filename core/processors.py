"""
Node Processors: per-kind behaviour for every node in a flow.

NodeProcessor.process(node, user_input, ctx) is called twice for an
interactive node:
  - on arrival, with ``user_input=None``, to emit its prompt
  - on the next turn, with the user's text, to consume the answer

Non-interactive nodes are only ever called on arrival.

Processors never write to the variable store themselves. They return a
NodeResult listing the mutations to apply, so the engine can discard a
turn's work wholesale if a later node turns out to be broken.

Recoverable problems (unmatched option, AI or webhook failure) are
handled here with a re-prompt or fallback text and never raise.
"""
from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from typing import Any, Optional

import structlog

from core.ai import AIGenerator, FallbackGenerator, fallback_response
from core.errors import WebhookError
from core.templating import substitute, substitute_all
from core.variables import VariableStore, is_name_like
from core.webhook import WebhookClient
from models.schemas import (
    ActionNode,
    AIResponseNode,
    AppointmentNode,
    ApiWebhookNode,
    BotOutput,
    ChatbotRecord,
    ConditionalNode,
    HistoryMessage,
    HumanHandoffNode,
    LeadCaptureNode,
    MessageNode,
    Node,
    NodeKind,
    NodeResult,
    QuestionNode,
    StartNode,
    SurveyNode,
    TurnEventType,
    VariableMutation,
)
from utils.conditions import first_matching_action, get_nested_value

logger = structlog.get_logger()

DEFAULT_QUESTION_PROMPT = "Please choose an option:"
DEFAULT_REPROMPT = (
    "I didn't understand your selection. Please choose one of the available options."
)
DEFAULT_LEAD_PROMPT = "Please provide your information:"
DEFAULT_APPOINTMENT_PROMPT = (
    "I can help you book an appointment. Please let me know your preferred time."
)
DEFAULT_HANDOFF_MESSAGE = "Let me connect you with a human agent who can help you."
DEFAULT_SURVEY_REPROMPT = "Please choose one of the available options."

INTERACTIVE_KINDS = frozenset({
    NodeKind.QUESTION.value,
    NodeKind.LEAD_CAPTURE.value,
    NodeKind.AI_RESPONSE.value,
    NodeKind.APPOINTMENT.value,
    NodeKind.SURVEY.value,
})


@dataclass
class NodeContext:
    """Everything a processor may read while handling one node."""
    variables: VariableStore
    conversation_id: str = ""
    chatbot: Optional[ChatbotRecord] = None
    history: list[HistoryMessage] = field(default_factory=list)
    progress: int = 0                           # this node's cursor in node_progress


def _event(event_type: TurnEventType, **payload: Any) -> dict[str, Any]:
    return {"event_type": event_type.value, "payload": payload}


def match_option(user_input: str, options: list[str]) -> Optional[str]:
    """
    Pick the option the user meant.

    Case-insensitive containment in either direction, first option wins.
    A bare number selects that 1-based option when no text matched.
    Blank input never matches.
    """
    answer = (user_input or "").strip().lower()
    if not answer:
        return None
    for opt in options:
        o = opt.strip().lower()
        if o and (answer in o or o in answer):
            return opt
    if answer.isdigit():
        index = int(answer)
        if 1 <= index <= len(options):
            return options[index - 1]
    return None


def _as_scalar(value: Any) -> Any:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    return json.dumps(value, default=str)


class NodeProcessor:
    """
    Dispatches a node to its ``_process_<kind>`` handler.

    Collaborators are injected so tests can pass fakes; the processor
    itself holds no per-conversation state.
    """

    def __init__(
        self,
        ai: Optional[AIGenerator] = None,
        webhooks: Optional[WebhookClient] = None,
        ai_timeout_seconds: float = 15.0,
        reprompt_message: str = DEFAULT_REPROMPT,
        history_window: int = 10,
    ):
        self._ai = ai or FallbackGenerator()
        self._webhooks = webhooks
        self._ai_timeout = ai_timeout_seconds
        self._reprompt = reprompt_message
        self._history_window = history_window

    @staticmethod
    def is_interactive(node: Node) -> bool:
        if node.kind == NodeKind.SURVEY.value:
            return bool(node.survey_config.questions)
        return node.kind in INTERACTIVE_KINDS

    async def process(self, node: Node, user_input: Optional[str], ctx: NodeContext) -> NodeResult:
        """Run ``node``; ``user_input`` is None when the node is being entered."""
        kind = node.kind
        if kind == NodeKind.START.value:
            return self._process_start(node)
        elif kind == NodeKind.MESSAGE.value:
            return self._process_message(node, ctx)
        elif kind == NodeKind.QUESTION.value:
            return self._process_question(node, user_input, ctx)
        elif kind == NodeKind.LEAD_CAPTURE.value:
            return self._process_lead_capture(node, user_input, ctx)
        elif kind == NodeKind.CONDITIONAL.value:
            return self._process_conditional(node, ctx)
        elif kind == NodeKind.AI_RESPONSE.value:
            return await self._process_ai_response(node, user_input, ctx)
        elif kind == NodeKind.API_WEBHOOK.value:
            return await self._process_api_webhook(node, ctx)
        elif kind == NodeKind.APPOINTMENT.value:
            return self._process_appointment(node, user_input, ctx)
        elif kind == NodeKind.ACTION.value:
            return self._process_action(node, ctx)
        elif kind == NodeKind.HUMAN_HANDOFF.value:
            return self._process_human_handoff(node, ctx)
        elif kind == NodeKind.SURVEY.value:
            return self._process_survey(node, user_input, ctx)
        # The node union is closed; reaching here means a new kind was added without a handler
        raise NotImplementedError(f"No processor for node kind {kind}")

    # ── start / message ───────────────────────────────

    def _process_start(self, node: StartNode) -> NodeResult:
        return NodeResult()

    def _process_message(self, node: MessageNode, ctx: NodeContext) -> NodeResult:
        text = substitute(node.content, ctx.variables)
        if not text.strip():
            return NodeResult()
        return NodeResult(outputs=[BotOutput(node_id=node.id, content=text)])

    # ── question ──────────────────────────────────────

    def _process_question(
        self, node: QuestionNode, user_input: Optional[str], ctx: NodeContext,
    ) -> NodeResult:
        options = substitute_all(node.options, ctx.variables)

        if user_input is None:
            prompt = substitute(node.content or DEFAULT_QUESTION_PROMPT, ctx.variables)
            return NodeResult(
                outputs=[BotOutput(node_id=node.id, content=prompt, options=options)],
                is_interactive=True,
            )

        if not options:
            # Free-text question: any non-blank answer is accepted
            answer = user_input.strip()
            if not answer:
                return self._reprompt_result(node.id, options, user_input)
            return NodeResult(mutations=self._answer_mutations(node.id, node.variable, answer, user_input))

        selected = match_option(user_input, options)
        if selected is None:
            logger.info("question_option_unmatched", node_id=node.id,
                        conversation_id=ctx.conversation_id)
            return self._reprompt_result(node.id, options, user_input)

        return NodeResult(
            mutations=self._answer_mutations(node.id, node.variable, selected, user_input),
            action=selected,
        )

    def _answer_mutations(self, node_id: str, variable: str, value: str,
                          user_input: str) -> list[VariableMutation]:
        mutations = [
            VariableMutation(key=node_id, value=value),
            VariableMutation(key="selected_option", value=value),
            VariableMutation(key="last_user_input", value=user_input),
        ]
        if variable:
            mutations.append(VariableMutation(key=variable, value=value,
                                              aliased=is_name_like(variable)))
        return mutations

    def _reprompt_result(self, node_id: str, options: list[str], user_input: str) -> NodeResult:
        return NodeResult(
            outputs=[BotOutput(node_id=node_id, content=self._reprompt, options=options)],
            retry=True,
            is_interactive=True,
            events=[_event(TurnEventType.FALLBACK_TRIGGERED, reason="unmatched_option",
                           user_input=user_input)],
        )

    # ── lead_capture ──────────────────────────────────

    def _process_lead_capture(
        self, node: LeadCaptureNode, user_input: Optional[str], ctx: NodeContext,
    ) -> NodeResult:
        field_spec = node.fields[0] if node.fields else None

        if user_input is None or (not user_input.strip() and (field_spec is None or field_spec.required)):
            if node.content:
                prompt = node.content
            elif field_spec is not None:
                prompt = f"Please provide your {field_spec.label or field_spec.name}:"
            else:
                prompt = DEFAULT_LEAD_PROMPT
            return NodeResult(
                outputs=[BotOutput(node_id=node.id, content=substitute(prompt, ctx.variables))],
                is_interactive=True,
                retry=user_input is not None,
            )

        field_name = field_spec.name if field_spec is not None else "user_input"
        logger.info("lead_field_captured", node_id=node.id, field=field_name,
                    conversation_id=ctx.conversation_id)
        return NodeResult(
            mutations=[
                VariableMutation(key=field_name, value=user_input, aliased=is_name_like(field_name)),
                VariableMutation(key="last_user_input", value=user_input),
            ],
            events=[_event(TurnEventType.GOAL_ACHIEVED, goal="lead_captured", field=field_name)],
        )

    # ── conditional ───────────────────────────────────

    def _process_conditional(self, node: ConditionalNode, ctx: NodeContext) -> NodeResult:
        action = first_matching_action(node.conditions, ctx.variables)
        logger.debug("conditional_evaluated", node_id=node.id, action=action)
        return NodeResult(action=action)

    # ── ai_response ───────────────────────────────────

    async def _process_ai_response(
        self, node: AIResponseNode, user_input: Optional[str], ctx: NodeContext,
    ) -> NodeResult:
        if user_input is None:
            outputs = []
            if node.content:
                outputs.append(BotOutput(node_id=node.id, content=substitute(node.content, ctx.variables)))
            return NodeResult(outputs=outputs, is_interactive=True)

        prompt = node.system_prompt or node.content
        history = ctx.history
        if history and history[-1].sender == "user" and history[-1].content == user_input:
            # The current message is passed separately as user_input
            history = history[:-1]
        history = history[-self._history_window:] if self._history_window else []
        events: list[dict[str, Any]] = []
        try:
            result = await asyncio.wait_for(
                self._ai.generate(prompt, user_input, history, ctx.variables.as_dict()),
                timeout=self._ai_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("ai_generation_timeout", node_id=node.id, timeout=self._ai_timeout,
                           conversation_id=ctx.conversation_id)
            result = fallback_response(user_input)
        except Exception as e:
            logger.error("ai_generation_failed", node_id=node.id, error=str(e),
                         conversation_id=ctx.conversation_id)
            result = fallback_response(user_input)

        if result.fallback:
            events.append(_event(TurnEventType.FALLBACK_TRIGGERED, reason="ai_fallback",
                                 intent=result.intent))

        return NodeResult(
            outputs=[BotOutput(node_id=node.id, content=substitute(result.text, ctx.variables))],
            mutations=[
                VariableMutation(key="last_user_input", value=user_input),
                VariableMutation(key="last_intent", value=result.intent),
                VariableMutation(key="last_confidence", value=float(result.confidence)),
            ],
            events=events,
        )

    # ── api_webhook ───────────────────────────────────

    def _webhook_body(self, template: Optional[str], variables: VariableStore) -> Any:
        if template is None:
            return variables.as_dict()
        rendered = substitute(template, variables)
        try:
            return json.loads(rendered)
        except (json.JSONDecodeError, ValueError):
            return rendered

    @staticmethod
    def _webhook_failed(outputs: list[BotOutput], url: str, reason: str) -> NodeResult:
        return NodeResult(
            outputs=outputs,
            mutations=[VariableMutation(key="webhook_status", value="failed")],
            events=[_event(TurnEventType.WEBHOOK_FAILED, url=url, reason=reason)],
        )

    async def _process_api_webhook(self, node: ApiWebhookNode, ctx: NodeContext) -> NodeResult:
        outputs = []
        if node.content:
            outputs.append(BotOutput(node_id=node.id, content=substitute(node.content, ctx.variables)))

        cfg = node.api_config
        if cfg is None or not cfg.url or self._webhooks is None:
            logger.warning("webhook_not_configured", node_id=node.id)
            return NodeResult(
                outputs=outputs,
                mutations=[VariableMutation(key="webhook_status", value="failed")],
                events=[_event(TurnEventType.WEBHOOK_FAILED, reason="not_configured")],
            )

        url = substitute(cfg.url, ctx.variables)
        headers = {k: substitute(v, ctx.variables) for k, v in cfg.headers.items()}
        body = self._webhook_body(cfg.body, ctx.variables)

        try:
            response = await asyncio.wait_for(
                self._webhooks.request(url, cfg.method, headers, body, cfg.timeout),
                timeout=cfg.timeout,
            )
        except (WebhookError, asyncio.TimeoutError) as e:
            reason = type(e).__name__
            logger.warning("webhook_failed", node_id=node.id, url=url, reason=reason,
                           error=str(e), conversation_id=ctx.conversation_id)
            return self._webhook_failed(outputs, url, reason)
        except Exception as e:
            reason = type(e).__name__
            logger.error("webhook_unexpected_error", node_id=node.id, url=url, reason=reason,
                         error=str(e), conversation_id=ctx.conversation_id)
            return self._webhook_failed(outputs, url, reason)

        mutations = [VariableMutation(key="webhook_status", value=response.status)]
        if cfg.response_variable:
            value = _as_scalar(response.body)
            if value is not None:
                mutations.append(VariableMutation(key=cfg.response_variable, value=value))
        for variable, path in cfg.response_mapping.items():
            value = _as_scalar(get_nested_value(response.body, path))
            if value is not None:
                mutations.append(VariableMutation(key=variable, value=value,
                                                  aliased=is_name_like(variable)))
        return NodeResult(outputs=outputs, mutations=mutations)

    # ── appointment ───────────────────────────────────

    def _process_appointment(
        self, node: AppointmentNode, user_input: Optional[str], ctx: NodeContext,
    ) -> NodeResult:
        if user_input is None or not user_input.strip():
            prompt = substitute(node.content or DEFAULT_APPOINTMENT_PROMPT, ctx.variables)
            return NodeResult(
                outputs=[BotOutput(node_id=node.id, content=prompt)],
                is_interactive=True,
                retry=user_input is not None,
            )
        key = node.variable or "appointment_time"
        return NodeResult(
            mutations=[
                VariableMutation(key=key, value=user_input.strip()),
                VariableMutation(key="appointment_requested", value=True),
                VariableMutation(key="last_user_input", value=user_input),
            ],
            events=[_event(TurnEventType.GOAL_ACHIEVED, goal="appointment_requested",
                           preferred_time=user_input.strip())],
        )

    # ── action ────────────────────────────────────────

    def _process_action(self, node: ActionNode, ctx: NodeContext) -> NodeResult:
        outputs = []
        if node.content:
            outputs.append(BotOutput(node_id=node.id, content=substitute(node.content, ctx.variables)))
        action_type = node.action_type or "custom"
        return NodeResult(
            outputs=outputs,
            mutations=[VariableMutation(key="last_action", value=action_type)],
            events=[_event(TurnEventType.GOAL_ACHIEVED, goal="action_executed",
                           action_type=action_type)],
        )

    # ── human_handoff ─────────────────────────────────

    def _process_human_handoff(self, node: HumanHandoffNode, ctx: NodeContext) -> NodeResult:
        text = substitute(node.content or DEFAULT_HANDOFF_MESSAGE, ctx.variables)
        cfg = node.handoff_config
        return NodeResult(
            outputs=[BotOutput(node_id=node.id, content=text)],
            handoff=True,
            events=[_event(TurnEventType.HANDOFF_REQUESTED, reason=cfg.reason or "requested",
                           priority=cfg.priority, department=cfg.department)],
        )

    # ── survey ────────────────────────────────────────

    def _process_survey(
        self, node: SurveyNode, user_input: Optional[str], ctx: NodeContext,
    ) -> NodeResult:
        cfg = node.survey_config
        questions = cfg.questions

        if not questions:
            outputs = []
            if cfg.title or node.content:
                outputs.append(BotOutput(node_id=node.id,
                                         content=substitute(cfg.title or node.content, ctx.variables)))
            return NodeResult(outputs=outputs)

        if user_input is None:
            # Mid-survey re-presentation shows the pending question, not the first
            index = ctx.progress if 0 < ctx.progress < len(questions) else 0
            pending = questions[index]
            intro = cfg.title or node.content
            text = f"{intro}\n\n{pending.question}" if intro and index == 0 else pending.question
            return NodeResult(
                outputs=[BotOutput(node_id=node.id, content=substitute(text, ctx.variables),
                                   options=substitute_all(pending.options, ctx.variables))],
                is_interactive=True,
                progress=index,
            )

        index = min(ctx.progress, len(questions) - 1)
        current = questions[index]
        options = substitute_all(current.options, ctx.variables)
        if options:
            answer = match_option(user_input, options)
        else:
            answer = user_input.strip() or None

        if answer is None:
            return NodeResult(
                outputs=[BotOutput(node_id=node.id, content=DEFAULT_SURVEY_REPROMPT, options=options)],
                retry=True,
                is_interactive=True,
                progress=index,
                events=[_event(TurnEventType.FALLBACK_TRIGGERED, reason="unmatched_survey_answer",
                               question=index)],
            )

        key = current.variable or f"survey_{node.id}_{index}"
        mutations = [
            VariableMutation(key=key, value=answer),
            VariableMutation(key="last_user_input", value=user_input),
        ]

        if index + 1 < len(questions):
            nxt = questions[index + 1]
            return NodeResult(
                outputs=[BotOutput(node_id=node.id, content=substitute(nxt.question, ctx.variables),
                                   options=substitute_all(nxt.options, ctx.variables))],
                mutations=mutations,
                retry=True,
                is_interactive=True,
                progress=index + 1,
            )

        return NodeResult(
            mutations=mutations,
            progress=len(questions),
            events=[_event(TurnEventType.GOAL_ACHIEVED, goal="survey_completed",
                           survey=cfg.title or node.id, answers=len(questions))],
        )
