"""
Core data models for the BotForge flow engine.

These are the universal types shared across all modules: the flow graph
authored in the builder, the per-conversation runtime state, and the
results node processors hand back to the engine.

Node payloads are a closed tagged union on ``kind`` so every payload is
validated once, when a flow is loaded, instead of being probed for
optional keys on every turn.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


Scalar = Union[bool, int, float, str]


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class ChannelType(str, Enum):
    WEB = "web"
    WHATSAPP = "whatsapp"
    FACEBOOK = "facebook"


class NodeKind(str, Enum):
    START = "start"
    MESSAGE = "message"
    QUESTION = "question"
    LEAD_CAPTURE = "lead_capture"
    CONDITIONAL = "conditional"
    AI_RESPONSE = "ai_response"
    API_WEBHOOK = "api_webhook"
    APPOINTMENT = "appointment"
    ACTION = "action"
    HUMAN_HANDOFF = "human_handoff"
    SURVEY = "survey"


class ConversationStatus(str, Enum):
    NOT_STARTED = "not_started"
    ACTIVE = "active"
    HANDOFF = "handoff"                # parked until a human hands it back
    ENDED = "ended"


class TurnEventType(str, Enum):
    CONVERSATION_STARTED = "conversation_started"
    MESSAGE_RECEIVED = "message_received"
    MESSAGE_SENT = "message_sent"
    FALLBACK_TRIGGERED = "fallback_triggered"
    GOAL_ACHIEVED = "goal_achieved"
    HANDOFF_REQUESTED = "handoff_requested"
    WEBHOOK_FAILED = "webhook_failed"
    FLOW_ERROR = "flow_error"
    CONVERSATION_ENDED = "conversation_ended"


# ──────────────────────────────────────────────────────────────
#  Node payload pieces
# ──────────────────────────────────────────────────────────────

class _BuilderModel(BaseModel):
    """Accepts both snake_case and the builder's camelCase keys."""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


class FieldSpec(_BuilderModel):
    name: str = "user_input"
    type: str = "text"                        # text | email | phone | number
    required: bool = True
    label: str = ""


class ConditionSpec(_BuilderModel):
    variable: str
    operator: str = "equals"
    value: Any = ""
    action: str = ""                          # matched against edge.condition


class ApiConfig(_BuilderModel):
    url: str = ""
    method: str = "POST"
    headers: dict[str, str] = {}
    body: Optional[str] = None                # template; None sends the variables as JSON
    timeout: float = 30.0                     # seconds
    response_variable: str = ""
    response_mapping: dict[str, str] = {}     # variable → dotted path in the response


class SurveyQuestion(_BuilderModel):
    question: str
    type: str = "text"
    options: list[str] = []
    variable: str = ""


class SurveyConfig(_BuilderModel):
    title: str = ""
    questions: list[SurveyQuestion] = []


class HandoffConfig(_BuilderModel):
    reason: str = ""
    priority: str = "medium"
    department: str = "support"


# ──────────────────────────────────────────────────────────────
#  Nodes: tagged union on ``kind``
# ──────────────────────────────────────────────────────────────

class _NodeBase(_BuilderModel):
    id: str
    label: str = ""
    content: str = ""


class StartNode(_NodeBase):
    kind: Literal["start"] = "start"


class MessageNode(_NodeBase):
    kind: Literal["message"] = "message"


class QuestionNode(_NodeBase):
    kind: Literal["question"] = "question"
    options: list[str] = []
    variable: str = ""


class LeadCaptureNode(_NodeBase):
    kind: Literal["lead_capture"] = "lead_capture"
    fields: list[FieldSpec] = []


class ConditionalNode(_NodeBase):
    kind: Literal["conditional"] = "conditional"
    conditions: list[ConditionSpec] = []


class AIResponseNode(_NodeBase):
    kind: Literal["ai_response"] = "ai_response"
    system_prompt: str = ""


class ApiWebhookNode(_NodeBase):
    kind: Literal["api_webhook"] = "api_webhook"
    api_config: Optional[ApiConfig] = None


class AppointmentNode(_NodeBase):
    kind: Literal["appointment"] = "appointment"
    variable: str = ""


class ActionNode(_NodeBase):
    kind: Literal["action"] = "action"
    action_type: str = ""


class HumanHandoffNode(_NodeBase):
    kind: Literal["human_handoff"] = "human_handoff"
    handoff_config: HandoffConfig = Field(default_factory=HandoffConfig)


class SurveyNode(_NodeBase):
    kind: Literal["survey"] = "survey"
    survey_config: SurveyConfig = Field(default_factory=SurveyConfig)


Node = Annotated[
    Union[
        StartNode, MessageNode, QuestionNode, LeadCaptureNode, ConditionalNode,
        AIResponseNode, ApiWebhookNode, AppointmentNode, ActionNode,
        HumanHandoffNode, SurveyNode,
    ],
    Field(discriminator="kind"),
]


class Edge(_BuilderModel):
    id: str = Field(default_factory=lambda: f"e_{uuid.uuid4().hex[:8]}")
    source: str
    target: str
    condition: Optional[str] = None           # None → default edge

    @field_validator("condition", mode="before")
    @classmethod
    def _blank_is_default(cls, v: Any) -> Optional[str]:
        if v is None:
            return None
        v = str(v)
        return v if v.strip() else None


class FlowGraph(BaseModel):
    """A validated, immutable-per-turn flow graph."""
    nodes: dict[str, Node] = {}
    edges: list[Edge] = []

    def get(self, node_id: str) -> Optional[Node]:
        return self.nodes.get(node_id)

    def start_node(self) -> Optional[Node]:
        return next((n for n in self.nodes.values() if n.kind == NodeKind.START.value), None)

    def outgoing(self, node_id: str) -> list[Edge]:
        return [e for e in self.edges if e.source == node_id]


# ──────────────────────────────────────────────────────────────
#  Processor results
# ──────────────────────────────────────────────────────────────

class BotOutput(BaseModel):
    """A single bot utterance produced during a turn."""
    node_id: str
    content: str
    options: list[str] = []

    def to_wire(self) -> dict[str, Any]:
        return {"nodeId": self.node_id, "content": self.content, "options": self.options}


class VariableMutation(BaseModel):
    key: str
    value: Scalar
    aliased: bool = False                     # fan out to the name aliases


class NodeResult(BaseModel):
    """What a node processor hands back to the engine."""
    outputs: list[BotOutput] = []
    mutations: list[VariableMutation] = []
    is_interactive: bool = False              # wait for the user before advancing
    action: Optional[str] = None              # resolved action for the navigator
    retry: bool = False                       # stay on this node, do not advance
    handoff: bool = False
    progress: Optional[int] = None            # per-node cursor (survey question index)
    events: list[dict[str, Any]] = []         # {"event_type": ..., "payload": {...}}


# ──────────────────────────────────────────────────────────────
#  Conversation runtime state
# ──────────────────────────────────────────────────────────────

class HistoryMessage(BaseModel):
    sender: Literal["user", "bot"]
    content: str
    node_id: str = ""
    timestamp: datetime = Field(default_factory=_utcnow)


class ConversationState(BaseModel):
    conversation_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    chatbot_id: str
    channel: ChannelType = ChannelType.WEB
    user_identifier: str = ""                 # phone, PSID or widget session id
    status: ConversationStatus = ConversationStatus.NOT_STARTED
    active_node_id: Optional[str] = None
    variables: dict[str, Scalar] = {}
    turn_count: int = 0
    node_progress: dict[str, int] = {}        # node_id → cursor
    history: list[HistoryMessage] = []
    handoff_reason: str = ""
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class TurnEvent(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    event_type: TurnEventType
    conversation_id: str
    chatbot_id: str
    node_id: str = ""
    payload: dict[str, Any] = {}
    timestamp: datetime = Field(default_factory=_utcnow)


# ──────────────────────────────────────────────────────────────
#  Chatbot record: the persisted builder output
# ──────────────────────────────────────────────────────────────

class ChatbotRecord(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str
    description: str = ""
    flow: dict[str, Any] = {}                 # raw builder JSON, parsed by the flow loader
    fallback_message: str = ""
    closing_message: str = ""
    ai_model: str = ""
    is_published: bool = False
    channels: dict[str, dict[str, Any]] = {}  # channel → credentials
    version: int = 1
    updated_at: datetime = Field(default_factory=_utcnow)
