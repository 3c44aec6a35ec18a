"""
Error taxonomy for the flow engine.

Two families:
  - FlowDefinitionError: the authored flow is broken (missing start node,
    dangling edge, cycle, malformed payload). The engine rolls the turn
    back, parks the conversation in handoff and shows the fallback text.
  - EngineInfrastructureError: storage or locking failed. These propagate
    to the caller and nothing is persisted.

Recoverable per-turn problems (unmatched option, webhook failure, AI
timeout) never raise out of a node processor.
"""
from __future__ import annotations


class FlowError(Exception):
    """Base exception for everything raised by the engine."""

    def __init__(self, message: str, node_id: str = "", conversation_id: str = ""):
        self.node_id = node_id
        self.conversation_id = conversation_id
        super().__init__(message)


# ── Flow definition ───────────────────────────────────────────

class FlowDefinitionError(FlowError):
    pass


class MissingStartNodeError(FlowDefinitionError):
    def __init__(self, chatbot_id: str = ""):
        self.chatbot_id = chatbot_id
        super().__init__(f"Flow for chatbot {chatbot_id or '?'} has no start node")


class DanglingEdgeError(FlowDefinitionError):
    def __init__(self, node_id: str, source: str = ""):
        self.source = source
        super().__init__(f"Edge from {source or '?'} targets unknown node {node_id}", node_id=node_id)


class FlowCycleError(FlowDefinitionError):
    def __init__(self, node_id: str, path: list[str] = None):
        self.path = list(path or [])
        super().__init__(
            f"Node {node_id} revisited within one turn: {' -> '.join(self.path + [node_id])}",
            node_id=node_id,
        )


# ── Infrastructure ────────────────────────────────────────────

class EngineInfrastructureError(FlowError):
    retryable: bool = True


class StateStoreError(EngineInfrastructureError):
    pass


class LockTimeoutError(EngineInfrastructureError):
    def __init__(self, conversation_id: str, timeout: float):
        self.timeout = timeout
        super().__init__(
            f"Timed out after {timeout}s waiting for conversation {conversation_id}",
            conversation_id=conversation_id,
        )


class ChatbotNotFoundError(EngineInfrastructureError):
    retryable = False

    def __init__(self, chatbot_id: str):
        self.chatbot_id = chatbot_id
        super().__init__(f"Chatbot {chatbot_id} not found")


# ── Collaborator failures (handled inside processors) ─────────

class WebhookError(FlowError):
    def __init__(self, message: str, url: str = "", status: int = 0):
        self.url = url
        self.status = status
        super().__init__(message)


class WebhookTimeoutError(WebhookError):
    pass


class WebhookNetworkError(WebhookError):
    pass
