"""
Flow Loader: turns the builder's saved JSON into a validated FlowGraph.

Accepted shapes:
  - builder:   {"nodes": [{"id", "type", "position", "data": {...}}], "edges": [...]}
               (``data.nodeType`` wins over ``type`` when both are present)
  - canonical: {"nodes": {id: {"kind": ..., ...}} | [...], "edges": [...]}

Validation runs once per chatbot version; every error found is logged
before the first one is raised so authors can fix them in one pass.
"""
from __future__ import annotations

from typing import Any, Optional

import structlog
from pydantic import TypeAdapter, ValidationError

from core.errors import (
    ChatbotNotFoundError,
    DanglingEdgeError,
    FlowDefinitionError,
    MissingStartNodeError,
)
from models.schemas import ChatbotRecord, Edge, FlowGraph, Node, NodeKind

logger = structlog.get_logger()

_NODE_ADAPTER: TypeAdapter = TypeAdapter(Node)

_BUILDER_ONLY_KEYS = ("data", "position", "type", "nodeType", "selected", "dragging", "width", "height")


def _option_text(option: Any) -> str:
    if isinstance(option, dict):
        return str(option.get("label") or option.get("text") or option.get("value") or "")
    return str(option)


def normalize_node(raw: dict[str, Any]) -> dict[str, Any]:
    """Flatten a builder node into the canonical ``{"id", "kind", ...}`` shape."""
    data = raw.get("data") or {}
    if not isinstance(data, dict):
        node_id = str(raw.get("id", ""))
        raise FlowDefinitionError(f"Node {node_id or '?'} has non-object data", node_id=node_id)
    kind = raw.get("kind") or data.get("nodeType") or raw.get("type") or ""
    merged = {**data}
    merged.update({k: v for k, v in raw.items() if k not in _BUILDER_ONLY_KEYS})
    for k in _BUILDER_ONLY_KEYS:
        merged.pop(k, None)
    merged["kind"] = str(kind).strip().lower()
    if merged.get("options"):
        merged["options"] = [_option_text(o) for o in merged["options"]]
    # Builder panels write null for untouched fields
    return {k: v for k, v in merged.items() if v is not None}


def parse_flow(raw: dict[str, Any], chatbot_id: str = "") -> FlowGraph:
    """Parse raw flow JSON into a FlowGraph and validate it."""
    if not isinstance(raw, dict):
        raise FlowDefinitionError(f"Flow for chatbot {chatbot_id or '?'} is not an object")

    raw_nodes = raw.get("nodes") or []
    if isinstance(raw_nodes, dict):
        raw_nodes = [{"id": nid, **n} if isinstance(n, dict) else n for nid, n in raw_nodes.items()]
    raw_edges = raw.get("edges") or []
    if not isinstance(raw_nodes, list) or not isinstance(raw_edges, list):
        raise FlowDefinitionError("Flow nodes and edges must be lists")

    nodes: dict[str, Node] = {}
    for rn in raw_nodes:
        if not isinstance(rn, dict):
            raise FlowDefinitionError(f"Node entry is not an object: {rn!r:.40}")
        node_id = str(rn.get("id", ""))
        if not node_id:
            raise FlowDefinitionError("Node without an id")
        if node_id in nodes:
            raise FlowDefinitionError(f"Duplicate node id {node_id}", node_id=node_id)
        try:
            nodes[node_id] = _NODE_ADAPTER.validate_python(normalize_node(rn))
        except ValidationError as e:
            logger.error("flow_node_invalid", chatbot_id=chatbot_id, node_id=node_id,
                         errors=e.error_count())
            raise FlowDefinitionError(
                f"Invalid payload for node {node_id}: {e.errors()[0].get('msg', '')}",
                node_id=node_id,
            ) from e

    edges: list[Edge] = []
    for raw_edge in raw_edges:
        if not isinstance(raw_edge, dict):
            raise FlowDefinitionError(f"Edge entry is not an object: {raw_edge!r:.40}")
        try:
            edges.append(Edge.model_validate(raw_edge))
        except ValidationError as e:
            raise FlowDefinitionError(f"Invalid edge {raw_edge.get('id', '?')}") from e

    flow = FlowGraph(nodes=nodes, edges=edges)
    validate_flow(flow, chatbot_id)
    return flow


def find_flow_problems(flow: FlowGraph) -> tuple[list[str], list[str]]:
    """Return (errors, warnings) for a parsed flow."""
    errors: list[str] = []
    warnings: list[str] = []

    starts = [n.id for n in flow.nodes.values() if n.kind == NodeKind.START.value]
    if not starts:
        errors.append("missing_start")
    elif len(starts) > 1:
        errors.append(f"multiple_start:{','.join(starts)}")

    for e in flow.edges:
        if e.source not in flow.nodes:
            errors.append(f"dangling_source:{e.source}")
        if e.target not in flow.nodes:
            errors.append(f"dangling_target:{e.source}->{e.target}")

    for node in flow.nodes.values():
        if node.kind != NodeKind.CONDITIONAL.value:
            continue
        tags = {e.condition for e in flow.outgoing(node.id) if e.condition is not None}
        for c in node.conditions:
            if c.action and c.action not in tags:
                warnings.append(f"unrouted_action:{node.id}:{c.action}")

    return errors, warnings


def validate_flow(flow: FlowGraph, chatbot_id: str = "") -> None:
    """Raise the matching FlowDefinitionError subclass for the first problem found."""
    errors, warnings = find_flow_problems(flow)
    for w in warnings:
        logger.warning("flow_validation_warning", chatbot_id=chatbot_id, warning=w)
    if not errors:
        return

    logger.error("flow_validation_failed", chatbot_id=chatbot_id, errors=errors)
    first = errors[0]
    if first == "missing_start":
        raise MissingStartNodeError(chatbot_id)
    if first.startswith("dangling_target:"):
        source, target = first.split(":", 1)[1].split("->", 1)
        raise DanglingEdgeError(target, source=source)
    if first.startswith("dangling_source:"):
        raise DanglingEdgeError(first.split(":", 1)[1])
    raise FlowDefinitionError(f"Invalid flow for chatbot {chatbot_id or '?'}: {first}")


class FlowRepository:
    """
    Loads chatbots from the record store and caches their parsed flows.

    The cache is keyed by chatbot id and record version, so saving a new
    version of a flow invalidates the previous parse automatically.
    """

    def __init__(self, store):
        self._store = store
        self._cache: dict[str, tuple[int, FlowGraph]] = {}

    async def get_chatbot(self, chatbot_id: str) -> ChatbotRecord:
        record: Optional[ChatbotRecord] = await self._store.get_chatbot(chatbot_id)
        if record is None:
            raise ChatbotNotFoundError(chatbot_id)
        return record

    def flow_for(self, record: ChatbotRecord) -> FlowGraph:
        cached = self._cache.get(record.id)
        if cached and cached[0] == record.version:
            return cached[1]
        flow = parse_flow(record.flow, chatbot_id=record.id)
        self._cache[record.id] = (record.version, flow)
        logger.info("flow_loaded", chatbot_id=record.id, version=record.version,
                    nodes=len(flow.nodes), edges=len(flow.edges))
        return flow

    async def load(self, chatbot_id: str) -> tuple[ChatbotRecord, FlowGraph]:
        record = await self.get_chatbot(chatbot_id)
        return record, self.flow_for(record)

    def invalidate(self, chatbot_id: str) -> None:
        self._cache.pop(chatbot_id, None)
