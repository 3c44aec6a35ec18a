"""
Flow Navigator: picks the next node from a node's outgoing edges.

Resolution order, first match wins:
  1. the edge whose ``condition`` equals the resolved action
     (a conditional node's matched action, or a question's chosen option)
  2. the first edge with no condition (the default edge)
  3. nothing: the conversation ends
"""
from __future__ import annotations

from typing import Optional

import structlog

from core.errors import DanglingEdgeError
from models.schemas import Edge, FlowGraph, Node

logger = structlog.get_logger()


class FlowNavigator:
    """Stateless; one instance is shared by every conversation."""

    def select_edge(
        self, flow: FlowGraph, from_node_id: str, resolved_action: Optional[str] = None,
    ) -> Optional[Edge]:
        edges = flow.outgoing(from_node_id)
        if resolved_action is not None:
            wanted = resolved_action.strip().lower()
            for e in edges:
                if e.condition is not None and e.condition.strip().lower() == wanted:
                    return e
        return next((e for e in edges if e.condition is None), None)

    def next(
        self, flow: FlowGraph, from_node_id: str, resolved_action: Optional[str] = None,
    ) -> Optional[str]:
        """Return the id of the next node, or None when the flow ends here."""
        edge = self.select_edge(flow, from_node_id, resolved_action)
        if edge is None:
            logger.debug("flow_path_ended", node_id=from_node_id, action=resolved_action)
            return None
        return edge.target

    def resolve(self, flow: FlowGraph, node_id: str, source: str = "") -> Node:
        """Look a node up, failing loudly when an edge points nowhere."""
        node = flow.get(node_id)
        if node is None:
            raise DanglingEdgeError(node_id, source=source)
        return node
