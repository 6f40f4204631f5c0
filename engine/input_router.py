"""
Input routing — decides where a call goes after a digit-collection turn.

Order of resolution for an ``input`` node:
  1. an outgoing edge whose handle (or ``data.digit``) equals the digits
  2. the node's own legacy destination table (see ``legacy_destination``)
  3. with no digits at all, an edge with the ``timeout`` handle
  4. retry the same node while attempts < maxAttempts
  5. a ``no_match`` / ``default`` edge
  6. otherwise the call ends

Attempts are counted per node and reset whenever the node is left.
"""
from __future__ import annotations

import re
from enum import Enum
from typing import Optional

import structlog

from engine.state_manager import ExecutionStateManager
from models.node_data import InputData
from models.schemas import FailureReason, Node, NodeType, Workflow

logger = structlog.get_logger()

FALLBACK_HANDLES = ("no_match", "default")

_PHONE = re.compile(r"^\+?[1-9]\d{1,14}$")


class RouteKind(str, Enum):
    NODE = "node"
    RETRY = "retry"
    DIAL = "dial"
    END = "end"


class RouteDecision:
    """Where to go next after collecting input."""

    def __init__(self, kind: RouteKind, target_node_id: str = None, number: str = None,
                 failure: FailureReason = FailureReason.MATCHED, matched_by: str = ""):
        self.kind = kind
        self.target_node_id = target_node_id
        self.number = number
        self.failure = failure
        self.matched_by = matched_by

    def __repr__(self):
        target = self.target_node_id or self.number or ""
        return f"<Route {self.kind.value} {target} ({self.matched_by or self.failure.value})>"


def legacy_destination(node: Node, digits: str, workflow: Workflow) -> Optional[RouteDecision]:
    """
    Secondary routing table kept on the input node itself (``digit`` +
    ``destination`` or an ``options`` list), used when no graph edge encodes
    the choice. A destination naming a node jumps there; a phone number with
    a transfer action dials it.
    """
    payload = node.payload
    if not isinstance(payload, InputData) or not digits:
        return None
    for option in payload.legacy_options():
        if option.digit != digits or not option.destination:
            continue
        if workflow.get_node(option.destination) is not None:
            return RouteDecision(RouteKind.NODE, target_node_id=option.destination,
                                 matched_by="legacy_destination")
        if option.action in ("", "transfer") and _PHONE.match(option.destination):
            return RouteDecision(RouteKind.DIAL, number=option.destination,
                                 matched_by="legacy_destination")
    return None


class InputRouter:

    def __init__(self, manager: ExecutionStateManager):
        self.manager = manager

    async def route(self, call_id: str, workflow: Workflow, node: Node,
                    digits: Optional[str]) -> RouteDecision:
        digits = (digits or "").strip() or None
        await self.manager.record_input(call_id, node.id, digits)
        attempt = self.manager.increment_attempts(call_id, node.id)

        if node.node_type != NodeType.INPUT:
            return self._route_passthrough(call_id, workflow, node, digits)

        decision = self._match(workflow, node, digits)
        if decision is not None:
            self._leave(call_id, node.id, decision.failure)
            logger.info("input_matched", call_id=call_id, node_id=node.id,
                        digits=digits, route=repr(decision))
            return decision

        failure = FailureReason.INVALID if digits else FailureReason.TIMEOUT
        self.manager.set_last_failure(call_id, node.id, failure)

        max_attempts = self._max_attempts(workflow, node)
        if attempt < max_attempts:
            logger.info("input_retry", call_id=call_id, node_id=node.id,
                        attempt=attempt, max_attempts=max_attempts, failure=failure.value)
            return RouteDecision(RouteKind.RETRY, target_node_id=node.id, failure=failure)

        self._leave(call_id, node.id, failure)
        for handle in FALLBACK_HANDLES:
            edge = workflow.edge_for_handle(node.id, handle)
            if edge is not None:
                logger.info("input_fallback", call_id=call_id, node_id=node.id,
                            handle=handle, target=edge.target)
                return RouteDecision(RouteKind.NODE, target_node_id=edge.target,
                                     failure=failure, matched_by=handle)

        logger.info("input_exhausted", call_id=call_id, node_id=node.id, failure=failure.value)
        return RouteDecision(RouteKind.END, failure=failure)

    def _match(self, workflow: Workflow, node: Node, digits: Optional[str]) -> Optional[RouteDecision]:
        if digits:
            for edge in workflow.outgoing(node.id):
                if edge.source_handle == digits or str(edge.data.get("digit", "")) == digits:
                    return RouteDecision(RouteKind.NODE, target_node_id=edge.target,
                                         matched_by="edge")
            return legacy_destination(node, digits, workflow)

        edge = workflow.edge_for_handle(node.id, "timeout")
        if edge is not None:
            return RouteDecision(RouteKind.NODE, target_node_id=edge.target,
                                 failure=FailureReason.TIMEOUT, matched_by="timeout")
        return None

    def _route_passthrough(self, call_id: str, workflow: Workflow, node: Node,
                           digits: Optional[str]) -> RouteDecision:
        """Audio nodes in wait mode: a matching digit edge, else move on."""
        self._leave(call_id, node.id, FailureReason.MATCHED if digits else FailureReason.TIMEOUT)
        edge = None
        if digits:
            edge = workflow.edge_for_handle(node.id, digits)
        edge = edge or workflow.default_edge(node.id)
        if edge is None:
            return RouteDecision(RouteKind.END)
        return RouteDecision(RouteKind.NODE, target_node_id=edge.target, matched_by="continue")

    def _leave(self, call_id: str, node_id: str, failure: FailureReason) -> None:
        self.manager.reset_attempts(call_id, node_id)
        self.manager.set_last_failure(call_id, node_id, failure)

    @staticmethod
    def _max_attempts(workflow: Workflow, node: Node) -> int:
        payload = node.payload
        configured = payload.effective_max_attempts if isinstance(payload, InputData) else None
        return max(1, configured or workflow.settings.max_attempts)
