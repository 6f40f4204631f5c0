"""
Core data models for the IVR flow engine.
These are the universal types shared across all modules.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr
from pydantic.alias_generators import to_camel

from models.node_data import NodeData, parse_node_data


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class NodeType(str, Enum):
    GREETING = "greeting"
    AUDIO = "audio"
    INPUT = "input"
    TRANSFER = "transfer"
    VOICEMAIL = "voicemail"
    REPEAT = "repeat"
    QUEUE = "queue"
    CONDITIONAL = "conditional"
    SET_VARIABLE = "set_variable"
    API_CALL = "api_call"
    SMS = "sms"
    AI_ASSISTANT = "ai_assistant"
    END = "end"


class WorkflowStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    INACTIVE = "inactive"
    ARCHIVED = "archived"


class ExecutionStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMEOUT = "timeout"
    ABANDONED = "abandoned"


class EndReason(str, Enum):
    NORMAL = "normal"
    TIMEOUT = "timeout"
    MAX_NODES = "max_nodes"
    LOOP_DETECTED = "loop_detected"
    ERROR = "error"
    STOPPED = "stopped"
    USER_HANGUP = "user_hangup"
    CALL_FAILED = "call_failed"
    NO_MATCH = "no_match"


class FailureReason(str, Enum):
    MATCHED = "matched"
    INVALID = "invalid"
    TIMEOUT = "timeout"


# Status written to the durable log for each way an execution can end
END_REASON_STATUS: dict[EndReason, ExecutionStatus] = {
    EndReason.NORMAL: ExecutionStatus.COMPLETED,
    EndReason.NO_MATCH: ExecutionStatus.COMPLETED,
    EndReason.TIMEOUT: ExecutionStatus.TIMEOUT,
    EndReason.MAX_NODES: ExecutionStatus.FAILED,
    EndReason.LOOP_DETECTED: ExecutionStatus.FAILED,
    EndReason.ERROR: ExecutionStatus.FAILED,
    EndReason.STOPPED: ExecutionStatus.ABANDONED,
    EndReason.USER_HANGUP: ExecutionStatus.ABANDONED,
    EndReason.CALL_FAILED: ExecutionStatus.ABANDONED,
}


# ──────────────────────────────────────────────────────────────
#  Workflow graph
# ──────────────────────────────────────────────────────────────

class _GraphModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="allow",
    )


class Node(_GraphModel):
    """One step of a call flow. ``payload`` is the typed view of ``data``."""
    id: str
    type: str
    data: dict[str, Any] = Field(default_factory=dict)
    position: Any = None

    _payload: Optional[NodeData] = PrivateAttr(default=None)

    def model_post_init(self, __context: Any) -> None:
        self._payload = parse_node_data(self.type, self.data)

    @property
    def payload(self) -> NodeData:
        return self._payload

    @property
    def node_type(self) -> Optional[NodeType]:
        try:
            return NodeType(self.type)
        except ValueError:
            return None


class Edge(_GraphModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex[:12])
    source: str
    target: str
    source_handle: Optional[str] = None
    target_handle: Optional[str] = None
    data: dict[str, Any] = Field(default_factory=dict)


class WorkflowSettings(_GraphModel):
    voice: Optional[str] = None
    language: Optional[str] = None
    timeout: int = 10
    max_attempts: int = 3
    invalid_input_message: str = "Invalid selection. Please try again."
    timeout_message: str = "We did not receive your selection."


# Edge handles with routing meaning for auto-advancing nodes
DEFAULT_HANDLES = (None, "", "default", "next", "output")


class Workflow(_GraphModel):
    """A versioned call-flow graph. Never mutated while a call runs on it."""
    id: str = Field(default_factory=lambda: uuid.uuid4().hex[:16])
    name: str = ""
    description: str = ""
    prompt_key: Optional[str] = None          # inbound number / key used to pick the flow
    status: WorkflowStatus = WorkflowStatus.DRAFT
    version: int = 1
    nodes: list[Node] = Field(default_factory=list)
    edges: list[Edge] = Field(default_factory=list)
    settings: WorkflowSettings = Field(default_factory=WorkflowSettings)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    _node_index: dict[str, Node] = PrivateAttr(default_factory=dict)

    def model_post_init(self, __context: Any) -> None:
        self._node_index = {n.id: n for n in self.nodes}

    def get_node(self, node_id: str) -> Optional[Node]:
        if len(self._node_index) != len(self.nodes):
            self._node_index = {n.id: n for n in self.nodes}
        return self._node_index.get(node_id)

    def outgoing(self, node_id: str) -> list[Edge]:
        return [e for e in self.edges if e.source == node_id]

    def incoming_counts(self) -> dict[str, int]:
        counts = {n.id: 0 for n in self.nodes}
        for e in self.edges:
            if e.target in counts:
                counts[e.target] += 1
        return counts

    def entry_node(self) -> Optional[Node]:
        """First node with no incoming edges, in authoring order."""
        counts = self.incoming_counts()
        for n in self.nodes:
            if counts.get(n.id) == 0:
                return n
        return None

    def edge_for_handle(self, node_id: str, handle: str) -> Optional[Edge]:
        for e in self.outgoing(node_id):
            if e.source_handle == handle:
                return e
        return None

    def default_edge(self, node_id: str) -> Optional[Edge]:
        """The unqualified outgoing edge, or the only edge if there is one."""
        edges = self.outgoing(node_id)
        for e in edges:
            if e.source_handle in DEFAULT_HANDLES:
                return e
        return edges[0] if len(edges) == 1 else None


# ──────────────────────────────────────────────────────────────
#  Execution
# ──────────────────────────────────────────────────────────────

class VisitRecord(BaseModel):
    node_id: str
    node_type: str
    timestamp: datetime = Field(default_factory=_utcnow)
    input: Optional[str] = None


class ExecutionState(BaseModel):
    """Live per-call state. Owned by the state manager."""
    call_id: str
    workflow_id: str
    workflow_version: int = 1
    workflow_name: str = ""
    caller: str = ""
    callee: str = ""
    started_at: datetime = Field(default_factory=_utcnow)
    current_node_id: Optional[str] = None
    visited_nodes: list[VisitRecord] = Field(default_factory=list)
    variables: dict[str, Any] = Field(default_factory=dict)
    attempts_by_node: dict[str, int] = Field(default_factory=dict)
    last_failure_by_node: dict[str, FailureReason] = Field(default_factory=dict)
    loop_iterations: int = 0
    node_execution_count: int = 0
    log_id: Optional[str] = None

    def previous_node_id(self, exclude: str) -> Optional[str]:
        """Most recent visited node other than ``exclude``."""
        for visit in reversed(self.visited_nodes):
            if visit.node_id != exclude:
                return visit.node_id
        return None

    def elapsed_seconds(self, now: Optional[datetime] = None) -> float:
        now = now or _utcnow()
        return (now - self.started_at).total_seconds()


class ValidationIssue(BaseModel):
    code: str
    message: str
    node_id: Optional[str] = None
    edge_id: Optional[str] = None

