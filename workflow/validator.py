"""
Graph Validator — static analysis of a workflow before it can go live.

Runs at authoring / activation time, never on the call path. Pure function of
the graph: the same workflow always yields the same issues in the same order.

Stages:
  1. node ids present and unique (fatal: later stages are skipped)
  2. edges reference known nodes
  3. entry node = first node with no incoming edges; other such nodes are orphans
  4. reachability from entry, including at least one reachable end node
  5. structural cycles (back edges in a DFS)
  6. per-type checks (input limits, conditional branches, audio content,
     duplicate outgoing handles)
"""
from __future__ import annotations

from enum import Enum
from typing import Optional

import structlog

from models.node_data import (
    AudioData, ConditionalData, InputData, MalformedNodeData, UnknownNodeData,
)
from models.schemas import NodeType, ValidationIssue, Workflow

logger = structlog.get_logger()

INPUT_TIMEOUT_RANGE = (1, 60)
INPUT_ATTEMPTS_RANGE = (1, 10)


class ValidationCode(str, Enum):
    NO_NODES = "NO_NODES"
    MISSING_NODE_ID = "MISSING_NODE_ID"
    DUPLICATE_NODE_ID = "DUPLICATE_NODE_ID"
    BROKEN_EDGE = "BROKEN_EDGE"
    NO_ENTRY = "NO_ENTRY"
    ORPHAN_NODE = "ORPHAN_NODE"
    UNREACHABLE_NODE = "UNREACHABLE_NODE"
    NO_END = "NO_END"
    UNREACHABLE_END = "UNREACHABLE_END"
    CYCLE_DETECTED = "CYCLE_DETECTED"
    UNKNOWN_NODE_TYPE = "UNKNOWN_NODE_TYPE"
    MALFORMED_NODE_DATA = "MALFORMED_NODE_DATA"
    MISSING_PROMPT = "MISSING_PROMPT"
    INVALID_TIMEOUT = "INVALID_TIMEOUT"
    INVALID_MAX_ATTEMPTS = "INVALID_MAX_ATTEMPTS"
    MISSING_BRANCH = "MISSING_BRANCH"
    MISSING_TEXT = "MISSING_TEXT"
    MISSING_AUDIO = "MISSING_AUDIO"
    DUPLICATE_SOURCE_HANDLE = "DUPLICATE_SOURCE_HANDLE"


def _issue(code: ValidationCode, message: str, node_id: str = None,
           edge_id: str = None) -> ValidationIssue:
    return ValidationIssue(code=code.value, message=message, node_id=node_id, edge_id=edge_id)


def validate_workflow(workflow: Workflow) -> list[ValidationIssue]:
    """Return every problem found in ``workflow``. Empty list means publishable."""
    issues: list[ValidationIssue] = []

    if not workflow.nodes:
        return [_issue(ValidationCode.NO_NODES, "Workflow has no nodes")]

    # 1. ids
    seen: set[str] = set()
    for index, node in enumerate(workflow.nodes):
        if not node.id:
            issues.append(_issue(ValidationCode.MISSING_NODE_ID,
                                 f"Node at position {index} has no id"))
        elif node.id in seen:
            issues.append(_issue(ValidationCode.DUPLICATE_NODE_ID,
                                 f"Node id '{node.id}' is used more than once", node.id))
        seen.add(node.id)
    if issues:
        return issues

    node_ids = [n.id for n in workflow.nodes]
    known = set(node_ids)

    # 2. edges
    adjacency: dict[str, list[tuple[str, str]]] = {nid: [] for nid in node_ids}
    incoming = {nid: 0 for nid in node_ids}
    for edge in workflow.edges:
        if edge.source not in known or edge.target not in known:
            missing = edge.source if edge.source not in known else edge.target
            issues.append(_issue(ValidationCode.BROKEN_EDGE,
                                 f"Edge '{edge.id}' references unknown node '{missing}'",
                                 edge_id=edge.id))
            continue
        adjacency[edge.source].append((edge.target, edge.id))
        incoming[edge.target] += 1

    # 3. entry
    roots = [nid for nid in node_ids if incoming[nid] == 0]
    entry: Optional[str] = roots[0] if roots else None
    if entry is None:
        issues.append(_issue(ValidationCode.NO_ENTRY,
                             "Every node has an incoming edge, so there is no entry node"))
    for nid in roots[1:]:
        issues.append(_issue(ValidationCode.ORPHAN_NODE,
                             f"Node '{nid}' has no incoming edges", nid))

    # 4. reachability
    end_ids = [n.id for n in workflow.nodes if n.type == NodeType.END.value]
    if entry is not None:
        reachable = _reachable_from(entry, adjacency)
        for nid in node_ids:
            if nid not in reachable:
                issues.append(_issue(ValidationCode.UNREACHABLE_NODE,
                                     f"Node '{nid}' cannot be reached from the entry node", nid))
        if not end_ids:
            issues.append(_issue(ValidationCode.NO_END, "Workflow has no end node"))
        elif not any(eid in reachable for eid in end_ids):
            issues.append(_issue(ValidationCode.UNREACHABLE_END,
                                 "No end node is reachable from the entry node"))
    elif not end_ids:
        issues.append(_issue(ValidationCode.NO_END, "Workflow has no end node"))

    # 5. cycles
    start_order = ([entry] if entry else []) + [nid for nid in node_ids if nid != entry]
    for source, target, edge_id in _back_edges(start_order, adjacency):
        issues.append(_issue(ValidationCode.CYCLE_DETECTED,
                             f"Edge '{edge_id}' from '{source}' to '{target}' closes a cycle",
                             node_id=target, edge_id=edge_id))

    # 6. per-type
    for node in workflow.nodes:
        issues.extend(_check_node(workflow, node, known))

    if issues:
        logger.info("workflow_validation_failed",
                    workflow_id=workflow.id, issues=len(issues))
    return issues


def _reachable_from(entry: str, adjacency: dict[str, list[tuple[str, str]]]) -> set[str]:
    visited = {entry}
    stack = [entry]
    while stack:
        current = stack.pop()
        for target, _ in adjacency[current]:
            if target not in visited:
                visited.add(target)
                stack.append(target)
    return visited


def _back_edges(start_order: list[str],
                adjacency: dict[str, list[tuple[str, str]]]) -> list[tuple[str, str, str]]:
    """Iterative DFS with an explicit recursion stack. Returns (source, target, edge_id)."""
    WHITE, GREY, BLACK = 0, 1, 2
    color = {nid: WHITE for nid in adjacency}
    found: list[tuple[str, str, str]] = []

    for root in start_order:
        if color[root] != WHITE:
            continue
        color[root] = GREY
        stack: list[tuple[str, int]] = [(root, 0)]
        while stack:
            node, idx = stack[-1]
            edges = adjacency[node]
            if idx < len(edges):
                stack[-1] = (node, idx + 1)
                target, edge_id = edges[idx]
                if color[target] == GREY:
                    found.append((node, target, edge_id))
                elif color[target] == WHITE:
                    color[target] = GREY
                    stack.append((target, 0))
            else:
                color[node] = BLACK
                stack.pop()
    return found


def _check_node(workflow: Workflow, node, known: set[str]) -> list[ValidationIssue]:
    issues: list[ValidationIssue] = []
    payload = node.payload
    settings = workflow.settings

    if isinstance(payload, UnknownNodeData):
        issues.append(_issue(ValidationCode.UNKNOWN_NODE_TYPE,
                             f"Node '{node.id}' has unknown type '{node.type}'", node.id))
    elif isinstance(payload, MalformedNodeData):
        issues.append(_issue(ValidationCode.MALFORMED_NODE_DATA,
                             f"Node '{node.id}' has invalid data: {payload.error}", node.id))

    elif isinstance(payload, InputData):
        prompt_ok = payload.has_prompt
        if payload.prompt_audio_node_id and payload.prompt_audio_node_id not in known:
            prompt_ok = bool(payload.spoken_text or payload.label or payload.audio_url)
        if not prompt_ok:
            issues.append(_issue(ValidationCode.MISSING_PROMPT,
                                 f"Input node '{node.id}' has no prompt", node.id))
        timeout = payload.effective_timeout
        timeout = settings.timeout if timeout is None else timeout
        lo, hi = INPUT_TIMEOUT_RANGE
        if not lo <= timeout <= hi:
            issues.append(_issue(ValidationCode.INVALID_TIMEOUT,
                                 f"Input node '{node.id}' timeout {timeout}s is outside {lo}-{hi}s",
                                 node.id))
        attempts = payload.effective_max_attempts
        attempts = settings.max_attempts if attempts is None else attempts
        lo, hi = INPUT_ATTEMPTS_RANGE
        if not lo <= attempts <= hi:
            issues.append(_issue(ValidationCode.INVALID_MAX_ATTEMPTS,
                                 f"Input node '{node.id}' maxAttempts {attempts} is outside {lo}-{hi}",
                                 node.id))

    elif isinstance(payload, ConditionalData):
        handles = {e.source_handle for e in workflow.outgoing(node.id)}
        for branch in ("true", "false"):
            if branch not in handles:
                issues.append(_issue(ValidationCode.MISSING_BRANCH,
                                     f"Conditional node '{node.id}' has no '{branch}' edge",
                                     node.id))

    elif isinstance(payload, AudioData):
        if payload.is_file_mode:
            if not (payload.audio_url or payload.audio_asset_id):
                issues.append(_issue(ValidationCode.MISSING_AUDIO,
                                     f"Audio node '{node.id}' has no audio file", node.id))
        elif not payload.spoken_text.strip():
            issues.append(_issue(ValidationCode.MISSING_TEXT,
                                 f"Audio node '{node.id}' has no text", node.id))

    counts: dict[str, int] = {}
    for edge in workflow.outgoing(node.id):
        if edge.source_handle:
            counts[edge.source_handle] = counts.get(edge.source_handle, 0) + 1
    for handle, count in counts.items():
        if count > 1:
            issues.append(_issue(ValidationCode.DUPLICATE_SOURCE_HANDLE,
                                 f"Node '{node.id}' has {count} edges for handle '{handle}'",
                                 node.id))
    return issues


class WorkflowValidator:
    """Object form of :func:`validate_workflow` for injection into services."""

    def validate(self, workflow: Workflow) -> list[ValidationIssue]:
        return validate_workflow(workflow)

    def is_valid(self, workflow: Workflow) -> bool:
        return not validate_workflow(workflow)
