"""Error types raised inside the execution engine."""
from __future__ import annotations


class EngineError(Exception):
    """Base class for engine failures."""


class WorkflowNotFoundError(EngineError):
    def __init__(self, workflow_id: str, version: int = None):
        self.workflow_id = workflow_id
        self.version = version
        suffix = f" (version {version})" if version is not None else ""
        super().__init__(f"Workflow '{workflow_id}'{suffix} not found")


class NodeNotFoundError(EngineError):
    def __init__(self, workflow_id: str, node_id: str):
        self.workflow_id = workflow_id
        self.node_id = node_id
        super().__init__(f"Node '{node_id}' not found in workflow '{workflow_id}'")


class NodeExecutionError(EngineError):
    """A node handler could not produce an instruction (bad data, handler bug)."""

    def __init__(self, node_id: str, node_type: str, message: str):
        self.node_id = node_id
        self.node_type = node_type
        super().__init__(f"Node '{node_id}' ({node_type}): {message}")


class ExecutionNotFoundError(EngineError):
    def __init__(self, call_id: str):
        self.call_id = call_id
        super().__init__(f"No active execution for call '{call_id}'")
