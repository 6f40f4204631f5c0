"""Call-flow execution: safety-checked state, node dispatch, input routing."""
from engine.dispatcher import NodeDispatcher
from engine.errors import (
    EngineError, ExecutionNotFoundError, NodeExecutionError, NodeNotFoundError,
    WorkflowNotFoundError,
)
from engine.events import EventBus, EXECUTION_ENDED, EXECUTION_STARTED, NODE_VISITED
from engine.input_router import InputRouter, RouteDecision, RouteKind
from engine.live_table import LiveExecutionTable
from engine.runner import CallFlowEngine
from engine.state_manager import ExecutionStateManager, StaleExecutionSweeper, TrackResult

__all__ = [
    "CallFlowEngine", "NodeDispatcher", "InputRouter", "RouteDecision", "RouteKind",
    "ExecutionStateManager", "StaleExecutionSweeper", "TrackResult",
    "LiveExecutionTable", "EventBus", "EXECUTION_STARTED", "NODE_VISITED", "EXECUTION_ENDED",
    "EngineError", "WorkflowNotFoundError", "NodeNotFoundError", "NodeExecutionError",
    "ExecutionNotFoundError",
]
