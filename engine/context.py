"""
ExecutionContext — what a node handler is allowed to see and change.

Reads come straight from the live ExecutionState; writes go back through the
state manager so the state keeps a single owner.
"""
from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Any, Callable, Optional

from models.schemas import ExecutionState, FailureReason
from utils.conditions import resolve_variable

if TYPE_CHECKING:
    from engine.state_manager import ExecutionStateManager


class ExecutionContext:

    def __init__(self, state: ExecutionState, manager: "ExecutionStateManager",
                 clock: Callable[[], datetime]):
        self._state = state
        self._manager = manager
        self._clock = clock

    @property
    def call_id(self) -> str:
        return self._state.call_id

    @property
    def workflow_id(self) -> str:
        return self._state.workflow_id

    @property
    def caller(self) -> str:
        return self._state.caller

    @property
    def callee(self) -> str:
        return self._state.callee

    @property
    def variables(self) -> dict[str, Any]:
        """Read-only copy for substitution and condition evaluation."""
        return dict(self._state.variables)

    def now(self) -> datetime:
        return self._clock()

    # ── Variables ────────────────────────────────────────────

    def get_variable(self, name: str, default: Any = None) -> Any:
        value = resolve_variable(self._state.variables, name)
        return default if value is None else value

    def set_variable(self, name: str, value: Any) -> None:
        self._manager.set_variable(self.call_id, name, value)

    # ── Retry bookkeeping ────────────────────────────────────

    def attempts(self, node_id: str) -> int:
        return self._state.attempts_by_node.get(node_id, 0)

    def last_failure(self, node_id: str) -> Optional[FailureReason]:
        return self._state.last_failure_by_node.get(node_id)

    def previous_node_id(self, node_id: str) -> Optional[str]:
        return self._state.previous_node_id(node_id)
