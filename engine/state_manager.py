"""
Execution State Manager — owns every live call execution.

Responsibilities:
  - create the in-memory ExecutionState and its durable ExecutionLog row
  - enforce the safety limits before every node dispatch
    (wall-clock timeout, total node executions, runtime loop detection)
  - append visits to the durable log in the same order as in memory
  - finalize the log, drop the live state and notify lead capture on end
  - sweep executions whose webhooks stopped arriving

Locking contract: callers that process a webhook hold ``table.lock(call_id)``
for the whole turn. ``stop_execution`` and ``sweep_stale`` take the same lock
themselves. ``end_execution`` never locks and is idempotent (pop first).
"""
from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any, Callable, Optional

import structlog

from config.settings import EngineConfig
from database.store_base import BaseIvrStore
from engine.context import ExecutionContext
from engine.errors import ExecutionNotFoundError, WorkflowNotFoundError
from engine.events import EventBus, EXECUTION_ENDED, EXECUTION_STARTED, NODE_VISITED
from engine.live_table import LiveExecutionTable
from models.schemas import (
    END_REASON_STATUS, EndReason, ExecutionState, FailureReason, VisitRecord, Workflow,
)

logger = structlog.get_logger()

_SAFETY_REASONS = {EndReason.TIMEOUT, EndReason.MAX_NODES, EndReason.LOOP_DETECTED}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TrackResult:
    """Outcome of a safety check before dispatching a node."""

    def __init__(self, allowed: bool, reason: Optional[str] = None, message: str = ""):
        self.allowed = allowed
        self.reason = reason
        self.message = message

    def __bool__(self):
        return self.allowed

    def __repr__(self):
        if self.allowed:
            return "<Allowed>"
        return f"<Blocked {self.reason}>"


class ExecutionStateManager:

    def __init__(
        self,
        store: BaseIvrStore,
        table: LiveExecutionTable = None,
        events: EventBus = None,
        lead_capture=None,
        config: EngineConfig = None,
        clock: Callable[[], datetime] = None,
    ):
        self.store = store
        self.table = table or LiveExecutionTable()
        self.events = events or EventBus()
        self.lead_capture = lead_capture
        self.config = config or EngineConfig()
        self.clock = clock or _utcnow

    # ── Lifecycle ────────────────────────────────────────────

    async def start_execution(
        self, workflow_id: str, call_id: str, caller: str = "", callee: str = "",
        workflow: Workflow = None,
    ) -> dict[str, Any]:
        """Create live state and a running log row. Repeated starts return the existing log."""
        existing = self.table.get(call_id)
        if existing is not None:
            logger.info("execution_already_running", call_id=call_id, workflow_id=existing.workflow_id)
            log = await self.store.get_execution_log(existing.log_id)
            return log or {"id": existing.log_id, "call_id": call_id, "status": "running"}

        if workflow is None:
            workflow = await self.store.get_workflow(workflow_id)
        if workflow is None:
            raise WorkflowNotFoundError(workflow_id)

        now = self.clock()
        log = await self.store.create_execution_log({
            "call_id": call_id,
            "workflow_id": workflow.id,
            "workflow_name": workflow.name,
            "workflow_version": workflow.version,
            "status": "running",
            "started_at": now.isoformat(),
            "caller": caller,
            "callee": callee,
        })
        state = ExecutionState(
            call_id=call_id,
            workflow_id=workflow.id,
            workflow_version=workflow.version,
            workflow_name=workflow.name,
            caller=caller,
            callee=callee,
            started_at=now,
            log_id=log["id"],
        )
        self.table.put(state)
        logger.info("execution_started", call_id=call_id,
                    workflow_id=workflow.id, version=workflow.version)
        await self.events.emit(EXECUTION_STARTED, {
            "call_id": call_id, "workflow_id": workflow.id, "log_id": log["id"],
        })
        return log

    async def track_visit(
        self, call_id: str, node_id: str, node_type: str, user_input: str = None,
    ) -> TrackResult:
        """Safety checks, then record the visit. Ends the execution on a violation."""
        state = self.table.get(call_id)
        if state is None:
            return TrackResult(False, "not_found", "No active execution")

        cfg = self.config
        if state.elapsed_seconds(self.clock()) > cfg.execution_timeout_s:
            await self.end_execution(call_id, EndReason.TIMEOUT)
            return TrackResult(False, EndReason.TIMEOUT.value, "Execution timeout exceeded")

        state.node_execution_count += 1
        if state.node_execution_count > cfg.max_node_executions:
            await self.end_execution(call_id, EndReason.MAX_NODES)
            return TrackResult(False, EndReason.MAX_NODES.value, "Maximum node executions exceeded")

        recent = state.visited_nodes[-cfg.loop_window:]
        if sum(1 for v in recent if v.node_id == node_id) >= cfg.loop_threshold:
            state.loop_iterations += 1
            if state.loop_iterations > cfg.max_loop_iterations:
                await self.end_execution(call_id, EndReason.LOOP_DETECTED)
                return TrackResult(False, EndReason.LOOP_DETECTED.value, "Loop iteration limit exceeded")

        visit = VisitRecord(node_id=node_id, node_type=node_type,
                            timestamp=self.clock(), input=user_input)
        state.visited_nodes.append(visit)
        state.current_node_id = node_id

        try:
            await self.store.append_visit(state.log_id, visit.model_dump(mode="json"))
        except Exception as e:
            logger.error("execution_log_append_failed", call_id=call_id, node_id=node_id, error=str(e))

        await self.events.emit(NODE_VISITED, {
            "call_id": call_id, "node_id": node_id, "node_type": node_type,
            "node_execution_count": state.node_execution_count,
            "loop_iterations": state.loop_iterations,
        })
        return TrackResult(True)

    async def end_execution(
        self, call_id: str, reason: EndReason = EndReason.NORMAL, error: str = None,
    ) -> Optional[dict[str, Any]]:
        """Finalize the log and drop live state. Returns None if already ended."""
        reason = EndReason(reason)
        state = self.table.pop(call_id)
        if state is None:
            return None

        now = self.clock()
        status = END_REASON_STATUS.get(reason, END_REASON_STATUS[EndReason.ERROR])
        updates = {
            "status": status.value,
            "reason": reason.value,
            "error_message": error,
            "ended_at": now.isoformat(),
            "duration_s": round(state.elapsed_seconds(now), 3),
            "variables": state.variables,
            "node_execution_count": state.node_execution_count,
            "loop_iterations": state.loop_iterations,
            "transfer_destination": state.variables.get("transfer_destination"),
            "recording_url": state.variables.get("recording_url"),
        }
        try:
            await self.store.update_execution_log(state.log_id, **updates)
        except Exception as e:
            logger.error("execution_log_finalize_failed", call_id=call_id, error=str(e))

        log_event = logger.warning if reason in _SAFETY_REASONS or reason == EndReason.ERROR else logger.info
        log_event("execution_ended", call_id=call_id, workflow_id=state.workflow_id,
                  reason=reason.value, status=status.value, error=error,
                  nodes=state.node_execution_count)

        record = {
            "log_id": state.log_id,
            "call_id": call_id,
            "workflow_id": state.workflow_id,
            "caller": state.caller,
            "callee": state.callee,
            "status": status.value,
            "reason": reason.value,
            "last_inputs": [
                {"node_id": v.node_id, "input": v.input}
                for v in state.visited_nodes if v.input is not None
            ][-5:],
            "recording_url": updates["recording_url"],
            "variables": dict(state.variables),
        }
        await self._notify_lead_capture(record)
        await self.events.emit(EXECUTION_ENDED, record)
        return {**record, **updates}

    async def _notify_lead_capture(self, record: dict[str, Any]) -> None:
        if self.lead_capture is None:
            return
        try:
            await asyncio.wait_for(self.lead_capture.capture(record),
                                   timeout=self.config.side_effect_timeout_s)
        except Exception as e:
            logger.warning("lead_capture_failed", call_id=record["call_id"],
                           error=str(e) or type(e).__name__)

    async def stop_execution(self, call_id: str, reason: EndReason = EndReason.STOPPED) -> bool:
        """Idempotent force-stop. Waits for any in-flight turn of the same call."""
        async with self.table.lock(call_id):
            ended = await self.end_execution(call_id, reason)
        return ended is not None

    async def sweep_stale(self) -> list[str]:
        """End every resident execution older than the timeout."""
        limit = self.config.execution_timeout_s
        ended = []
        for state in self.table.snapshot():
            if state.elapsed_seconds(self.clock()) <= limit:
                continue
            async with self.table.lock(state.call_id):
                # Compare-and-end: a webhook may have ended or replaced it meanwhile
                current = self.table.get(state.call_id)
                if current is state and current.elapsed_seconds(self.clock()) > limit:
                    await self.end_execution(state.call_id, EndReason.TIMEOUT)
                    ended.append(state.call_id)
        if ended:
            logger.info("stale_executions_swept", count=len(ended))
        return ended

    # ── Variables & bookkeeping ──────────────────────────────

    def _require(self, call_id: str) -> ExecutionState:
        state = self.table.get(call_id)
        if state is None:
            raise ExecutionNotFoundError(call_id)
        return state

    def set_variable(self, call_id: str, name: str, value: Any) -> None:
        self._require(call_id).variables[name] = value

    def get_variable(self, call_id: str, name: str, default: Any = None) -> Any:
        state = self.table.get(call_id)
        if state is None:
            return default
        return state.variables.get(name, default)

    def increment_attempts(self, call_id: str, node_id: str) -> int:
        state = self._require(call_id)
        state.attempts_by_node[node_id] = state.attempts_by_node.get(node_id, 0) + 1
        return state.attempts_by_node[node_id]

    def reset_attempts(self, call_id: str, node_id: str) -> None:
        self._require(call_id).attempts_by_node.pop(node_id, None)

    def set_last_failure(self, call_id: str, node_id: str, reason: FailureReason) -> None:
        self._require(call_id).last_failure_by_node[node_id] = reason

    async def record_input(self, call_id: str, node_id: str, user_input: Optional[str]) -> None:
        state = self._require(call_id)
        try:
            await self.store.append_user_input(state.log_id, {
                "node_id": node_id,
                "input": user_input,
                "timestamp": self.clock().isoformat(),
            })
        except Exception as e:
            logger.error("execution_log_input_failed", call_id=call_id, error=str(e))

    # ── Queries ──────────────────────────────────────────────

    def get_state(self, call_id: str) -> Optional[ExecutionState]:
        return self.table.get(call_id)

    def context_for(self, call_id: str) -> ExecutionContext:
        return ExecutionContext(self._require(call_id), self, self.clock)

    def list_active(self) -> list[ExecutionState]:
        return sorted(self.table.snapshot(), key=lambda s: s.started_at)


class StaleExecutionSweeper:
    """
    Background task that periodically force-ends executions whose
    provider webhooks stopped arriving.
    """

    def __init__(self, manager: ExecutionStateManager, interval_seconds: int = 3600):
        self.manager = manager
        self.interval = interval_seconds
        self._task: Optional[asyncio.Task] = None

    async def start_background(self) -> asyncio.Task:
        self._task = asyncio.create_task(self._run())
        return self._task

    async def stop(self):
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _run(self):
        logger.info("stale_sweeper_started", interval=self.interval)
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self.manager.sweep_stale()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("stale_sweep_error", error=str(e))
