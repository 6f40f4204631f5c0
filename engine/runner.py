"""
CallFlowEngine — runs one provider webhook turn against a live call.

Every public coroutine holds the call's lock for the whole turn:

    look up state → safety check (track_visit) → dispatch node → end if terminal

A call keeps executing the workflow version it started on; snapshots are
cached by (workflow id, version). A follow-up webhook for a call that is no
longer resident is acknowledged with an empty instruction and otherwise
ignored, which absorbs duplicate and out-of-order provider deliveries.
"""
from __future__ import annotations

from collections import OrderedDict
from typing import Any, Optional

import structlog

from config.settings import EngineConfig
from database.store_base import BaseIvrStore
from engine.dispatcher import NodeDispatcher
from engine.errors import NodeNotFoundError, WorkflowNotFoundError
from engine.input_router import InputRouter, RouteKind
from engine.state_manager import ExecutionStateManager
from models.instructions import Dial, VoiceInstruction
from models.node_data import EndData
from models.schemas import EndReason, Node, Workflow, WorkflowStatus

logger = structlog.get_logger()

# Provider call statuses that mean the call is over
TERMINAL_CALL_STATUSES = {
    "completed": EndReason.USER_HANGUP,
    "busy": EndReason.CALL_FAILED,
    "no-answer": EndReason.CALL_FAILED,
    "failed": EndReason.CALL_FAILED,
    "canceled": EndReason.CALL_FAILED,
}

NO_MATCH_MESSAGE = "Sorry, we did not receive a valid selection. Goodbye."
NOT_CONFIGURED_MESSAGE = "Sorry, this number is not configured to take calls right now. Goodbye."


class CallFlowEngine:

    def __init__(
        self,
        store: BaseIvrStore,
        manager: ExecutionStateManager,
        dispatcher: NodeDispatcher,
        router: InputRouter = None,
        post_call=None,
        config: EngineConfig = None,
    ):
        self.store = store
        self.manager = manager
        self.dispatcher = dispatcher
        self.router = router or InputRouter(manager)
        self.post_call = post_call
        self.config = config or manager.config
        self._snapshots: OrderedDict[tuple[str, int], Workflow] = OrderedDict()

    # ── Workflow snapshots ───────────────────────────────────

    def _cache(self, workflow: Workflow) -> Workflow:
        key = (workflow.id, workflow.version)
        self._snapshots[key] = workflow
        self._snapshots.move_to_end(key)
        while len(self._snapshots) > self.config.workflow_cache_size:
            self._snapshots.popitem(last=False)
        return workflow

    async def load_workflow(self, workflow_id: str, version: int = None) -> Workflow:
        if version is not None:
            cached = self._snapshots.get((workflow_id, version))
            if cached is not None:
                self._snapshots.move_to_end((workflow_id, version))
                return cached
            workflow = await self.store.get_workflow_version(workflow_id, version)
        else:
            workflow = await self.store.get_workflow(workflow_id)
        if workflow is None:
            raise WorkflowNotFoundError(workflow_id, version)
        return self._cache(workflow)

    async def resolve_inbound_workflow(self, workflow_id: str = None,
                                       callee: str = "") -> Optional[Workflow]:
        """Pick the active workflow for a new call, by id or by the dialed number."""
        workflow = None
        if workflow_id:
            workflow = await self.store.get_workflow(workflow_id)
        elif callee:
            workflow = await self.store.find_active_workflow(callee)
        if workflow is None or workflow.status != WorkflowStatus.ACTIVE:
            return None
        return self._cache(workflow)

    async def _pinned(self, call_id: str) -> Workflow:
        state = self.manager.get_state(call_id)
        return await self.load_workflow(state.workflow_id, state.workflow_version)

    # ── Turns ────────────────────────────────────────────────

    async def start_call(self, call_id: str, workflow_id: str = None,
                         caller: str = "", callee: str = "") -> VoiceInstruction:
        workflow = await self.resolve_inbound_workflow(workflow_id, callee)
        if workflow is None:
            logger.warning("inbound_workflow_not_found", call_id=call_id,
                           workflow_id=workflow_id, callee=callee)
            return VoiceInstruction.apology(NOT_CONFIGURED_MESSAGE, EndReason.ERROR)

        async with self.manager.table.lock(call_id):
            state = self.manager.get_state(call_id)
            if state is None:
                await self.manager.start_execution(workflow.id, call_id, caller, callee,
                                                   workflow=workflow)
                node = workflow.entry_node()
            else:
                # Redelivered welcome webhook: replay where the call is
                workflow = await self._pinned(call_id)
                node = workflow.get_node(state.current_node_id) if state.current_node_id else None
                node = node or workflow.entry_node()

            if node is None:
                return await self._fail(call_id, f"workflow '{workflow.id}' has no entry node")
            return await self._run_node(call_id, workflow, node)

    async def advance(self, call_id: str, workflow_id: str, node_id: str,
                      status: str = None, params: dict[str, Any] = None) -> VoiceInstruction:
        """
        ``next-step`` webhook. Without ``status`` run ``node_id``; with it,
        ``node_id`` has finished (recorded, dialed, dequeued) and the flow
        follows the matching outcome edge.
        """
        async with self.manager.table.lock(call_id):
            if self.manager.get_state(call_id) is None:
                logger.info("webhook_for_inactive_call", call_id=call_id, node_id=node_id)
                return VoiceInstruction.empty()

            workflow = await self._pinned(call_id)
            node = workflow.get_node(node_id)
            if node is None:
                return await self._fail(call_id, str(NodeNotFoundError(workflow.id, node_id)))

            if status:
                outcome = self._record_outcome(call_id, status, params or {})
                edge = None
                for handle in (outcome, status):
                    if handle:
                        edge = edge or workflow.edge_for_handle(node.id, handle)
                edge = edge or workflow.default_edge(node.id)
                if edge is None:
                    await self.manager.end_execution(call_id, EndReason.NORMAL)
                    return VoiceInstruction().hangup(EndReason.NORMAL)
                node = workflow.get_node(edge.target)
                if node is None:
                    return await self._fail(call_id, str(NodeNotFoundError(workflow.id, edge.target)))

            return await self._run_node(call_id, workflow, node)

    async def handle_input(self, call_id: str, workflow_id: str, node_id: str,
                           digits: Optional[str]) -> VoiceInstruction:
        """``handle-input`` webhook: route the collected digits (or their absence)."""
        async with self.manager.table.lock(call_id):
            if self.manager.get_state(call_id) is None:
                logger.info("webhook_for_inactive_call", call_id=call_id, node_id=node_id)
                return VoiceInstruction.empty()

            workflow = await self._pinned(call_id)
            node = workflow.get_node(node_id)
            if node is None:
                return await self._fail(call_id, str(NodeNotFoundError(workflow.id, node_id)))

            decision = await self.router.route(call_id, workflow, node, digits)

            if decision.kind == RouteKind.RETRY:
                return await self._run_node(call_id, workflow, node, user_input=digits)

            if decision.kind == RouteKind.NODE:
                target = workflow.get_node(decision.target_node_id)
                if target is None:
                    return await self._fail(call_id, str(NodeNotFoundError(workflow.id, decision.target_node_id)))
                return await self._run_node(call_id, workflow, target, user_input=digits)

            if decision.kind == RouteKind.DIAL:
                self.manager.set_variable(call_id, "transfer_destination", decision.number)
                logger.info("legacy_transfer", call_id=call_id, node_id=node.id, number=decision.number)
                # The call-status webhook ends the execution once the dial is over
                return VoiceInstruction().add(Dial(number=decision.number))

            await self.manager.end_execution(call_id, EndReason.NO_MATCH)
            return VoiceInstruction().say(NO_MATCH_MESSAGE).hangup(EndReason.NO_MATCH)

    async def handle_call_status(self, call_id: str, call_status: str) -> bool:
        """Provider status callback. Ends the execution when the call is over."""
        reason = TERMINAL_CALL_STATUSES.get((call_status or "").lower())
        if reason is None:
            return False
        async with self.manager.table.lock(call_id):
            state = self.manager.get_state(call_id)
            if state is None:
                return False
            if reason == EndReason.USER_HANGUP and state.variables.get("transfer_destination"):
                reason = EndReason.NORMAL
            ended = await self.manager.end_execution(call_id, reason)
        return ended is not None

    async def stop(self, call_id: str, reason: EndReason = EndReason.STOPPED) -> bool:
        return await self.manager.stop_execution(call_id, reason)

    # ── Internals (call lock held) ───────────────────────────

    async def _run_node(self, call_id: str, workflow: Workflow, node: Node,
                        user_input: str = None) -> VoiceInstruction:
        check = await self.manager.track_visit(call_id, node.id, node.type, user_input)
        if not check:
            if check.reason == "not_found":
                return VoiceInstruction.empty()
            return VoiceInstruction.apology(self.config.apology_message, EndReason(check.reason))

        context = self.manager.context_for(call_id)
        try:
            instruction = await self.dispatcher.execute(node, context, workflow)
        except Exception as e:
            logger.error("node_execution_failed", call_id=call_id, workflow_id=workflow.id,
                         node_id=node.id, node_type=node.type, error=str(e))
            await self.manager.end_execution(call_id, EndReason.ERROR, error=str(e))
            return VoiceInstruction.apology(self.config.apology_message, EndReason.ERROR)

        if instruction.terminal:
            if self.post_call is not None and isinstance(node.payload, EndData) and node.payload.post_call:
                self.post_call.schedule(node.payload.post_call, self._summary(call_id, workflow))
            await self.manager.end_execution(call_id, instruction.end_reason or EndReason.NORMAL)
        return instruction

    def _summary(self, call_id: str, workflow: Workflow) -> dict[str, Any]:
        state = self.manager.get_state(call_id)
        return {
            "call_id": call_id,
            "workflow_id": workflow.id,
            "workflow_name": workflow.name,
            "caller": state.caller if state else "",
            "callee": state.callee if state else "",
            "variables": dict(state.variables) if state else {},
        }

    def _record_outcome(self, call_id: str, status: str, params: dict[str, Any]) -> Optional[str]:
        """Store provider callback data and return the outcome handle to follow."""
        if status == "recorded":
            url = params.get("RecordingUrl")
            if url:
                self.manager.set_variable(call_id, "recording_url", url)
            return "recorded"
        if status == "dialed":
            dial_status = params.get("DialCallStatus")
            if dial_status:
                self.manager.set_variable(call_id, "dial_status", dial_status)
            return dial_status
        if status == "dequeued":
            queue_result = params.get("QueueResult")
            if queue_result:
                self.manager.set_variable(call_id, "queue_result", queue_result)
            return queue_result
        return None

    async def _fail(self, call_id: str, message: str) -> VoiceInstruction:
        logger.error("execution_failed", call_id=call_id, error=message)
        await self.manager.end_execution(call_id, EndReason.ERROR, error=message)
        return VoiceInstruction.apology(self.config.apology_message, EndReason.ERROR)
