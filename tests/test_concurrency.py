"""Webhook turns for one call run one at a time; different calls never wait on each other."""
import asyncio

import pytest

from backend.connector import ApiCallResult
from config.settings import TelephonyConfig
from engine.dispatcher import NodeDispatcher
from engine.runner import CallFlowEngine
from models.instructions import Gather, Hangup, Redirect
from models.schemas import FailureReason, Workflow, WorkflowStatus


class GatedApiExecutor:
    """Holds every request until ``release`` is set."""

    def __init__(self):
        self.entered = asyncio.Event()
        self.release = asyncio.Event()
        self.calls = 0

    async def execute(self, method, url, headers=None, body=None, timeout_s=None):
        self.calls += 1
        self.entered.set()
        await self.release.wait()
        return ApiCallResult(ok=True, status_code=200, data={})

    async def close(self):
        pass


def lookup_workflow() -> Workflow:
    """menu(1 → api lookup → done, 2 → bye)."""
    return Workflow.model_validate({
        "id": "wf_lock",
        "status": WorkflowStatus.ACTIVE,
        "nodes": [
            {"id": "menu", "type": "input", "data": {"text": "Press 1 or 2.", "maxAttempts": 3}},
            {"id": "lookup", "type": "api_call", "data": {"url": "https://crm.example.com/lookup"}},
            {"id": "done", "type": "end", "data": {"message": "Found you."}},
            {"id": "bye", "type": "end", "data": {"message": "Goodbye."}},
        ],
        "edges": [
            {"id": "e1", "source": "menu", "target": "lookup", "sourceHandle": "1"},
            {"id": "e2", "source": "menu", "target": "bye", "sourceHandle": "2"},
            {"id": "e3", "source": "lookup", "target": "done", "sourceHandle": "success"},
        ],
    })


@pytest.fixture
def gate() -> GatedApiExecutor:
    return GatedApiExecutor()


@pytest.fixture
def gated_engine(store, manager, engine_config, gate) -> CallFlowEngine:
    dispatcher = NodeDispatcher(api_executor=gate, telephony=TelephonyConfig(), engine=engine_config)
    return CallFlowEngine(store, manager, dispatcher, config=engine_config)


async def answer(engine, store, call_id):
    workflow = lookup_workflow()
    await store.save_workflow(workflow)
    first = await engine.start_call(call_id, workflow_id=workflow.id, caller="+15557654321")
    assert first.first(Gather) is not None


class TestPerCallSerialization:
    @pytest.mark.asyncio
    async def test_same_call_turns_run_in_arrival_order(self, gated_engine, store, manager, gate):
        await answer(gated_engine, store, "CA1")

        slow = asyncio.create_task(gated_engine.handle_input("CA1", "wf_lock", "menu", "1"))
        await asyncio.wait_for(gate.entered.wait(), timeout=1)
        second = asyncio.create_task(gated_engine.handle_input("CA1", "wf_lock", "menu", "9"))
        await asyncio.sleep(0.05)

        # The second turn waits on the call lock without touching state
        assert not second.done()
        state = manager.get_state("CA1")
        assert [v.node_id for v in state.visited_nodes] == ["menu", "lookup"]
        assert state.attempts_by_node.get("menu", 0) == 0

        gate.release.set()
        routed = await asyncio.wait_for(slow, timeout=1)
        retried = await asyncio.wait_for(second, timeout=1)

        assert routed.first(Redirect).url.endswith("currentNodeId=done")
        assert retried.first(Gather) is not None
        state = manager.get_state("CA1")
        assert [(v.node_id, v.input) for v in state.visited_nodes] == [
            ("menu", None), ("lookup", "1"), ("menu", "9"),
        ]
        assert state.attempts_by_node["menu"] == 1
        assert state.last_failure_by_node["menu"] == FailureReason.INVALID
        assert gate.calls == 1
        assert manager.table.lock_count() == 0

    @pytest.mark.asyncio
    async def test_other_calls_proceed_while_one_is_held(self, gated_engine, store, manager, gate):
        await answer(gated_engine, store, "CA1")
        await answer(gated_engine, store, "CA2")

        held = asyncio.create_task(gated_engine.handle_input("CA1", "wf_lock", "menu", "1"))
        await asyncio.wait_for(gate.entered.wait(), timeout=1)

        finished = await asyncio.wait_for(
            gated_engine.handle_input("CA2", "wf_lock", "menu", "2"), timeout=1)

        assert finished.first(Hangup) is not None
        assert manager.get_state("CA2") is None
        assert (await store.find_execution_log_by_call("CA2"))["status"] == "completed"
        assert not held.done()
        assert manager.get_state("CA1").current_node_id == "lookup"

        gate.release.set()
        await asyncio.wait_for(held, timeout=1)
        assert manager.table.lock_count() == 0
