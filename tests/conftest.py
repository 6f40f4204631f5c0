"""Shared test fixtures for the IVR flow engine."""
import pytest
from datetime import datetime, timedelta, timezone
from typing import Any

from backend.connector import ApiCallResult
from config.settings import EngineConfig, TelephonyConfig
from database.store_memory import InMemoryIvrStore
from engine.dispatcher import NodeDispatcher
from engine.runner import CallFlowEngine
from engine.state_manager import ExecutionStateManager
from models.schemas import Workflow, WorkflowStatus


class FakeClock:
    """Controllable clock injected wherever the engine reads the time."""

    def __init__(self, start: datetime = None):
        self.current = start or datetime(2024, 3, 4, 10, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += timedelta(seconds=seconds)


class FakeApiExecutor:
    """Stands in for ApiCallExecutor; records requests and replays a canned result."""

    def __init__(self, result: ApiCallResult = None, error: Exception = None):
        self.result = result or ApiCallResult(ok=True, status_code=200, data={"ok": True})
        self.error = error
        self.calls: list[dict[str, Any]] = []

    async def execute(self, method, url, headers=None, body=None, timeout_s=None):
        self.calls.append({"method": method, "url": url, "headers": headers, "body": body})
        if self.error:
            raise self.error
        return self.result

    async def close(self):
        pass


class RecordingLeadCapture:
    def __init__(self, fail: bool = False):
        self.records: list[dict[str, Any]] = []
        self.fail = fail

    async def capture(self, record):
        self.records.append(record)
        if self.fail:
            raise RuntimeError("crm down")


def build_workflow(nodes: list[dict], edges: list[dict], **kwargs) -> Workflow:
    return Workflow.model_validate({"nodes": nodes, "edges": edges, **kwargs})


@pytest.fixture
def sample_workflow() -> Workflow:
    """greeting → menu(1 → sales transfer, 2 → voicemail, default → goodbye)."""
    return build_workflow(
        id="wf_main",
        name="Main line",
        prompt_key="+15550001111",
        status=WorkflowStatus.ACTIVE,
        nodes=[
            {"id": "greet", "type": "greeting", "data": {"text": "Welcome to Acme."}},
            {"id": "menu", "type": "input", "data": {
                "text": "Press 1 for sales. Press 2 to leave a message.",
                "maxAttempts": 3, "timeout": 5,
            }},
            {"id": "sales", "type": "transfer", "data": {"destination": "+15551230000"}},
            {"id": "vm", "type": "voicemail", "data": {"text": "Leave a message."}},
            {"id": "bye", "type": "end", "data": {"message": "Thanks for calling. Goodbye."}},
        ],
        edges=[
            {"id": "e1", "source": "greet", "target": "menu"},
            {"id": "e2", "source": "menu", "target": "sales", "sourceHandle": "1"},
            {"id": "e3", "source": "menu", "target": "vm", "sourceHandle": "2"},
            {"id": "e4", "source": "menu", "target": "bye", "sourceHandle": "default"},
            {"id": "e5", "source": "sales", "target": "bye"},
            {"id": "e6", "source": "vm", "target": "bye"},
        ],
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def engine_config() -> EngineConfig:
    return EngineConfig()


@pytest.fixture
def store() -> InMemoryIvrStore:
    return InMemoryIvrStore()


@pytest.fixture
def lead_capture() -> RecordingLeadCapture:
    return RecordingLeadCapture()


@pytest.fixture
def manager(store, clock, engine_config, lead_capture) -> ExecutionStateManager:
    return ExecutionStateManager(store, lead_capture=lead_capture, config=engine_config, clock=clock)


@pytest.fixture
def api_executor() -> FakeApiExecutor:
    return FakeApiExecutor()


@pytest.fixture
def dispatcher(api_executor, engine_config) -> NodeDispatcher:
    return NodeDispatcher(api_executor=api_executor, telephony=TelephonyConfig(), engine=engine_config)


@pytest.fixture
def flow_engine(store, manager, dispatcher, engine_config) -> CallFlowEngine:
    return CallFlowEngine(store, manager, dispatcher, config=engine_config)
