"""
InMemoryIvrStore — Dict-backed store for development and testing.

Features:
  - Zero dependencies (no database server)
  - Full interface compatibility with SqlIvrStore
  - Safe under asyncio (single event loop, no awaits inside mutations)
  - All data lost on process restart

Best for: local development, unit tests, quick prototyping.
"""
from __future__ import annotations

import copy
import uuid
import structlog
from datetime import datetime, timezone
from typing import Any, Optional

from database.store_base import BaseIvrStore
from models.schemas import Workflow, WorkflowStatus

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex[:16]


def _parse_ts(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        dt = datetime.fromisoformat(str(value))
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def _in_range(started_at: Any, start: datetime = None, end: datetime = None) -> bool:
    ts = _parse_ts(started_at)
    if ts is None:
        return start is None and end is None
    if start is not None and ts < _parse_ts(start):
        return False
    if end is not None and ts > _parse_ts(end):
        return False
    return True


def _version_key(workflow_id: str, version: int) -> str:
    return f"{workflow_id}:{version}"


class InMemoryIvrStore(BaseIvrStore):
    """
    Full-featured in-memory store with the same interface as SqlIvrStore.
    Workflows are stored as JSON-mode dumps so callers always get a fresh copy.
    """

    def __init__(self):
        self._workflows: dict[str, dict] = {}           # id → workflow document
        self._workflow_versions: dict[str, dict] = {}   # "id:version" → snapshot
        self._execution_logs: dict[str, dict] = {}      # id → log dict
        self._leads: dict[str, dict] = {}               # id → lead dict
        self._callbacks: dict[str, dict] = {}           # id → callback dict

        # Indexes
        self._call_index: dict[str, str] = {}           # call_id → log id
        logger.info("inmemory_store_initialized")

    # ── Workflows ─────────────────────────────────────────

    async def get_workflow(self, workflow_id: str) -> Optional[Workflow]:
        data = self._workflows.get(workflow_id)
        return Workflow.model_validate(data) if data else None

    async def get_workflow_version(self, workflow_id: str, version: int) -> Optional[Workflow]:
        data = self._workflow_versions.get(_version_key(workflow_id, version))
        return Workflow.model_validate(data) if data else None

    async def list_workflows(self, status: str = None) -> list[Workflow]:
        docs = [
            d for d in self._workflows.values()
            if status is None or d.get("status") == status
        ]
        docs.sort(key=lambda d: d.get("updated_at", ""), reverse=True)
        return [Workflow.model_validate(d) for d in docs]

    async def save_workflow(self, workflow: Workflow) -> Workflow:
        data = workflow.model_dump(mode="json")
        self._workflows[workflow.id] = data
        self._workflow_versions[_version_key(workflow.id, workflow.version)] = copy.deepcopy(data)
        return workflow

    async def delete_workflow(self, workflow_id: str) -> bool:
        return self._workflows.pop(workflow_id, None) is not None

    async def find_active_workflow(self, prompt_key: str) -> Optional[Workflow]:
        for data in self._workflows.values():
            if data.get("status") == WorkflowStatus.ACTIVE.value and data.get("prompt_key") == prompt_key:
                return Workflow.model_validate(data)
        return None

    # ── Execution logs ────────────────────────────────────

    async def create_execution_log(self, data: dict[str, Any]) -> dict[str, Any]:
        now = _utcnow().isoformat()
        log = {
            "id": data.get("id") or _new_id(),
            "call_id": data.get("call_id", ""),
            "workflow_id": data.get("workflow_id", ""),
            "workflow_name": data.get("workflow_name", ""),
            "workflow_version": data.get("workflow_version", 1),
            "status": data.get("status", "running"),
            "reason": data.get("reason"),
            "error_message": data.get("error_message"),
            "started_at": data.get("started_at") or now,
            "ended_at": None,
            "duration_s": None,
            "visited_nodes": list(data.get("visited_nodes") or []),
            "user_inputs": list(data.get("user_inputs") or []),
            "variables": dict(data.get("variables") or {}),
            "node_execution_count": data.get("node_execution_count", 0),
            "loop_iterations": data.get("loop_iterations", 0),
            "caller": data.get("caller", ""),
            "callee": data.get("callee", ""),
            "transfer_destination": data.get("transfer_destination"),
            "recording_url": data.get("recording_url"),
        }
        self._execution_logs[log["id"]] = log
        if log["call_id"]:
            self._call_index[log["call_id"]] = log["id"]
        return copy.deepcopy(log)

    async def get_execution_log(self, log_id: str) -> Optional[dict[str, Any]]:
        log = self._execution_logs.get(log_id)
        return copy.deepcopy(log) if log else None

    async def find_execution_log_by_call(self, call_id: str) -> Optional[dict[str, Any]]:
        log_id = self._call_index.get(call_id)
        if not log_id:
            return None
        return await self.get_execution_log(log_id)

    async def update_execution_log(self, log_id: str, **kwargs) -> None:
        log = self._execution_logs.get(log_id)
        if log:
            log.update(copy.deepcopy(kwargs))

    async def append_visit(self, log_id: str, visit: dict[str, Any]) -> None:
        log = self._execution_logs.get(log_id)
        if log:
            log["visited_nodes"].append(dict(visit))
            log["node_execution_count"] = len(log["visited_nodes"])

    async def append_user_input(self, log_id: str, entry: dict[str, Any]) -> None:
        log = self._execution_logs.get(log_id)
        if log:
            log["user_inputs"].append(dict(entry))

    async def list_execution_logs(
        self, workflow_id: str = None, start: datetime = None, end: datetime = None,
        status: str = None, limit: int = 100,
    ) -> list[dict[str, Any]]:
        logs = [
            l for l in self._execution_logs.values()
            if (workflow_id is None or l["workflow_id"] == workflow_id)
            and (status is None or l["status"] == status)
            and _in_range(l.get("started_at"), start, end)
        ]
        logs.sort(key=lambda l: _parse_ts(l.get("started_at")) or _utcnow(), reverse=True)
        return [copy.deepcopy(l) for l in logs[:limit]]

    # ── Leads ─────────────────────────────────────────────

    async def save_lead(self, data: dict[str, Any]) -> dict[str, Any]:
        lead = {
            "id": data.get("id") or _new_id(),
            "created_at": _utcnow().isoformat(),
            **{k: v for k, v in data.items() if k != "id"},
        }
        self._leads[lead["id"]] = lead
        return copy.deepcopy(lead)

    async def list_leads(self, limit: int = 100) -> list[dict[str, Any]]:
        leads = sorted(self._leads.values(), key=lambda l: l.get("created_at", ""), reverse=True)
        return [copy.deepcopy(l) for l in leads[:limit]]

    # ── Scheduled callbacks ───────────────────────────────

    async def create_callback(self, data: dict[str, Any]) -> dict[str, Any]:
        cb = {
            "id": data.get("id") or _new_id(),
            "status": data.get("status", "scheduled"),
            "created_at": _utcnow().isoformat(),
            **{k: v for k, v in data.items() if k not in ("id", "status")},
        }
        self._callbacks[cb["id"]] = cb
        return copy.deepcopy(cb)

    async def list_callbacks(self, status: str = None) -> list[dict[str, Any]]:
        cbs = [c for c in self._callbacks.values() if status is None or c.get("status") == status]
        cbs.sort(key=lambda c: c.get("scheduled_for", ""))
        return [copy.deepcopy(c) for c in cbs]
