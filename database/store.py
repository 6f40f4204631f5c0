"""
SqlIvrStore — Portable SQL queries for PostgreSQL, MySQL, SQLite.

JSON list columns (visited_nodes, user_inputs) are appended by copying the
list and reassigning it, so the change is tracked on every dialect.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import select, delete

from database.models import (
    WorkflowRow, WorkflowVersionRow, ExecutionLogRow, LeadRow, ScheduledCallbackRow,
)
from database.session import get_session
from database.store_base import BaseIvrStore
from models.schemas import Workflow, WorkflowStatus

logger = structlog.get_logger()

_LOG_COLUMNS = {c for c in ExecutionLogRow.__table__.columns.keys()}
_DATETIME_COLUMNS = {"started_at", "ended_at"}


def _to_datetime(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    dt = datetime.fromisoformat(str(value))
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def _log_values(data: dict[str, Any]) -> dict[str, Any]:
    values = {k: v for k, v in data.items() if k in _LOG_COLUMNS}
    for col in _DATETIME_COLUMNS & values.keys():
        values[col] = _to_datetime(values[col])
    return values


class SqlIvrStore(BaseIvrStore):
    """
    Persistent store backed by any SQLAlchemy-supported database.
    Works with PostgreSQL, MySQL 8+, and SQLite.
    """

    # ── Workflow operations ────────────────────────────────

    async def get_workflow(self, workflow_id: str) -> Optional[Workflow]:
        async with get_session() as db:
            row = await db.get(WorkflowRow, workflow_id)
            return Workflow.model_validate(row.document) if row else None

    async def get_workflow_version(self, workflow_id: str, version: int) -> Optional[Workflow]:
        async with get_session() as db:
            row = await db.get(WorkflowVersionRow, (workflow_id, version))
            return Workflow.model_validate(row.document) if row else None

    async def list_workflows(self, status: str = None) -> list[Workflow]:
        async with get_session() as db:
            stmt = select(WorkflowRow).order_by(WorkflowRow.updated_at.desc())
            if status:
                stmt = stmt.where(WorkflowRow.status == status)
            result = await db.execute(stmt)
            return [Workflow.model_validate(r.document) for r in result.scalars()]

    async def save_workflow(self, workflow: Workflow) -> Workflow:
        document = workflow.model_dump(mode="json")
        async with get_session() as db:
            row = await db.get(WorkflowRow, workflow.id)
            if row is None:
                row = WorkflowRow(id=workflow.id, created_at=workflow.created_at)
                db.add(row)
            row.name = workflow.name
            row.status = workflow.status.value
            row.version = workflow.version
            row.prompt_key = workflow.prompt_key
            row.document = document
            row.updated_at = workflow.updated_at

            snapshot = await db.get(WorkflowVersionRow, (workflow.id, workflow.version))
            if snapshot is None:
                db.add(WorkflowVersionRow(
                    workflow_id=workflow.id, version=workflow.version, document=document,
                ))
            else:
                snapshot.document = document
        return workflow

    async def delete_workflow(self, workflow_id: str) -> bool:
        async with get_session() as db:
            result = await db.execute(delete(WorkflowRow).where(WorkflowRow.id == workflow_id))
            return (result.rowcount or 0) > 0

    async def find_active_workflow(self, prompt_key: str) -> Optional[Workflow]:
        async with get_session() as db:
            stmt = (
                select(WorkflowRow)
                .where(WorkflowRow.status == WorkflowStatus.ACTIVE.value)
                .where(WorkflowRow.prompt_key == prompt_key)
                .order_by(WorkflowRow.updated_at.desc())
                .limit(1)
            )
            row = (await db.execute(stmt)).scalar_one_or_none()
            return Workflow.model_validate(row.document) if row else None

    # ── Execution log operations ───────────────────────────

    async def create_execution_log(self, data: dict[str, Any]) -> dict[str, Any]:
        values = _log_values(data)
        values.setdefault("status", "running")
        values.setdefault("visited_nodes", [])
        values.setdefault("user_inputs", [])
        values.setdefault("variables", {})
        async with get_session() as db:
            row = ExecutionLogRow(**values)
            db.add(row)
            await db.flush()
            return row.to_dict()

    async def get_execution_log(self, log_id: str) -> Optional[dict[str, Any]]:
        async with get_session() as db:
            row = await db.get(ExecutionLogRow, log_id)
            return row.to_dict() if row else None

    async def find_execution_log_by_call(self, call_id: str) -> Optional[dict[str, Any]]:
        async with get_session() as db:
            stmt = (
                select(ExecutionLogRow)
                .where(ExecutionLogRow.call_id == call_id)
                .order_by(ExecutionLogRow.started_at.desc())
                .limit(1)
            )
            row = (await db.execute(stmt)).scalar_one_or_none()
            return row.to_dict() if row else None

    async def update_execution_log(self, log_id: str, **kwargs) -> None:
        async with get_session() as db:
            row = await db.get(ExecutionLogRow, log_id)
            if row:
                for key, value in _log_values(kwargs).items():
                    setattr(row, key, value)

    async def append_visit(self, log_id: str, visit: dict[str, Any]) -> None:
        async with get_session() as db:
            row = await db.get(ExecutionLogRow, log_id)
            if row:
                row.visited_nodes = [*(row.visited_nodes or []), dict(visit)]
                row.node_execution_count = len(row.visited_nodes)

    async def append_user_input(self, log_id: str, entry: dict[str, Any]) -> None:
        async with get_session() as db:
            row = await db.get(ExecutionLogRow, log_id)
            if row:
                row.user_inputs = [*(row.user_inputs or []), dict(entry)]

    async def list_execution_logs(
        self, workflow_id: str = None, start: datetime = None, end: datetime = None,
        status: str = None, limit: int = 100,
    ) -> list[dict[str, Any]]:
        async with get_session() as db:
            stmt = select(ExecutionLogRow)
            if workflow_id:
                stmt = stmt.where(ExecutionLogRow.workflow_id == workflow_id)
            if status:
                stmt = stmt.where(ExecutionLogRow.status == status)
            if start is not None:
                stmt = stmt.where(ExecutionLogRow.started_at >= _to_datetime(start))
            if end is not None:
                stmt = stmt.where(ExecutionLogRow.started_at <= _to_datetime(end))
            stmt = stmt.order_by(ExecutionLogRow.started_at.desc()).limit(limit)
            result = await db.execute(stmt)
            return [r.to_dict() for r in result.scalars()]

    # ── Lead operations ────────────────────────────────────

    async def save_lead(self, data: dict[str, Any]) -> dict[str, Any]:
        values = dict(data)
        if "metadata" in values:
            values["metadata_"] = values.pop("metadata")
        allowed = set(LeadRow.__table__.columns.keys()) | {"metadata_"}
        async with get_session() as db:
            row = LeadRow(**{k: v for k, v in values.items() if k in allowed})
            db.add(row)
            await db.flush()
            return row.to_dict()

    async def list_leads(self, limit: int = 100) -> list[dict[str, Any]]:
        async with get_session() as db:
            stmt = select(LeadRow).order_by(LeadRow.created_at.desc()).limit(limit)
            result = await db.execute(stmt)
            return [r.to_dict() for r in result.scalars()]

    # ── Scheduled callback operations ──────────────────────

    async def create_callback(self, data: dict[str, Any]) -> dict[str, Any]:
        allowed = set(ScheduledCallbackRow.__table__.columns.keys())
        async with get_session() as db:
            row = ScheduledCallbackRow(**{k: v for k, v in data.items() if k in allowed})
            db.add(row)
            await db.flush()
            return row.to_dict()

    async def list_callbacks(self, status: str = None) -> list[dict[str, Any]]:
        async with get_session() as db:
            stmt = select(ScheduledCallbackRow).order_by(ScheduledCallbackRow.scheduled_for)
            if status:
                stmt = stmt.where(ScheduledCallbackRow.status == status)
            result = await db.execute(stmt)
            return [r.to_dict() for r in result.scalars()]
