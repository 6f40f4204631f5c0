"""
SQLAlchemy ORM models — Cross-database compatible.

Supports: PostgreSQL, MySQL 8+, SQLite.

Key design decisions:
  - JSON type instead of PostgreSQL-specific JSONB — on PG the dialect maps
    JSON to jsonb automatically; on MySQL it uses native JSON; on SQLite
    it serializes to TEXT.
  - Workflow graphs are stored as one JSON document per row; each saved
    version is also kept as an immutable snapshot row.
  - String primary keys (uuid hex) — no database-specific sequences.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    String, Integer, Float, DateTime, Text, Index, JSON,
)
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all ORM models."""
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex[:16]


def _iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    # SQLite hands back naive datetimes
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


# ──────────────────────────────────────────────────────────────
#  Workflows
# ──────────────────────────────────────────────────────────────

class WorkflowRow(Base):
    __tablename__ = "workflows"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(256), default="")
    status: Mapped[str] = mapped_column(String(32), default="draft")
    version: Mapped[int] = mapped_column(Integer, default=1)
    prompt_key: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)

    document: Mapped[Any] = mapped_column(JSON, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        Index("ix_workflows_status_key", "status", "prompt_key"),
    )


class WorkflowVersionRow(Base):
    __tablename__ = "workflow_versions"

    workflow_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    version: Mapped[int] = mapped_column(Integer, primary_key=True)
    document: Mapped[Any] = mapped_column(JSON, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


# ──────────────────────────────────────────────────────────────
#  Execution logs
# ──────────────────────────────────────────────────────────────

class ExecutionLogRow(Base):
    __tablename__ = "execution_logs"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    call_id: Mapped[str] = mapped_column(String(128), nullable=False)
    workflow_id: Mapped[str] = mapped_column(String(64), nullable=False)
    workflow_name: Mapped[str] = mapped_column(String(256), default="")
    workflow_version: Mapped[int] = mapped_column(Integer, default=1)

    status: Mapped[str] = mapped_column(String(32), default="running")
    reason: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    ended_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    duration_s: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    visited_nodes: Mapped[Any] = mapped_column(JSON, default=list)
    user_inputs: Mapped[Any] = mapped_column(JSON, default=list)
    variables: Mapped[Any] = mapped_column(JSON, default=dict)
    node_execution_count: Mapped[int] = mapped_column(Integer, default=0)
    loop_iterations: Mapped[int] = mapped_column(Integer, default=0)

    caller: Mapped[str] = mapped_column(String(64), default="")
    callee: Mapped[str] = mapped_column(String(64), default="")
    transfer_destination: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    recording_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index("ix_execution_logs_call", "call_id"),
        Index("ix_execution_logs_workflow_started", "workflow_id", "started_at"),
        Index("ix_execution_logs_status", "status"),
    )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id, "call_id": self.call_id,
            "workflow_id": self.workflow_id, "workflow_name": self.workflow_name,
            "workflow_version": self.workflow_version,
            "status": self.status, "reason": self.reason,
            "error_message": self.error_message,
            "started_at": _iso(self.started_at), "ended_at": _iso(self.ended_at),
            "duration_s": self.duration_s,
            "visited_nodes": list(self.visited_nodes or []),
            "user_inputs": list(self.user_inputs or []),
            "variables": dict(self.variables or {}),
            "node_execution_count": self.node_execution_count,
            "loop_iterations": self.loop_iterations,
            "caller": self.caller, "callee": self.callee,
            "transfer_destination": self.transfer_destination,
            "recording_url": self.recording_url,
        }


# ──────────────────────────────────────────────────────────────
#  Leads
# ──────────────────────────────────────────────────────────────

class LeadRow(Base):
    __tablename__ = "leads"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    call_id: Mapped[str] = mapped_column(String(128), default="")
    workflow_id: Mapped[str] = mapped_column(String(64), default="")
    phone_number: Mapped[str] = mapped_column(String(64), default="")
    status: Mapped[str] = mapped_column(String(32), default="new")
    source: Mapped[str] = mapped_column(String(32), default="ivr")
    outcome: Mapped[str] = mapped_column(String(32), default="")
    last_inputs: Mapped[Any] = mapped_column(JSON, default=list)
    recording_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    metadata_: Mapped[Any] = mapped_column("metadata", JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_leads_phone", "phone_number"),
    )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id, "call_id": self.call_id, "workflow_id": self.workflow_id,
            "phone_number": self.phone_number, "status": self.status,
            "source": self.source, "outcome": self.outcome,
            "last_inputs": list(self.last_inputs or []),
            "recording_url": self.recording_url,
            "metadata": dict(self.metadata_ or {}),
            "created_at": _iso(self.created_at),
        }


# ──────────────────────────────────────────────────────────────
#  Scheduled callbacks
# ──────────────────────────────────────────────────────────────

class ScheduledCallbackRow(Base):
    __tablename__ = "scheduled_callbacks"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    call_id: Mapped[str] = mapped_column(String(128), default="")
    workflow_id: Mapped[str] = mapped_column(String(64), default="")
    phone_number: Mapped[str] = mapped_column(String(64), default="")
    status: Mapped[str] = mapped_column(String(32), default="scheduled")
    scheduled_for: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    note: Mapped[str] = mapped_column(Text, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_callbacks_status", "status"),
    )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id, "call_id": self.call_id, "workflow_id": self.workflow_id,
            "phone_number": self.phone_number, "status": self.status,
            "scheduled_for": self.scheduled_for, "note": self.note,
            "created_at": _iso(self.created_at),
        }
