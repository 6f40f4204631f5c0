"""
Abstract IVR Store — Interface for all storage backends.

Implementations:
  - SqlIvrStore      (PostgreSQL / MySQL / SQLite via SQLAlchemy)
  - InMemoryIvrStore (dict-based, single-process, no persistence)
  - FileIvrStore     (JSON files on disk, single-process, durable)

Workflows are exchanged as ``Workflow`` models. Execution logs, leads and
scheduled callbacks are exchanged as plain dicts with ISO-8601 timestamps.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Optional

from models.schemas import Workflow


class BaseIvrStore(ABC):
    """Interface that all store backends must implement."""

    # ── Workflows ─────────────────────────────────────────────

    @abstractmethod
    async def get_workflow(self, workflow_id: str) -> Optional[Workflow]:
        ...

    @abstractmethod
    async def get_workflow_version(self, workflow_id: str, version: int) -> Optional[Workflow]:
        """Immutable snapshot of one published version."""
        ...

    @abstractmethod
    async def list_workflows(self, status: str = None) -> list[Workflow]:
        ...

    @abstractmethod
    async def save_workflow(self, workflow: Workflow) -> Workflow:
        """Upsert the current document and record a snapshot of its version."""
        ...

    @abstractmethod
    async def delete_workflow(self, workflow_id: str) -> bool:
        ...

    @abstractmethod
    async def find_active_workflow(self, prompt_key: str) -> Optional[Workflow]:
        ...

    # ── Execution logs ────────────────────────────────────────

    @abstractmethod
    async def create_execution_log(self, data: dict[str, Any]) -> dict[str, Any]:
        ...

    @abstractmethod
    async def get_execution_log(self, log_id: str) -> Optional[dict[str, Any]]:
        ...

    @abstractmethod
    async def find_execution_log_by_call(self, call_id: str) -> Optional[dict[str, Any]]:
        ...

    @abstractmethod
    async def update_execution_log(self, log_id: str, **kwargs) -> None:
        ...

    @abstractmethod
    async def append_visit(self, log_id: str, visit: dict[str, Any]) -> None:
        ...

    @abstractmethod
    async def append_user_input(self, log_id: str, entry: dict[str, Any]) -> None:
        ...

    @abstractmethod
    async def list_execution_logs(
        self, workflow_id: str = None, start: datetime = None, end: datetime = None,
        status: str = None, limit: int = 100,
    ) -> list[dict[str, Any]]:
        """Newest first. ``start``/``end`` bound ``started_at`` (inclusive)."""
        ...

    # ── Leads ─────────────────────────────────────────────────

    @abstractmethod
    async def save_lead(self, data: dict[str, Any]) -> dict[str, Any]:
        ...

    @abstractmethod
    async def list_leads(self, limit: int = 100) -> list[dict[str, Any]]:
        ...

    # ── Scheduled callbacks ───────────────────────────────────

    @abstractmethod
    async def create_callback(self, data: dict[str, Any]) -> dict[str, Any]:
        ...

    @abstractmethod
    async def list_callbacks(self, status: str = None) -> list[dict[str, Any]]:
        ...
