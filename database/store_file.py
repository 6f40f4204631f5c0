"""
FileIvrStore — JSON file-backed store with persistence across restarts.

Data layout:
  {data_dir}/
    workflows.json
    workflow_versions.json
    execution_logs.json
    leads.json
    callbacks.json

Features:
  - Survives process restarts (unlike InMemoryIvrStore)
  - No external dependencies (no database server)
  - Writes are flushed on every mutation, or batched with flush_interval_s
  - Single-process only (no concurrent write safety)

Best for: small deployments, demos, single-box call centers.
"""
from __future__ import annotations

import asyncio
import json
import structlog
from pathlib import Path
from typing import Any, Optional

from database.store_memory import InMemoryIvrStore
from models.schemas import Workflow

logger = structlog.get_logger()

_COLLECTIONS = [
    "workflows", "workflow_versions", "execution_logs", "leads", "callbacks",
]


class FileIvrStore(InMemoryIvrStore):
    """
    Extends InMemoryIvrStore with JSON file persistence.

    On init: loads all data from JSON files into memory.
    On every write: flushes the changed collection to disk.

    For higher performance, set flush_interval_s > 0 to batch writes.
    """

    def __init__(self, data_dir: str = "./data", flush_interval_s: float = 0):
        super().__init__()
        self._data_dir = Path(data_dir)
        self._data_dir.mkdir(parents=True, exist_ok=True)
        self._flush_interval = flush_interval_s
        self._dirty: set[str] = set()
        self._flush_task: Optional[asyncio.Task] = None
        self._load_all()
        logger.info("file_store_initialized", data_dir=str(self._data_dir))

    # ── Load / Save ───────────────────────────────────────

    def _file_path(self, collection: str) -> Path:
        return self._data_dir / f"{collection}.json"

    def _load_all(self):
        """Load all collections from disk."""
        for collection in _COLLECTIONS:
            path = self._file_path(collection)
            if path.exists():
                try:
                    with open(path, "r") as f:
                        data = json.load(f)
                    self._set_collection(collection, data)
                    logger.debug("file_store_loaded",
                                 collection=collection,
                                 records=len(data) if isinstance(data, dict) else "N/A")
                except (json.JSONDecodeError, OSError) as e:
                    logger.warning("file_store_load_error",
                                   collection=collection, error=str(e))

    def _set_collection(self, collection: str, data: Any):
        """Restore a collection from loaded JSON data."""
        data = data if isinstance(data, dict) else {}
        if collection == "workflows":
            self._workflows = data
        elif collection == "workflow_versions":
            self._workflow_versions = data
        elif collection == "execution_logs":
            self._execution_logs = data
            # Rebuild call index
            self._call_index.clear()
            for log_id, log in self._execution_logs.items():
                if log.get("call_id"):
                    self._call_index[log["call_id"]] = log_id
        elif collection == "leads":
            self._leads = data
        elif collection == "callbacks":
            self._callbacks = data

    def _get_collection_data(self, collection: str) -> Any:
        """Get serializable data for a collection."""
        mapping = {
            "workflows": self._workflows,
            "workflow_versions": self._workflow_versions,
            "execution_logs": self._execution_logs,
            "leads": self._leads,
            "callbacks": self._callbacks,
        }
        return mapping.get(collection, {})

    def _flush_collection(self, collection: str):
        """Write a single collection to disk."""
        path = self._file_path(collection)
        data = self._get_collection_data(collection)
        tmp_path = path.with_suffix(".tmp")
        with open(tmp_path, "w") as f:
            json.dump(data, f, indent=2, default=str)
        tmp_path.rename(path)  # atomic on POSIX

    def _mark_dirty(self, *collections: str):
        """Mark collections as needing a flush."""
        if self._flush_interval <= 0:
            # Immediate flush
            for c in collections:
                self._flush_collection(c)
        else:
            self._dirty.update(collections)
            if self._flush_task is None or self._flush_task.done():
                self._flush_task = asyncio.get_running_loop().create_task(
                    self._deferred_flush()
                )

    async def _deferred_flush(self):
        """Batch flush after interval."""
        await asyncio.sleep(self._flush_interval)
        dirty = self._dirty.copy()
        self._dirty.clear()
        for c in dirty:
            self._flush_collection(c)

    def flush_all(self):
        """Force flush all collections to disk."""
        for c in _COLLECTIONS:
            self._flush_collection(c)
        logger.info("file_store_flushed_all")

    # ── Override write methods to trigger persistence ──────

    async def save_workflow(self, workflow: Workflow) -> Workflow:
        result = await super().save_workflow(workflow)
        self._mark_dirty("workflows", "workflow_versions")
        return result

    async def delete_workflow(self, workflow_id: str) -> bool:
        deleted = await super().delete_workflow(workflow_id)
        if deleted:
            self._mark_dirty("workflows")
        return deleted

    async def create_execution_log(self, data: dict[str, Any]) -> dict:
        result = await super().create_execution_log(data)
        self._mark_dirty("execution_logs")
        return result

    async def update_execution_log(self, log_id: str, **kwargs) -> None:
        await super().update_execution_log(log_id, **kwargs)
        self._mark_dirty("execution_logs")

    async def append_visit(self, log_id: str, visit: dict[str, Any]) -> None:
        await super().append_visit(log_id, visit)
        self._mark_dirty("execution_logs")

    async def append_user_input(self, log_id: str, entry: dict[str, Any]) -> None:
        await super().append_user_input(log_id, entry)
        self._mark_dirty("execution_logs")

    async def save_lead(self, data: dict[str, Any]) -> dict:
        result = await super().save_lead(data)
        self._mark_dirty("leads")
        return result

    async def create_callback(self, data: dict[str, Any]) -> dict:
        result = await super().create_callback(data)
        self._mark_dirty("callbacks")
        return result
