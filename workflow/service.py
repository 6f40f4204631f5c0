"""
Workflow Service — authoring-side lifecycle of call-flow graphs.

  create      → saved as draft, version 1 (may be invalid)
  update      → new immutable version; active workflows must stay valid
  activate    → must pass validation; other active flows on the same
                prompt key are deactivated
  deactivate / delete / validate

Running calls never see these edits: they stay pinned to the version they
started on.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

import structlog

from database.store_base import BaseIvrStore
from models.node_data import AudioData, GreetingData, PromptData
from models.schemas import ValidationIssue, Workflow, WorkflowStatus
from workflow.audio_jobs import AUDIO_KEYS, AudioJob, AudioJobQueue
from workflow.validator import validate_workflow

logger = structlog.get_logger()

EDITABLE_FIELDS = ("name", "description", "prompt_key", "nodes", "edges", "settings")


class WorkflowNotFound(Exception):
    def __init__(self, workflow_id: str):
        self.workflow_id = workflow_id
        super().__init__(f"Workflow '{workflow_id}' not found")


class WorkflowValidationFailed(Exception):
    def __init__(self, workflow_id: str, issues: list[ValidationIssue]):
        self.workflow_id = workflow_id
        self.issues = issues
        super().__init__(f"Workflow '{workflow_id}' failed validation with {len(issues)} issue(s)")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _clear_stale_audio(old: Workflow, doc: dict[str, Any]) -> int:
    """Drop rendered audio from nodes whose text changed without new audio."""
    cleared = 0
    for raw in doc.get("nodes") or []:
        previous = old.get_node(raw.get("id"))
        if previous is None or not isinstance(previous.payload, PromptData):
            continue
        data = raw.get("data") or {}
        new_text = data.get("messageText") or data.get("message_text") or data.get("text") or ""
        new_audio = data.get("audioUrl") or data.get("audio_url")
        if new_text != previous.payload.spoken_text and new_audio and new_audio == previous.payload.audio_url:
            raw["data"] = {k: v for k, v in data.items() if k not in AUDIO_KEYS}
            cleared += 1
    return cleared


class WorkflowService:

    def __init__(self, store: BaseIvrStore, audio_jobs: AudioJobQueue = None):
        self.store = store
        self.audio_jobs = audio_jobs

    # ── CRUD ─────────────────────────────────────────────────

    async def create(self, data: dict[str, Any]) -> Workflow:
        doc = {k: v for k, v in data.items() if k in EDITABLE_FIELDS or k == "id"}
        workflow = Workflow.model_validate(doc)
        workflow.status = WorkflowStatus.DRAFT
        workflow.version = 1
        if await self.store.get_workflow(workflow.id) is not None:
            raise ValueError(f"Workflow '{workflow.id}' already exists")
        await self.store.save_workflow(workflow)
        logger.info("workflow_created", workflow_id=workflow.id, nodes=len(workflow.nodes))
        self._enqueue_audio(workflow)
        return workflow

    async def get(self, workflow_id: str) -> Workflow:
        workflow = await self.store.get_workflow(workflow_id)
        if workflow is None:
            raise WorkflowNotFound(workflow_id)
        return workflow

    async def list(self, status: str = None) -> list[Workflow]:
        return await self.store.list_workflows(status=status)

    async def update(self, workflow_id: str, data: dict[str, Any]) -> Workflow:
        existing = await self.get(workflow_id)
        doc = existing.model_dump()
        doc.update({k: v for k, v in data.items() if k in EDITABLE_FIELDS})
        cleared = _clear_stale_audio(existing, doc)
        doc["version"] = existing.version + 1
        doc["updated_at"] = _utcnow()
        workflow = Workflow.model_validate(doc)

        if workflow.status == WorkflowStatus.ACTIVE:
            issues = validate_workflow(workflow)
            if issues:
                raise WorkflowValidationFailed(workflow_id, issues)

        await self.store.save_workflow(workflow)
        logger.info("workflow_updated", workflow_id=workflow_id,
                    version=workflow.version, audio_cleared=cleared)
        self._enqueue_audio(workflow)
        return workflow

    async def delete(self, workflow_id: str) -> None:
        if not await self.store.delete_workflow(workflow_id):
            raise WorkflowNotFound(workflow_id)
        logger.info("workflow_deleted", workflow_id=workflow_id)

    # ── Status ───────────────────────────────────────────────

    async def activate(self, workflow_id: str) -> Workflow:
        workflow = await self.get(workflow_id)
        issues = validate_workflow(workflow)
        if issues:
            logger.info("workflow_activation_rejected", workflow_id=workflow_id, issues=len(issues))
            raise WorkflowValidationFailed(workflow_id, issues)

        if workflow.prompt_key:
            for other in await self.store.list_workflows(status=WorkflowStatus.ACTIVE.value):
                if other.id != workflow.id and other.prompt_key == workflow.prompt_key:
                    await self._set_status(other, WorkflowStatus.INACTIVE)

        return await self._set_status(workflow, WorkflowStatus.ACTIVE)

    async def deactivate(self, workflow_id: str) -> Workflow:
        return await self._set_status(await self.get(workflow_id), WorkflowStatus.INACTIVE)

    async def validate(self, workflow_id: str) -> list[ValidationIssue]:
        return validate_workflow(await self.get(workflow_id))

    async def _set_status(self, workflow: Workflow, status: WorkflowStatus) -> Workflow:
        # Status changes do not create a new graph version
        workflow.status = status
        workflow.updated_at = _utcnow()
        await self.store.save_workflow(workflow)
        logger.info("workflow_status_changed", workflow_id=workflow.id, status=status.value)
        return workflow

    # ── Audio ────────────────────────────────────────────────

    def _enqueue_audio(self, workflow: Workflow) -> int:
        if self.audio_jobs is None:
            return 0
        count = 0
        for node in workflow.nodes:
            payload = node.payload
            if not isinstance(payload, (GreetingData, AudioData)):
                continue
            if payload.audio_url or payload.audio_asset_id or not payload.spoken_text:
                continue
            if isinstance(payload, AudioData) and payload.is_file_mode:
                continue
            self.audio_jobs.enqueue(AudioJob(
                workflow_id=workflow.id,
                node_id=node.id,
                text=payload.spoken_text,
                voice=payload.voice or workflow.settings.voice,
                language=payload.language or workflow.settings.language,
            ))
            count += 1
        return count
