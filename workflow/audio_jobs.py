"""
Audio Job Queue — pre-renders prompt audio for text-bearing nodes.

When a workflow is saved, greeting and audio nodes that carry text but no
rendered asset get a job. A single in-process worker pulls jobs and hands
them to a pluggable renderer (any ``async (AudioJob) -> url``). On success the
node's ``audioUrl`` is written back to the stored workflow, provided the
node's text has not changed since the job was queued.

Rendering is best-effort: without a renderer jobs are dropped, and renderer
failures are logged and swallowed. Calls fall back to live text-to-speech.

Usage:
    jobs = AudioJobQueue(store, renderer=my_tts)
    await jobs.start_background()
    jobs.enqueue(AudioJob(workflow_id="wf1", node_id="greet", text="Hello"))
    await jobs.stop()
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

import structlog

from database.store_base import BaseIvrStore
from models.node_data import PromptData
from models.schemas import Workflow

logger = structlog.get_logger()

AUDIO_KEYS = ("audioUrl", "audio_url", "audioAssetId", "audio_asset_id")


@dataclass
class AudioJob:
    workflow_id: str
    node_id: str
    text: str
    voice: Optional[str] = None
    language: Optional[str] = None


Renderer = Callable[[AudioJob], Awaitable[str]]


def with_node_data(workflow: Workflow, node_id: str, updates: dict, drop: tuple = ()) -> Workflow:
    """Copy of ``workflow`` with one node's raw data changed (payload re-parsed)."""
    doc = workflow.model_dump()
    for node in doc["nodes"]:
        if node["id"] == node_id:
            data = {k: v for k, v in (node.get("data") or {}).items() if k not in drop}
            data.update(updates)
            node["data"] = data
    return Workflow.model_validate(doc)


class AudioJobQueue:

    def __init__(self, store: BaseIvrStore, renderer: Renderer = None, timeout_s: float = 30.0):
        self.store = store
        self.renderer = renderer
        self.timeout_s = timeout_s
        self._queue: asyncio.Queue[AudioJob] = asyncio.Queue()
        self._task: Optional[asyncio.Task] = None

    def enqueue(self, job: AudioJob) -> None:
        self._queue.put_nowait(job)
        logger.info("audio_job_enqueued", workflow_id=job.workflow_id, node_id=job.node_id)

    def pending(self) -> int:
        return self._queue.qsize()

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

    async def drain(self) -> int:
        """Process everything queued right now, without the worker (tests, scripts)."""
        done = 0
        while not self._queue.empty():
            job = self._queue.get_nowait()
            try:
                if await self.process(job):
                    done += 1
            finally:
                self._queue.task_done()
        return done

    async def _run(self):
        logger.info("audio_worker_started")
        while True:
            job = await self._queue.get()
            try:
                await self.process(job)
            finally:
                self._queue.task_done()

    async def process(self, job: AudioJob) -> bool:
        if self.renderer is None:
            logger.info("audio_job_skipped", reason="no_renderer", node_id=job.node_id)
            return False
        try:
            url = await asyncio.wait_for(self.renderer(job), timeout=self.timeout_s)
            if not url:
                return False
            workflow = await self.store.get_workflow(job.workflow_id)
            node = workflow.get_node(job.node_id) if workflow else None
            if node is None or not isinstance(node.payload, PromptData):
                logger.info("audio_job_stale", workflow_id=job.workflow_id, node_id=job.node_id)
                return False
            if node.payload.spoken_text != job.text:
                logger.info("audio_job_stale", workflow_id=job.workflow_id, node_id=job.node_id)
                return False
            await self.store.save_workflow(
                with_node_data(workflow, job.node_id, {"audioUrl": url}, drop=AUDIO_KEYS)
            )
            logger.info("audio_job_done", workflow_id=job.workflow_id, node_id=job.node_id, url=url)
            return True
        except Exception as e:
            logger.warning("audio_job_failed", workflow_id=job.workflow_id, node_id=job.node_id,
                           error=str(e) or type(e).__name__)
            return False
