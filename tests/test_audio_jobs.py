"""Tests for the prompt-audio rendering queue."""
import asyncio
import pytest

from models.schemas import Workflow
from workflow.audio_jobs import AudioJob, AudioJobQueue, with_node_data


def greeting_workflow(text="Welcome", **data) -> Workflow:
    return Workflow.model_validate({
        "id": "wf_audio",
        "nodes": [{"id": "greet", "type": "greeting", "data": {"text": text, **data}},
                  {"id": "bye", "type": "end"}],
        "edges": [{"id": "e1", "source": "greet", "target": "bye"}],
    })


class FakeRenderer:
    def __init__(self, url="https://cdn/rendered.mp3", error=None, delay=0.0):
        self.url = url
        self.error = error
        self.delay = delay
        self.jobs = []

    async def __call__(self, job):
        self.jobs.append(job)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return self.url


class TestProcess:
    @pytest.mark.asyncio
    async def test_rendered_url_written_back(self, store):
        await store.save_workflow(greeting_workflow())
        renderer = FakeRenderer()
        queue = AudioJobQueue(store, renderer=renderer)
        queue.enqueue(AudioJob(workflow_id="wf_audio", node_id="greet", text="Welcome", voice="alice"))

        assert await queue.drain() == 1

        workflow = await store.get_workflow("wf_audio")
        assert workflow.get_node("greet").payload.audio_url == "https://cdn/rendered.mp3"
        assert workflow.get_node("greet").payload.text == "Welcome"
        assert renderer.jobs[0].voice == "alice"
        assert queue.pending() == 0

    @pytest.mark.asyncio
    async def test_stale_text_is_not_overwritten(self, store):
        await store.save_workflow(greeting_workflow(text="Changed"))
        queue = AudioJobQueue(store, renderer=FakeRenderer())
        queue.enqueue(AudioJob(workflow_id="wf_audio", node_id="greet", text="Welcome"))
        assert await queue.drain() == 0
        assert (await store.get_workflow("wf_audio")).get_node("greet").payload.audio_url is None

    @pytest.mark.asyncio
    async def test_missing_node_or_workflow(self, store):
        await store.save_workflow(greeting_workflow())
        queue = AudioJobQueue(store, renderer=FakeRenderer())
        assert await queue.process(AudioJob(workflow_id="wf_audio", node_id="ghost", text="x")) is False
        assert await queue.process(AudioJob(workflow_id="missing", node_id="greet", text="x")) is False

    @pytest.mark.asyncio
    async def test_without_renderer_jobs_are_dropped(self, store):
        await store.save_workflow(greeting_workflow())
        queue = AudioJobQueue(store)
        queue.enqueue(AudioJob(workflow_id="wf_audio", node_id="greet", text="Welcome"))
        assert await queue.drain() == 0
        assert queue.pending() == 0

    @pytest.mark.asyncio
    async def test_renderer_failure_is_swallowed(self, store):
        await store.save_workflow(greeting_workflow())
        queue = AudioJobQueue(store, renderer=FakeRenderer(error=RuntimeError("tts down")))
        assert await queue.process(AudioJob(workflow_id="wf_audio", node_id="greet", text="Welcome")) is False

    @pytest.mark.asyncio
    async def test_renderer_timeout(self, store):
        await store.save_workflow(greeting_workflow())
        queue = AudioJobQueue(store, renderer=FakeRenderer(delay=1.0), timeout_s=0.05)
        assert await queue.process(AudioJob(workflow_id="wf_audio", node_id="greet", text="Welcome")) is False


class TestWorker:
    @pytest.mark.asyncio
    async def test_background_worker_processes_jobs(self, store):
        await store.save_workflow(greeting_workflow())
        queue = AudioJobQueue(store, renderer=FakeRenderer())
        await queue.start_background()
        queue.enqueue(AudioJob(workflow_id="wf_audio", node_id="greet", text="Welcome"))
        for _ in range(100):
            if (await store.get_workflow("wf_audio")).get_node("greet").payload.audio_url:
                break
            await asyncio.sleep(0.01)
        await queue.stop()
        assert (await store.get_workflow("wf_audio")).get_node("greet").payload.audio_url is not None


class TestWithNodeData:
    def test_updates_one_node_and_reparses(self):
        workflow = greeting_workflow(audioUrl="https://cdn/old.mp3")
        updated = with_node_data(workflow, "greet", {"audioUrl": "https://cdn/new.mp3"},
                                 drop=("audioUrl",))
        assert updated.get_node("greet").payload.audio_url == "https://cdn/new.mp3"
        assert workflow.get_node("greet").payload.audio_url == "https://cdn/old.mp3"
        assert updated.get_node("bye").type == "end"
