"""Tests for per-node-type dispatch into voice instructions."""
import asyncio
import time

import httpx
import pytest

from backend.connector import ApiCallExecutor, ApiCallResult
from config.settings import EngineConfig, TelephonyConfig
from engine.dispatcher import NodeDispatcher
from engine.errors import NodeExecutionError
from models.instructions import (
    ConnectStream, Dial, Enqueue, Gather, Play, Record, Redirect, Say, Sms,
)
from models.schemas import EndReason, FailureReason, NodeType, Workflow


def build_workflow(nodes, edges, **kwargs) -> Workflow:
    return Workflow.model_validate({"id": "wf_d", "nodes": nodes, "edges": edges, **kwargs})


def linear(node: dict, next_type: str = "end") -> Workflow:
    return build_workflow(
        nodes=[node, {"id": "next", "type": next_type}],
        edges=[{"id": "e1", "source": node["id"], "target": "next"}],
    )


async def context_for(manager, store, workflow, caller="+15557654321"):
    await store.save_workflow(workflow)
    await manager.start_execution(workflow.id, "CA1", caller=caller)
    return manager.context_for("CA1")


async def run(dispatcher, manager, store, workflow, node_id, **kwargs):
    ctx = await context_for(manager, store, workflow, **kwargs)
    return await dispatcher.execute(workflow.get_node(node_id), ctx, workflow)


NEXT_URL = "/ivr/next-step?workflowId=wf_d&currentNodeId=next"


class TestDispatchTable:
    def test_every_node_type_has_a_handler(self, dispatcher):
        assert set(dispatcher._handlers) == set(NodeType)

    @pytest.mark.asyncio
    async def test_unknown_type_apologizes(self, dispatcher, manager, store):
        wf = build_workflow(nodes=[{"id": "x", "type": "fax"}], edges=[])
        instruction = await run(dispatcher, manager, store, wf, "x")
        assert instruction.terminal
        assert instruction.end_reason == EndReason.ERROR
        assert instruction.verb_names() == ["say", "hangup"]

    @pytest.mark.asyncio
    async def test_malformed_data_raises(self, dispatcher, manager, store):
        wf = build_workflow(nodes=[{"id": "m", "type": "input", "data": {"maxAttempts": "lots"}}],
                            edges=[])
        with pytest.raises(NodeExecutionError):
            await run(dispatcher, manager, store, wf, "m")


class TestPromptNodes:
    @pytest.mark.asyncio
    async def test_greeting_says_and_redirects(self, dispatcher, manager, store):
        wf = linear({"id": "g", "type": "greeting", "data": {"text": "Hi {name}"}})
        ctx = await context_for(manager, store, wf)
        ctx.set_variable("name", "Sam")
        instruction = await dispatcher.execute(wf.get_node("g"), ctx, wf)
        say, redirect = instruction.verbs
        assert isinstance(say, Say) and say.text == "Hi Sam"
        assert say.voice == "alice"
        assert say.language == "en-US"
        assert isinstance(redirect, Redirect) and redirect.url == NEXT_URL
        assert not instruction.terminal

    @pytest.mark.asyncio
    async def test_greeting_prefers_audio(self, dispatcher, manager, store):
        wf = linear({"id": "g", "type": "greeting",
                     "data": {"text": "Hi", "audioUrl": "https://cdn/hi.mp3"}})
        instruction = await run(dispatcher, manager, store, wf, "g")
        assert instruction.verbs[0] == Play(url="https://cdn/hi.mp3")

    @pytest.mark.asyncio
    async def test_last_node_hangs_up(self, dispatcher, manager, store):
        wf = build_workflow(nodes=[{"id": "g", "type": "greeting", "data": {"text": "Bye"}}], edges=[])
        instruction = await run(dispatcher, manager, store, wf, "g")
        assert instruction.verb_names() == ["say", "hangup"]
        assert instruction.end_reason == EndReason.NORMAL

    @pytest.mark.asyncio
    async def test_neural_voice_falls_back_to_default(self, dispatcher, manager, store):
        wf = linear({"id": "g", "type": "greeting",
                     "data": {"text": "Hi", "voice": "en-US-JennyNeural"}},)
        instruction = await run(dispatcher, manager, store, wf, "g")
        assert instruction.verbs[0].voice == "alice"

    @pytest.mark.asyncio
    async def test_workflow_voice_settings(self, dispatcher, manager, store):
        wf = build_workflow(
            nodes=[{"id": "g", "type": "greeting", "data": {"text": "Hola"}}], edges=[],
            settings={"voice": "Polly.Lupe", "language": "es-US"},
        )
        say = (await run(dispatcher, manager, store, wf, "g")).verbs[0]
        assert (say.voice, say.language) == ("Polly.Lupe", "es-US")

    @pytest.mark.asyncio
    async def test_audio_file_mode_plays(self, dispatcher, manager, store):
        wf = linear({"id": "a", "type": "audio",
                     "data": {"mode": "upload", "audioUrl": "https://cdn/a.mp3"}})
        instruction = await run(dispatcher, manager, store, wf, "a")
        assert instruction.verb_names() == ["play", "redirect"]

    @pytest.mark.asyncio
    async def test_audio_wait_gathers(self, dispatcher, manager, store):
        wf = linear({"id": "a", "type": "audio",
                     "data": {"text": "Press any key", "afterPlayback": "wait", "timeoutSeconds": 4}})
        instruction = await run(dispatcher, manager, store, wf, "a")
        gather = instruction.first(Gather)
        assert gather.timeout == 4
        assert gather.action == "/ivr/handle-input?workflowId=wf_d&currentNodeId=a"
        assert instruction.verbs[-1].url == gather.action


class TestInputNode:
    @pytest.mark.asyncio
    async def test_first_prompt(self, dispatcher, manager, store, sample_workflow):
        instruction = await run(dispatcher, manager, store, sample_workflow, "menu")
        gather = instruction.first(Gather)
        assert gather.num_digits == 1
        assert gather.timeout == 5
        assert gather.prompts[0].text.startswith("Press 1 for sales")
        assert instruction.verb_names() == ["gather", "redirect"]

    @pytest.mark.asyncio
    async def test_reprompt_after_invalid(self, dispatcher, manager, store, sample_workflow):
        ctx = await context_for(manager, store, sample_workflow)
        manager.increment_attempts("CA1", "menu")
        manager.set_last_failure("CA1", "menu", FailureReason.INVALID)
        instruction = await dispatcher.execute(sample_workflow.get_node("menu"), ctx, sample_workflow)
        assert instruction.verbs[0].text == "Invalid selection. Please try again."
        assert instruction.verb_names() == ["say", "gather", "redirect"]

    @pytest.mark.asyncio
    async def test_reprompt_after_timeout_uses_node_message(self, dispatcher, manager, store):
        wf = build_workflow(nodes=[{"id": "m", "type": "input",
                                    "data": {"text": "Pick", "timeoutMessage": "Still there?"}}],
                            edges=[])
        ctx = await context_for(manager, store, wf)
        manager.increment_attempts("CA1", "m")
        manager.set_last_failure("CA1", "m", FailureReason.TIMEOUT)
        instruction = await dispatcher.execute(wf.get_node("m"), ctx, wf)
        assert instruction.verbs[0].text == "Still there?"

    @pytest.mark.asyncio
    async def test_prompt_from_referenced_audio_node(self, dispatcher, manager, store):
        wf = build_workflow(
            nodes=[{"id": "m", "type": "input", "data": {"promptAudioNodeId": "clip"}},
                   {"id": "clip", "type": "audio", "data": {"audioUrl": "https://cdn/menu.mp3"}}],
            edges=[],
        )
        gather = (await run(dispatcher, manager, store, wf, "m")).first(Gather)
        assert gather.prompts == [Play(url="https://cdn/menu.mp3")]

    @pytest.mark.asyncio
    async def test_timeout_alias_and_finish_key(self, dispatcher, manager, store):
        wf = build_workflow(nodes=[{"id": "m", "type": "input", "data": {
            "text": "Account number", "numDigits": 6, "timeoutSeconds": 8, "finishOnKey": "#"}}],
            edges=[])
        gather = (await run(dispatcher, manager, store, wf, "m")).first(Gather)
        assert (gather.num_digits, gather.timeout, gather.finish_on_key) == (6, 8, "#")


class TestCallControl:
    @pytest.mark.asyncio
    async def test_transfer_dials_and_records_destination(self, dispatcher, manager, store,
                                                          sample_workflow):
        instruction = await run(dispatcher, manager, store, sample_workflow, "sales")
        dial = instruction.first(Dial)
        assert dial.number == "+15551230000"
        assert dial.action.endswith("currentNodeId=sales&status=dialed")
        assert manager.get_variable("CA1", "transfer_destination") == "+15551230000"

    @pytest.mark.asyncio
    async def test_transfer_without_destination(self, dispatcher, manager, store):
        wf = build_workflow(nodes=[{"id": "t", "type": "transfer", "data": {"destination": "{agent}"}}],
                            edges=[])
        instruction = await run(dispatcher, manager, store, wf, "t")
        assert instruction.verb_names() == ["say", "hangup"]
        assert instruction.end_reason == EndReason.NORMAL
        assert manager.get_variable("CA1", "transfer_destination") is None

    @pytest.mark.asyncio
    async def test_voicemail_records(self, dispatcher, manager, store, sample_workflow):
        instruction = await run(dispatcher, manager, store, sample_workflow, "vm")
        record = instruction.first(Record)
        assert instruction.verbs[0].text == "Leave a message."
        assert record.action.endswith("currentNodeId=vm&status=recorded")
        assert record.max_length == 60

    @pytest.mark.asyncio
    async def test_queue_enqueues(self, dispatcher, manager, store):
        wf = build_workflow(nodes=[{"id": "q", "type": "queue", "data": {"queueName": "support"}}],
                            edges=[])
        enqueue = (await run(dispatcher, manager, store, wf, "q")).first(Enqueue)
        assert enqueue.queue_name == "support"
        assert enqueue.action.endswith("status=dequeued")

    @pytest.mark.asyncio
    async def test_end_says_farewell(self, dispatcher, manager, store, sample_workflow):
        instruction = await run(dispatcher, manager, store, sample_workflow, "bye")
        assert instruction.verbs[0].text == "Thanks for calling. Goodbye."
        assert instruction.terminal
        assert instruction.end_reason == EndReason.NORMAL

    @pytest.mark.asyncio
    async def test_repeat_replays_previous_node(self, dispatcher, manager, store):
        wf = build_workflow(
            nodes=[{"id": "m", "type": "greeting", "data": {"text": "Hello"}},
                   {"id": "r", "type": "repeat", "data": {"maxRepeats": 1}},
                   {"id": "out", "type": "end"}],
            edges=[{"id": "e1", "source": "m", "target": "r"},
                   {"id": "e2", "source": "r", "target": "out", "sourceHandle": "fallback"}],
        )
        ctx = await context_for(manager, store, wf)
        await manager.track_visit("CA1", "m", "greeting")
        await manager.track_visit("CA1", "r", "repeat")
        first = await dispatcher.execute(wf.get_node("r"), ctx, wf)
        assert first.verbs[-1].url.endswith("currentNodeId=m")
        second = await dispatcher.execute(wf.get_node("r"), ctx, wf)
        assert second.verbs[-1].url.endswith("currentNodeId=out")


class TestLogicNodes:
    @staticmethod
    def branching(data: dict) -> Workflow:
        return build_workflow(
            nodes=[{"id": "c", "type": "conditional", "data": data},
                   {"id": "yes", "type": "end"}, {"id": "no", "type": "end"}],
            edges=[{"id": "t", "source": "c", "target": "yes", "sourceHandle": "true"},
                   {"id": "f", "source": "c", "target": "no", "sourceHandle": "false"}],
        )

    @pytest.mark.asyncio
    async def test_conditional_expression(self, dispatcher, manager, store):
        wf = self.branching({"variable": "tier", "operator": "equals", "value": "gold"})
        ctx = await context_for(manager, store, wf)
        ctx.set_variable("tier", "gold")
        instruction = await dispatcher.execute(wf.get_node("c"), ctx, wf)
        assert instruction.verbs == [Redirect(url="/ivr/next-step?workflowId=wf_d&currentNodeId=yes")]

    @pytest.mark.asyncio
    async def test_conditional_false_branch(self, dispatcher, manager, store):
        wf = self.branching({"variable": "tier", "operator": "equals", "value": "gold"})
        instruction = await run(dispatcher, manager, store, wf, "c")
        assert instruction.verbs[0].url.endswith("currentNodeId=no")

    @pytest.mark.asyncio
    async def test_business_hours_preset_uses_clock(self, dispatcher, manager, store):
        # The test clock sits at Monday 10:00 UTC
        wf = self.branching({"preset": "business_hours", "params": {"timezone": "UTC"}})
        instruction = await run(dispatcher, manager, store, wf, "c")
        assert instruction.verbs[0].url.endswith("currentNodeId=yes")

    @pytest.mark.asyncio
    async def test_caller_known_preset(self, dispatcher, manager, store):
        wf = self.branching({"preset": "caller_id_known"})
        instruction = await run(dispatcher, manager, store, wf, "c", caller="anonymous")
        assert instruction.verbs[0].url.endswith("currentNodeId=no")

    @pytest.mark.asyncio
    async def test_missing_branch_hangs_up(self, dispatcher, manager, store):
        wf = build_workflow(
            nodes=[{"id": "c", "type": "conditional", "data": {"variable": "x", "operator": "exists"}},
                   {"id": "yes", "type": "end"}],
            edges=[{"id": "t", "source": "c", "target": "yes", "sourceHandle": "true"}],
        )
        instruction = await run(dispatcher, manager, store, wf, "c")
        assert instruction.terminal

    @pytest.mark.asyncio
    async def test_set_variable(self, dispatcher, manager, store):
        wf = linear({"id": "s", "type": "set_variable",
                     "data": {"variable": "greeting", "value": "Hi {caller_name}"}})
        ctx = await context_for(manager, store, wf)
        ctx.set_variable("caller_name", "Ada")
        instruction = await dispatcher.execute(wf.get_node("s"), ctx, wf)
        assert manager.get_variable("CA1", "greeting") == "Hi Ada"
        assert instruction.verbs == [Redirect(url=NEXT_URL)]


class TestApiCallNode:
    @staticmethod
    def api_workflow(**extra) -> Workflow:
        return build_workflow(
            nodes=[{"id": "api", "type": "api_call", "data": {
                       **extra, "url": "https://crm.example.com/lookup?phone={phone}", "method": "POST",
                       "headers": {"X-Call": "{phone}"}, "body": {"phone": "{phone}"},
                       "outputVariable": "crm"}},
                   {"id": "ok", "type": "end"}, {"id": "err", "type": "end"}],
            edges=[{"id": "s", "source": "api", "target": "ok", "sourceHandle": "success"},
                   {"id": "f", "source": "api", "target": "err", "sourceHandle": "error"}],
        )

    @pytest.mark.asyncio
    async def test_success_stores_response(self, dispatcher, manager, store, api_executor):
        wf = self.api_workflow()
        ctx = await context_for(manager, store, wf)
        ctx.set_variable("phone", "5550100")
        api_executor.result = ApiCallResult(ok=True, status_code=200, data={"tier": "gold"})

        instruction = await dispatcher.execute(wf.get_node("api"), ctx, wf)

        call = api_executor.calls[0]
        assert call["url"] == "https://crm.example.com/lookup?phone=5550100"
        assert call["headers"] == {"X-Call": "5550100"}
        assert call["body"] == {"phone": "5550100"}
        assert manager.get_variable("CA1", "crm.status") == 200
        assert manager.get_variable("CA1", "crm.data") == {"tier": "gold"}
        assert instruction.verbs[0].url.endswith("currentNodeId=ok")

    @pytest.mark.asyncio
    async def test_http_error_takes_error_branch(self, dispatcher, manager, store, api_executor):
        api_executor.result = ApiCallResult(ok=False, status_code=503, data=None, error="HTTP 503")
        instruction = await run(dispatcher, manager, store, self.api_workflow(), "api")
        assert instruction.verbs[0].url.endswith("currentNodeId=err")
        assert manager.get_variable("CA1", "crm.status") == 503

    @pytest.mark.asyncio
    async def test_exception_takes_error_branch(self, dispatcher, manager, store, api_executor):
        api_executor.error = RuntimeError("connection refused")
        instruction = await run(dispatcher, manager, store, self.api_workflow(), "api")
        assert instruction.verbs[0].url.endswith("currentNodeId=err")
        assert manager.get_variable("CA1", "crm.status") is None

    @pytest.mark.asyncio
    async def test_node_timeout_cannot_exceed_engine_bound(self, manager, store):
        async def stall(request):
            await asyncio.sleep(5)
            return httpx.Response(200)

        config = EngineConfig(api_call_timeout_s=0.1)
        client = httpx.AsyncClient(transport=httpx.MockTransport(stall))
        dispatcher = NodeDispatcher(
            api_executor=ApiCallExecutor(config, client=client),
            telephony=TelephonyConfig(), engine=config,
        )
        wf = self.api_workflow(timeoutSeconds=2)

        started = time.monotonic()
        instruction = await run(dispatcher, manager, store, wf, "api")
        elapsed = time.monotonic() - started
        await client.aclose()

        assert elapsed < 1.0
        assert instruction.verbs[0].url.endswith("currentNodeId=err")


class TestCommunicationNodes:
    @pytest.mark.asyncio
    async def test_sms_defaults_to_caller(self, dispatcher, manager, store):
        wf = linear({"id": "s", "type": "sms", "data": {"message": "Your code is {code}"}})
        ctx = await context_for(manager, store, wf)
        ctx.set_variable("code", "1234")
        instruction = await dispatcher.execute(wf.get_node("s"), ctx, wf)
        assert instruction.verbs[0] == Sms(message="Your code is 1234", to="+15557654321")
        assert instruction.verbs[1] == Redirect(url=NEXT_URL)

    @pytest.mark.asyncio
    async def test_empty_sms_skips_verb(self, dispatcher, manager, store):
        wf = linear({"id": "s", "type": "sms", "data": {}})
        instruction = await run(dispatcher, manager, store, wf, "s")
        assert instruction.verb_names() == ["redirect"]

    @pytest.mark.asyncio
    async def test_ai_assistant_streams(self, dispatcher, manager, store):
        wf = linear({"id": "ai", "type": "ai_assistant", "data": {"streamUrl": "wss://bot/stream"}})
        instruction = await run(dispatcher, manager, store, wf, "ai")
        assert instruction.verbs[0] == ConnectStream(url="wss://bot/stream")

    @pytest.mark.asyncio
    async def test_ai_assistant_without_stream(self, dispatcher, manager, store):
        wf = linear({"id": "ai", "type": "ai_assistant", "data": {}})
        instruction = await run(dispatcher, manager, store, wf, "ai")
        assert instruction.verbs[0].text == "The assistant is not available right now."
