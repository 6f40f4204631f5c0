"""
Node Dispatcher — turns one node into one voice instruction.

``execute(node, context, workflow)`` looks the handler up in a table keyed by
NodeType. The table is checked for completeness when the dispatcher is built,
and any type outside the enum takes the single unknown-type arm (apology and
hang up). Handlers may mutate call variables through the context; they never
touch the live state table directly.

Auto-advancing nodes end their instruction with a redirect to the next node;
nodes that wait on the caller (input, voicemail, transfer, queue) point the
provider at the callback that resumes the flow.
"""
from __future__ import annotations

from typing import Awaitable, Callable, Optional, Union

import structlog

from backend.connector import ApiCallExecutor
from config.settings import EngineConfig, TelephonyConfig
from engine.context import ExecutionContext
from engine.errors import NodeExecutionError
from engine.urls import handle_input_url, next_step_url
from models.instructions import (
    ConnectStream, Dial, Enqueue, Gather, Play, Record, Say, Sms, VoiceInstruction,
)
from models.node_data import (
    AiAssistantData, ApiCallData, AudioData, ConditionalData, EndData, GreetingData,
    InputData, MalformedNodeData, NodeData, PromptData, QueueData, RepeatData,
    SetVariableData, SmsData, TransferData, VoicemailData,
)
from models.schemas import EndReason, FailureReason, Node, NodeType, Workflow
from utils.conditions import evaluate_expression, evaluate_preset
from utils.templating import substitute_in, substitute_variables

logger = structlog.get_logger()

Handler = Callable[[Node, NodeData, ExecutionContext, Workflow], Awaitable[VoiceInstruction]]


class NodeDispatcher:

    def __init__(
        self,
        api_executor: ApiCallExecutor = None,
        telephony: TelephonyConfig = None,
        engine: EngineConfig = None,
    ):
        self.api_executor = api_executor or ApiCallExecutor(engine or EngineConfig())
        self.telephony = telephony or TelephonyConfig()
        self.engine = engine or EngineConfig()
        self._handlers: dict[NodeType, Handler] = {
            NodeType.GREETING: self._greeting,
            NodeType.AUDIO: self._audio,
            NodeType.INPUT: self._input,
            NodeType.TRANSFER: self._transfer,
            NodeType.VOICEMAIL: self._voicemail,
            NodeType.REPEAT: self._repeat,
            NodeType.QUEUE: self._queue,
            NodeType.CONDITIONAL: self._conditional,
            NodeType.SET_VARIABLE: self._set_variable,
            NodeType.API_CALL: self._api_call,
            NodeType.SMS: self._sms,
            NodeType.AI_ASSISTANT: self._ai_assistant,
            NodeType.END: self._end,
        }
        missing = [t.value for t in NodeType if t not in self._handlers]
        if missing:
            raise RuntimeError(f"No dispatch handler for node types: {missing}")

    async def execute(self, node: Node, context: ExecutionContext,
                      workflow: Workflow) -> VoiceInstruction:
        node_type = node.node_type
        if node_type is None:
            logger.warning("unknown_node_type", node_id=node.id, node_type=node.type,
                           call_id=context.call_id)
            return VoiceInstruction.apology(self.engine.apology_message, EndReason.ERROR)

        payload = node.payload
        if isinstance(payload, MalformedNodeData):
            raise NodeExecutionError(node.id, node.type, f"invalid node data: {payload.error}")

        return await self._handlers[node_type](node, payload, context, workflow)

    # ── Helpers ──────────────────────────────────────────────

    def _voice(self, payload: NodeData, workflow: Workflow) -> str:
        voice = getattr(payload, "voice", None) or workflow.settings.voice
        # Neural voice ids from the TTS service are not valid provider voices
        if not voice or voice.lower().endswith("neural"):
            return self.telephony.default_voice
        return voice

    def _language(self, payload: NodeData, workflow: Workflow) -> str:
        return (getattr(payload, "language", None) or workflow.settings.language
                or self.telephony.default_language)

    def _say(self, text: str, payload: NodeData, ctx: ExecutionContext, workflow: Workflow) -> Say:
        return Say(text=substitute_variables(text, ctx.variables),
                   voice=self._voice(payload, workflow),
                   language=self._language(payload, workflow))

    def _prompt(self, payload: PromptData, ctx: ExecutionContext, workflow: Workflow,
                default_text: str = "", prefer_audio: bool = True) -> Optional[Union[Say, Play]]:
        if prefer_audio and payload.audio_url:
            return Play(url=payload.audio_url)
        text = payload.spoken_text or default_text
        if not text:
            return None
        return self._say(text, payload, ctx, workflow)

    @staticmethod
    def _advance(instruction: VoiceInstruction, node: Node, workflow: Workflow,
                 handle: str = None) -> VoiceInstruction:
        """Redirect to the next node, or hang up when the flow has nowhere to go."""
        edge = workflow.edge_for_handle(node.id, handle) if handle else workflow.default_edge(node.id)
        if edge is None:
            logger.info("no_outgoing_edge", node_id=node.id, handle=handle)
            return instruction.hangup(EndReason.NORMAL)
        return instruction.redirect(next_step_url(workflow.id, edge.target))

    # ── Phone & interaction ──────────────────────────────────

    async def _greeting(self, node: Node, payload: GreetingData, ctx: ExecutionContext,
                        workflow: Workflow) -> VoiceInstruction:
        instruction = VoiceInstruction()
        instruction.add(self._prompt(payload, ctx, workflow, default_text="Hello."))
        return self._advance(instruction, node, workflow)

    async def _audio(self, node: Node, payload: AudioData, ctx: ExecutionContext,
                     workflow: Workflow) -> VoiceInstruction:
        if payload.is_file_mode and payload.audio_url:
            prompt = Play(url=payload.audio_url)
        else:
            prompt = self._say(payload.spoken_text or "Playing audio.", payload, ctx, workflow)

        instruction = VoiceInstruction()
        if payload.after_playback == "wait":
            callback = handle_input_url(workflow.id, node.id)
            instruction.gather(Gather(
                action=callback, num_digits=1,
                timeout=payload.timeout_seconds or workflow.settings.timeout,
                prompts=[prompt],
            ))
            # Reached only when the gather times out
            return instruction.redirect(callback)

        instruction.add(prompt)
        return self._advance(instruction, node, workflow)

    async def _input(self, node: Node, payload: InputData, ctx: ExecutionContext,
                     workflow: Workflow) -> VoiceInstruction:
        settings = workflow.settings
        instruction = VoiceInstruction()

        if ctx.attempts(node.id) >= 1:
            if ctx.last_failure(node.id) == FailureReason.TIMEOUT:
                message = payload.timeout_message or settings.timeout_message
            else:
                message = payload.invalid_input_message or settings.invalid_input_message
            instruction.add(self._say(message, payload, ctx, workflow))

        prompt = self._input_prompt(payload, ctx, workflow)
        callback = handle_input_url(workflow.id, node.id)
        timeout = payload.effective_timeout or settings.timeout
        instruction.gather(Gather(
            action=callback,
            num_digits=payload.num_digits,
            timeout=timeout,
            finish_on_key=payload.finish_on_key,
            prompts=[prompt],
        ))
        # Gather falls through here when the caller enters nothing
        return instruction.redirect(callback)

    def _input_prompt(self, payload: InputData, ctx: ExecutionContext,
                      workflow: Workflow) -> Union[Say, Play]:
        if payload.prompt_audio_node_id:
            ref = workflow.get_node(payload.prompt_audio_node_id)
            if ref is not None and isinstance(ref.payload, PromptData):
                referenced = self._prompt(ref.payload, ctx, workflow)
                if referenced is not None:
                    return referenced
        prompt = self._prompt(payload, ctx, workflow)
        if prompt is not None:
            return prompt
        return self._say(payload.label or "Please select an option.", payload, ctx, workflow)

    async def _transfer(self, node: Node, payload: TransferData, ctx: ExecutionContext,
                        workflow: Workflow) -> VoiceInstruction:
        instruction = VoiceInstruction()
        target = substitute_variables(payload.target, ctx.variables).strip()
        if not target or "{" in target:
            logger.warning("transfer_without_destination", node_id=node.id, call_id=ctx.call_id)
            instruction.add(self._say(
                "We're sorry, we are unable to transfer your call right now. Goodbye.",
                payload, ctx, workflow,
            ))
            return instruction.hangup(EndReason.NORMAL)

        if payload.spoken_text:
            instruction.add(self._say(payload.spoken_text, payload, ctx, workflow))
        ctx.set_variable("transfer_destination", target)
        return instruction.add(Dial(
            number=target,
            action=next_step_url(workflow.id, node.id, status="dialed"),
            timeout=payload.timeout,
            caller_id=payload.caller_id,
        ))

    async def _voicemail(self, node: Node, payload: VoicemailData, ctx: ExecutionContext,
                         workflow: Workflow) -> VoiceInstruction:
        instruction = VoiceInstruction()
        instruction.add(self._prompt(payload, ctx, workflow,
                                     default_text="Please leave a message after the beep."))
        return instruction.add(Record(
            action=next_step_url(workflow.id, node.id, status="recorded"),
            max_length=payload.max_length,
            play_beep=payload.play_beep,
            transcribe=payload.transcribe,
        ))

    async def _repeat(self, node: Node, payload: RepeatData, ctx: ExecutionContext,
                      workflow: Workflow) -> VoiceInstruction:
        key = f"repeat_{node.id}"
        count = ctx.get_variable(key, 0)
        count = count if isinstance(count, int) else 0
        ctx.set_variable(key, count + 1)

        instruction = VoiceInstruction()
        if count >= payload.max_repeats:
            if payload.fallback_node_id and workflow.get_node(payload.fallback_node_id):
                return instruction.redirect(next_step_url(workflow.id, payload.fallback_node_id))
            return self._advance(instruction, node, workflow, handle="fallback")

        previous = ctx.previous_node_id(node.id)
        if payload.replay_last_prompt and previous:
            return instruction.redirect(next_step_url(workflow.id, previous))

        instruction.add(self._say("Repeating.", payload, ctx, workflow))
        return self._advance(instruction, node, workflow)

    async def _queue(self, node: Node, payload: QueueData, ctx: ExecutionContext,
                     workflow: Workflow) -> VoiceInstruction:
        instruction = VoiceInstruction()
        if payload.spoken_text:
            instruction.add(self._say(payload.spoken_text, payload, ctx, workflow))
        return instruction.add(Enqueue(
            queue_name=substitute_variables(payload.queue_name, ctx.variables),
            workflow_sid=payload.workflow_sid,
            action=next_step_url(workflow.id, node.id, status="dequeued"),
        ))

    async def _end(self, node: Node, payload: EndData, ctx: ExecutionContext,
                   workflow: Workflow) -> VoiceInstruction:
        instruction = VoiceInstruction()
        if payload.audio_url:
            instruction.play(payload.audio_url)
        elif payload.farewell:
            instruction.add(self._say(payload.farewell, payload, ctx, workflow))
        return instruction.hangup(EndReason.NORMAL)

    # ── Logic & data ─────────────────────────────────────────

    async def _conditional(self, node: Node, payload: ConditionalData, ctx: ExecutionContext,
                           workflow: Workflow) -> VoiceInstruction:
        variables = ctx.variables
        if payload.preset:
            result = evaluate_preset(payload.preset, payload.params, variables,
                                     caller=ctx.caller, now=ctx.now())
        else:
            value = substitute_variables(payload.value, variables)
            result = evaluate_expression(payload.variable, payload.operator, value, variables)
        logger.info("condition_evaluated", call_id=ctx.call_id, node_id=node.id,
                    preset=payload.preset, variable=payload.variable,
                    operator=payload.operator, result=result)
        return self._advance(VoiceInstruction(), node, workflow,
                             handle="true" if result else "false")

    async def _set_variable(self, node: Node, payload: SetVariableData, ctx: ExecutionContext,
                            workflow: Workflow) -> VoiceInstruction:
        if payload.variable:
            ctx.set_variable(payload.variable, substitute_in(payload.value, ctx.variables))
        return self._advance(VoiceInstruction(), node, workflow)

    async def _api_call(self, node: Node, payload: ApiCallData, ctx: ExecutionContext,
                        workflow: Workflow) -> VoiceInstruction:
        variables = ctx.variables
        try:
            result = await self.api_executor.execute(
                payload.method,
                substitute_variables(payload.url, variables),
                headers=substitute_in(payload.headers, variables),
                body=substitute_in(payload.body, variables),
                timeout_s=payload.timeout_seconds,
            )
            ok = result.ok
        except Exception as e:
            logger.warning("api_call_node_failed", call_id=ctx.call_id, node_id=node.id, error=str(e))
            result, ok = None, False

        out = payload.output_variable
        if out and result is not None and result.status_code is not None:
            ctx.set_variable(f"{out}.status", result.status_code)
            ctx.set_variable(f"{out}.data", result.data)
        return self._advance(VoiceInstruction(), node, workflow,
                             handle="success" if ok else "error")

    # ── Communication ────────────────────────────────────────

    async def _sms(self, node: Node, payload: SmsData, ctx: ExecutionContext,
                   workflow: Workflow) -> VoiceInstruction:
        instruction = VoiceInstruction()
        message = substitute_variables(payload.message, ctx.variables)
        if message:
            to = substitute_variables(payload.to, ctx.variables) if payload.to else ctx.caller
            instruction.add(Sms(message=message, to=to or None))
        return self._advance(instruction, node, workflow)

    async def _ai_assistant(self, node: Node, payload: AiAssistantData, ctx: ExecutionContext,
                            workflow: Workflow) -> VoiceInstruction:
        instruction = VoiceInstruction()
        if payload.stream_url:
            instruction.add(ConnectStream(url=payload.stream_url))
        else:
            instruction.add(self._say(payload.fallback_message, payload, ctx, workflow))
        return self._advance(instruction, node, workflow)
