"""
Typed node payloads.

Every node in a workflow graph carries a free-form ``data`` dict authored in the
flow editor. At load time it is parsed once into one of the payload models
below, so handlers read attributes instead of probing dict keys.

camelCase keys from the editor (``maxAttempts``, ``audioUrl``) and snake_case
keys are both accepted. Unknown keys are kept in ``model_extra``.
"""
from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel


class NodeData(BaseModel):
    """Fields shared by every node type."""
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="allow",
    )

    label: str = ""


class PromptData(NodeData):
    """Text-to-speech or pre-rendered audio prompt."""
    text: str = ""
    message_text: str = ""
    audio_url: Optional[str] = None
    audio_asset_id: Optional[str] = None
    voice: Optional[str] = None
    language: Optional[str] = None

    @property
    def spoken_text(self) -> str:
        return self.message_text or self.text


# ── Phone & interaction ──────────────────────────────────────

class GreetingData(PromptData):
    pass


class AudioData(PromptData):
    mode: str = "text"                       # "text" | "upload"
    after_playback: str = "next"             # "next" | "wait"
    timeout_seconds: Optional[int] = None

    @property
    def is_file_mode(self) -> bool:
        return self.mode in ("upload", "file")


class MenuOption(BaseModel):
    """Legacy digit → destination mapping stored on an input node."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    digit: str = ""
    action: str = ""
    destination: str = ""


class InputData(PromptData):
    num_digits: int = 1
    timeout: Optional[int] = None
    timeout_seconds: Optional[int] = None
    max_attempts: Optional[int] = None
    max_retries: Optional[int] = None
    finish_on_key: Optional[str] = None
    invalid_input_message: Optional[str] = None
    timeout_message: Optional[str] = None
    prompt_audio_node_id: Optional[str] = None
    # Legacy single-option routing
    digit: Optional[str] = None
    action: Optional[str] = None
    destination: Optional[str] = None
    options: list[MenuOption] = Field(default_factory=list)

    @property
    def effective_timeout(self) -> Optional[int]:
        return self.timeout if self.timeout is not None else self.timeout_seconds

    @property
    def effective_max_attempts(self) -> Optional[int]:
        return self.max_attempts if self.max_attempts is not None else self.max_retries

    @property
    def has_prompt(self) -> bool:
        return bool(self.spoken_text or self.label or self.audio_url or self.prompt_audio_node_id)

    def legacy_options(self) -> list[MenuOption]:
        opts = list(self.options)
        if self.digit and self.destination:
            opts.append(MenuOption(digit=self.digit, action=self.action or "", destination=self.destination))
        return opts


class TransferData(PromptData):
    destination: str = ""
    transfer_number: str = ""
    caller_id: Optional[str] = None
    timeout: int = 30

    @property
    def target(self) -> str:
        return self.destination or self.transfer_number


class VoicemailData(PromptData):
    max_length: int = 60
    transcribe: bool = False
    play_beep: bool = True


class RepeatData(NodeData):
    max_repeats: int = 3
    fallback_node_id: Optional[str] = None
    replay_last_prompt: bool = True


class QueueData(PromptData):
    queue_name: str = "General"
    workflow_sid: Optional[str] = None


class PostCallAction(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    type: str                                # "survey" | "receipt" | "callback"
    channel: str = "sms"                     # "sms" | "email"
    to: Optional[str] = None
    message: str = ""
    subject: str = ""
    delay_minutes: int = 0


class EndData(PromptData):
    message: str = ""
    post_call: list[PostCallAction] = Field(default_factory=list)

    @property
    def farewell(self) -> str:
        return self.spoken_text or self.message


# ── Logic & data ─────────────────────────────────────────────

class ConditionalData(NodeData):
    variable: str = ""
    operator: str = "equals"
    value: Any = None
    preset: Optional[str] = None             # business_hours | caller_id_known | premium_customer
    params: dict[str, Any] = Field(default_factory=dict)


class SetVariableData(NodeData):
    variable: str = ""
    value: Any = None


class ApiCallData(NodeData):
    url: str = ""
    method: str = "GET"
    headers: dict[str, str] = Field(default_factory=dict)
    body: Any = None
    output_variable: str = "api_response"
    timeout_seconds: Optional[float] = None


# ── Communication ────────────────────────────────────────────

class SmsData(NodeData):
    message: str = ""
    to: Optional[str] = None


class AiAssistantData(PromptData):
    stream_url: Optional[str] = None
    fallback_message: str = "The assistant is not available right now."


# ── Markers for payloads that could not be parsed ────────────

class MalformedNodeData(NodeData):
    error: str = ""
    raw: dict[str, Any] = Field(default_factory=dict)


class UnknownNodeData(NodeData):
    raw: dict[str, Any] = Field(default_factory=dict)


PAYLOAD_TYPES: dict[str, type[NodeData]] = {
    "greeting": GreetingData,
    "audio": AudioData,
    "input": InputData,
    "transfer": TransferData,
    "voicemail": VoicemailData,
    "repeat": RepeatData,
    "queue": QueueData,
    "conditional": ConditionalData,
    "set_variable": SetVariableData,
    "api_call": ApiCallData,
    "sms": SmsData,
    "ai_assistant": AiAssistantData,
    "end": EndData,
}


def parse_node_data(node_type: str, data: Optional[dict[str, Any]]) -> NodeData:
    """Translate a raw ``data`` dict into the payload model for ``node_type``."""
    raw = data or {}
    model = PAYLOAD_TYPES.get(node_type)
    if model is None:
        return UnknownNodeData(raw=raw)
    try:
        return model.model_validate(raw)
    except ValidationError as e:
        return MalformedNodeData(error=str(e), raw=raw)
