"""
Voice instructions — the provider-neutral output of one dispatch step.

A VoiceInstruction is an ordered list of verbs. It is serialized into TwiML
only at the webhook boundary (channels/telephony/twiml.py).
"""
from __future__ import annotations

from typing import Literal, Optional, Union

from pydantic import BaseModel, Field

from models.schemas import EndReason


class Say(BaseModel):
    verb: Literal["say"] = "say"
    text: str
    voice: Optional[str] = None
    language: Optional[str] = None


class Play(BaseModel):
    verb: Literal["play"] = "play"
    url: str


class Pause(BaseModel):
    verb: Literal["pause"] = "pause"
    length: int = 1


class Gather(BaseModel):
    verb: Literal["gather"] = "gather"
    action: str
    num_digits: int = 1
    timeout: int = 10
    finish_on_key: Optional[str] = None
    prompts: list[Union[Say, Play]] = Field(default_factory=list)


class Dial(BaseModel):
    verb: Literal["dial"] = "dial"
    number: str
    action: Optional[str] = None
    timeout: int = 30
    caller_id: Optional[str] = None


class Record(BaseModel):
    verb: Literal["record"] = "record"
    action: str
    max_length: int = 60
    play_beep: bool = True
    transcribe: bool = False


class Enqueue(BaseModel):
    verb: Literal["enqueue"] = "enqueue"
    queue_name: str
    action: Optional[str] = None
    workflow_sid: Optional[str] = None


class Sms(BaseModel):
    verb: Literal["sms"] = "sms"
    message: str
    to: Optional[str] = None


class ConnectStream(BaseModel):
    verb: Literal["connect_stream"] = "connect_stream"
    url: str


class Redirect(BaseModel):
    verb: Literal["redirect"] = "redirect"
    url: str


class Hangup(BaseModel):
    verb: Literal["hangup"] = "hangup"


Verb = Union[Say, Play, Pause, Gather, Dial, Record, Enqueue, Sms, ConnectStream, Redirect, Hangup]


class VoiceInstruction(BaseModel):
    """
    One response document. ``terminal`` marks that the execution ends with
    this turn; ``end_reason`` says why.
    """
    verbs: list[Verb] = Field(default_factory=list)
    terminal: bool = False
    end_reason: Optional[EndReason] = None

    # ── Builders ─────────────────────────────────────────────

    def say(self, text: str, voice: str = None, language: str = None) -> "VoiceInstruction":
        self.verbs.append(Say(text=text, voice=voice, language=language))
        return self

    def play(self, url: str) -> "VoiceInstruction":
        self.verbs.append(Play(url=url))
        return self

    def gather(self, gather: Gather) -> "VoiceInstruction":
        self.verbs.append(gather)
        return self

    def redirect(self, url: str) -> "VoiceInstruction":
        self.verbs.append(Redirect(url=url))
        return self

    def add(self, verb: Verb) -> "VoiceInstruction":
        self.verbs.append(verb)
        return self

    def hangup(self, reason: EndReason = EndReason.NORMAL) -> "VoiceInstruction":
        self.verbs.append(Hangup())
        self.terminal = True
        self.end_reason = reason
        return self

    # ── Inspection ───────────────────────────────────────────

    def verb_names(self) -> list[str]:
        return [v.verb for v in self.verbs]

    def first(self, verb_type: type) -> Optional[Verb]:
        for v in self.verbs:
            if isinstance(v, verb_type):
                return v
        return None

    @classmethod
    def apology(cls, message: str, reason: EndReason = EndReason.ERROR) -> "VoiceInstruction":
        return cls().say(message).hangup(reason)

    @classmethod
    def empty(cls) -> "VoiceInstruction":
        """Acknowledge a webhook without telling the provider to do anything."""
        return cls()
