"""
TwiML rendering — serializes a VoiceInstruction into one Twilio
``<Response>`` document. This is the only place that knows the markup.

Callback URLs in instructions are relative (``/ivr/next-step?...``). When a
public base URL is configured they are made absolute, otherwise Twilio
resolves them against the URL of the request being answered.
"""
from __future__ import annotations

from typing import Optional

from twilio.twiml.voice_response import Gather as TwimlGather
from twilio.twiml.voice_response import VoiceResponse

from models.instructions import (
    ConnectStream, Dial, Enqueue, Gather, Hangup, Pause, Play, Record, Redirect,
    Say, Sms, VoiceInstruction,
)


def _absolute(url: Optional[str], base_url: str) -> Optional[str]:
    if not url or not base_url or not url.startswith("/"):
        return url
    return base_url.rstrip("/") + url


def _bool(value: bool) -> str:
    return "true" if value else "false"


def _say(parent, verb: Say) -> None:
    kwargs = {}
    if verb.voice:
        kwargs["voice"] = verb.voice
    if verb.language:
        kwargs["language"] = verb.language
    parent.say(verb.text, **kwargs)


def _gather(response: VoiceResponse, verb: Gather, base_url: str) -> None:
    kwargs = {
        "action": _absolute(verb.action, base_url),
        "method": "POST",
        "input": "dtmf",
        "num_digits": verb.num_digits,
        "timeout": verb.timeout,
    }
    if verb.finish_on_key:
        kwargs["finish_on_key"] = verb.finish_on_key
    gather: TwimlGather = response.gather(**kwargs)
    for prompt in verb.prompts:
        if isinstance(prompt, Say):
            _say(gather, prompt)
        else:
            gather.play(prompt.url)


def render_twiml(instruction: VoiceInstruction, base_url: str = "") -> str:
    """Render ``instruction`` as a TwiML XML string."""
    response = VoiceResponse()
    for verb in instruction.verbs:
        if isinstance(verb, Say):
            _say(response, verb)
        elif isinstance(verb, Play):
            response.play(verb.url)
        elif isinstance(verb, Pause):
            response.pause(length=verb.length)
        elif isinstance(verb, Gather):
            _gather(response, verb, base_url)
        elif isinstance(verb, Dial):
            kwargs = {"timeout": verb.timeout}
            if verb.action:
                kwargs["action"] = _absolute(verb.action, base_url)
                kwargs["method"] = "POST"
            if verb.caller_id:
                kwargs["caller_id"] = verb.caller_id
            response.dial(verb.number, **kwargs)
        elif isinstance(verb, Record):
            response.record(
                action=_absolute(verb.action, base_url),
                method="POST",
                max_length=verb.max_length,
                play_beep=_bool(verb.play_beep),
                transcribe=_bool(verb.transcribe),
            )
        elif isinstance(verb, Enqueue):
            kwargs = {}
            if verb.action:
                kwargs["action"] = _absolute(verb.action, base_url)
                kwargs["method"] = "POST"
            if verb.workflow_sid:
                kwargs["workflow_sid"] = verb.workflow_sid
            response.enqueue(verb.queue_name, **kwargs)
        elif isinstance(verb, Sms):
            kwargs = {"to": verb.to} if verb.to else {}
            response.sms(verb.message, **kwargs)
        elif isinstance(verb, ConnectStream):
            connect = response.connect()
            connect.stream(url=verb.url)
        elif isinstance(verb, Redirect):
            response.redirect(_absolute(verb.url, base_url), method="POST")
        elif isinstance(verb, Hangup):
            response.hangup()
    return response.to_xml()


def render_empty() -> str:
    return VoiceResponse().to_xml()
