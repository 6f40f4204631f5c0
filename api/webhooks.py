"""
Twilio voice webhooks — the thin boundary between the provider and the engine.

Every request is signature-checked before any engine code runs (403 on
failure). Each handler runs exactly one engine turn and answers with exactly
one TwiML document. Nothing raised by the engine escapes: the outermost
boundary ends the execution and answers with an apology + hangup.
"""
from __future__ import annotations

from typing import Awaitable, Callable, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import Response

from api.bootstrap import Services, get_services
from channels.telephony.signature import verify_twilio_signature
from channels.telephony.twilio_client import TwilioClient
from channels.telephony.twiml import render_empty, render_twiml
from models.instructions import VoiceInstruction
from models.schemas import EndReason

logger = structlog.get_logger()

router = APIRouter(prefix="/ivr", tags=["ivr"])


async def verified_form(request: Request, services: Services = Depends(get_services)) -> dict[str, str]:
    """Parsed form body of a request carrying a valid Twilio signature."""
    form = {k: str(v) for k, v in (await request.form()).items()}
    signature = request.headers.get("X-Twilio-Signature", "")
    if not verify_twilio_signature(str(request.url), form, signature, services.settings):
        raise HTTPException(403, "Invalid Twilio signature")
    return form


def _call_id(form: dict[str, str]) -> str:
    call_id = form.get("CallSid", "")
    if not call_id:
        raise HTTPException(400, "CallSid is required")
    return call_id


def _xml(content: str) -> Response:
    return Response(content=content, media_type="application/xml")


async def _turn(services: Services, call_id: str,
                run: Callable[[], Awaitable[VoiceInstruction]]) -> Response:
    base_url = services.settings.telephony.public_base_url
    try:
        instruction = await run()
        return _xml(render_twiml(instruction, base_url=base_url))
    except Exception as e:
        logger.error("webhook_turn_failed", call_id=call_id, error=str(e) or type(e).__name__)
        try:
            await services.manager.end_execution(call_id, EndReason.ERROR, error=str(e))
        except Exception as end_error:
            logger.error("webhook_turn_cleanup_failed", call_id=call_id, error=str(end_error))
        apology = VoiceInstruction.apology(services.settings.engine.apology_message)
        return _xml(render_twiml(apology, base_url=base_url))


@router.post("/welcome")
async def welcome(
    workflow_id: Optional[str] = Query(None, alias="workflowId"),
    form: dict[str, str] = Depends(verified_form),
    services: Services = Depends(get_services),
):
    """Inbound call answered: start the workflow picked by id or by the dialed number."""
    call_id = _call_id(form)
    logger.info("ivr_welcome", call_id=call_id, workflow_id=workflow_id, to=form.get("To"))
    return await _turn(services, call_id, lambda: services.engine.start_call(
        call_id, workflow_id=workflow_id, caller=form.get("From", ""), callee=form.get("To", ""),
    ))


@router.post("/next-step")
async def next_step(
    workflow_id: str = Query(..., alias="workflowId"),
    current_node_id: str = Query(..., alias="currentNodeId"),
    status: Optional[str] = Query(None),
    form: dict[str, str] = Depends(verified_form),
    services: Services = Depends(get_services),
):
    call_id = _call_id(form)
    return await _turn(services, call_id, lambda: services.engine.advance(
        call_id, workflow_id, current_node_id, status=status, params=form,
    ))


@router.post("/handle-input")
async def handle_input(
    workflow_id: str = Query(..., alias="workflowId"),
    current_node_id: str = Query(..., alias="currentNodeId"),
    form: dict[str, str] = Depends(verified_form),
    services: Services = Depends(get_services),
):
    """Gather callback. A request without ``Digits`` is the gather timing out."""
    call_id = _call_id(form)
    digits = form.get("Digits")
    return await _turn(services, call_id, lambda: services.engine.handle_input(
        call_id, workflow_id, current_node_id, digits,
    ))


@router.post("/call-status")
async def call_status(
    form: dict[str, str] = Depends(verified_form),
    services: Services = Depends(get_services),
):
    normalized = TwilioClient.parse_status_webhook(form)
    call_id = normalized["call_id"]
    try:
        ended = await services.engine.handle_call_status(call_id, normalized["status"])
        logger.info("ivr_call_status", call_id=call_id, status=normalized["status"], ended=ended)
    except Exception as e:
        logger.error("call_status_failed", call_id=call_id, error=str(e))
    return _xml(render_empty())
