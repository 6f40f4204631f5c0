"""
Post-call actions configured on ``end`` nodes.

  survey / receipt  → a message over SMS (Twilio) or e-mail (HTTP relay)
  callback          → a scheduled callback row in the store

Actions run as background tasks after the hangup instruction has been
returned, each bounded by ``side_effect_timeout_s``. A failed action is
logged and dropped; it never reaches the caller.
"""
from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import httpx
import structlog

from channels.telephony.twilio_client import TwilioClient
from config.settings import NotificationConfig
from database.store_base import BaseIvrStore
from models.node_data import PostCallAction
from utils.templating import substitute_variables

logger = structlog.get_logger()

DEFAULT_MESSAGES = {
    "survey": "Thanks for calling. How did we do? Reply with a number from 1 to 5.",
    "receipt": "Thanks for calling. Your reference is {call_id}.",
    "callback": "Callback requested from the IVR.",
}


class PostCallDispatcher:

    def __init__(
        self,
        store: BaseIvrStore,
        sms_client: Optional[TwilioClient] = None,
        config: NotificationConfig = None,
        http_client: httpx.AsyncClient = None,
        timeout_s: float = 5.0,
    ):
        self.store = store
        self.sms_client = sms_client
        self.config = config or NotificationConfig()
        self.http_client = http_client
        self.timeout_s = timeout_s
        self._tasks: set[asyncio.Task] = set()

    def schedule(self, actions: list[PostCallAction], summary: dict[str, Any]) -> list[asyncio.Task]:
        """Start every action in the background and return immediately."""
        if not self.config.enabled:
            logger.info("post_call_disabled", call_id=summary.get("call_id"))
            return []
        tasks = []
        for action in actions:
            task = asyncio.create_task(self._run(action, summary))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            tasks.append(task)
        return tasks

    async def wait_idle(self) -> None:
        """Wait for scheduled actions to finish (shutdown, tests)."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _run(self, action: PostCallAction, summary: dict[str, Any]) -> bool:
        call_id = summary.get("call_id")
        try:
            await asyncio.wait_for(self.perform(action, summary), timeout=self.timeout_s)
            logger.info("post_call_action_done", call_id=call_id, type=action.type, channel=action.channel)
            return True
        except Exception as e:
            logger.warning("post_call_action_failed", call_id=call_id, type=action.type,
                           error=str(e) or type(e).__name__)
            return False

    async def perform(self, action: PostCallAction, summary: dict[str, Any]) -> None:
        values = {**(summary.get("variables") or {}), **{k: v for k, v in summary.items() if k != "variables"}}
        message = substitute_variables(action.message or DEFAULT_MESSAGES.get(action.type, ""), values)
        to = substitute_variables(action.to, values) if action.to else summary.get("caller", "")

        if action.type == "callback":
            await self._schedule_callback(action, summary, to, message)
        elif action.type in ("survey", "receipt"):
            if action.channel == "email":
                await self._send_email(to, action.subject or action.type.title(), message)
            else:
                await self._send_sms(to, message)
        else:
            raise ValueError(f"unknown post-call action type: {action.type}")

    async def _send_sms(self, to: str, message: str) -> None:
        if not to:
            raise ValueError("no recipient for sms")
        if self.sms_client is None:
            raise RuntimeError("sms client not configured")
        await self.sms_client.send_sms(to, message)

    async def _send_email(self, to: str, subject: str, body: str) -> None:
        if not self.config.email_webhook_url:
            raise RuntimeError("email relay not configured")
        if not to:
            raise ValueError("no recipient for email")
        client = self.http_client or httpx.AsyncClient(timeout=self.timeout_s)
        try:
            resp = await client.post(self.config.email_webhook_url,
                                     json={"to": to, "subject": subject, "body": body})
            resp.raise_for_status()
        finally:
            if client is not self.http_client:
                await client.aclose()

    async def _schedule_callback(self, action: PostCallAction, summary: dict[str, Any],
                                 to: str, note: str) -> None:
        when = datetime.now(timezone.utc) + timedelta(minutes=action.delay_minutes)
        await self.store.create_callback({
            "call_id": summary.get("call_id"),
            "workflow_id": summary.get("workflow_id"),
            "phone_number": to,
            "scheduled_for": when.isoformat(),
            "note": note,
        })
