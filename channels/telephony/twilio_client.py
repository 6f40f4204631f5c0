"""
Twilio REST client — the few provider calls the engine makes outside a
webhook response.

- end_call(): hang up a live call after a forced stop
- send_sms(): post-call survey / receipt messages

Webhook payloads are normalized by parse_status_webhook().

API Docs: https://www.twilio.com/docs/voice/api
"""
from __future__ import annotations

import structlog
from typing import Any, Optional
from datetime import datetime, timezone

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from config.settings import TelephonyConfig

logger = structlog.get_logger()


class TwilioClient:
    """Twilio REST API client for call control and messaging."""

    BASE_URL = "https://api.twilio.com/2010-04-01/Accounts"

    def __init__(self, account_sid: str, auth_token: str, from_number: str,
                 client: httpx.AsyncClient = None):
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.from_number = from_number
        self.base_url = f"{self.BASE_URL}/{account_sid}"
        self._client: Optional[httpx.AsyncClient] = client

    @classmethod
    def from_config(cls, config: TelephonyConfig) -> Optional["TwilioClient"]:
        if not config.account_sid or not config.auth_token:
            return None
        return cls(config.account_sid, config.auth_token, config.from_number)

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                auth=(self.account_sid, self.auth_token),
                timeout=httpx.Timeout(10.0, connect=5.0),
            )
        return self._client

    @retry(
        stop=stop_after_attempt(2),
        wait=wait_exponential(min=1, max=5),
        retry=retry_if_exception_type(httpx.TransportError),
        reraise=True,
    )
    async def _request(self, method: str, path: str, **kwargs) -> dict[str, Any]:
        client = await self._get_client()
        url = f"{self.base_url}{path}.json"
        resp = await client.request(method, url, **kwargs)
        if resp.status_code >= 400:
            logger.error(
                "twilio_api_error",
                status=resp.status_code,
                body=resp.text[:500],
                path=path,
            )
            resp.raise_for_status()
        return resp.json()

    # ── Call Control ────────────────────────────────────────

    async def end_call(self, call_sid: str) -> dict[str, Any]:
        """Terminate an active call."""
        logger.info("twilio_end_call", call_sid=call_sid)
        await self._request("POST", f"/Calls/{call_sid}", data={"Status": "completed"})
        return {"sid": call_sid, "status": "completed"}

    # ── Messaging ───────────────────────────────────────────

    async def send_sms(self, to: str, body: str) -> dict[str, Any]:
        # Twilio uses form-encoded POST, not JSON
        logger.info("twilio_send_sms", to=to)
        result = await self._request("POST", "/Messages", data={
            "From": self.from_number,
            "To": to,
            "Body": body,
        })
        return {"sid": result.get("sid", ""), "status": result.get("status", "queued"), "to": to}

    # ── Webhook Parsing ─────────────────────────────────────

    @staticmethod
    def parse_status_webhook(payload: dict[str, Any]) -> dict[str, Any]:
        """
        Normalize a Twilio call webhook.

        Twilio sends:
          - CallSid, CallStatus, Direction, From, To, CallDuration,
            Digits, RecordingUrl, DialCallStatus, etc.
        """
        status_raw = payload.get(
            "CallStatus", payload.get("Status", "")
        ).lower()

        # Twilio direction format: "outbound-api", "inbound", "outbound-dial"
        direction = payload.get("Direction", "inbound")
        if "-" in direction:
            direction = direction.split("-")[0]

        try:
            duration = int(payload.get("CallDuration", payload.get("Duration", 0)) or 0)
        except (TypeError, ValueError):
            duration = 0

        return {
            "call_id": payload.get("CallSid", ""),
            "status": status_raw,
            "direction": direction.lower(),
            "from": payload.get("From", ""),
            "to": payload.get("To", ""),
            "duration": duration,
            "recording_url": payload.get("RecordingUrl", ""),
            "timestamp": payload.get(
                "Timestamp", datetime.now(timezone.utc).isoformat()
            ),
            "raw": payload,
        }

    # ── Helpers ─────────────────────────────────────────────

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None
