"""
Outbound HTTP executor for ``api_call`` nodes.

A node's request runs while the caller waits on the line, so every call is
bounded by ``engine.api_call_timeout_s`` end to end (including the single
retry on transport errors). Failures never raise: they come back as an
``ApiCallResult`` with ``ok=False`` and the node follows its error edge.
"""
from __future__ import annotations

import asyncio
import json
import structlog
from dataclasses import dataclass
from typing import Any, Optional

import httpx
from tenacity import (
    retry, retry_if_exception_type, stop_after_attempt, wait_exponential,
)

from config.settings import EngineConfig, get_settings

logger = structlog.get_logger()

ALLOWED_METHODS = {"GET", "POST", "PUT", "PATCH", "DELETE"}


@dataclass
class ApiCallResult:
    ok: bool
    status_code: Optional[int] = None
    data: Any = None
    error: str = ""


class ApiCallExecutor:
    """Performs api_call node requests with a shared httpx client."""

    def __init__(self, config: EngineConfig = None, client: httpx.AsyncClient = None):
        self.config = config or get_settings().engine
        self.client = client

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            self.client = httpx.AsyncClient(timeout=self.config.api_call_timeout_s)
        return self.client

    @retry(
        stop=stop_after_attempt(2),
        wait=wait_exponential(multiplier=0.2, max=1),
        retry=retry_if_exception_type(httpx.TransportError),
        reraise=True,
    )
    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        client = await self._get_client()
        return await client.request(method, url, **kwargs)

    async def execute(
        self, method: str, url: str, headers: dict[str, str] = None,
        body: Any = None, timeout_s: float = None,
    ) -> ApiCallResult:
        method = (method or "GET").upper()
        if method not in ALLOWED_METHODS:
            return ApiCallResult(ok=False, error=f"unsupported method {method}")
        if not url:
            return ApiCallResult(ok=False, error="missing url")

        kwargs: dict[str, Any] = {"headers": headers or {}}
        if body not in (None, "", {}) and method != "GET":
            if isinstance(body, (dict, list)):
                kwargs["json"] = body
            else:
                kwargs["content"] = str(body)

        # A node may shorten the engine bound, never extend it
        bound = self.config.api_call_timeout_s
        if timeout_s:
            bound = min(timeout_s, bound)
        try:
            response = await asyncio.wait_for(self._request(method, url, **kwargs), timeout=bound)
        except asyncio.TimeoutError:
            logger.warning("api_call_timeout", method=method, url=url, timeout=bound)
            return ApiCallResult(ok=False, error="timeout")
        except httpx.HTTPError as e:
            logger.warning("api_call_failed", method=method, url=url, error=str(e))
            return ApiCallResult(ok=False, error=str(e) or type(e).__name__)

        try:
            data: Any = response.json()
        except (json.JSONDecodeError, ValueError):
            data = response.text

        ok = response.is_success
        if not ok:
            logger.warning("api_call_error_status", method=method, url=url, status=response.status_code)
        return ApiCallResult(ok=ok, status_code=response.status_code, data=data,
                             error="" if ok else f"HTTP {response.status_code}")

    async def close(self):
        if self.client and not self.client.is_closed:
            await self.client.aclose()
