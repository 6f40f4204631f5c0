"""
LiveExecutionTable — the process-wide map of call id → ExecutionState.

Injected into the state manager rather than held as a module global. Each call
id gets its own asyncio.Lock, so webhooks for one call are serialized while
webhooks for different calls never contend. Locks are dropped once nobody
holds or waits on them.
"""
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from models.schemas import ExecutionState


class LiveExecutionTable:

    def __init__(self):
        self._states: dict[str, ExecutionState] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._holders: dict[str, int] = {}

    # ── State access ─────────────────────────────────────────

    def get(self, call_id: str) -> Optional[ExecutionState]:
        return self._states.get(call_id)

    def put(self, state: ExecutionState) -> None:
        self._states[state.call_id] = state

    def pop(self, call_id: str) -> Optional[ExecutionState]:
        return self._states.pop(call_id, None)

    def __contains__(self, call_id: str) -> bool:
        return call_id in self._states

    def __len__(self) -> int:
        return len(self._states)

    def snapshot(self) -> list[ExecutionState]:
        return list(self._states.values())

    # ── Per-call serialization ───────────────────────────────

    @asynccontextmanager
    async def lock(self, call_id: str) -> AsyncIterator[None]:
        lock = self._locks.get(call_id)
        if lock is None:
            lock = self._locks[call_id] = asyncio.Lock()
        self._holders[call_id] = self._holders.get(call_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._holders[call_id] -= 1
            if self._holders[call_id] == 0:
                del self._holders[call_id]
                self._locks.pop(call_id, None)

    def lock_count(self) -> int:
        return len(self._locks)
