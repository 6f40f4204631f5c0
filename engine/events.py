"""
Lifecycle events emitted by the state manager.

Subscribers are best-effort: a failing handler is logged and never affects
the call that produced the event.
"""
from __future__ import annotations

import inspect
from collections import defaultdict
from typing import Any, Callable

import structlog

logger = structlog.get_logger()

EXECUTION_STARTED = "execution_started"
NODE_VISITED = "node_visited"
EXECUTION_ENDED = "execution_ended"

Handler = Callable[[dict[str, Any]], Any]


class EventBus:

    def __init__(self):
        self._handlers: dict[str, list[Handler]] = defaultdict(list)

    def subscribe(self, event: str, handler: Handler) -> None:
        self._handlers[event].append(handler)

    def unsubscribe(self, event: str, handler: Handler) -> None:
        if handler in self._handlers.get(event, []):
            self._handlers[event].remove(handler)

    async def emit(self, event: str, payload: dict[str, Any]) -> None:
        for handler in list(self._handlers.get(event, [])):
            try:
                result = handler(payload)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.warning("event_handler_failed", event_name=event, error=str(e))
