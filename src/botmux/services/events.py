"""Explicit listener table for bot events.

Listeners run in subscription order. A failing listener is logged and never
stops the others or the inbound loop that emitted the event.
"""

import inspect
import logging
from collections import defaultdict
from enum import Enum
from typing import Any, Callable

logger = logging.getLogger(__name__)

Listener = Callable[[Any], Any]


class BotEvent(str, Enum):
    READY = "ready"
    COMMAND_RECEIVED = "command_received"
    TEXT_RECEIVED = "text_received"
    USER_UPDATED = "user_updated"


class EventDispatcher:
    def __init__(self) -> None:
        self._listeners: dict[BotEvent, list[Listener]] = defaultdict(list)

    def subscribe(self, event: BotEvent, listener: Listener) -> None:
        self._listeners[event].append(listener)

    def unsubscribe(self, event: BotEvent, listener: Listener) -> None:
        if listener in self._listeners[event]:
            self._listeners[event].remove(listener)

    def listeners(self, event: BotEvent) -> list[Listener]:
        return list(self._listeners[event])

    async def emit(self, event: BotEvent, payload: Any = None) -> None:
        for listener in self.listeners(event):
            try:
                result = listener(payload)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Listener %r failed on %s", listener, event.value)
