"""Fixed set of lifecycle events raised by the browser client."""

from __future__ import annotations

import inspect
from enum import Enum
from typing import Any, Awaitable, Callable

from .log import SessionLogger, get_logger


class SessionEvent(str, Enum):
    auth_challenge = "auth_challenge"
    authenticated = "authenticated"
    auth_failure = "auth_failure"
    ready = "ready"
    disconnected = "disconnected"


Handler = Callable[[SessionEvent, dict[str, Any]], Awaitable[None] | None]


class EventBus:
    """Dispatches events to subscribers in subscription order.

    A failing handler is logged and skipped; it never stops the others.
    """

    def __init__(self, logger: SessionLogger | None = None) -> None:
        self._handlers: dict[SessionEvent, list[Handler]] = {event: [] for event in SessionEvent}
        self._log = logger or get_logger(__name__)

    def subscribe(self, event: SessionEvent | str, handler: Handler) -> Callable[[], None]:
        key = SessionEvent(event)
        self._handlers[key].append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers[key]:
                self._handlers[key].remove(handler)

        return unsubscribe

    async def emit(self, event: SessionEvent | str, **payload: Any) -> None:
        key = SessionEvent(event)
        self._log.debug("Session event", event=key.value, handlers=len(self._handlers[key]))
        for handler in list(self._handlers[key]):
            try:
                result = handler(key, payload)
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:
                self._log.error("Event handler failed", event=key.value, error=repr(exc))
