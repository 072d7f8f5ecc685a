"""Event handler registry and dispatch for manager events."""

from __future__ import annotations

import inspect
import logging
from collections.abc import Awaitable, Callable
from typing import Final

from telephony.framing import Message

LOGGER = logging.getLogger(__name__)

WILDCARD: Final[str] = "*"

# Called with the lowercased event name and the message.
EventHandler = Callable[[str, Message], Awaitable[None] | None]


class EventDispatcher:
    """Maps lowercased event names to handlers, with ``*`` as the fallback.

    Handlers run inline on the task reading the connection: a slow handler
    stalls every later message on that connection. Hand long work off to
    another task or queue from inside the handler.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, EventHandler] = {}

    def register(self, event: str, handler: EventHandler) -> bool:
        """Register ``handler``; an existing registration is never replaced."""

        key = event.lower()
        if key in self._handlers:
            LOGGER.warning("%s handler is already defined, not overwriting", key)
            return False
        self._handlers[key] = handler
        return True

    def unregister(self, event: str) -> bool:
        key = event.lower()
        if self._handlers.pop(key, None) is None:
            LOGGER.debug("%s handler is not defined", key)
            return False
        return True

    def handler_for(self, event: str) -> EventHandler | None:
        return self._handlers.get(event.lower()) or self._handlers.get(WILDCARD)

    async def dispatch(self, message: Message) -> bool:
        """Run the matching handler. Returns False when the event was dropped."""

        name = (message.event_name or "").lower()
        handler = self.handler_for(name)
        if handler is None:
            LOGGER.debug("No event handler for event %r; dropped", name)
            return False

        try:
            outcome = handler(name, message)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception:
            LOGGER.exception("Error in event handler for %r", name)
        return True
