"""Collect ``EventList: start`` ... ``EventList: Complete`` runs into one result."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from ami.correlator import ResponseCorrelator
from telephony.framing import Message

LOGGER = logging.getLogger(__name__)


def starts_event_list(message: Message) -> bool:
    return (message.get("EventList") or "").lower() == "start"


def completes_event_list(message: Message) -> bool:
    # Servers differ in case ("Complete" / "complete").
    return (message.get("EventList") or "").lower() == "complete"


@dataclass(slots=True)
class EventListResponse:
    response: Message
    events: list[Message] = field(default_factory=list)
    completion: Message | None = None

    @property
    def fields(self) -> dict[str, str]:
        return self.response.fields

    def get(self, key: str, default: str | None = None) -> str | None:
        return self.response.get(key, default)


class EventListAggregator:
    def __init__(self, correlator: ResponseCorrelator) -> None:
        self._correlator = correlator

    async def collect(self, response: Message, token: str, *, timeout: float | None = None) -> EventListResponse:
        """Gather list entries correlated with ``token`` until the completion marker.

        With the default ``timeout=None`` this waits as long as the connection
        lives: a server that never sends the marker blocks the caller. A
        ``timeout`` applies to each entry and raises ``ActionTimeoutError``.
        """

        result = EventListResponse(response=response)
        while True:
            message = await self._correlator.await_response(token, timeout=timeout, release=False)
            if completes_event_list(message):
                result.completion = message
                break
            result.events.append(message)

        LOGGER.debug("Event list for %s complete with %d entries", token, len(result.events))
        return result
