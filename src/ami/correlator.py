"""ActionID correlation between outbound actions and inbound responses."""

from __future__ import annotations

import asyncio
import itertools
import logging
import secrets
from collections import deque
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol

from ami.events import EventDispatcher
from telephony.errors import ActionTimeoutError, ProtocolError
from telephony.framing import Message, MessageKind, build_action

LOGGER = logging.getLogger(__name__)


class MessageStream(Protocol):
    """What the correlator needs from a connection."""

    async def write_message(self, data: bytes) -> None: ...

    async def read_message(self, *, timeout: float | None = None) -> Message:
        """Next framed message; an empty (timeout) message once ``timeout`` expires."""


@dataclass(slots=True)
class PendingRequest:
    token: str
    inbox: deque[Message] = field(default_factory=deque)


def make_token_factory(prefix: str = "A") -> Callable[[], str]:
    """Sequence number plus 32 random bits: unique on the connection, distinct across connections."""

    counter = itertools.count(1)

    def next_token() -> str:
        return f"{prefix}{next(counter):06d}-{secrets.token_hex(4)}"

    return next_token


class ResponseCorrelator:
    """Routes every inbound message either to a pending request or to the dispatcher.

    A message whose ActionID belongs to a pending request is queued for it;
    anything else that is an event goes to the dispatcher. Reads are serialised
    so several tasks may await different tokens on one connection; event
    handlers run after the read lock is released.
    """

    def __init__(
        self,
        stream: MessageStream,
        dispatcher: EventDispatcher,
        *,
        token_factory: Callable[[], str] | None = None,
    ) -> None:
        self._stream = stream
        self._dispatcher = dispatcher
        self._new_token = token_factory or make_token_factory()
        self._pending: dict[str, PendingRequest] = {}
        self._read_lock = asyncio.Lock()

    @property
    def pending_tokens(self) -> list[str]:
        return list(self._pending)

    def new_token(self) -> str:
        token = self._new_token()
        while token in self._pending:
            token = self._new_token()
        return token

    def track(self, token: str) -> PendingRequest:
        pending = self._pending.get(token)
        if pending is None:
            pending = self._pending[token] = PendingRequest(token)
        return pending

    def release(self, token: str) -> None:
        pending = self._pending.pop(token, None)
        if pending is not None and pending.inbox:
            LOGGER.debug("Dropping %d unclaimed message(s) for ActionID %s", len(pending.inbox), token)

    async def send_action(self, name: str, params: Mapping[str, Any] | None = None) -> str:
        """Write an action and return its correlation token.

        A caller-supplied ``ActionID`` (any case) is used as the token. The
        token stays registered, collecting every message that carries it,
        until ``await_response`` finishes with it or ``release`` is called.
        """

        fields = dict(params or {})
        token: str | None = None
        for key in list(fields):
            if key.lower() == "actionid":
                token = str(fields.pop(key))
        if token is None:
            token = self.new_token()
        elif token in self._pending:
            raise ProtocolError(f"ActionID {token} is already in flight")

        data = build_action(name, fields, token)
        self.track(token)
        try:
            await self._stream.write_message(data)
        except BaseException:
            self.release(token)
            raise
        return token

    async def await_response(
        self,
        token: str,
        *,
        allow_timeout: bool = False,
        timeout: float | None = None,
        release: bool = True,
    ) -> Message:
        """Wait for the next message correlated with ``token``.

        Events seen meanwhile are dispatched. When ``timeout`` expires an empty
        message is returned if ``allow_timeout`` is set; otherwise
        ``ActionTimeoutError`` is raised. ``release=False`` keeps the token
        registered for follow-up messages (event lists).
        """

        pending = self.track(token)
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        try:
            while not pending.inbox:
                remaining = None if deadline is None else max(0.0, deadline - loop.time())
                async with self._read_lock:
                    if pending.inbox:
                        break
                    message = await self._stream.read_message(timeout=remaining)
                    if message.kind is MessageKind.TIMEOUT:
                        if allow_timeout:
                            return message
                        raise ActionTimeoutError(token)
                    claimed = self._deliver(message)
                # Handlers run outside the lock so they may send actions themselves.
                if not claimed:
                    await self._handle_unclaimed(message)
            return pending.inbox.popleft()
        finally:
            if release:
                self.release(token)

    async def pump(self, *, timeout: float | None = None) -> Message:
        """Read and route a single message without waiting on any token."""

        async with self._read_lock:
            message = await self._stream.read_message(timeout=timeout)
            if message.kind is MessageKind.TIMEOUT:
                return message
            claimed = self._deliver(message)
        if not claimed:
            await self._handle_unclaimed(message)
        return message

    async def route(self, message: Message) -> None:
        if not self._deliver(message):
            await self._handle_unclaimed(message)

    def _deliver(self, message: Message) -> bool:
        token = message.action_id
        if token is not None and token in self._pending:
            self._pending[token].inbox.append(message)
            return True
        return False

    async def _handle_unclaimed(self, message: Message) -> None:
        token = message.action_id
        kind = message.kind
        if kind is MessageKind.EVENT:
            await self._dispatcher.dispatch(message)
        elif kind is MessageKind.RESPONSE:
            LOGGER.debug("Discarding response for unknown ActionID %s", token)
        elif kind is MessageKind.UNKNOWN:
            LOGGER.info("Unhandled packet from manager: %s", message.fields)
