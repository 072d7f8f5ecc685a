"""Manager socket ownership: connect, login, framed send/receive, logoff."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Awaitable, Callable, Mapping
from enum import Enum
from typing import Any

from ami.correlator import ResponseCorrelator
from ami.event_list import EventListAggregator, EventListResponse, starts_event_list
from ami.events import EventDispatcher, EventHandler
from config.settings import ManagerConfig
from telephony.errors import TelephonyError, TransportError
from telephony.framing import AMI_LINE_END, BlockFramer, Message

LOGGER = logging.getLogger(__name__)

Opener = Callable[[str, int], Awaitable[tuple[asyncio.StreamReader, asyncio.StreamWriter]]]


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    AWAITING_BANNER = "awaiting_banner"
    AUTHENTICATING = "authenticating"
    AUTHENTICATED = "authenticated"
    CLOSED = "closed"


class ManagerConnection:
    """One manager session. States only move forward; a closed connection is not reused.

    The connection belongs to one logical task at a time. Event handlers run
    inline on whichever task is currently reading.
    """

    def __init__(
        self,
        config: ManagerConfig | None = None,
        *,
        dispatcher: EventDispatcher | None = None,
        token_factory: Callable[[], str] | None = None,
        opener: Opener | None = None,
        chunk_size: int = 4096,
    ) -> None:
        self._config = config or ManagerConfig()
        self.dispatcher = dispatcher or EventDispatcher()
        self._correlator = ResponseCorrelator(self, self.dispatcher, token_factory=token_factory)
        self._aggregator = EventListAggregator(self._correlator)
        self._opener: Opener = opener or asyncio.open_connection
        self._chunk_size = chunk_size
        self._framer = BlockFramer(AMI_LINE_END)
        self._messages: deque[Message] = deque()
        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None

        self.state = ConnectionState.DISCONNECTED
        self.server: str | None = None
        self.port: int | None = None
        self.banner: str | None = None

    @property
    def config(self) -> ManagerConfig:
        return self._config

    @property
    def correlator(self) -> ResponseCorrelator:
        return self._correlator

    @property
    def authenticated(self) -> bool:
        return self.state is ConnectionState.AUTHENTICATED

    def register_event_handler(self, event: str, handler: EventHandler) -> bool:
        return self.dispatcher.register(event, handler)

    def unregister_event_handler(self, event: str) -> bool:
        return self.dispatcher.unregister(event)

    async def connect(
        self,
        server: str | None = None,
        username: str | None = None,
        secret: str | None = None,
    ) -> bool:
        """Open the socket, read the banner and log in. Returns False on any failure."""

        if self.state is not ConnectionState.DISCONNECTED:
            raise RuntimeError(f"Cannot connect a manager connection in state {self.state.value}")

        host, port = self._split_address(server or self._config.host)
        self.server, self.port = host, port
        timeout = self._config.connect_timeout

        self.state = ConnectionState.CONNECTING
        try:
            self._reader, self._writer = await asyncio.wait_for(self._opener(host, port), timeout)
        except (OSError, asyncio.TimeoutError) as exc:
            LOGGER.warning("Unable to connect to manager %s:%s: %s", host, port, exc)
            self.state = ConnectionState.CLOSED
            return False

        self.state = ConnectionState.AWAITING_BANNER
        try:
            self.banner = await asyncio.wait_for(self._read_banner(), timeout)
        except (TransportError, asyncio.TimeoutError):
            LOGGER.warning("Asterisk Manager header not received from %s:%s", host, port)
            await self._close_socket()
            return False
        LOGGER.debug("Manager banner: %s", self.banner)

        self.state = ConnectionState.AUTHENTICATING
        try:
            response = await self.request(
                "Login",
                {"Username": username or self._config.username, "Secret": secret or self._config.secret},
                timeout=timeout,
            )
        except TelephonyError as exc:
            LOGGER.warning("Manager login to %s:%s failed: %s", host, port, exc.detail)
            await self._close_socket()
            return False

        if response.get("Response") != "Success":
            LOGGER.warning("Failed to login to %s:%s: %s", host, port, response.get("Message"))
            await self._close_socket()
            return False

        self.state = ConnectionState.AUTHENTICATED
        LOGGER.info("Logged in to manager %s:%s", host, port)
        return True

    async def disconnect(self) -> None:
        """Log off if logged in, then close the socket. Never raises."""

        if self.state is ConnectionState.AUTHENTICATED:
            try:
                await self.request("Logoff", timeout=self._config.connect_timeout)
            except TelephonyError as exc:
                LOGGER.debug("Logoff failed: %s", exc.detail)
        await self._close_socket()

    async def send_action(self, name: str, params: Mapping[str, Any] | None = None) -> str:
        return await self._correlator.send_action(name, params)

    async def await_response(
        self, token: str, *, allow_timeout: bool = False, timeout: float | None = None
    ) -> Message:
        return await self._correlator.await_response(token, allow_timeout=allow_timeout, timeout=timeout)

    async def request(
        self,
        action: str,
        params: Mapping[str, Any] | None = None,
        *,
        timeout: float | None = None,
    ) -> Message | EventListResponse:
        """Send ``action`` and return its response, aggregated when it opens an event list."""

        if timeout is None:
            timeout = self._config.action_timeout
        token = await self._correlator.send_action(action, params)
        try:
            response = await self._correlator.await_response(token, timeout=timeout, release=False)
            if starts_event_list(response):
                return await self._aggregator.collect(response, token, timeout=timeout)
            return response
        finally:
            self._correlator.release(token)

    async def poll(self, *, timeout: float | None = None) -> Message:
        """Read one message and route it (events go to their handlers)."""

        return await self._correlator.pump(timeout=timeout)

    async def write_message(self, data: bytes) -> None:
        if self._writer is None or self.state is ConnectionState.CLOSED:
            raise TransportError("Manager connection is not open")
        try:
            self._writer.write(data)
            await self._writer.drain()
        except (ConnectionError, OSError) as exc:
            self._mark_closed()
            raise TransportError(f"Write to manager failed: {exc}") from exc

    async def read_message(self, *, timeout: float | None = None) -> Message:
        if not self._messages:
            # Bytes left over after the banner may already hold whole messages.
            self._messages.extend(self._framer.feed())
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while not self._messages:
            remaining = None if deadline is None else max(0.0, deadline - loop.time())
            try:
                chunk = await asyncio.wait_for(self._read_chunk(), remaining)
            except asyncio.TimeoutError:
                return Message.timeout()
            self._messages.extend(self._framer.feed(chunk))
        return self._messages.popleft()

    async def _read_banner(self) -> str:
        while (line := self._framer.take_line()) is None:
            self._framer.append(await self._read_chunk())
        return line

    async def _read_chunk(self) -> bytes:
        if self._reader is None or self.state is ConnectionState.CLOSED:
            raise TransportError("Manager connection is not open")
        try:
            chunk = await self._reader.read(self._chunk_size)
        except (ConnectionError, OSError) as exc:
            self._mark_closed()
            raise TransportError(f"Read from manager failed: {exc}") from exc
        if not chunk:
            self._mark_closed()
            raise TransportError("Manager connection closed by peer")
        return chunk

    def _mark_closed(self) -> None:
        self.state = ConnectionState.CLOSED
        if self._writer is not None:
            self._writer.close()

    async def _close_socket(self) -> None:
        writer, self._writer, self._reader = self._writer, None, None
        self.state = ConnectionState.CLOSED
        if writer is None:
            return
        writer.close()
        try:
            await writer.wait_closed()
        except (ConnectionError, OSError) as exc:
            LOGGER.debug("Ignoring error while closing manager socket: %s", exc)

    def _split_address(self, server: str) -> tuple[str, int]:
        host, sep, port = server.rpartition(":")
        if sep and host and ":" not in host and port.isdigit():
            return host, int(port)
        return server, self._config.port
