"""FastAGI server: AGI sessions over TCP, routed by ``agi_network_script``."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

from agi.channel import ChannelCommandChannel
from agi.session import AgiSession
from config.settings import AgiConfig
from telephony.errors import TransportError
from telephony.observability import FailureSink

LOGGER = logging.getLogger(__name__)

AgiHandler = Callable[[AgiSession], Awaitable[None]]


def normalize_script_name(script: str) -> str:
    """``agi://host/sales/menu`` arrives as ``/sales/menu``; routes are ``sales/menu``."""

    return script.replace("\0", "").replace("\\", "/").lstrip("/")


class FastAgiServer:
    """Accepts FastAGI connections and hands each one to its registered handler.

    Handlers run on the connection's own task. The connection is closed when
    the handler returns or raises.
    """

    def __init__(
        self,
        host: str,
        port: int,
        *,
        config: AgiConfig | None = None,
        sink: FailureSink | None = None,
    ) -> None:
        self._host = host
        self._port = port
        self._config = config or AgiConfig()
        self._sink = sink
        self._routes: dict[str, AgiHandler] = {}
        self._server: asyncio.AbstractServer | None = None

    def route(self, script: str, handler: AgiHandler) -> bool:
        name = normalize_script_name(script)
        if name in self._routes:
            LOGGER.warning("FastAGI route %r already registered, not overwriting", name)
            return False
        self._routes[name] = handler
        return True

    def unroute(self, script: str) -> bool:
        return self._routes.pop(normalize_script_name(script), None) is not None

    @property
    def sockets(self) -> list:
        return list(self._server.sockets) if self._server else []

    async def start(self) -> None:
        self._server = await asyncio.start_server(self.handle_connection, self._host, self._port)
        LOGGER.info("FastAGI server listening on %s:%s", self._host, self._port)

    async def run_forever(self) -> None:
        if self._server is None:
            await self.start()
        assert self._server is not None
        async with self._server:
            await self._server.serve_forever()

    async def stop(self) -> None:
        if self._server is None:
            return
        self._server.close()
        await self._server.wait_closed()
        self._server = None

    async def handle_connection(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        peer = writer.get_extra_info("peername")
        channel = ChannelCommandChannel(reader, writer, config=self._config, sink=self._sink)
        try:
            try:
                env = await channel.read_environment()
            except TransportError:
                LOGGER.warning("FastAGI peer %s closed before sending its environment", peer)
                return

            script = normalize_script_name(env.get("agi_network_script", ""))
            if not script:
                LOGGER.warning("Missing agi_network_script from %s; refusing to dispatch", peer)
                return

            handler = self._routes.get(script)
            if handler is None:
                LOGGER.warning("No FastAGI handler for %r (peer %s)", script, peer)
                return

            LOGGER.info("FastAGI %s -> %s", peer, script)
            try:
                await handler(AgiSession(channel))
            except Exception:
                LOGGER.exception("FastAGI handler %r crashed", script)
        finally:
            await channel.close()
