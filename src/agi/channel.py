"""AGI command channel: one command line out, one (possibly multi-line) reply in.

Replies look like ``200 result=1 (timeout)``. A reply whose text starts with
``-`` (``520-Invalid command syntax...``) continues on the following lines
until a line opens with the same status code again.
"""

from __future__ import annotations

import asyncio
import logging
import sys
from collections import deque
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import ClassVar, Final

from config.settings import AgiConfig
from telephony.errors import TransportError
from telephony.framing import AGI_LINE_END, LineFramer
from telephony.observability import FailureSink, LoggingFailureSink

LOGGER = logging.getLogger(__name__)

AGIRES_OK: Final[int] = 200
MAX_EMPTY_READS: Final[int] = 5
HANGUP_NOTICE: Final[str] = "HANGUP"


@dataclass(frozen=True, slots=True)
class AgiResponse:
    """A ``200`` reply. ``extra`` holds every ``key=value`` token verbatim."""

    code: int
    result: int | None
    data: str = ""
    extra: Mapping[str, str] = field(default_factory=dict)

    ok: ClassVar[bool] = True


@dataclass(frozen=True, slots=True)
class AgiError:
    """A non-``200`` reply, or the fixed failure result for local failures."""

    code: int
    detail: str = ""
    result: int = -1

    ok: ClassVar[bool] = False

    @property
    def data(self) -> str:
        return self.detail

    @property
    def extra(self) -> Mapping[str, str]:
        return {}


AgiResult = AgiResponse | AgiError

BROKEN: Final[AgiError] = AgiError(code=500, detail="", result=-1)


def parse_result_tokens(text: str) -> tuple[int | None, str, dict[str, str]]:
    """Split the text after a ``200`` status into (result, data, key/value tokens).

    Parenthesised groups may span several space separated tokens, e.g.
    ``(hello world)``; they are re-joined into ``data``.
    """

    extra: dict[str, str] = {}
    parts: list[str] = []
    in_group = False
    for token in text.strip().split(" "):
        if in_group:
            parts.append(token.strip("() "))
            if token.endswith(")"):
                in_group = False
        elif not token:
            continue
        elif token.startswith("("):
            in_group = not token.endswith(")")
            parts.append(token.strip("() "))
        elif "=" in token[1:]:
            key, _, value = token.partition("=")
            extra[key] = value
        else:
            parts.append(token)

    result: int | None = None
    raw = extra.get("result")
    if raw is not None:
        try:
            result = int(raw)
        except ValueError:
            LOGGER.debug("Non-numeric AGI result %r", raw)
    return result, " ".join(parts).strip(), extra


class ChannelCommandChannel:
    """Synchronous-style AGI command/response over a pair of asyncio streams.

    The channel must be driven by a single task; commands are not pipelined.
    """

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        *,
        config: AgiConfig | None = None,
        sink: FailureSink | None = None,
        chunk_size: int = 4096,
    ) -> None:
        self._reader = reader
        self._writer = writer
        self._config = config or AgiConfig()
        self._sink = sink or LoggingFailureSink(LOGGER)
        self._chunk_size = chunk_size
        self._framer = LineFramer(AGI_LINE_END)
        self._lines: deque[str] = deque()
        self.environment: dict[str, str] = {}
        self.hung_up = False

    @property
    def config(self) -> AgiConfig:
        return self._config

    @classmethod
    async def from_stdio(cls, **kwargs) -> ChannelCommandChannel:
        """Attach to stdin/stdout for AGI scripts spawned by Asterisk."""

        loop = asyncio.get_running_loop()
        reader = asyncio.StreamReader()
        await loop.connect_read_pipe(lambda: asyncio.StreamReaderProtocol(reader), sys.stdin)
        transport, protocol = await loop.connect_write_pipe(asyncio.streams.FlowControlMixin, sys.stdout)
        writer = asyncio.StreamWriter(transport, protocol, reader, loop)
        return cls(reader, writer, **kwargs)

    async def read_environment(self) -> dict[str, str]:
        """Read the ``agi_*: value`` header block sent once at session start."""

        env: dict[str, str] = {}
        while True:
            line = await self._read_line()
            if not line.strip():
                break
            key, sep, value = line.partition(":")
            if not sep:
                LOGGER.debug("Skipping malformed AGI environment line %r", line)
                continue
            env[key.strip()] = value.strip()

        self.environment = env
        LOGGER.debug("AGI request: %s", env)
        return env

    async def send(self, command: str, *, timeout: float | None = None) -> AgiResult:
        """Send one command and return its parsed reply.

        Any local failure (write error, closed stream, repeated empty lines,
        deadline) yields ``BROKEN``. A deadline that fires mid-reply leaves the
        stream out of step; callers should hang up rather than continue.
        """

        command = command.strip()
        if not await self._write_line(command):
            self._sink.emit("agi.transport", {"command": command, "stage": "write"})
            return BROKEN

        deadline = timeout if timeout is not None else self._config.command_timeout
        try:
            result = await asyncio.wait_for(self._read_reply(command), deadline)
        except asyncio.TimeoutError:
            self._sink.emit("agi.timeout", {"command": command, "timeout": deadline})
            return BROKEN
        except TransportError as exc:
            self._sink.emit("agi.transport", {"command": command, "stage": "read", "error": exc.detail})
            return BROKEN

        if isinstance(result, AgiResponse) and result.result is not None and result.result < 0:
            self._sink.emit("agi.negative_result", {"command": command, "result": result.result})
        return result

    async def close(self) -> None:
        self._writer.close()
        try:
            await self._writer.wait_closed()
        except (ConnectionError, OSError) as exc:
            LOGGER.debug("Ignoring error while closing AGI stream: %s", exc)

    async def _read_reply(self, command: str) -> AgiResult:
        line = await self._read_status_line()
        if line is None:
            self._sink.emit("agi.desync", {"command": command, "stage": "reply"})
            return BROKEN

        code_text, remainder = line[:3], line[3:].strip()
        if not code_text.isdigit():
            self._sink.emit("agi.desync", {"command": command, "line": line})
            return AgiError(code=BROKEN.code, detail=line.strip())

        payload: str | None = None
        if remainder.startswith("-"):
            collected = [remainder[1:]]
            empty = 0
            while True:
                next_line = await self._read_line()
                if next_line[:3] == code_text and next_line[3:4] in ("", " "):
                    remainder = next_line[3:].strip()
                    break
                empty = empty + 1 if not next_line.strip() else 0
                if empty >= MAX_EMPTY_READS:
                    self._sink.emit("agi.desync", {"command": command, "stage": "multiline"})
                    return BROKEN
                collected.append(next_line)
            payload = "\n".join(collected)

        code = int(code_text)
        if code != AGIRES_OK:
            detail = payload if payload is not None else remainder
            self._sink.emit("agi.error_status", {"command": command, "code": code, "detail": detail})
            return AgiError(code=code, detail=detail)

        result, data, extra = parse_result_tokens(remainder)
        if payload is not None:
            data = f"{payload}\n{data}" if data else payload
        return AgiResponse(code=code, result=result, data=data, extra=extra)

    async def _read_status_line(self) -> str | None:
        empty = 0
        while empty < MAX_EMPTY_READS:
            line = await self._read_line()
            if line.strip() == HANGUP_NOTICE:
                # FastAGI announces a hangup out of band; the reply still follows.
                self.hung_up = True
                continue
            if line.strip():
                return line
            empty += 1
        return None

    async def _read_line(self) -> str:
        while not self._lines:
            try:
                chunk = await self._reader.read(self._chunk_size)
            except (ConnectionError, OSError) as exc:
                raise TransportError(str(exc)) from exc
            if not chunk:
                raise TransportError("AGI stream closed")
            self._lines.extend(self._framer.feed(chunk))
        return self._lines.popleft()

    async def _write_line(self, command: str) -> bool:
        if self._writer.is_closing():
            return False
        try:
            self._writer.write(command.encode("utf-8") + AGI_LINE_END)
            await self._writer.drain()
        except (ConnectionError, OSError) as exc:
            LOGGER.debug("AGI write failed for %r: %s", command, exc)
            return False
        return True
