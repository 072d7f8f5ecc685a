from __future__ import annotations

import asyncio
import sys
from collections import deque
from pathlib import Path

import pytest

REPO_ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = REPO_ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from telephony.errors import TransportError  # noqa: E402
from telephony.framing import BlockFramer, Message  # noqa: E402


class FakeWriter:
    """Records everything written; stands in for asyncio.StreamWriter."""

    def __init__(self, *, fail_on_drain: bool = False) -> None:
        self.buffer = bytearray()
        self.fail_on_drain = fail_on_drain
        self.closed = False

    @property
    def text(self) -> str:
        return self.buffer.decode("utf-8")

    def write(self, data: bytes) -> None:
        if self.closed:
            raise ConnectionResetError("writer closed")
        self.buffer += data

    async def drain(self) -> None:
        if self.fail_on_drain:
            raise ConnectionResetError("peer went away")

    def is_closing(self) -> bool:
        return self.closed

    def close(self) -> None:
        self.closed = True

    async def wait_closed(self) -> None:
        return None

    def get_extra_info(self, name: str, default=None):
        if name == "peername":
            return ("127.0.0.1", 40000)
        return default


def make_reader(*chunks: bytes | str, eof: bool = True) -> asyncio.StreamReader:
    """A StreamReader preloaded with ``chunks``. Call from inside a running loop."""

    reader = asyncio.StreamReader()
    for chunk in chunks:
        reader.feed_data(chunk.encode("utf-8") if isinstance(chunk, str) else chunk)
    if eof:
        reader.feed_eof()
    return reader


class QueueStream:
    """In-memory MessageStream: writes are recorded, reads come from ``inbound``."""

    def __init__(self, *inbound: Message, fail_writes: bool = False) -> None:
        self.inbound: deque[Message] = deque(inbound)
        self.written: list[Message] = []
        self.fail_writes = fail_writes

    async def write_message(self, data: bytes) -> None:
        if self.fail_writes:
            raise TransportError("socket gone")
        self.written.extend(BlockFramer().feed(data))

    async def read_message(self, *, timeout: float | None = None) -> Message:
        await asyncio.sleep(0)
        if self.inbound:
            return self.inbound.popleft()
        return Message.timeout()


def make_tokens(*tokens: str):
    """Token factory handing out ``tokens`` in order."""

    return iter(tokens).__next__


@pytest.fixture()
def writer() -> FakeWriter:
    return FakeWriter()
