"""Message framing for the AGI and AMI text protocols.

AMI messages are blocks of ``Key: Value`` lines closed by an empty line;
AGI replies are single lines. Both framers only consume what is buffered:
bytes that do not yet form a complete unit stay in the buffer until the next
``feed``.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Final

from telephony.errors import ProtocolError

LOGGER = logging.getLogger(__name__)

AMI_LINE_END: Final[bytes] = b"\r\n"
AGI_LINE_END: Final[bytes] = b"\n"

COMMAND_OUTPUT_MARKER: Final[str] = "Command output follows"
COMMAND_OUTPUT_SENTINEL: Final[str] = "--END COMMAND--"
_FOLLOWS_PREFIX: Final[bytes] = b"Response: Follows"


class MessageKind(str, Enum):
    RESPONSE = "response"
    EVENT = "event"
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"


@dataclass(slots=True)
class Message:
    """One framed AMI message.

    ``fields`` keeps the keys exactly as received and in arrival order.
    ``payload`` holds command output extracted from ``Command`` responses.
    """

    fields: dict[str, str] = field(default_factory=dict)
    payload: str | None = None

    @classmethod
    def timeout(cls) -> Message:
        return cls()

    @property
    def kind(self) -> MessageKind:
        if not self.fields:
            return MessageKind.TIMEOUT
        first = next(iter(self.fields)).lower()
        if first == "response":
            return MessageKind.RESPONSE
        if first == "event":
            return MessageKind.EVENT
        if "Response" in self.fields:
            return MessageKind.RESPONSE
        if "Event" in self.fields:
            return MessageKind.EVENT
        return MessageKind.UNKNOWN

    @property
    def action_id(self) -> str | None:
        return self.fields.get("ActionID")

    @property
    def event_name(self) -> str | None:
        return self.fields.get("Event")

    @property
    def response(self) -> str | None:
        return self.fields.get("Response")

    def get(self, key: str, default: str | None = None) -> str | None:
        return self.fields.get(key, default)

    def __getitem__(self, key: str) -> str:
        return self.fields[key]

    def __contains__(self, key: object) -> bool:
        return key in self.fields

    def to_bytes(self, line_end: bytes = AMI_LINE_END) -> bytes:
        return encode_block(self.fields.items(), line_end=line_end)


def _wire_text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def encode_block(pairs: Iterable[tuple[str, Any]], *, line_end: bytes = AMI_LINE_END) -> bytes:
    """Serialize ``Key: Value`` pairs followed by the closing empty line."""

    out = bytearray()
    for key, value in pairs:
        text = _wire_text(value)
        if any(ch in key or ch in text for ch in "\r\n"):
            raise ProtocolError(f"Line break in field {key!r} would split the message")
        out += f"{key}: {text}".encode("utf-8") + line_end
    out += line_end
    return bytes(out)


def build_action(name: str, params: Mapping[str, Any] | None, action_id: str) -> bytes:
    """Serialize an outbound action.

    ``None`` values are skipped; list or tuple values repeat the key once per item
    (``Variable`` on Originate is the usual case).
    """

    pairs: list[tuple[str, Any]] = [("Action", name)]
    for key, value in (params or {}).items():
        if value is None:
            continue
        if isinstance(value, (list, tuple)):
            pairs.extend((key, item) for item in value)
        else:
            pairs.append((key, value))
    pairs.append(("ActionID", action_id))
    return encode_block(pairs)


def parse_block(text: str, line_end: str = "\r\n") -> Message:
    """Parse one message body (without its closing empty line)."""

    lines = text.split(line_end)
    payload: str | None = None

    # Legacy "Response: Follows": raw output and the sentinel share the last line.
    if lines and COMMAND_OUTPUT_SENTINEL in lines[-1]:
        tail = lines.pop()
        payload = tail[: tail.index(COMMAND_OUTPUT_SENTINEL)].rstrip("\r\n")

    fields: dict[str, str] = {}
    output: list[str] = []
    for line in lines:
        key, sep, value = line.partition(":")
        key = key.strip()
        if not sep or not key:
            if line.strip():
                LOGGER.debug("Skipping malformed line %r", line)
            continue
        value = value.strip()
        if key == "Output":
            output.append(value)
        fields[key] = value

    if (
        payload is None
        and fields.get("Response") in ("Success", "Follows")
        and fields.get("Message") == COMMAND_OUTPUT_MARKER
    ):
        payload = "\n".join(output)

    return Message(fields=fields, payload=payload)


class BlockFramer:
    """Frames blank-line terminated messages (the AMI socket)."""

    def __init__(self, line_end: bytes = AMI_LINE_END, *, encoding: str = "utf-8") -> None:
        self._line_end = line_end
        self._terminator = line_end * 2
        self._encoding = encoding
        self._buffer = bytearray()

    @property
    def buffered(self) -> int:
        return len(self._buffer)

    def append(self, chunk: bytes) -> None:
        self._buffer += chunk

    def feed(self, chunk: bytes = b"") -> list[Message]:
        """Buffer ``chunk`` and return every message completed so far."""

        self.append(chunk)
        messages: list[Message] = []
        while (block := self._next_block()) is not None:
            text = block.decode(self._encoding, errors="replace")
            messages.append(parse_block(text, self._line_end.decode("ascii")))
        return messages

    def take_line(self) -> str | None:
        """Remove and return one complete line, e.g. the manager banner."""

        end = self._buffer.find(self._line_end)
        if end < 0:
            return None
        line = bytes(self._buffer[:end])
        del self._buffer[: end + len(self._line_end)]
        return line.decode(self._encoding, errors="replace")

    def _next_block(self) -> bytes | None:
        while self._buffer.startswith(self._line_end):
            del self._buffer[: len(self._line_end)]
        if not self._buffer:
            return None

        if self._buffer.startswith(_FOLLOWS_PREFIX):
            # Raw command output may itself contain empty lines.
            sentinel = self._buffer.find(COMMAND_OUTPUT_SENTINEL.encode("ascii"))
            end = -1 if sentinel < 0 else self._buffer.find(self._terminator, sentinel)
        else:
            end = self._buffer.find(self._terminator)
        if end < 0:
            return None

        block = bytes(self._buffer[:end])
        del self._buffer[: end + len(self._terminator)]
        return block


class LineFramer:
    """Frames single-line replies (the AGI stream)."""

    def __init__(self, line_end: bytes = AGI_LINE_END, *, encoding: str = "utf-8") -> None:
        self._line_end = line_end
        self._encoding = encoding
        self._buffer = bytearray()

    @property
    def buffered(self) -> int:
        return len(self._buffer)

    def feed(self, chunk: bytes) -> list[str]:
        self._buffer += chunk
        lines: list[str] = []
        while (end := self._buffer.find(self._line_end)) >= 0:
            raw = bytes(self._buffer[:end])
            del self._buffer[: end + len(self._line_end)]
            lines.append(raw.decode(self._encoding, errors="replace").rstrip("\r"))
        return lines
