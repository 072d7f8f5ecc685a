"""Failure sink interface used by the protocol engines."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any, Protocol

LOGGER = logging.getLogger(__name__)


class FailureSink(Protocol):
    """Receives structured failure events; implementations must not raise."""

    def emit(self, kind: str, details: Mapping[str, Any]) -> None: ...


class LoggingFailureSink:
    """Default sink: one warning log line per failure event."""

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self._logger = logger or LOGGER

    def emit(self, kind: str, details: Mapping[str, Any]) -> None:
        rendered = " ".join(f"{key}={value!r}" for key, value in details.items())
        self._logger.warning("%s %s", kind, rendered)


class RecordingFailureSink:
    """Keeps every event in memory (handy for tests and diagnostics)."""

    def __init__(self) -> None:
        self.events: list[tuple[str, dict[str, Any]]] = []

    def emit(self, kind: str, details: Mapping[str, Any]) -> None:
        self.events.append((kind, dict(details)))
