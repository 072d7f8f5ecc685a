"""Domain-specific exceptions for the AGI and AMI protocol engines.

These exceptions are safe to import anywhere; they carry no I/O.
"""

from __future__ import annotations


class TelephonyError(Exception):
    default_detail: str = "Telephony protocol error"

    def __init__(self, detail: str | None = None) -> None:
        super().__init__(detail or self.default_detail)
        self.detail = detail or self.default_detail


class TransportError(TelephonyError):
    default_detail = "Connection closed or failed."


class ActionTimeoutError(TelephonyError):
    default_detail = "No response received before the deadline."

    def __init__(self, token: str | None = None, detail: str | None = None) -> None:
        super().__init__(detail or (f"No response for ActionID {token}" if token else None))
        self.token = token


class AuthenticationError(TelephonyError):
    default_detail = "Manager login failed."


class ProtocolError(TelephonyError):
    default_detail = "Value cannot be framed on the wire."
