"""Shared protocol plumbing for the Asterisk call-control clients.

Two protocols are spoken by this codebase:
- AGI: a line-based command/response stream owned by a single call (see `agi`).
- AMI: a blank-line framed action/event protocol on a manager socket (see `ami`).

This package holds what both sides share: message framing, the exception
hierarchy and the failure sink used for observability.
"""
