"""
Error types raised by the canvas engine.

Only ticket and connection failures are meant to reach the operator;
everything the CRDT resolves on its own (duplicates, buffering,
conflicts) never raises.
"""

from __future__ import annotations


class CanvasError(Exception):
    """Base class for all engine errors."""


class TicketDecodeError(CanvasError, ValueError):
    """A ticket string could not be decoded (truncated, corrupted or foreign)."""

    def __init__(self, reason: str = "invalid ticket"):
        self.reason = reason
        super().__init__(f"Invalid ticket: {reason}")


class ConnectError(CanvasError):
    """No peer endpoint could be reached, or the handshake failed."""

    def __init__(self, detail: str = "peer unreachable", endpoints: tuple = ()):
        self.detail = detail
        self.endpoints = tuple(endpoints)
        super().__init__(detail)


class OfflineModeError(ConnectError):
    """A network action was requested on an offline session."""

    def __init__(self, detail: str = "session is in offline mode"):
        super().__init__(detail)


class ProtocolError(CanvasError):
    """A wire message or operation payload failed validation."""


class SessionClosedError(CanvasError):
    """The session has been closed and can no longer be used."""

    def __init__(self, document_id: str | None = None):
        detail = "Session is closed"
        if document_id:
            detail = f"Session for document '{document_id}' is closed"
        super().__init__(detail)
