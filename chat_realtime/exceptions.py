"""
Exceptions raised by the realtime core.

Delivery failures have no exception type: a broken subscriber transport
drops its frames silently and is never reported to the sender.
"""

from typing import Optional


class ChatRealtimeError(Exception):
    """Base class for realtime chat errors."""


class AuthenticationError(ChatRealtimeError):
    """The connection token is missing, invalid or expired. Terminal."""

    def __init__(self, reason: str = "authentication failed"):
        super().__init__(reason)
        self.reason = reason


class ProtocolError(ChatRealtimeError):
    """A client frame could not be parsed or failed validation."""

    def __init__(self, code: str, message: str, event_type: Optional[str] = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.event_type = event_type


class PersistenceError(ChatRealtimeError):
    """The relational store rejected or could not complete a write."""
