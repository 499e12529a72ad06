"""
Exceptions raised by the chat engines and the backend stream adapter.

Every error is contained at the engine boundary: it is raised to the
immediate caller and recorded as the engine's current error.
"""

from typing import Optional


class ChatError(Exception):
    """Base class for all chat subsystem errors."""

    def __init__(self, message: str, *, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.message = message
        self.cause = cause


class BackendWriteError(ChatError):
    """append/patch failed (network, permission, malformed data)."""


class SendFailed(BackendWriteError):
    """The backend rejected a new chat message."""


class BackendReadError(ChatError):
    """A subscription failed, dropped or never delivered its first snapshot."""


class ValidationError(ChatError):
    """Input rejected before any backend call (empty body, missing identity fields)."""


class Unauthorized(ChatError):
    """A moderator-only operation was invoked without a moderator identity."""


class MessageNotFound(ChatError):
    """The target message is not part of the engine's current window."""

    def __init__(self, message_id: str):
        super().__init__(f"Message {message_id!r} is not in the current window")
        self.message_id = message_id


class EngineClosed(ChatError):
    """connect() was called on an engine that has been disconnected."""
