"""Exception taxonomy shared by the server and client halves of the stream engine."""

from __future__ import annotations

from streamchat.core.types import CancelReason


class StreamChatError(Exception):
    """Base class for all streamchat errors."""


class Aborted(StreamChatError):
    """An outbound call was torn down because its combined token fired.

    This is an expected outcome (user cancel or timeout), not a failure.
    """

    def __init__(self, reason: CancelReason = CancelReason.USER):
        super().__init__(f"request aborted ({reason})")
        self.reason = reason


class UpstreamError(StreamChatError):
    """The provider returned a failure; the message becomes the version's error text."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class ProtocolViolation(StreamChatError):
    """A malformed or out-of-order event was received.

    Consumers recover locally by dropping the offending event.
    """


class ProtocolError(RuntimeError):
    """The emitter was driven out of protocol order. This is a bug, never recovered."""


class Conflict(StreamChatError):
    """The operation clashes with an in-flight request or an existing id."""


class NotFound(StreamChatError):
    """A conversation, message, version or request id does not exist."""
