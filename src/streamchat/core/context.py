"""Request-scoped context threaded explicitly through a turn."""

from __future__ import annotations

from dataclasses import dataclass

from streamchat.core.cancellation import CancellationToken


@dataclass(frozen=True, slots=True)
class RequestContext:
    """Everything a turn needs to know about the request it serves.

    The token is the one registered for ``request_id``; the outbound adapter
    combines it with its own timeout for every provider call.
    """

    request_id: str
    conversation_id: str
    message_key: str
    version_id: str
    token: CancellationToken
