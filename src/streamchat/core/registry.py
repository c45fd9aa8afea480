"""Process-wide map from request id to the cancellation token of that request."""

from __future__ import annotations

import time
from dataclasses import dataclass
from enum import StrEnum
from typing import Callable, Optional

from streamchat.core.cancellation import CancellationToken
from streamchat.core.errors import Conflict
from streamchat.core.types import CancelReason
from streamchat.log import get_logger

logger = get_logger(__name__)


class CancelOutcome(StrEnum):
    CANCELED = "canceled"
    UNKNOWN = "unknown"
    TERMINAL = "terminal"


@dataclass
class RegistryEntry:
    request_id: str
    token: CancellationToken
    created_at: float
    conversation_id: Optional[str] = None
    message_key: Optional[str] = None
    version_id: Optional[str] = None


class CancellationRegistry:
    """Owns the lifecycle of per-request cancellation tokens.

    Entries are created by :meth:`register` and destroyed by :meth:`release`
    (when the request reaches a terminal status) or by :meth:`sweep` (when the
    idle timeout elapses). Released ids are kept as tombstones for
    ``tombstone_ttl`` seconds so that a late cancel can be told apart from a
    cancel on an id that never existed.
    """

    def __init__(
        self,
        idle_timeout: float = 900.0,
        tombstone_ttl: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._entries: dict[str, RegistryEntry] = {}
        self._tombstones: dict[str, float] = {}
        self._idle_timeout = idle_timeout
        self._tombstone_ttl = tombstone_ttl
        self._clock = clock

    def register(
        self,
        request_id: str,
        conversation_id: str | None = None,
        message_key: str | None = None,
        version_id: str | None = None,
    ) -> CancellationToken:
        """Create the entry for a new request and return its token."""
        if request_id in self._entries or request_id in self._tombstones:
            raise Conflict(f"request id already registered: {request_id}")
        token = CancellationToken()
        self._entries[request_id] = RegistryEntry(
            request_id=request_id,
            token=token,
            created_at=self._clock(),
            conversation_id=conversation_id,
            message_key=message_key,
            version_id=version_id,
        )
        logger.debug("request_registered", request_id=request_id, conversation_id=conversation_id)
        return token

    def cancel(self, request_id: str, reason: CancelReason = CancelReason.USER) -> bool:
        """Fire the token for *request_id*. False if unknown or already terminal."""
        return self.try_cancel(request_id, reason) is CancelOutcome.CANCELED

    def try_cancel(self, request_id: str, reason: CancelReason = CancelReason.USER) -> CancelOutcome:
        entry = self._entries.get(request_id)
        if entry is None:
            if request_id in self._tombstones:
                return CancelOutcome.TERMINAL
            return CancelOutcome.UNKNOWN
        if not entry.token.cancel(reason):
            return CancelOutcome.TERMINAL
        logger.info("request_cancel_requested", request_id=request_id, reason=str(reason))
        return CancelOutcome.CANCELED

    def release(self, request_id: str) -> None:
        """Drop the entry for a finished request. Idempotent."""
        entry = self._entries.pop(request_id, None)
        if entry is None:
            return
        entry.token.dispose()
        self._tombstones[request_id] = self._clock()
        logger.debug("request_released", request_id=request_id)

    def get(self, request_id: str) -> RegistryEntry | None:
        return self._entries.get(request_id)

    def active_for(self, conversation_id: str) -> list[RegistryEntry]:
        return [e for e in self._entries.values() if e.conversation_id == conversation_id]

    def request_ids(self) -> list[str]:
        return list(self._entries.keys())

    def sweep(self) -> list[str]:
        """Time out idle entries and forget old tombstones. Returns the swept ids."""
        now = self._clock()
        expired = [
            request_id
            for request_id, entry in self._entries.items()
            if now - entry.created_at >= self._idle_timeout
        ]
        for request_id in expired:
            self._entries[request_id].token.cancel(CancelReason.TIMEOUT)
            self.release(request_id)
            logger.warning("request_idle_timeout", request_id=request_id)

        stale = [rid for rid, at in self._tombstones.items() if now - at >= self._tombstone_ttl]
        for request_id in stale:
            del self._tombstones[request_id]
        return expired

    def __contains__(self, request_id: object) -> bool:
        return request_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)
