"""Shared enumerations for the conversation data model and the wire protocol."""

from __future__ import annotations

from enum import StrEnum


class Role(StrEnum):
    USER = "user"
    ASSISTANT = "assistant"


class VersionStatus(StrEnum):
    STREAMING = "streaming"
    COMPLETED = "completed"
    ABORTED = "aborted"
    ERROR = "error"

    @property
    def terminal(self) -> bool:
        return self is not VersionStatus.STREAMING


class BlockKind(StrEnum):
    TEXT = "text"
    TOOL = "tool"


class ToolState(StrEnum):
    INPUT_STREAMING = "input-streaming"
    EXECUTING = "executing"
    COMPLETED = "completed"
    ERROR = "error"


class EndReason(StrEnum):
    """Reason carried by the terminal ``session-end`` event."""

    DONE = "done"
    ABORTED = "aborted"
    TIMEOUT = "timeout"
    ERROR = "error"


class CancelReason(StrEnum):
    """Why a cancellation token fired."""

    USER = "user"
    TIMEOUT = "timeout"
    SUPERSEDED = "superseded"
    SHUTDOWN = "shutdown"

    @property
    def end_reason(self) -> EndReason:
        if self is CancelReason.TIMEOUT:
            return EndReason.TIMEOUT
        return EndReason.ABORTED


ABORTED_NOTICE = "request canceled"
TIMEOUT_NOTICE = "request timed out"
