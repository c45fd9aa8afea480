"""Wire protocol events.

Each event kind is its own model; :data:`ProtocolEvent` is the union of all of
them, discriminated on the ``type`` field. Field names are snake_case in Python
and camelCase on the wire.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel

from streamchat.core.types import BlockKind, EndReason


class _Event(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        extra="ignore",
    )


class BlockStart(_Event):
    type: Literal["block-start"] = "block-start"
    index: int
    kind: BlockKind
    tool_name: Optional[str] = None
    tool_id: Optional[str] = None


class BlockDelta(_Event):
    type: Literal["block-delta"] = "block-delta"
    index: int
    text: Optional[str] = None
    partial_json: Optional[str] = None


class BlockStop(_Event):
    type: Literal["block-stop"] = "block-stop"
    index: int


class ToolStart(_Event):
    type: Literal["tool-start"] = "tool-start"
    tool_id: str
    tool_name: str


class ToolResult(_Event):
    type: Literal["tool-result"] = "tool-result"
    tool_id: str
    tool_name: str
    input: dict[str, Any] = Field(default_factory=dict)
    result: str = ""


class ToolError(_Event):
    type: Literal["tool-error"] = "tool-error"
    tool_id: str
    tool_name: str
    error: str


class MessageComplete(_Event):
    type: Literal["message-complete"] = "message-complete"


class ErrorEvent(_Event):
    type: Literal["error"] = "error"
    error: str


class SessionEnd(_Event):
    type: Literal["session-end"] = "session-end"
    reason: EndReason


class Heartbeat(_Event):
    """Liveness marker. Never buffered, never applied to a transcript."""

    type: Literal["heartbeat"] = "heartbeat"


class Resync(_Event):
    """Sent instead of a replay when the channel could not keep the request's full history.

    The subscriber must fetch the conversation snapshot; events up to
    ``last_seq`` are not available from the channel.
    """

    type: Literal["resync"] = "resync"
    last_seq: int


ProtocolEvent = Annotated[
    Union[
        BlockStart,
        BlockDelta,
        BlockStop,
        ToolStart,
        ToolResult,
        ToolError,
        MessageComplete,
        ErrorEvent,
        SessionEnd,
        Heartbeat,
        Resync,
    ],
    Field(discriminator="type"),
]

EVENT_ADAPTER: TypeAdapter[ProtocolEvent] = TypeAdapter(ProtocolEvent)


class Envelope(BaseModel):
    """An event as published on a conversation channel.

    ``seq`` is assigned by the channel and increases monotonically; heartbeats
    carry no ``seq`` since they are not part of the replayable history.
    """

    model_config = ConfigDict(frozen=True)

    seq: Optional[int]
    request_id: Optional[str]
    event: ProtocolEvent
