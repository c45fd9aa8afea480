"""Provider abstraction: an upstream LLM reachable over HTTP that streams its output."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Optional, Union

from streamchat.core.types import BlockKind


@dataclass(frozen=True, slots=True)
class BlockOpened:
    index: int
    kind: BlockKind
    tool_id: Optional[str] = None
    tool_name: Optional[str] = None


@dataclass(frozen=True, slots=True)
class TextDelta:
    index: int
    text: str


@dataclass(frozen=True, slots=True)
class ToolInputDelta:
    index: int
    partial_json: str


@dataclass(frozen=True, slots=True)
class BlockClosed:
    index: int


@dataclass(frozen=True, slots=True)
class MessageStopped:
    stop_reason: Optional[str] = None
    input_tokens: int = 0
    output_tokens: int = 0


ProviderEvent = Union[BlockOpened, TextDelta, ToolInputDelta, BlockClosed, MessageStopped]


@dataclass
class ProviderRequest:
    """One round of a turn as sent to the provider."""

    model: str
    messages: list[dict[str, Any]]
    system: str = ""
    max_tokens: int = 4096
    temperature: float = 0.7
    tools: list[dict[str, Any]] = field(default_factory=list)


class Provider(ABC):
    """Base class for LLM backends.

    Implementations know nothing about cancellation; the outbound adapter
    consumes :meth:`stream` and tears it down when a request is aborted.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        ...

    @abstractmethod
    def stream(self, request: ProviderRequest) -> AsyncIterator[ProviderEvent]:
        """Yield provider events for one round, in the order the provider produced them.

        Raises :class:`~streamchat.core.errors.UpstreamError` on provider failure.
        """
        ...

    async def aclose(self) -> None:
        """Release network resources held by the provider."""


def map_anthropic_event(event: dict[str, Any]) -> ProviderEvent | None:
    """Translate one Anthropic-format streaming event (as a dict) into a provider event.

    Returns None for events that carry nothing this engine tracks
    (``message_start``, ``ping``, thinking deltas, ...).
    """
    event_type = event.get("type")
    index = event.get("index", 0)

    if event_type == "content_block_start":
        block = event.get("content_block") or {}
        if block.get("type") == "tool_use":
            return BlockOpened(index, BlockKind.TOOL, tool_id=block.get("id"), tool_name=block.get("name"))
        if block.get("type") == "text":
            return BlockOpened(index, BlockKind.TEXT)
        return None

    if event_type == "content_block_delta":
        delta = event.get("delta") or {}
        if delta.get("type") == "input_json_delta":
            return ToolInputDelta(index, delta.get("partial_json", ""))
        if delta.get("text"):
            return TextDelta(index, delta["text"])
        return None

    if event_type == "content_block_stop":
        return BlockClosed(index)

    if event_type == "message_delta":
        delta = event.get("delta") or {}
        usage = event.get("usage") or {}
        if delta.get("stop_reason"):
            return MessageStopped(
                stop_reason=delta["stop_reason"],
                output_tokens=usage.get("output_tokens", 0),
            )
    return None
