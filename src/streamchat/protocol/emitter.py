"""Translate provider output into ordered protocol events."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from streamchat.core.errors import ProtocolError
from streamchat.core.types import BlockKind, CancelReason, EndReason
from streamchat.log import get_logger
from streamchat.protocol.events import (
    BlockDelta,
    BlockStart,
    BlockStop,
    ErrorEvent,
    MessageComplete,
    ProtocolEvent,
    SessionEnd,
    ToolError,
    ToolResult,
    ToolStart,
)
from streamchat.providers.base import (
    BlockClosed,
    BlockOpened,
    MessageStopped,
    ProviderEvent,
    TextDelta,
    ToolInputDelta,
)

logger = get_logger(__name__)

Publish = Callable[[ProtocolEvent], object]


@dataclass
class ToolCall:
    """A tool invocation whose input has been fully streamed."""

    tool_id: str
    tool_name: str
    index: int
    input: dict[str, Any] = field(default_factory=dict)
    input_error: Optional[str] = None


@dataclass
class _Block:
    index: int
    kind: BlockKind
    tool_id: Optional[str] = None
    tool_name: Optional[str] = None
    parts: list[str] = field(default_factory=list)
    parsed_input: dict[str, Any] = field(default_factory=dict)


class EventEmitter:
    """Owns the event sequence of one assistant version.

    Guarantees for every block it opens exactly one ``block-start`` and exactly
    one ``block-stop``, synthesising the stop for blocks the provider left open
    when the version is finalized. A turn may span several provider rounds;
    each round restarts its indices at zero, so indices are shifted past every
    index already used in this version.
    """

    def __init__(self, publish: Publish):
        self._publish = publish
        self._open: dict[int, _Block] = {}
        self._round: list[_Block] = []
        self._closed: set[int] = set()
        self._base = 0
        self._next_index = 0
        self._calls: list[ToolCall] = []
        self._started: set[str] = set()
        self._resolved: set[str] = set()
        self._end_reason: EndReason | None = None
        self.stop_reason: str | None = None

    @property
    def finished(self) -> bool:
        return self._end_reason is not None

    @property
    def end_reason(self) -> EndReason | None:
        return self._end_reason

    # -- provider rounds ---------------------------------------------------

    def start_round(self) -> None:
        self._close_open_blocks()
        self._base = self._next_index
        self._round = []
        self._calls = []
        self.stop_reason = None

    def handle(self, event: ProviderEvent) -> None:
        """Apply one provider event, publishing whatever protocol events it implies."""
        self._ensure_running()
        match event:
            case BlockOpened():
                self._open_block(event)
            case TextDelta():
                block = self._open.get(event.index)
                if block is None or block.kind is not BlockKind.TEXT:
                    logger.warning("provider_delta_without_text_block", index=event.index)
                    return
                block.parts.append(event.text)
                self._publish(BlockDelta(index=block.index, text=event.text))
            case ToolInputDelta():
                block = self._open.get(event.index)
                if block is None or block.kind is not BlockKind.TOOL:
                    logger.warning("provider_delta_without_tool_block", index=event.index)
                    return
                block.parts.append(event.partial_json)
                self._publish(BlockDelta(index=block.index, partial_json=event.partial_json))
            case BlockClosed():
                block = self._open.pop(event.index, None)
                if block is None:
                    # e.g. the stop of a thinking block that was never surfaced
                    logger.debug("provider_stop_for_unknown_block", index=event.index)
                    return
                self._close(block)
            case MessageStopped():
                self.stop_reason = event.stop_reason

    def end_round(self) -> list[ToolCall]:
        """Close whatever the provider left open and return the round's tool calls."""
        self._close_open_blocks()
        return list(self._calls)

    def round_content(self) -> list[dict[str, Any]]:
        """The round's output as Anthropic-format assistant content blocks."""
        content: list[dict[str, Any]] = []
        for block in self._round:
            if block.kind is BlockKind.TEXT:
                text = "".join(block.parts)
                if text:
                    content.append({"type": "text", "text": text})
            else:
                content.append(
                    {
                        "type": "tool_use",
                        "id": block.tool_id,
                        "name": block.tool_name,
                        "input": block.parsed_input,
                    }
                )
        return content

    # -- tool lifecycle ----------------------------------------------------

    def tool_started(self, call: ToolCall) -> None:
        self._ensure_running()
        if call.tool_id in self._started:
            raise ProtocolError(f"tool-start emitted twice for {call.tool_id}")
        self._started.add(call.tool_id)
        self._publish(ToolStart(tool_id=call.tool_id, tool_name=call.tool_name))

    def tool_succeeded(self, call: ToolCall, result: str) -> None:
        self._ensure_resolvable(call)
        self._resolved.add(call.tool_id)
        self._publish(
            ToolResult(tool_id=call.tool_id, tool_name=call.tool_name, input=call.input, result=result)
        )

    def tool_failed(self, call: ToolCall, error: str) -> None:
        self._ensure_resolvable(call)
        self._resolved.add(call.tool_id)
        self._publish(ToolError(tool_id=call.tool_id, tool_name=call.tool_name, error=error))

    # -- terminal transitions ----------------------------------------------

    def complete(self) -> bool:
        if not self._begin_finish(EndReason.DONE):
            return False
        self._publish(MessageComplete())
        self._publish(SessionEnd(reason=EndReason.DONE))
        return True

    def fail(self, error: str) -> bool:
        if not self._begin_finish(EndReason.ERROR):
            return False
        self._publish(ErrorEvent(error=error))
        self._publish(SessionEnd(reason=EndReason.ERROR))
        return True

    def abort(self, reason: CancelReason) -> bool:
        end_reason = reason.end_reason
        if not self._begin_finish(end_reason):
            return False
        self._publish(SessionEnd(reason=end_reason))
        return True

    # -- internals ---------------------------------------------------------

    def _open_block(self, event: BlockOpened) -> None:
        index = self._base + event.index
        if event.index in self._open or index in self._closed:
            logger.warning("provider_duplicate_block_start", index=event.index)
            return
        block = _Block(index=index, kind=event.kind)
        if event.kind is BlockKind.TOOL:
            block.tool_id = event.tool_id or f"tool-{index}"
            block.tool_name = event.tool_name or "unknown"
        self._open[event.index] = block
        self._round.append(block)
        self._next_index = max(self._next_index, index + 1)
        self._publish(
            BlockStart(index=index, kind=event.kind, tool_name=block.tool_name, tool_id=block.tool_id)
        )

    def _close(self, block: _Block) -> None:
        self._closed.add(block.index)
        self._publish(BlockStop(index=block.index))
        if block.kind is not BlockKind.TOOL:
            return

        assert block.tool_id is not None and block.tool_name is not None
        call = ToolCall(tool_id=block.tool_id, tool_name=block.tool_name, index=block.index)
        raw = "".join(block.parts).strip() or "{}"
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as e:
            call.input_error = f"invalid tool input: {e.msg}"
        else:
            if isinstance(parsed, dict):
                call.input = parsed
            else:
                call.input_error = "tool input must be a JSON object"
        block.parsed_input = call.input
        self._calls.append(call)

    def _close_open_blocks(self) -> None:
        blocks = sorted(self._open.values(), key=lambda b: b.index)
        self._open.clear()
        for block in blocks:
            self._close(block)

    def _begin_finish(self, reason: EndReason) -> bool:
        if self._end_reason is not None:
            logger.debug("emitter_already_finished", reason=str(self._end_reason), requested=str(reason))
            return False
        self._close_open_blocks()
        self._end_reason = reason
        return True

    def _ensure_running(self) -> None:
        if self._end_reason is not None:
            raise ProtocolError(f"event emitted after session-end ({self._end_reason})")

    def _ensure_resolvable(self, call: ToolCall) -> None:
        self._ensure_running()
        if call.tool_id not in self._started:
            raise ProtocolError(f"tool result for {call.tool_id} emitted before tool-start")
        if call.tool_id in self._resolved:
            raise ProtocolError(f"tool {call.tool_id} resolved twice")
