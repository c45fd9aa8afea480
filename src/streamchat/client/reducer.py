"""Fold a protocol event sequence into a message version.

The reducer is the client-side state machine. Every block index moves through
``absent -> open -> closed``; tool blocks additionally carry their own
execution lifecycle, which is independent of whether their input stream is
still open. Malformed or out-of-order events are logged and dropped, never
raised: a reconnecting subscriber replays the buffer from the start and must
converge to the same state as one that was there all along.
"""

from __future__ import annotations

import json
from enum import StrEnum
from typing import Iterable, Union, assert_never

from streamchat.conversation.models import MessageVersion, TextBlock, ToolBlock
from streamchat.core.errors import ProtocolViolation
from streamchat.core.types import (
    ABORTED_NOTICE,
    TIMEOUT_NOTICE,
    BlockKind,
    EndReason,
    ToolState,
    VersionStatus,
)
from streamchat.log import get_logger
from streamchat.protocol.events import (
    BlockDelta,
    BlockStart,
    BlockStop,
    Envelope,
    ErrorEvent,
    Heartbeat,
    MessageComplete,
    ProtocolEvent,
    Resync,
    SessionEnd,
    ToolError,
    ToolResult,
    ToolStart,
)

logger = get_logger(__name__)

Block = Union[TextBlock, ToolBlock]


class BlockPhase(StrEnum):
    OPEN = "open"
    CLOSED = "closed"


class StreamReducer:
    """Owns one streaming :class:`MessageVersion` until it reaches a terminal status."""

    def __init__(self, version: MessageVersion):
        self._version = version.model_copy(deep=True)
        self._blocks: dict[int, Block] = {b.index: b for b in self._version.blocks}
        self._phase: dict[int, BlockPhase] = {i: BlockPhase.CLOSED for i in self._blocks}
        self._last_seq: int | None = None
        self.resync_required = False
        self._error_text: str | None = None
        self.violations = 0

    @classmethod
    def for_version_id(cls, version_id: str) -> StreamReducer:
        return cls(MessageVersion(id=version_id))

    @property
    def finished(self) -> bool:
        return self._version.status.terminal

    @property
    def status(self) -> VersionStatus:
        return self._version.status

    @property
    def last_seq(self) -> int | None:
        return self._last_seq

    @property
    def version(self) -> MessageVersion:
        """A snapshot of the version with blocks in index order."""
        snapshot = self._version.model_copy(deep=True)
        snapshot.blocks = [self._blocks[i].model_copy(deep=True) for i in sorted(self._blocks)]
        return snapshot

    def phase(self, index: int) -> BlockPhase | None:
        """``None`` means the index is still absent."""
        return self._phase.get(index)

    # -- input ---------------------------------------------------------------

    def apply(self, event: ProtocolEvent, seq: int | None = None) -> bool:
        """Apply one event. Returns True if the version changed."""
        if seq is not None:
            if self._last_seq is not None and seq <= self._last_seq:
                return False
            self._last_seq = seq

        if isinstance(event, Heartbeat):
            return False
        if isinstance(event, Resync):
            # the replay is incomplete; the caller has to reload the snapshot
            self.resync_required = True
            logger.warning("resync_required", version_id=self._version.id, last_seq=event.last_seq)
            return False
        if self.finished:
            logger.debug("event_after_terminal", version_id=self._version.id, type=event.type)
            return False

        try:
            self._dispatch(event)
        except ProtocolViolation as e:
            self.violations += 1
            logger.warning(
                "protocol_violation_ignored",
                version_id=self._version.id,
                type=event.type,
                error=str(e),
            )
            return False
        return True

    def apply_envelope(self, envelope: Envelope) -> bool:
        return self.apply(envelope.event, envelope.seq)

    def replay(self, events: Iterable[ProtocolEvent | Envelope]) -> MessageVersion:
        for item in events:
            if isinstance(item, Envelope):
                self.apply_envelope(item)
            else:
                self.apply(item)
        return self.version

    # -- transitions -----------------------------------------------------------

    def _dispatch(self, event: ProtocolEvent) -> None:
        match event:
            case BlockStart():
                self._start(event)
            case BlockDelta():
                self._delta(event)
            case BlockStop():
                self._stop(event.index)
            case ToolStart():
                block = self._tool(event.tool_id)
                if block.state is not ToolState.INPUT_STREAMING:
                    raise ProtocolViolation(f"tool {event.tool_id} already started")
                block.state = ToolState.EXECUTING
            case ToolResult():
                block = self._executing_tool(event.tool_id)
                block.state = ToolState.COMPLETED
                block.input = dict(event.input) if event.input else block.input
                block.output = event.result
            case ToolError():
                block = self._executing_tool(event.tool_id)
                block.state = ToolState.ERROR
                block.error = event.error
            case MessageComplete():
                self._finalize(VersionStatus.COMPLETED)
            case ErrorEvent():
                self._error_text = event.error
                self._finalize(VersionStatus.ERROR, event.error)
            case SessionEnd():
                self._end(event.reason)
            case Heartbeat() | Resync():
                pass
            case _:
                assert_never(event)

    def _start(self, event: BlockStart) -> None:
        if event.index in self._phase:
            raise ProtocolViolation(f"block-start for {self._phase[event.index]} index {event.index}")
        block: Block
        if event.kind is BlockKind.TEXT:
            block = TextBlock(index=event.index)
        else:
            block = ToolBlock(
                index=event.index,
                tool_id=event.tool_id or f"tool-{event.index}",
                tool_name=event.tool_name or "unknown",
            )
        self._blocks[event.index] = block
        self._phase[event.index] = BlockPhase.OPEN

    def _delta(self, event: BlockDelta) -> None:
        if self._phase.get(event.index) is not BlockPhase.OPEN:
            raise ProtocolViolation(f"block-delta for index {event.index} that is not open")
        block = self._blocks[event.index]
        if isinstance(block, TextBlock):
            if event.text is None:
                raise ProtocolViolation(f"text block {event.index} got a delta without text")
            block.text += event.text
        else:
            if event.partial_json is None:
                raise ProtocolViolation(f"tool block {event.index} got a delta without partialJson")
            block.raw_input += event.partial_json

    def _stop(self, index: int) -> None:
        if self._phase.get(index) is not BlockPhase.OPEN:
            raise ProtocolViolation(f"block-stop for index {index} that is not open")
        self._close(index)

    def _close(self, index: int) -> None:
        self._phase[index] = BlockPhase.CLOSED
        block = self._blocks[index]
        if isinstance(block, ToolBlock) and block.raw_input.strip():
            try:
                parsed = json.loads(block.raw_input)
            except json.JSONDecodeError:
                logger.debug("tool_input_unparsed", index=index)
            else:
                if isinstance(parsed, dict):
                    block.input = parsed

    def _end(self, reason: EndReason) -> None:
        match reason:
            case EndReason.DONE:
                self._finalize(VersionStatus.COMPLETED)
            case EndReason.ABORTED:
                self._finalize(VersionStatus.ABORTED, ABORTED_NOTICE)
            case EndReason.TIMEOUT:
                self._finalize(VersionStatus.ABORTED, TIMEOUT_NOTICE)
            case EndReason.ERROR:
                self._finalize(VersionStatus.ERROR, self._error_text or "stream ended with an error")
            case _:
                assert_never(reason)

    def _finalize(self, status: VersionStatus, error: str | None = None) -> None:
        for index in sorted(i for i, p in self._phase.items() if p is BlockPhase.OPEN):
            self._close(index)
        if status is not VersionStatus.COMPLETED:
            for block in self._blocks.values():
                if isinstance(block, ToolBlock) and block.state in (
                    ToolState.INPUT_STREAMING,
                    ToolState.EXECUTING,
                ):
                    block.state = ToolState.ERROR
                    block.error = error
        self._version.status = status
        self._version.error = error

    def _tool(self, tool_id: str) -> ToolBlock:
        for block in self._blocks.values():
            if isinstance(block, ToolBlock) and block.tool_id == tool_id:
                return block
        raise ProtocolViolation(f"no tool block for {tool_id}")

    def _executing_tool(self, tool_id: str) -> ToolBlock:
        block = self._tool(tool_id)
        if block.state is not ToolState.EXECUTING:
            raise ProtocolViolation(f"tool {tool_id} resolved while {block.state}")
        return block
