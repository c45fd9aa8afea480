from __future__ import annotations

import asyncio
from typing import Any, AsyncIterator

import pytest

from streamchat.config import ProviderConfig
from streamchat.core.cancellation import CancellationToken
from streamchat.core.context import RequestContext
from streamchat.core.types import BlockKind
from streamchat.providers.base import (
    BlockClosed,
    BlockOpened,
    MessageStopped,
    Provider,
    ProviderEvent,
    ProviderRequest,
    TextDelta,
    ToolInputDelta,
)


class Hang:
    """Script step that blocks until the stream is torn down."""


class Gate:
    """Script step that blocks until ``open()`` is called by the test."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def open(self) -> None:
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()


class ScriptedProvider(Provider):
    """In-memory provider that plays one script per round.

    A script item is a provider event, an exception to raise, a :class:`Gate`
    or :class:`Hang`. The last script repeats when more rounds are requested.
    """

    def __init__(self, *rounds: list[Any]):
        self.rounds = list(rounds) or [text_round("ok")]
        self.requests: list[ProviderRequest] = []
        self.yielded = 0
        self.torn_down = 0
        self.finished = 0

    @property
    def name(self) -> str:
        return "scripted"

    async def stream(self, request: ProviderRequest) -> AsyncIterator[ProviderEvent]:
        self.requests.append(request)
        script = self.rounds[min(len(self.requests), len(self.rounds)) - 1]
        completed = False
        try:
            for item in script:
                if isinstance(item, Exception):
                    raise item
                if isinstance(item, Gate):
                    await item.wait()
                    continue
                if isinstance(item, Hang):
                    await asyncio.Event().wait()
                self.yielded += 1
                yield item
                await asyncio.sleep(0)
            self.finished += 1
            completed = True
        finally:
            if not completed:
                self.torn_down += 1


def text_round(*chunks: str, index: int = 0) -> list[ProviderEvent]:
    events: list[ProviderEvent] = [BlockOpened(index, BlockKind.TEXT)]
    events += [TextDelta(index, chunk) for chunk in chunks]
    events += [BlockClosed(index), MessageStopped("end_turn")]
    return events


def tool_round(
    tool_id: str,
    tool_name: str,
    *json_parts: str,
    preamble: str | None = None,
) -> list[ProviderEvent]:
    events: list[ProviderEvent] = []
    index = 0
    if preamble is not None:
        events += [BlockOpened(0, BlockKind.TEXT), TextDelta(0, preamble), BlockClosed(0)]
        index = 1
    events.append(BlockOpened(index, BlockKind.TOOL, tool_id=tool_id, tool_name=tool_name))
    events += [ToolInputDelta(index, part) for part in json_parts]
    events += [BlockClosed(index), MessageStopped("tool_use")]
    return events


def make_context(token: CancellationToken | None = None, request_id: str = "req-1") -> RequestContext:
    return RequestContext(
        request_id=request_id,
        conversation_id="conv-1",
        message_key="msg-1",
        version_id="ver-1",
        token=token or CancellationToken(),
    )


@pytest.fixture
def provider_config() -> ProviderConfig:
    return ProviderConfig(model="test-model", tools=["current_time", "slow", "echo"])
