from __future__ import annotations

import asyncio

import pytest

from conftest import Gate, Hang, ScriptedProvider, make_context, text_round
from streamchat.core.cancellation import CancellationToken
from streamchat.core.errors import Aborted, UpstreamError
from streamchat.core.types import BlockKind, CancelReason
from streamchat.providers.base import BlockOpened, ProviderRequest, TextDelta
from streamchat.transport.outbound import OutboundAdapter

REQUEST = ProviderRequest(model="test-model", messages=[{"role": "user", "content": "hello"}])


async def _collect(adapter: OutboundAdapter, ctx, provider: ScriptedProvider, timeout=None) -> list:
    items = []
    async for item in adapter.stream(ctx, provider.stream(REQUEST), timeout=timeout):
        items.append(item)
    return items


@pytest.mark.asyncio
async def test_stream_passes_provider_events_through_in_order() -> None:
    provider = ScriptedProvider(text_round("Hi", " there"))

    items = await _collect(OutboundAdapter(), make_context(), provider)

    assert items == text_round("Hi", " there")


@pytest.mark.asyncio
async def test_user_cancel_tears_down_the_in_flight_call() -> None:
    provider = ScriptedProvider([BlockOpened(0, BlockKind.TEXT), TextDelta(0, "par"), Hang(), TextDelta(0, "zombie")])
    ctx = make_context()
    items: list = []

    async def consume() -> None:
        async for item in OutboundAdapter().stream(ctx, provider.stream(REQUEST)):
            items.append(item)

    task = asyncio.create_task(consume())
    while len(items) < 2:
        await asyncio.sleep(0)
    ctx.token.cancel(CancelReason.USER)

    with pytest.raises(Aborted) as info:
        await asyncio.wait_for(task, timeout=1)

    assert info.value.reason is CancelReason.USER
    assert items == [BlockOpened(0, BlockKind.TEXT), TextDelta(0, "par")]
    assert provider.yielded == 2
    assert provider.torn_down == 1


@pytest.mark.asyncio
async def test_item_ready_when_token_fires_is_not_handed_out() -> None:
    gate = Gate()
    provider = ScriptedProvider([gate, TextDelta(0, "late")])
    ctx = make_context()
    items: list = []

    async def consume() -> None:
        async for item in OutboundAdapter().stream(ctx, provider.stream(REQUEST)):
            items.append(item)

    task = asyncio.create_task(consume())
    await asyncio.sleep(0.01)
    ctx.token.cancel()
    gate.open()

    with pytest.raises(Aborted):
        await asyncio.wait_for(task, timeout=1)
    assert items == []


@pytest.mark.asyncio
async def test_timeout_aborts_with_timeout_reason() -> None:
    provider = ScriptedProvider([Hang()])

    with pytest.raises(Aborted) as info:
        await asyncio.wait_for(_collect(OutboundAdapter(), make_context(), provider, timeout=0.02), timeout=1)

    assert info.value.reason is CancelReason.TIMEOUT


@pytest.mark.asyncio
async def test_explicit_zero_timeout_is_not_replaced_by_the_default() -> None:
    provider = ScriptedProvider([Hang()])
    adapter = OutboundAdapter(timeout=300)

    with pytest.raises(Aborted) as info:
        await asyncio.wait_for(_collect(adapter, make_context(), provider, timeout=0), timeout=1)

    assert info.value.reason is CancelReason.TIMEOUT


@pytest.mark.asyncio
async def test_already_cancelled_token_aborts_before_the_provider_runs() -> None:
    token = CancellationToken()
    token.cancel(CancelReason.SUPERSEDED)
    provider = ScriptedProvider(text_round("never"))

    with pytest.raises(Aborted) as info:
        await _collect(OutboundAdapter(), make_context(token), provider)

    assert info.value.reason is CancelReason.SUPERSEDED
    assert provider.yielded == 0


@pytest.mark.asyncio
async def test_upstream_errors_pass_through_unchanged() -> None:
    provider = ScriptedProvider([BlockOpened(0, BlockKind.TEXT), UpstreamError("overloaded", 529)])

    with pytest.raises(UpstreamError) as info:
        await _collect(OutboundAdapter(), make_context(), provider)

    assert info.value.status_code == 529


@pytest.mark.asyncio
async def test_call_returns_the_awaitable_result() -> None:
    async def work() -> str:
        await asyncio.sleep(0)
        return "done"

    assert await OutboundAdapter().call(make_context(), work()) == "done"


@pytest.mark.asyncio
async def test_call_cancels_the_awaitable_on_abort() -> None:
    ctx = make_context()
    cancelled = asyncio.Event()

    async def work() -> str:
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            cancelled.set()
            raise
        return "unreachable"

    task = asyncio.create_task(OutboundAdapter().call(ctx, work()))
    await asyncio.sleep(0.01)
    ctx.token.cancel()

    with pytest.raises(Aborted):
        await asyncio.wait_for(task, timeout=1)
    assert cancelled.is_set()
