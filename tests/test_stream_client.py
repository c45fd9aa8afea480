from __future__ import annotations

import httpx
import pytest

from streamchat.client.stream_client import StreamClient
from streamchat.conversation.models import Conversation, Message, MessageVersion, TextBlock
from streamchat.core.types import BlockKind, Role, VersionStatus
from streamchat.protocol.codec import format_sse
from streamchat.protocol.events import BlockDelta, BlockStart, Envelope, Heartbeat, MessageComplete, Resync

BASE = "http://chat.test"


def _frames(*envelopes: Envelope) -> bytes:
    return "".join(format_sse(e) for e in envelopes).encode()


def _sse_response(body: bytes) -> httpx.Response:
    return httpx.Response(200, headers={"content-type": "text/event-stream"}, content=body)


@pytest.mark.asyncio
async def test_follow_reconnects_with_last_event_id() -> None:
    seen_ids: list[str | None] = []
    bodies = [
        _frames(
            Envelope(seq=1, request_id="req-1", event=BlockStart(index=0, kind=BlockKind.TEXT)),
            Envelope(seq=None, request_id=None, event=Heartbeat()),
            Envelope(seq=2, request_id="req-1", event=BlockDelta(index=0, text="Hel")),
        ),
        _frames(
            Envelope(seq=2, request_id="req-1", event=BlockDelta(index=0, text="Hel")),
            Envelope(seq=3, request_id="req-other", event=BlockDelta(index=0, text="noise")),
            Envelope(seq=4, request_id="req-1", event=BlockDelta(index=0, text="lo")),
            Envelope(seq=5, request_id="req-1", event=MessageComplete()),
        ),
    ]

    def handler(request: httpx.Request) -> httpx.Response:
        seen_ids.append(request.headers.get("last-event-id"))
        return _sse_response(bodies[len(seen_ids) - 1])

    updates: list[str] = []
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    async with StreamClient(BASE, client=http, reconnect_delay=0) as client:
        version = await client.follow("conv-1", "req-1", "ver-1", on_update=lambda v: updates.append(v.text))
    await http.aclose()

    assert seen_ids == [None, "2"]
    assert version.id == "ver-1"
    assert version.status is VersionStatus.COMPLETED
    assert version.text == "Hello"
    assert updates[-1] == "Hello"


@pytest.mark.asyncio
async def test_follow_gives_up_after_repeated_empty_streams() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return _sse_response(b"")

    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    client = StreamClient(BASE, client=http, max_reconnects=2, reconnect_delay=0)

    with pytest.raises(ConnectionError):
        await client.follow("conv-1", "req-1", "ver-1")
    await http.aclose()


@pytest.mark.asyncio
async def test_abort_maps_status_codes() -> None:
    statuses = iter([200, 409, 404])

    def handler(request: httpx.Request) -> httpx.Response:
        status = next(statuses)
        assert request.url.path == "/api/conversations/conv-1/stream/req-1/abort"
        return httpx.Response(status, json={"success": status == 200, "message": "x"})

    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    client = StreamClient(BASE, client=http)

    assert await client.abort("conv-1", "req-1") is True
    assert await client.abort("conv-1", "req-1") is False
    assert await client.abort("conv-1", "req-1") is False
    await http.aclose()


@pytest.mark.asyncio
async def test_follow_falls_back_to_the_snapshot_on_resync() -> None:
    resync = _frames(Envelope(seq=None, request_id="req-1", event=Resync(last_seq=9000)))
    snapshots = [
        Conversation(
            id="conv-1",
            messages=[Message(key="m1", role=Role.ASSISTANT, versions=[MessageVersion(id="ver-1")])],
        ),
        Conversation(
            id="conv-1",
            messages=[
                Message(
                    key="m1",
                    role=Role.ASSISTANT,
                    versions=[
                        MessageVersion(
                            id="ver-1",
                            status=VersionStatus.COMPLETED,
                            blocks=[TextBlock(index=0, text="a very long answer")],
                        )
                    ],
                )
            ],
        ),
    ]
    paths: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        paths.append(request.url.path)
        if request.url.path.endswith("/events"):
            return _sse_response(resync)
        return httpx.Response(200, json=snapshots.pop(0).model_dump(mode="json", by_alias=True))

    updates: list[VersionStatus] = []
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    client = StreamClient(BASE, client=http, resync_delay=0)
    version = await client.follow("conv-1", "req-1", "ver-1", on_update=lambda v: updates.append(v.status))
    await http.aclose()

    assert version.status is VersionStatus.COMPLETED
    assert version.text == "a very long answer"
    assert updates == [VersionStatus.STREAMING, VersionStatus.COMPLETED]
    assert paths == [
        "/api/conversations/conv-1/events",
        "/api/conversations/conv-1",
        "/api/conversations/conv-1/events",
        "/api/conversations/conv-1",
    ]
