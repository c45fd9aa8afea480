"""HTTP client that follows a request's event stream into a :class:`StreamReducer`."""

from __future__ import annotations

import asyncio
from typing import Any, Callable, Optional

import httpx

from streamchat.client.reducer import StreamReducer
from streamchat.conversation.models import Conversation, MessageVersion
from streamchat.core.errors import ProtocolViolation
from streamchat.log import get_logger
from streamchat.protocol.codec import SSEDecoder, decode_envelope
from streamchat.protocol.events import Resync

logger = get_logger(__name__)

OnUpdate = Callable[[MessageVersion], None]


class StreamClient:
    """Talks to a streamchat server.

    :meth:`follow` subscribes to a conversation's event stream and reduces the
    events of one request. On a dropped connection it reconnects with
    ``Last-Event-ID`` so only missed events are replayed; the reducer drops
    anything it has already applied. When the server can no longer replay the
    request it sends ``resync`` and the version is read from the conversation
    snapshot instead.
    """

    def __init__(
        self,
        base_url: str,
        client: httpx.AsyncClient | None = None,
        max_reconnects: int = 5,
        reconnect_delay: float = 0.5,
        resync_delay: float = 1.0,
    ):
        self._base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(None, connect=10.0))
        self._owns_client = client is None
        self._max_reconnects = max_reconnects
        self._reconnect_delay = reconnect_delay
        self._resync_delay = resync_delay

    async def __aenter__(self) -> StreamClient:
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    # -- commands ------------------------------------------------------------

    async def create_conversation(self, title: str | None = None, mode: str = "chat") -> dict[str, Any]:
        response = await self._client.post(
            f"{self._base_url}/api/conversations", json={"title": title, "mode": mode}
        )
        response.raise_for_status()
        return response.json()["conversation"]

    async def submit(self, conversation_id: str, content: str, replace: bool = False) -> dict[str, Any]:
        response = await self._client.post(
            f"{self._base_url}/api/conversations/{conversation_id}/messages",
            json={"content": content, "replace": replace},
        )
        response.raise_for_status()
        return response.json()

    async def abort(self, conversation_id: str, request_id: str) -> bool:
        """True if the server canceled the request; False if it was unknown or already finished."""
        response = await self._client.post(
            f"{self._base_url}/api/conversations/{conversation_id}/stream/{request_id}/abort"
        )
        if response.status_code in (404, 409):
            return False
        response.raise_for_status()
        return bool(response.json().get("success"))

    # -- streaming -----------------------------------------------------------

    async def follow(
        self,
        conversation_id: str,
        request_id: str,
        version_id: str,
        on_update: Optional[OnUpdate] = None,
    ) -> MessageVersion:
        """Reduce the events of *request_id* until its version is terminal."""
        reducer = StreamReducer.for_version_id(version_id)
        url = f"{self._base_url}/api/conversations/{conversation_id}/events"
        last_event_id: str | None = None
        attempts = 0

        while not reducer.finished:
            resynced: MessageVersion | None = None
            headers = {"Accept": "text/event-stream"}
            if last_event_id is not None:
                headers["Last-Event-ID"] = last_event_id
            try:
                async with self._client.stream("GET", url, headers=headers) as response:
                    response.raise_for_status()
                    decoder = SSEDecoder()
                    async for line in response.aiter_lines():
                        message = decoder.feed(line)
                        if decoder.last_event_id is not None:
                            last_event_id = decoder.last_event_id
                        if message is None or message.event == "heartbeat":
                            continue
                        try:
                            envelope = decode_envelope(message)
                        except ProtocolViolation as e:
                            logger.warning("stream_event_undecodable", error=str(e))
                            continue
                        if isinstance(envelope.event, Resync):
                            resynced = await self.fetch_version(conversation_id, version_id)
                            break
                        if envelope.request_id != request_id:
                            continue
                        if reducer.apply_envelope(envelope):
                            attempts = 0
                            if on_update is not None:
                                on_update(reducer.version)
                        if reducer.finished:
                            break
            except httpx.TransportError as e:
                attempts += 1
                if attempts > self._max_reconnects:
                    raise
                logger.info(
                    "stream_reconnecting",
                    request_id=request_id,
                    last_event_id=last_event_id,
                    attempt=attempts,
                    error=str(e),
                )
                await asyncio.sleep(self._reconnect_delay * attempts)
                continue
            if resynced is not None:
                if on_update is not None:
                    on_update(resynced)
                if resynced.status.terminal:
                    return resynced
                # still streaming; poll the snapshot until the request finishes
                logger.info("stream_resync_pending", request_id=request_id, version_id=version_id)
                await asyncio.sleep(self._resync_delay)
                continue
            if not reducer.finished:
                # server closed the stream cleanly; resume from where we were
                attempts += 1
                if attempts > self._max_reconnects:
                    raise ConnectionError(f"event stream for {request_id} ended before the version finished")
                await asyncio.sleep(self._reconnect_delay * attempts)

        return reducer.version

    async def fetch_version(self, conversation_id: str, version_id: str) -> MessageVersion:
        """Read one version from the conversation snapshot."""
        response = await self._client.get(f"{self._base_url}/api/conversations/{conversation_id}")
        response.raise_for_status()
        conversation = Conversation.model_validate(response.json())
        for message in conversation.messages:
            for version in message.versions:
                if version.id == version_id:
                    return version
        raise LookupError(f"conversation {conversation_id} has no version {version_id}")
