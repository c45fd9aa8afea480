"""Backend for an Anthropic-compatible ``/v1/messages`` gateway reached over plain HTTP."""

from __future__ import annotations

import json
from typing import Any, AsyncIterator

import httpx

from streamchat.config import GatewayConfig
from streamchat.core.errors import UpstreamError
from streamchat.core.types import BlockKind
from streamchat.log import get_logger
from streamchat.protocol.codec import SSEDecoder
from streamchat.providers.base import (
    BlockClosed,
    BlockOpened,
    MessageStopped,
    Provider,
    ProviderEvent,
    ProviderRequest,
    TextDelta,
    map_anthropic_event,
)

logger = get_logger(__name__)


class GatewayProvider(Provider):
    """Streams from a local model router that speaks the Anthropic wire format.

    Gateways in front of other vendors sometimes answer with OpenAI-style
    chunks or with a single non-streaming JSON body; both are folded into
    one text block at index 0.
    """

    def __init__(self, config: GatewayConfig, client: httpx.AsyncClient | None = None):
        self._url = config.base_url.rstrip("/") + "/v1/messages"
        self._headers = {"Content-Type": "application/json"}
        if config.api_key:
            self._headers["Authorization"] = f"Bearer {config.api_key}"
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(None, connect=10.0))
        self._owns_client = client is None

    @property
    def name(self) -> str:
        return "gateway"

    async def stream(self, request: ProviderRequest) -> AsyncIterator[ProviderEvent]:
        body: dict[str, Any] = {
            "model": request.model,
            "max_tokens": request.max_tokens,
            "temperature": request.temperature,
            # messages without content are rejected by most upstreams
            "messages": [m for m in request.messages if m.get("content")],
            "stream": True,
        }
        if request.system:
            body["system"] = request.system
        if request.tools:
            body["tools"] = request.tools

        logger.debug("gateway_request", url=self._url, model=request.model, message_count=len(body["messages"]))
        try:
            async with self._client.stream("POST", self._url, json=body, headers=self._headers) as response:
                if response.status_code >= 400:
                    raw = await response.aread()
                    raise UpstreamError(_error_message(raw, response.status_code), response.status_code)

                content_type = response.headers.get("content-type", "")
                if "stream" not in content_type:
                    raw = await response.aread()
                    for event in _from_json_body(raw):
                        yield event
                    return

                implicit = _ImplicitTextBlock()
                decoder = SSEDecoder()
                async for line in response.aiter_lines():
                    message = decoder.feed(line)
                    if message is None:
                        continue
                    if message.data.strip() == "[DONE]":
                        break
                    for event in _from_chunk(message.data, implicit):
                        yield event
                for event in implicit.close():
                    yield event
        except httpx.HTTPError as e:
            logger.warning("gateway_transport_error", url=self._url, error=str(e))
            raise UpstreamError(str(e) or type(e).__name__) from e

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


class _ImplicitTextBlock:
    """Tracks the synthetic text block used for OpenAI-style chunks."""

    def __init__(self) -> None:
        self.open = False

    def text(self, text: str) -> list[ProviderEvent]:
        events: list[ProviderEvent] = []
        if not self.open:
            self.open = True
            events.append(BlockOpened(0, BlockKind.TEXT))
        events.append(TextDelta(0, text))
        return events

    def close(self) -> list[ProviderEvent]:
        if not self.open:
            return []
        self.open = False
        return [BlockClosed(0)]


def _from_chunk(data: str, implicit: _ImplicitTextBlock) -> list[ProviderEvent]:
    try:
        payload = json.loads(data)
    except json.JSONDecodeError:
        logger.warning("gateway_chunk_not_json", data=data[:80])
        return []
    if not isinstance(payload, dict):
        return []

    if payload.get("type") == "error":
        error = payload.get("error")
        message = error.get("message") if isinstance(error, dict) else error
        raise UpstreamError(str(message or "upstream reported an error"))

    if "choices" in payload:
        choice = (payload.get("choices") or [{}])[0]
        delta = choice.get("delta") or {}
        text = delta.get("content") or (delta.get("message") or {}).get("content")
        events = implicit.text(text) if text else []
        if choice.get("finish_reason"):
            events += implicit.close()
            events.append(MessageStopped(stop_reason=choice["finish_reason"]))
        return events

    event = map_anthropic_event(payload)
    return [event] if event is not None else []


def _from_json_body(raw: bytes) -> list[ProviderEvent]:
    """Convert a non-streaming reply into a single text block."""
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise UpstreamError(f"unreadable gateway response: {raw[:200]!r}") from e

    text = ""
    if isinstance(data, dict):
        if isinstance(data.get("content"), list):
            text = "".join(c.get("text", "") for c in data["content"] if isinstance(c, dict))
        elif data.get("choices"):
            text = ((data["choices"][0] or {}).get("message") or {}).get("content") or ""
        elif isinstance(data.get("message"), str):
            text = data["message"]

    events: list[ProviderEvent] = [BlockOpened(0, BlockKind.TEXT)]
    if text.strip():
        events.append(TextDelta(0, text.strip()))
    events.append(BlockClosed(0))
    stop_reason = data.get("stop_reason") if isinstance(data, dict) else None
    events.append(MessageStopped(stop_reason=stop_reason or "end_turn"))
    return events


def _error_message(raw: bytes, status_code: int) -> str:
    """Prefer the gateway's ``message`` or ``error`` field, else a prefix of the body."""
    fallback = f"request failed ({status_code})"
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError):
        text = raw.decode("utf-8", errors="replace").strip()
        return text[:200] if text else fallback

    if not isinstance(data, dict):
        return fallback
    message = data.get("message")
    if message is None:
        message = data.get("error")
    if message is None:
        return fallback
    if isinstance(message, dict):
        message = message.get("message") or json.dumps(message, ensure_ascii=False)
    return str(message)
