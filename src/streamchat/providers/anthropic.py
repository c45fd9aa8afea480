"""Anthropic Messages API backend using the official SDK."""

from __future__ import annotations

from typing import Any, AsyncIterator

import anthropic

from streamchat.config import AnthropicConfig
from streamchat.core.errors import UpstreamError
from streamchat.log import get_logger
from streamchat.providers.base import (
    MessageStopped,
    Provider,
    ProviderEvent,
    ProviderRequest,
    map_anthropic_event,
)

logger = get_logger(__name__)


class AnthropicProvider(Provider):
    """Streams raw Messages API events through :func:`map_anthropic_event`.

    The SDK's own timeout is left at its default; request deadlines are
    enforced by the outbound adapter.
    """

    def __init__(self, config: AnthropicConfig):
        self._client = anthropic.AsyncAnthropic(
            api_key=config.api_key,
            base_url=config.base_url,
            max_retries=config.max_retries,
        )

    @property
    def name(self) -> str:
        return "anthropic"

    async def stream(self, request: ProviderRequest) -> AsyncIterator[ProviderEvent]:
        kwargs: dict[str, Any] = {
            "model": request.model,
            "max_tokens": request.max_tokens,
            "messages": request.messages,
            "temperature": request.temperature,
            "stream": True,
        }
        if request.system:
            kwargs["system"] = request.system
        if request.tools:
            kwargs["tools"] = request.tools

        logger.debug("api_request", model=request.model, message_count=len(request.messages))
        try:
            stream = await self._client.messages.create(**kwargs)
        except anthropic.APIError as e:
            raise _upstream_error(e) from e

        input_tokens = 0
        try:
            async for raw in stream:
                data = raw.model_dump()
                if data.get("type") == "message_start":
                    input_tokens = (data.get("message") or {}).get("usage", {}).get("input_tokens", 0)
                    continue
                event = map_anthropic_event(data)
                if event is None:
                    continue
                if isinstance(event, MessageStopped):
                    logger.debug(
                        "api_response",
                        model=request.model,
                        input_tokens=input_tokens,
                        output_tokens=event.output_tokens,
                        stop_reason=event.stop_reason,
                    )
                    event = MessageStopped(event.stop_reason, input_tokens, event.output_tokens)
                yield event
        except anthropic.APIError as e:
            raise _upstream_error(e) from e
        finally:
            await stream.close()

    async def aclose(self) -> None:
        await self._client.close()


def _upstream_error(error: anthropic.APIError) -> UpstreamError:
    status = getattr(error, "status_code", None)
    logger.warning("api_error", status=status, error=error.message)
    return UpstreamError(error.message, status_code=status)
