"""One assistant turn: provider rounds and tool execution, streamed through the emitter."""

from __future__ import annotations

import asyncio
from contextlib import aclosing
from typing import Any

from streamchat.ai.tools.base import Tool
from streamchat.ai.tools.registry import ToolRegistry
from streamchat.config import ProviderConfig
from streamchat.core.context import RequestContext
from streamchat.core.errors import Aborted, UpstreamError
from streamchat.core.types import CancelReason, EndReason
from streamchat.log import get_logger
from streamchat.protocol.emitter import EventEmitter, ToolCall
from streamchat.providers.base import Provider, ProviderRequest
from streamchat.transport.outbound import OutboundAdapter

logger = get_logger(__name__)

MAX_TOOL_ROUNDS = 10

TOOL_LIMIT_MESSAGE = "tool execution limit reached"


class TurnRunner:
    """Drive the provider tool-use loop for one assistant version.

    Every provider round and every tool call goes through the outbound
    adapter under the request's context, so a cancel or timeout tears down
    whichever of them is in flight. The runner always leaves the emitter
    finished: completed, failed or aborted.
    """

    def __init__(
        self,
        provider: Provider,
        adapter: OutboundAdapter,
        tool_registry: ToolRegistry,
        config: ProviderConfig,
        tool_timeout: float = 60.0,
    ):
        self._provider = provider
        self._adapter = adapter
        self._tool_registry = tool_registry
        self._config = config
        self._tool_timeout = tool_timeout

    async def run(
        self,
        ctx: RequestContext,
        messages: list[dict[str, Any]],
        emitter: EventEmitter,
        system: str | None = None,
    ) -> EndReason | None:
        """Run the turn to a terminal event and return the session-end reason."""
        tools = self._tool_registry.get_tools_by_names(self._config.tools)
        tool_defs = [t.to_api_dict() for t in tools]
        by_name = {t.name: t for t in tools}
        messages = list(messages)

        try:
            for round_number in range(MAX_TOOL_ROUNDS):
                emitter.start_round()
                request = ProviderRequest(
                    model=self._config.model,
                    messages=list(messages),
                    system=self._config.system_prompt if system is None else system,
                    max_tokens=self._config.max_tokens,
                    temperature=self._config.temperature,
                    tools=tool_defs,
                )
                async with aclosing(self._adapter.stream(ctx, self._provider.stream(request))) as events:
                    async for event in events:
                        emitter.handle(event)

                calls = emitter.end_round()
                if not calls:
                    emitter.complete()
                    logger.info(
                        "turn_completed",
                        request_id=ctx.request_id,
                        rounds=round_number + 1,
                        stop_reason=emitter.stop_reason,
                    )
                    return emitter.end_reason

                messages.append({"role": "assistant", "content": emitter.round_content()})
                results = await self._execute_tools(ctx, calls, by_name, emitter)
                messages.append({"role": "user", "content": results})
                logger.debug("tool_round_done", request_id=ctx.request_id, round=round_number, calls=len(calls))

            logger.warning("tool_round_limit", request_id=ctx.request_id, rounds=MAX_TOOL_ROUNDS)
            emitter.fail(TOOL_LIMIT_MESSAGE)
        except Aborted as e:
            logger.info("request_aborted", request_id=ctx.request_id, reason=str(e.reason))
            emitter.abort(e.reason)
        except UpstreamError as e:
            logger.warning("upstream_error", request_id=ctx.request_id, status=e.status_code, error=e.message)
            emitter.fail(e.message)
        except asyncio.CancelledError:
            emitter.abort(CancelReason.SHUTDOWN)
            raise
        except Exception as e:
            logger.exception("turn_failed", request_id=ctx.request_id)
            emitter.fail(str(e) or type(e).__name__)
        return emitter.end_reason

    async def _execute_tools(
        self,
        ctx: RequestContext,
        calls: list[ToolCall],
        tools: dict[str, Tool],
        emitter: EventEmitter,
    ) -> list[dict[str, Any]]:
        """Execute a round's tool calls concurrently and return the tool_result blocks."""
        for call in calls:
            emitter.tool_started(call)

        outcomes = await asyncio.gather(
            *(self._execute_one(ctx, call, tools.get(call.tool_name), emitter) for call in calls),
            return_exceptions=True,
        )
        if ctx.token.cancelled:
            raise Aborted(ctx.token.reason or CancelReason.USER)
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                raise outcome

        results: list[dict[str, Any]] = []
        for call, (ok, text) in zip(calls, outcomes):
            block: dict[str, Any] = {"type": "tool_result", "tool_use_id": call.tool_id, "content": text}
            if not ok:
                block["is_error"] = True
            results.append(block)
        return results

    async def _execute_one(
        self,
        ctx: RequestContext,
        call: ToolCall,
        tool: Tool | None,
        emitter: EventEmitter,
    ) -> tuple[bool, str]:
        if call.input_error is not None:
            emitter.tool_failed(call, call.input_error)
            return False, call.input_error
        if tool is None:
            error = f"unknown tool '{call.tool_name}'"
            emitter.tool_failed(call, error)
            return False, error

        try:
            result = await self._adapter.call(ctx, tool.execute(**call.input), timeout=self._tool_timeout)
        except Aborted:
            if ctx.token.cancelled:
                raise
            logger.warning("tool_timeout", request_id=ctx.request_id, tool=call.tool_name)
            emitter.tool_failed(call, "tool timed out")
            return False, "tool timed out"
        except Exception as e:
            logger.error("tool_execution_error", request_id=ctx.request_id, tool=call.tool_name, error=str(e))
            error = f"Error executing {call.tool_name}: {e}"
            emitter.tool_failed(call, error)
            return False, error

        emitter.tool_succeeded(call, result)
        return True, result
