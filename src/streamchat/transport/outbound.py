"""The single chokepoint for every call this process makes to an upstream provider."""

from __future__ import annotations

import asyncio
from typing import AsyncIterator, Awaitable, TypeVar

from streamchat.core.cancellation import CancellationToken
from streamchat.core.context import RequestContext
from streamchat.core.errors import Aborted
from streamchat.core.types import CancelReason
from streamchat.log import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class OutboundAdapter:
    """Run provider calls under the request's token combined with a timeout.

    Provider code is generic: it accepts its own settings and nothing else. The
    adapter wraps the provider's async iterator (or awaitable) and races every
    step against the combined token. When the token fires, the in-flight step
    is cancelled, which tears down the underlying HTTP response, and a single
    :class:`Aborted` carrying the token's reason is raised to the caller. No
    item produced after the token fired is ever handed out.
    """

    def __init__(self, timeout: float = 300.0):
        self._timeout = timeout

    def combine(self, ctx: RequestContext, timeout: float | None = None) -> tuple[CancellationToken, CancellationToken]:
        """Return the combined token and the private deadline it was built from."""
        seconds = self._timeout if timeout is None else timeout
        deadline = CancellationToken.with_timeout(seconds, CancelReason.TIMEOUT)
        return CancellationToken.any_of(ctx.token, deadline), deadline

    async def stream(
        self,
        ctx: RequestContext,
        source: AsyncIterator[T],
        timeout: float | None = None,
    ) -> AsyncIterator[T]:
        """Yield items from *source* until it ends or the combined token fires."""
        token, deadline = self.combine(ctx, timeout)
        fired = asyncio.ensure_future(token.wait())
        iterator = aiter(source)
        try:
            while True:
                if token.cancelled:
                    raise self._aborted(ctx, token)
                step = asyncio.ensure_future(anext(iterator))
                done, _ = await asyncio.wait({step, fired}, return_when=asyncio.FIRST_COMPLETED)
                if step not in done or token.cancelled:
                    await _cancel(step)
                    raise self._aborted(ctx, token)
                try:
                    item = step.result()
                except StopAsyncIteration:
                    return
                yield item
        finally:
            fired.cancel()
            token.dispose()
            deadline.dispose()
            aclose = getattr(iterator, "aclose", None)
            if aclose is not None:
                await aclose()

    async def call(self, ctx: RequestContext, awaitable: Awaitable[T], timeout: float | None = None) -> T:
        """Await *awaitable* under the combined token."""
        token, deadline = self.combine(ctx, timeout)
        fired = asyncio.ensure_future(token.wait())
        task = asyncio.ensure_future(awaitable)
        try:
            done, _ = await asyncio.wait({task, fired}, return_when=asyncio.FIRST_COMPLETED)
            if task not in done or token.cancelled:
                await _cancel(task)
                raise self._aborted(ctx, token)
            return task.result()
        finally:
            fired.cancel()
            token.dispose()
            deadline.dispose()

    @staticmethod
    def _aborted(ctx: RequestContext, token: CancellationToken) -> Aborted:
        reason = token.reason or CancelReason.USER
        logger.info("outbound_call_aborted", request_id=ctx.request_id, reason=str(reason))
        return Aborted(reason)


async def _cancel(task: asyncio.Future) -> None:
    """Cancel *task* and wait until it has unwound."""
    if task.done():
        if not task.cancelled():
            task.exception()  # mark retrieved; the caller is aborting anyway
        return
    task.cancel()
    await asyncio.gather(task, return_exceptions=True)
