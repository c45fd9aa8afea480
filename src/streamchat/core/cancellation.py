"""Cancel-only tokens and their composition."""

from __future__ import annotations

import asyncio
from typing import Callable

from streamchat.core.types import CancelReason

Callback = Callable[[CancelReason], None]


class CancellationToken:
    """A one-shot cancellation signal.

    A token can be canceled once; later calls to :meth:`cancel` return False and
    leave the first reason in place. Observers either poll :attr:`cancelled`,
    ``await wait()``, or register a callback that runs synchronously when the
    token fires.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: CancelReason | None = None
        self._callbacks: list[Callback] = []
        self._disposers: list[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._reason is not None

    @property
    def reason(self) -> CancelReason | None:
        return self._reason

    def cancel(self, reason: CancelReason = CancelReason.USER) -> bool:
        """Fire the token. Returns False if it had already fired."""
        if self._reason is not None:
            return False
        self._reason = reason
        self._event.set()
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback(reason)
        self.dispose()
        return True

    async def wait(self) -> CancelReason:
        await self._event.wait()
        assert self._reason is not None
        return self._reason

    def add_callback(self, callback: Callback) -> Callable[[], None]:
        """Run *callback* when the token fires (immediately if it already has).

        Returns a function that unregisters the callback.
        """
        if self._reason is not None:
            callback(self._reason)
            return lambda: None
        self._callbacks.append(callback)

        def _remove() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return _remove

    def dispose(self) -> None:
        """Detach from timers and source tokens. Safe to call repeatedly."""
        disposers, self._disposers = self._disposers, []
        for disposer in disposers:
            disposer()

    @classmethod
    def with_timeout(cls, seconds: float, reason: CancelReason = CancelReason.TIMEOUT) -> CancellationToken:
        """A token that fires by itself after *seconds* on the running loop."""
        token = cls()
        handle = asyncio.get_running_loop().call_later(seconds, token.cancel, reason)
        token._disposers.append(handle.cancel)
        return token

    @classmethod
    def any_of(cls, *sources: CancellationToken) -> CancellationToken:
        """A token that fires as soon as any source fires, with that source's reason."""
        combined = cls()
        for source in sources:
            if source.cancelled:
                assert source.reason is not None
                combined.cancel(source.reason)
                return combined
        for source in sources:
            combined._disposers.append(source.add_callback(combined.cancel))
        return combined

    def __repr__(self) -> str:
        state = f"cancelled={self._reason}" if self._reason else "active"
        return f"<CancellationToken {state}>"
