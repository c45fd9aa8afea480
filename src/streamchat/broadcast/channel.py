"""Per-conversation fan-out of protocol events with a bounded replay buffer."""

from __future__ import annotations

import asyncio
import time
from collections import deque
from typing import Callable

from streamchat.log import get_logger
from streamchat.protocol.events import Envelope, Heartbeat, ProtocolEvent, Resync, SessionEnd

logger = get_logger(__name__)


class Subscription:
    """One subscriber's view of a channel: the replay snapshot, then live events.

    Iterating yields envelopes in channel order. When nothing arrives for
    ``heartbeat_interval`` seconds a heartbeat envelope (``seq=None``) is
    yielded instead; heartbeats are generated here, per subscriber, and never
    enter the channel's buffer. Iteration ends when the subscription is closed
    or dropped for being too slow. A ``replay_only`` subscription ends once its
    replay is exhausted.
    """

    def __init__(
        self,
        channel: BroadcastChannel,
        replay: list[Envelope],
        queue_size: int,
        heartbeat_interval: float,
        replay_only: bool = False,
    ):
        self._channel = channel
        self._replay: deque[Envelope] = deque(replay)
        self._queue: asyncio.Queue[Envelope | None] = asyncio.Queue(maxsize=queue_size)
        self._heartbeat_interval = heartbeat_interval
        self._closed = False
        self.dropped = False
        if replay_only:
            self._closed = True
            self._queue.put_nowait(None)

    @property
    def closed(self) -> bool:
        return self._closed

    def offer(self, envelope: Envelope) -> bool:
        """Queue a live envelope without waiting. Returns False if the subscriber was dropped."""
        if self._closed:
            return False
        try:
            self._queue.put_nowait(envelope)
        except asyncio.QueueFull:
            self.dropped = True
            logger.warning(
                "subscriber_dropped",
                conversation_id=self._channel.conversation_id,
                queued=self._queue.qsize(),
            )
            self.close()
            return False
        return True

    def close(self) -> None:
        """Stop the subscription. Events still queued are discarded."""
        if self._closed:
            return
        self._closed = True
        self._replay.clear()
        while not self._queue.empty():
            self._queue.get_nowait()
        self._queue.put_nowait(None)
        self._channel._unsubscribe(self)

    def __aiter__(self) -> Subscription:
        return self

    async def __anext__(self) -> Envelope:
        if self._replay:
            return self._replay.popleft()
        try:
            item = await asyncio.wait_for(self._queue.get(), timeout=self._heartbeat_interval)
        except asyncio.TimeoutError:
            if self._closed:
                raise StopAsyncIteration
            return Envelope(seq=None, request_id=None, event=Heartbeat())
        if item is None:
            raise StopAsyncIteration
        return item


class BroadcastChannel:
    """Fans out the events of one conversation to every subscriber.

    Every published event gets the next channel ``seq``. Non-heartbeat events
    of the current request are kept in a bounded, append-only buffer so that a
    late or reconnecting subscriber can catch up. The buffer is discarded when
    the next request begins, or ``retention`` seconds after the current one
    ended. Publishing never waits on a subscriber.

    A full buffer stops growing rather than evicting its head, and from then
    on subscribers get a single :class:`Resync` event instead of a replay.
    """

    def __init__(
        self,
        conversation_id: str,
        buffer_size: int = 4096,
        queue_size: int = 512,
        heartbeat_interval: float = 15.0,
        retention: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.conversation_id = conversation_id
        self._buffer: deque[Envelope] = deque()
        self._buffer_size = buffer_size
        self._subscribers: list[Subscription] = []
        self._queue_size = queue_size
        self._heartbeat_interval = heartbeat_interval
        self._retention = retention
        self._clock = clock
        self._seq = 0
        self._request_id: str | None = None
        self._ended_at: float | None = None
        self._overflowed = False

    @property
    def seq(self) -> int:
        return self._seq

    @property
    def request_id(self) -> str | None:
        return self._request_id

    @property
    def active(self) -> bool:
        """True between :meth:`begin` and the request's ``session-end``."""
        return self._request_id is not None and self._ended_at is None

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    @property
    def buffered(self) -> list[Envelope]:
        return list(self._buffer)

    def begin(self, request_id: str) -> None:
        """Start buffering a new request, discarding the previous request's history."""
        self._buffer.clear()
        self._request_id = request_id
        self._ended_at = None
        self._overflowed = False
        logger.debug("channel_request_begin", conversation_id=self.conversation_id, request_id=request_id)

    def publish(self, request_id: str | None, event: ProtocolEvent) -> Envelope:
        if isinstance(event, Heartbeat):
            envelope = Envelope(seq=None, request_id=request_id, event=event)
        else:
            self._seq += 1
            envelope = Envelope(seq=self._seq, request_id=request_id, event=event)
            if len(self._buffer) < self._buffer_size and not self._overflowed:
                self._buffer.append(envelope)
            elif not self._overflowed:
                self._overflowed = True
                logger.warning(
                    "replay_buffer_overflow",
                    conversation_id=self.conversation_id,
                    request_id=request_id,
                    size=self._buffer_size,
                )
            if isinstance(event, SessionEnd) and request_id == self._request_id:
                self._ended_at = self._clock()

        for subscriber in list(self._subscribers):
            subscriber.offer(envelope)
        return envelope

    def subscribe(self, after_seq: int | None = None) -> Subscription:
        """Subscribe, replaying buffered events with ``seq`` greater than *after_seq*.

        An *after_seq* ahead of this channel (e.g. an id issued before a
        restart) replays the whole buffer. After an overflow the subscription
        yields only a :class:`Resync` and then ends.
        """
        if self._overflowed:
            resync = Envelope(seq=None, request_id=self._request_id, event=Resync(last_seq=self._seq))
            logger.info("channel_resync_sent", conversation_id=self.conversation_id, last_seq=self._seq)
            return Subscription(self, [resync], self._queue_size, self._heartbeat_interval, replay_only=True)
        if after_seq is not None and after_seq > self._seq:
            after_seq = None
        replay = [
            envelope
            for envelope in self._buffer
            if after_seq is None or (envelope.seq is not None and envelope.seq > after_seq)
        ]
        subscription = Subscription(self, replay, self._queue_size, self._heartbeat_interval)
        self._subscribers.append(subscription)
        logger.debug(
            "channel_subscribed",
            conversation_id=self.conversation_id,
            after_seq=after_seq,
            replayed=len(replay),
            subscribers=len(self._subscribers),
        )
        return subscription

    def discard_if_expired(self, now: float | None = None) -> bool:
        """Drop the buffer of a finished request once its retention window passed."""
        if self._ended_at is None or not self._buffer:
            return False
        now = self._clock() if now is None else now
        if now - self._ended_at < self._retention:
            return False
        self._buffer.clear()
        logger.debug("channel_buffer_discarded", conversation_id=self.conversation_id)
        return True

    @property
    def idle(self) -> bool:
        return not self.active and not self._subscribers and not self._buffer

    def close(self) -> None:
        for subscriber in list(self._subscribers):
            subscriber.close()
        self._buffer.clear()

    def _unsubscribe(self, subscription: Subscription) -> None:
        if subscription in self._subscribers:
            self._subscribers.remove(subscription)
