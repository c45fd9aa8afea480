"""Registry of broadcast channels, one per conversation."""

from __future__ import annotations

import time
from typing import Callable

from streamchat.broadcast.channel import BroadcastChannel
from streamchat.config import StreamConfig
from streamchat.log import get_logger
from streamchat.protocol.events import Envelope, ProtocolEvent

logger = get_logger(__name__)


class BroadcastHub:
    def __init__(
        self,
        buffer_size: int = 4096,
        queue_size: int = 512,
        heartbeat_interval: float = 15.0,
        retention: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._channels: dict[str, BroadcastChannel] = {}
        self._buffer_size = buffer_size
        self._queue_size = queue_size
        self._heartbeat_interval = heartbeat_interval
        self._retention = retention
        self._clock = clock

    @classmethod
    def from_config(cls, config: StreamConfig) -> BroadcastHub:
        return cls(
            buffer_size=config.replay_buffer_size,
            queue_size=config.subscriber_queue_size,
            heartbeat_interval=config.heartbeat_interval,
            retention=config.retention_seconds,
        )

    def channel(self, conversation_id: str) -> BroadcastChannel:
        """Get the channel for a conversation, creating it on first use."""
        channel = self._channels.get(conversation_id)
        if channel is None:
            channel = BroadcastChannel(
                conversation_id,
                buffer_size=self._buffer_size,
                queue_size=self._queue_size,
                heartbeat_interval=self._heartbeat_interval,
                retention=self._retention,
                clock=self._clock,
            )
            self._channels[conversation_id] = channel
        return channel

    def get(self, conversation_id: str) -> BroadcastChannel | None:
        return self._channels.get(conversation_id)

    def publish(self, conversation_id: str, request_id: str | None, event: ProtocolEvent) -> Envelope:
        return self.channel(conversation_id).publish(request_id, event)

    def remove(self, conversation_id: str) -> None:
        channel = self._channels.pop(conversation_id, None)
        if channel is not None:
            channel.close()

    def prune(self) -> int:
        """Expire finished buffers and forget idle channels. Returns how many were removed."""
        now = self._clock()
        removed = 0
        for conversation_id, channel in list(self._channels.items()):
            channel.discard_if_expired(now)
            if channel.idle:
                del self._channels[conversation_id]
                removed += 1
        if removed:
            logger.debug("channels_pruned", removed=removed, remaining=len(self._channels))
        return removed

    def close_all(self) -> None:
        for channel in self._channels.values():
            channel.close()
        self._channels.clear()

    def __len__(self) -> int:
        return len(self._channels)
