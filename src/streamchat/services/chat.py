"""Conversation operations and the lifecycle of streaming requests."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Callable

from streamchat.ai.history import build_messages
from streamchat.ai.turn import TurnRunner
from streamchat.broadcast.channel import Subscription
from streamchat.broadcast.hub import BroadcastHub
from streamchat.client.reducer import StreamReducer
from streamchat.config import ProviderConfig
from streamchat.conversation.models import (
    Conversation,
    ConversationSummary,
    Message,
    new_id,
)
from streamchat.conversation.versions import VersionManager
from streamchat.core.context import RequestContext
from streamchat.core.errors import Conflict, NotFound
from streamchat.core.registry import CancellationRegistry, CancelOutcome
from streamchat.core.types import CancelReason, VersionStatus
from streamchat.log import get_logger
from streamchat.protocol.emitter import EventEmitter
from streamchat.protocol.events import ProtocolEvent
from streamchat.services.base import Service
from streamchat.storage.transcripts import TranscriptRepository

logger = get_logger(__name__)

INTERRUPTED_NOTICE = "stream interrupted"


@dataclass
class SubmitResult:
    request_id: str
    conversation_id: str
    message_key: str
    version_id: str
    user_message_key: str | None = None


@dataclass
class _LiveRequest:
    ctx: RequestContext
    conversation: Conversation
    reducer: StreamReducer
    task: asyncio.Task | None = None


class ChatService(Service):
    """Owns loaded conversations and the requests streaming into them.

    At most one request is in flight per conversation. Each request gets a
    registry token, a fresh replay buffer on the conversation's channel, and a
    server-side reducer whose final snapshot is written back to the stored
    version and persisted.

    Loaded conversations are cached; :meth:`evict_idle` drops the ones nobody
    has touched for ``cache_ttl`` seconds and that have no request in flight.
    Every mutation is saved before it returns, so an evicted conversation is
    simply reloaded on next use.
    """

    def __init__(
        self,
        repository: TranscriptRepository,
        versions: VersionManager,
        registry: CancellationRegistry,
        hub: BroadcastHub,
        runner: TurnRunner,
        provider_config: ProviderConfig,
        shutdown_grace: float = 10.0,
        cache_ttl: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._repository = repository
        self._versions = versions
        self._registry = registry
        self._hub = hub
        self._runner = runner
        self._provider_config = provider_config
        self._shutdown_grace = shutdown_grace
        self._cache_ttl = cache_ttl
        self._clock = clock
        self._conversations: dict[str, Conversation] = {}
        self._accessed: dict[str, float] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._live: dict[str, _LiveRequest] = {}

    # -- Service -------------------------------------------------------------

    @property
    def service_name(self) -> str:
        return "chat"

    async def start(self) -> None:
        logger.info("chat_service_started")

    async def stop(self) -> None:
        await self.shutdown()

    async def health_check(self) -> bool:
        return True

    async def status(self) -> dict[str, Any]:
        return {"healthy": True, "streaming": len(self._live), "loaded": len(self._conversations)}

    # -- conversations -------------------------------------------------------

    async def create_conversation(self, title: str | None = None, mode: str = "chat") -> Conversation:
        conversation = Conversation(id=new_id("conv_"), mode=mode)
        if title:
            conversation.title = title
        self._conversations[conversation.id] = conversation
        self._accessed[conversation.id] = self._clock()
        await self._repository.save(conversation)
        logger.info("conversation_created", conversation_id=conversation.id, mode=mode)
        return conversation

    async def get_conversation(self, conversation_id: str) -> Conversation:
        """The stored conversation. Mutations go through this service only."""
        conversation = self._conversations.get(conversation_id)
        if conversation is not None:
            self._accessed[conversation_id] = self._clock()
            return conversation
        conversation = await self._repository.get(conversation_id)
        if conversation is None:
            raise NotFound(f"conversation not found: {conversation_id}")
        if self._recover(conversation):
            await self._repository.save(conversation)
        self._conversations[conversation_id] = conversation
        self._accessed[conversation_id] = self._clock()
        return conversation

    async def snapshot(self, conversation_id: str) -> Conversation:
        """A copy of the conversation with in-flight versions reduced so far."""
        conversation = (await self.get_conversation(conversation_id)).model_copy(deep=True)
        for live in self._live.values():
            if live.ctx.conversation_id != conversation_id:
                continue
            message = conversation.message(live.ctx.message_key)
            if message is None:
                continue
            for position, version in enumerate(message.versions):
                if version.id == live.ctx.version_id and not version.status.terminal:
                    message.versions[position] = live.reducer.version
        return conversation

    async def list_conversations(self, limit: int = 100) -> list[ConversationSummary]:
        return await self._repository.list_summaries(limit)

    async def update_conversation(
        self, conversation_id: str, title: str | None = None, mode: str | None = None
    ) -> Conversation:
        async with self._lock(conversation_id):
            conversation = await self.get_conversation(conversation_id)
            if title is not None:
                conversation.title = title
            if mode is not None:
                conversation.mode = mode
            conversation.touch()
            await self._repository.save(conversation)
            return conversation

    async def delete_conversation(self, conversation_id: str) -> None:
        async with self._lock(conversation_id):
            await self.get_conversation(conversation_id)
            await self._stop_active(conversation_id, CancelReason.USER)
            self._conversations.pop(conversation_id, None)
            self._accessed.pop(conversation_id, None)
            self._hub.remove(conversation_id)
            await self._repository.delete(conversation_id)
        self._locks.pop(conversation_id, None)

    # -- streaming requests --------------------------------------------------

    async def submit(self, conversation_id: str, content: str, replace: bool = False) -> SubmitResult:
        """Add the user's input and start streaming an assistant answer to it."""
        if not content.strip():
            raise ValueError("content must not be empty")
        async with self._lock(conversation_id):
            conversation = await self.get_conversation(conversation_id)
            await self._ensure_idle(conversation, replace)
            user_message = self._versions.add_user_message(conversation, content)
            message, version = self._versions.add_assistant_message(conversation)
            await self._repository.save(conversation)
            result = self._start(conversation, message, version.id)
            result.user_message_key = user_message.key
            return result

    async def retry(self, conversation_id: str, message_key: str, replace: bool = False) -> SubmitResult:
        """Stream a new version of an assistant message; earlier versions stay untouched."""
        async with self._lock(conversation_id):
            conversation = await self.get_conversation(conversation_id)
            await self._ensure_idle(conversation, replace)
            version_id, _ = self._versions.retry(conversation, message_key)
            await self._repository.save(conversation)
            message = conversation.message(message_key)
            assert message is not None
            return self._start(conversation, message, version_id)

    async def select_version(self, conversation_id: str, message_key: str, index: int) -> Message:
        async with self._lock(conversation_id):
            conversation = await self.get_conversation(conversation_id)
            self._versions.select_version(conversation, message_key, index)
            await self._repository.save(conversation)
            message = conversation.message(message_key)
            assert message is not None
            return message

    def abort(self, conversation_id: str | None, request_id: str) -> CancelOutcome:
        """Ask an in-flight request to stop. Never raises for unknown or finished ids."""
        entry = self._registry.get(request_id)
        if entry is not None and conversation_id is not None and entry.conversation_id != conversation_id:
            return CancelOutcome.UNKNOWN
        outcome = self._registry.try_cancel(request_id, CancelReason.USER)
        logger.info("abort_requested", request_id=request_id, outcome=str(outcome))
        return outcome

    def subscribe(self, conversation_id: str, after_seq: int | None = None) -> Subscription:
        return self._hub.channel(conversation_id).subscribe(after_seq)

    def active_request(self, conversation_id: str) -> str | None:
        entries = self._registry.active_for(conversation_id)
        return entries[0].request_id if entries else None

    async def wait(self, request_id: str) -> None:
        """Wait until a request has finished and its version has been stored."""
        live = self._live.get(request_id)
        if live is not None and live.task is not None:
            await asyncio.wait({live.task})

    async def shutdown(self) -> None:
        """Cancel everything in flight and wait for the versions to be finalized."""
        tasks = [live.task for live in self._live.values() if live.task is not None]
        for request_id in self._registry.request_ids():
            self._registry.cancel(request_id, CancelReason.SHUTDOWN)
        if not tasks:
            return
        _, pending = await asyncio.wait(tasks, timeout=self._shutdown_grace)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.wait(pending)
        logger.info("chat_service_shutdown", finished=len(tasks) - len(pending), killed=len(pending))

    def evict_idle(self) -> int:
        """Forget cached conversations that are idle. Returns how many were dropped."""
        busy = {live.ctx.conversation_id for live in self._live.values()}
        busy.update(cid for cid, lock in self._locks.items() if lock.locked())
        now = self._clock()
        expired = [
            cid
            for cid in self._conversations
            if cid not in busy and now - self._accessed.get(cid, now) >= self._cache_ttl
        ]
        for cid in expired:
            del self._conversations[cid]
            self._accessed.pop(cid, None)
        for cid in [c for c in self._locks if c not in busy and c not in self._conversations]:
            del self._locks[cid]
        if expired:
            logger.debug("conversations_evicted", count=len(expired), cached=len(self._conversations))
        return len(expired)

    # -- internals -----------------------------------------------------------

    def _lock(self, conversation_id: str) -> asyncio.Lock:
        lock = self._locks.get(conversation_id)
        if lock is None:
            lock = self._locks[conversation_id] = asyncio.Lock()
        return lock

    async def _ensure_idle(self, conversation: Conversation, replace: bool) -> None:
        if not self._registry.active_for(conversation.id):
            return
        if not replace:
            raise Conflict(f"a response is already streaming in conversation {conversation.id}")
        await self._stop_active(conversation.id, CancelReason.SUPERSEDED)

    async def _stop_active(self, conversation_id: str, reason: CancelReason) -> None:
        for entry in self._registry.active_for(conversation_id):
            self._registry.cancel(entry.request_id, reason)
            await self.wait(entry.request_id)

    def _start(self, conversation: Conversation, message: Message, version_id: str) -> SubmitResult:
        request_id = new_id("req_")
        token = self._registry.register(
            request_id,
            conversation_id=conversation.id,
            message_key=message.key,
            version_id=version_id,
        )
        ctx = RequestContext(
            request_id=request_id,
            conversation_id=conversation.id,
            message_key=message.key,
            version_id=version_id,
            token=token,
        )
        self._hub.channel(conversation.id).begin(request_id)
        live = _LiveRequest(ctx, conversation, StreamReducer.for_version_id(version_id))
        self._live[request_id] = live
        live.task = asyncio.create_task(self._run(live), name=f"turn-{request_id}")
        logger.info(
            "request_started",
            request_id=request_id,
            conversation_id=conversation.id,
            message_key=message.key,
            version_id=version_id,
        )
        return SubmitResult(
            request_id=request_id,
            conversation_id=conversation.id,
            message_key=message.key,
            version_id=version_id,
        )

    async def _run(self, live: _LiveRequest) -> None:
        ctx = live.ctx

        def publish(event: ProtocolEvent) -> None:
            envelope = self._hub.publish(ctx.conversation_id, ctx.request_id, event)
            live.reducer.apply_envelope(envelope)

        emitter = EventEmitter(publish)
        messages = build_messages(live.conversation, until_key=ctx.message_key)
        try:
            await self._runner.run(ctx, messages, emitter, system=self._system_prompt(live.conversation))
        finally:
            self._registry.release(ctx.request_id)
            try:
                await self._store(live)
            finally:
                self._live.pop(ctx.request_id, None)

    async def _store(self, live: _LiveRequest) -> None:
        ctx = live.ctx
        if not live.reducer.finished:
            logger.error("request_ended_without_terminal_event", request_id=ctx.request_id)
            return
        version = live.reducer.version
        self._versions.apply_version(live.conversation, ctx.message_key, version)
        if self._conversations.get(ctx.conversation_id) is live.conversation:
            await self._repository.save(live.conversation)
        logger.info(
            "request_finished",
            request_id=ctx.request_id,
            status=str(version.status),
            blocks=len(version.blocks),
        )

    def _system_prompt(self, conversation: Conversation) -> str:
        parts = [self._provider_config.system_prompt, self._provider_config.mode_prompts.get(conversation.mode, "")]
        return "\n\n".join(p for p in parts if p)

    def _recover(self, conversation: Conversation) -> bool:
        """Close versions left streaming by a previous process."""
        changed = False
        for message in conversation.messages:
            for version in message.versions:
                if version.status is VersionStatus.STREAMING:
                    version.status = VersionStatus.ERROR
                    version.error = INTERRUPTED_NOTICE
                    changed = True
        if changed:
            logger.warning("interrupted_versions_recovered", conversation_id=conversation.id)
        return changed
