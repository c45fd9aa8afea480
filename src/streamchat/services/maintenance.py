"""Periodic housekeeping on APScheduler: idle request sweep, channel pruning and cache eviction."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from streamchat.broadcast.hub import BroadcastHub
from streamchat.core.registry import CancellationRegistry
from streamchat.log import get_logger
from streamchat.services.base import Service

if TYPE_CHECKING:
    from streamchat.services.chat import ChatService

logger = get_logger(__name__)


class MaintenanceService(Service):
    def __init__(
        self,
        registry: CancellationRegistry,
        hub: BroadcastHub,
        interval: float = 30.0,
        chat: ChatService | None = None,
    ):
        self._registry = registry
        self._hub = hub
        self._chat = chat
        self._interval = interval
        self._scheduler = AsyncIOScheduler()
        self.runs = 0

    @property
    def service_name(self) -> str:
        return "maintenance"

    async def start(self) -> None:
        # coroutine jobs run on the event loop, which the registry and hub require
        self._scheduler.add_job(
            self.run_once,
            IntervalTrigger(seconds=self._interval),
            id="maintenance",
            max_instances=1,
            coalesce=True,
        )
        self._scheduler.start()
        logger.info("maintenance_started", interval=self._interval)

    async def stop(self) -> None:
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        logger.info("maintenance_stopped")

    async def health_check(self) -> bool:
        return self._scheduler.running

    async def status(self) -> dict[str, Any]:
        return {
            "healthy": await self.health_check(),
            "runs": self.runs,
            "active_requests": len(self._registry),
            "channels": len(self._hub),
        }

    async def run_once(self) -> None:
        swept = self._registry.sweep()
        pruned = self._hub.prune()
        evicted = self._chat.evict_idle() if self._chat is not None else 0
        self.runs += 1
        if swept or pruned or evicted:
            logger.info(
                "maintenance_run",
                swept=len(swept),
                channels_pruned=pruned,
                conversations_evicted=evicted,
            )
