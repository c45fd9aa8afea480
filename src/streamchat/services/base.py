"""Lifecycle interface shared by long-running components."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any


class Service(ABC):
    """Something the app starts at boot and stops at shutdown."""

    @property
    @abstractmethod
    def service_name(self) -> str:
        ...

    @abstractmethod
    async def start(self) -> None:
        ...

    @abstractmethod
    async def stop(self) -> None:
        ...

    @abstractmethod
    async def health_check(self) -> bool:
        ...

    async def status(self) -> dict[str, Any]:
        """Health plus whatever counters the service wants to expose on ``/api/health``."""
        return {"healthy": await self.health_check()}
