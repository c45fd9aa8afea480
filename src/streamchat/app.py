"""Application orchestrator - wires all components and manages lifecycle."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from streamchat import __version__
from streamchat.ai.tools.registry import ToolRegistry
from streamchat.ai.turn import TurnRunner
from streamchat.broadcast.hub import BroadcastHub
from streamchat.config import AppConfig
from streamchat.conversation.versions import VersionManager
from streamchat.core.errors import Conflict, NotFound
from streamchat.core.registry import CancellationRegistry
from streamchat.log import get_logger
from streamchat.providers.base import Provider
from streamchat.server.routes import router
from streamchat.services.base import Service
from streamchat.services.chat import ChatService
from streamchat.services.maintenance import MaintenanceService
from streamchat.storage.database import Database
from streamchat.storage.transcripts import TranscriptRepository
from streamchat.transport.outbound import OutboundAdapter

logger = get_logger(__name__)


class StreamChatApp:
    """Top-level application orchestrator."""

    def __init__(self, config: AppConfig, provider: Provider | None = None):
        self.config = config
        self.db = Database(config.storage.db_path)
        self.repository = TranscriptRepository(self.db)
        self.registry = CancellationRegistry(
            idle_timeout=config.stream.idle_timeout,
            tombstone_ttl=config.stream.retention_seconds,
        )
        self.hub = BroadcastHub.from_config(config.stream)
        self.adapter = OutboundAdapter(timeout=config.stream.request_timeout)
        self.provider = provider or self._create_provider()
        self.tool_registry = ToolRegistry()
        self.versions = VersionManager()
        self.runner = TurnRunner(
            provider=self.provider,
            adapter=self.adapter,
            tool_registry=self.tool_registry,
            config=config.provider,
            tool_timeout=config.stream.tool_timeout,
        )
        self.chat = ChatService(
            repository=self.repository,
            versions=self.versions,
            registry=self.registry,
            hub=self.hub,
            runner=self.runner,
            provider_config=config.provider,
            cache_ttl=config.storage.cache_ttl,
        )
        self.maintenance = MaintenanceService(
            self.registry, self.hub, interval=config.stream.sweep_interval, chat=self.chat
        )
        self.services: dict[str, Service] = {
            self.chat.service_name: self.chat,
            self.maintenance.service_name: self.maintenance,
        }

    async def start(self) -> None:
        """Initialize and start all components."""
        await self.db.initialize()
        self.tool_registry.discover_and_register()
        for service in self.services.values():
            await service.start()
        logger.info(
            "streamchat_started",
            backend=self.provider.name,
            model=self.config.provider.model,
            tools=len(self.tool_registry.all_tools()),
        )

    async def stop(self) -> None:
        """Gracefully shut down all components.

        The chat service goes first so that in-flight versions are finalized
        as aborted and persisted before the database closes.
        """
        for service in self.services.values():
            try:
                await service.stop()
            except Exception as e:
                logger.error("service_stop_error", service=service.service_name, error=str(e))
        self.hub.close_all()
        await self.provider.aclose()
        await self.db.close()
        logger.info("streamchat_stopped")

    def _create_provider(self) -> Provider:
        """Create the provider for the configured backend."""
        match self.config.provider.backend:
            case "anthropic":
                if not self.config.anthropic:
                    raise ValueError("provider backend is 'anthropic' but there is no 'anthropic' section in config")
                from streamchat.providers.anthropic import AnthropicProvider

                return AnthropicProvider(self.config.anthropic)
            case "gateway":
                from streamchat.providers.gateway import GatewayProvider

                return GatewayProvider(self.config.gateway)
            case _:
                raise ValueError(f"Unknown provider backend: {self.config.provider.backend}")


def create_app(config: AppConfig, provider: Provider | None = None) -> FastAPI:
    """Build the FastAPI application around a :class:`StreamChatApp`."""
    streamchat = StreamChatApp(config, provider)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        await streamchat.start()
        try:
            yield
        finally:
            await streamchat.stop()

    app = FastAPI(title="streamchat", version=__version__, lifespan=lifespan)
    app.state.streamchat = streamchat
    app.state.chat = streamchat.chat
    app.state.services = streamchat.services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.server.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(NotFound)
    async def _not_found(request: Request, exc: NotFound) -> JSONResponse:
        return JSONResponse({"error": str(exc)}, status_code=404)

    @app.exception_handler(Conflict)
    async def _conflict(request: Request, exc: Conflict) -> JSONResponse:
        return JSONResponse({"error": str(exc)}, status_code=409)

    @app.exception_handler(ValueError)
    async def _bad_request(request: Request, exc: ValueError) -> JSONResponse:
        return JSONResponse({"error": str(exc)}, status_code=400)

    app.include_router(router)
    return app
