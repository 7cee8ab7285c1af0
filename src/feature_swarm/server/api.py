"""FastAPI app wiring for the feature swarm runtime."""

from __future__ import annotations

import asyncio
import logging
import threading
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Optional

from fastapi import FastAPI, WebSocket
from fastapi.middleware.cors import CORSMiddleware

from .. import __version__
from ..github.client import IssueVcsFacade
from ..runtime.api import RouteDeps, create_router
from ..runtime.events import EventBus, hub
from ..runtime.orchestrator import AgentAdapter, FeatureOrchestrator, create_orchestrator
from ..runtime.storage import Container
from ..workers.config import AgentRuntimeConfig, get_agent_runtime_config

logger = logging.getLogger(__name__)


def create_app(
    state_dir: Optional[Path] = None,
    enable_cors: bool = True,
    facade: Optional[IssueVcsFacade] = None,
    adapter: Optional[AgentAdapter] = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        state_dir (Optional[Path]): Runtime state directory; defaults to
            ``~/.feature_swarm``.
        enable_cors (bool): Whether to install permissive CORS middleware for browser
            clients.
        facade (Optional[IssueVcsFacade]): Issue/VCS collaborator; the ``gh`` CLI
            facade when omitted.
        adapter (Optional[AgentAdapter]): Agent adapter; chosen from config when omitted.

    Returns:
        FastAPI: Configured application. The container, bus, and orchestrator
        are created lazily on first use and cached on ``app.state``.
    """
    @asynccontextmanager
    async def _lifespan(app: FastAPI) -> AsyncIterator[None]:
        hub.attach_loop(asyncio.get_running_loop())
        try:
            yield
        finally:
            orchestrator = app.state.orchestrator
            if orchestrator is not None:
                try:
                    orchestrator.shutdown(timeout=10.0)
                except Exception:
                    logger.exception("Orchestrator shutdown failed")
            bus = app.state.bus
            if bus is not None:
                bus.close()
            app.state.orchestrator = None
            app.state.bus = None
            app.state.container = None

    app = FastAPI(
        title="Feature Swarm",
        description="Fan one feature request out to several coding agents",
        version=__version__,
        lifespan=_lifespan,
    )

    if enable_cors:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    app.state.state_dir = state_dir
    app.state.container = None
    app.state.bus = None
    app.state.orchestrator = None

    state_lock = threading.RLock()

    def _resolve_container() -> Container:
        with state_lock:
            if app.state.container is None:
                app.state.container = Container(app.state.state_dir)
            return app.state.container

    def _resolve_bus() -> EventBus:
        with state_lock:
            if app.state.bus is None:
                bus = EventBus(_resolve_container().events)
                hub.forward(bus.subscribe())
                app.state.bus = bus
            return app.state.bus

    def _resolve_orchestrator() -> FeatureOrchestrator:
        with state_lock:
            if app.state.orchestrator is None:
                app.state.orchestrator = create_orchestrator(
                    _resolve_container(),
                    _resolve_bus(),
                    facade=facade,
                    adapter=adapter,
                )
            return app.state.orchestrator

    def _resolve_facade() -> IssueVcsFacade:
        return _resolve_orchestrator().facade

    def _resolve_runtime_config() -> AgentRuntimeConfig:
        return get_agent_runtime_config(config=_resolve_container().config.load())

    app.include_router(
        create_router(
            RouteDeps(
                orchestrator=_resolve_orchestrator,
                bus=_resolve_bus,
                facade=_resolve_facade,
                runtime_config=_resolve_runtime_config,
            )
        )
    )

    @app.get("/")
    async def root() -> dict[str, object]:
        """Return basic service metadata."""
        return {
            "name": "Feature Swarm",
            "version": __version__,
            "state_dir": str(_resolve_container().state_root),
        }

    @app.get("/healthz")
    async def healthz() -> dict[str, object]:
        """Expose liveness status for process-level health checks."""
        return {"status": "ok", "version": __version__}

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket) -> None:
        """Bridge websocket clients to the shared event hub handler."""
        _resolve_bus()
        await hub.handle_connection(websocket)

    return app


app = create_app()
