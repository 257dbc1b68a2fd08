"""Loom Server — FastAPI application that ties all components together.

Startup sequence:
1. Load config (``loom.yaml`` + environment)
2. Initialize the session store
3. Start the Linear, v0 and deployment clients
4. Start the Session Event Router consumer loop
5. Begin accepting webhooks

Shutdown runs the same steps in reverse; in-flight events are allowed to
finish before the clients and store close.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI

from loom import __version__
from loom.config import LoomConfig, load_config
from loom.deploy_client import DeploymentClient
from loom.event_router import SessionEventRouter
from loom.linear_client import LinearClient
from loom.models import LinearEvent
from loom.session_store import InMemorySessionStore, SessionStore, SQLiteSessionStore
from loom.v0_client import V0Client
from loom.webhook import configure as configure_webhook
from loom.webhook import router as webhook_router

logger = logging.getLogger(__name__)


def build_store(config: LoomConfig) -> SessionStore:
    if config.store.backend == "memory":
        logger.warning("Using in-memory session store — sessions are lost on restart")
        return InMemorySessionStore()
    Path(config.store.db_path).parent.mkdir(parents=True, exist_ok=True)
    return SQLiteSessionStore(config.store.db_path)


class LoomServer:
    """Encapsulates all server components and lifecycle."""

    def __init__(self, config_path: Path | None = None, config: LoomConfig | None = None):
        self.config_path = config_path
        self.config: LoomConfig | None = config

        # Components (initialized in start())
        self.store: SessionStore | None = None
        self.linear: LinearClient | None = None
        self.v0: V0Client | None = None
        self.deployer: DeploymentClient | None = None
        self.event_queue: asyncio.Queue[LinearEvent] | None = None
        self.router: SessionEventRouter | None = None

    async def start(self) -> None:
        """Initialize all components and start the consumer loop."""
        if self.config is None:
            self.config = load_config(self.config_path)
        config = self.config
        logger.info("Loom server starting (store=%s)", config.store.backend)

        self.store = build_store(config)
        await self.store.initialize()
        if isinstance(self.store, SQLiteSessionStore):
            pruned = await self.store.prune_deliveries()
            if pruned:
                logger.info("Pruned %d old webhook delivery ids", pruned)

        self.linear = LinearClient(
            access_token=config.linear.access_token,
            webhook_secret=config.linear.webhook_secret,
            api_url=config.linear.api_url,
        )
        self.v0 = V0Client(api_key=config.generation.api_key, api_url=config.generation.api_url)
        self.deployer = DeploymentClient(
            api_key=config.deployment.api_key, api_url=config.deployment.api_url
        )
        for client in (self.linear, self.v0, self.deployer):
            await client.start()

        if not config.linear.access_token:
            logger.warning(
                "%s is not set — activities cannot be posted to Linear",
                config.linear.access_token_env,
            )
        if not config.generation.api_key:
            logger.warning("%s is not set — v0 calls will fail", config.generation.api_key_env)

        self.event_queue = asyncio.Queue()
        self.router = SessionEventRouter(
            store=self.store,
            linear=self.linear,
            v0=self.v0,
            deployer=self.deployer,
            generation=config.generation,
            event_queue=self.event_queue,
        )

        configure_webhook(
            self.event_queue,
            self.linear,
            rate_limit_max=config.webhook.rate_limit_max,
            max_timestamp_skew=config.webhook.max_timestamp_skew,
        )

        await self.router.start()
        logger.info("Loom server started successfully")

    async def stop(self) -> None:
        """Graceful shutdown — stop all components."""
        logger.info("Loom server shutting down")

        if self.router:
            await self.router.stop()
        for client in (self.linear, self.v0, self.deployer):
            if client:
                await client.close()
        if self.store:
            await self.store.close()

        logger.info("Loom server stopped")


# ── FastAPI App ──────────────────────────────────────────────────────────────

_server = LoomServer()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """FastAPI lifespan — startup and shutdown."""
    await _server.start()
    yield
    await _server.stop()


def create_app(config_path: Path | None = None, config: LoomConfig | None = None) -> FastAPI:
    """Create the FastAPI application."""
    global _server
    _server = LoomServer(config_path, config)

    app = FastAPI(
        title="Loom",
        version=__version__,
        description="Linear agent that turns delegated issues into v0 UI generations",
        lifespan=lifespan,
    )

    app.include_router(webhook_router)

    @app.get("/health")
    async def health():
        """Health check endpoint with operational metrics."""
        sessions = await _server.store.list_all() if _server.store else []
        return {
            "status": "ok",
            "version": __version__,
            "sessions": len(sessions),
            "queue_depth": _server.event_queue.qsize() if _server.event_queue else 0,
            "last_event_time": _server.router.last_event_time if _server.router else None,
        }

    @app.get("/sessions")
    async def list_sessions():
        """List all stored agent sessions."""
        if not _server.store:
            return {"sessions": []}
        sessions = await _server.store.list_all()
        return {"sessions": [s.model_dump(mode="json") for s in sessions]}

    return app
