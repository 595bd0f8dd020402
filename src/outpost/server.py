"""Outpost Server: FastAPI application that ties all components together.

Startup sequence:
1. Load .outpost/ config
2. Load the two encryption keys (fatal outside development if missing)
3. Initialize the SQLite setup store
4. Build the orchestrator and the terminal session manager
5. Start the idle-session sweeper

Shutdown:
1. Stop the sweeper and close every terminal session
2. Drain background tasks (credential syncs, full setup runs)
3. Close the database
"""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI

from outpost.api import configure as configure_api
from outpost.api import router as api_router
from outpost.codec import Codecs, load_codecs
from outpost.config import OutpostConfig, load_config
from outpost.errors import RecordNotFoundError
from outpost.orchestrator import SetupOrchestrator
from outpost.store import SetupStore
from outpost.tasks import BackgroundTasks
from outpost.terminal import TerminalSessionManager, TerminalTransport, build_transport

logger = logging.getLogger(__name__)


class OutpostServer:
    """Encapsulates all server components and lifecycle."""

    def __init__(self, config_dir: Path | None = None, config: OutpostConfig | None = None):
        env_dir = os.environ.get("OUTPOST_CONFIG_DIR", "").strip()
        self.config_dir = config_dir or (Path(env_dir) if env_dir else Path.cwd() / ".outpost")

        # Components (initialized in start())
        self.config: OutpostConfig | None = config
        self.codecs: Codecs | None = None
        self.store: SetupStore | None = None
        self.tasks: BackgroundTasks | None = None
        self.orchestrator: SetupOrchestrator | None = None
        self.sessions: TerminalSessionManager | None = None

    async def start(self) -> None:
        """Initialize all components and start background loops."""
        logger.info("Outpost server starting (config=%s)", self.config_dir)

        # 1. Config
        if self.config is None:
            self.config = load_config(self.config_dir)

        # 2. Encryption keys. A ConfigError here aborts startup.
        self.codecs = load_codecs(self.config)

        # 3. Database
        Path(self.config.server.data_dir).mkdir(parents=True, exist_ok=True)
        logger.info("Setup store path: %s", self.config.db_path)
        self.store = SetupStore(self.config.db_path)
        await self.store.initialize()

        # 4. Orchestrator and terminals
        self.tasks = BackgroundTasks()
        self.orchestrator = SetupOrchestrator(
            self.config, self.store, self.codecs, tasks=self.tasks
        )
        self.sessions = TerminalSessionManager(
            self._make_transport,
            idle_timeout=self.config.terminal.idle_timeout,
            sweep_interval=self.config.terminal.sweep_interval,
        )
        configure_api(self.orchestrator, self.sessions)

        # 5. Sweeper
        await self.sessions.start()

        logger.info("Outpost server started successfully")

    async def stop(self) -> None:
        """Graceful shutdown of all components."""
        logger.info("Outpost server shutting down")

        if self.sessions:
            await self.sessions.stop()
        if self.tasks:
            await self.tasks.shutdown()
        if self.store:
            await self.store.close()

        logger.info("Outpost server stopped")

    async def _make_transport(self, user_id: str, sandbox_id: str) -> TerminalTransport:
        record = await self.store.get_record(user_id)
        if record is None or record.sandbox_id != sandbox_id:
            raise RecordNotFoundError(f"Sandbox {sandbox_id} is not bound to user {user_id}")
        return build_transport(
            record, self.codecs, self.orchestrator.client_for, self.config.terminal
        )


# ── FastAPI App ──────────────────────────────────────────────────────────────

_server = OutpostServer()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """FastAPI lifespan: startup and shutdown."""
    await _server.start()
    yield
    await _server.stop()


def create_app(config_dir: Path | None = None, config: OutpostConfig | None = None) -> FastAPI:
    """Create the FastAPI application."""
    global _server
    _server = OutpostServer(config_dir, config)

    app = FastAPI(
        title="Outpost",
        version="0.1.0",
        description="Provisioning and terminal access for per-user agent sandboxes",
        lifespan=lifespan,
    )

    app.include_router(api_router)

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        return {
            "status": "ok",
            "environment": _server.config.environment if _server.config else None,
            "terminal_sessions": len(_server.sessions) if _server.sessions else 0,
            "background_tasks": _server.tasks.pending if _server.tasks else 0,
        }

    return app
