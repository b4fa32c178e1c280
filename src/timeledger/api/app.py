"""Sync API: FastAPI application factory.

The app factory creates a FastAPI instance with:
- Lifespan handler that opens the sync engine (database pool, HTTP client,
  providers) and optionally starts the background poller
- Health endpoint at GET /api/health
- Calendar sync router
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from timeledger import __version__
from timeledger.api.deps import init_engine, shutdown_engine, wire_dependencies
from timeledger.api.middleware import register_error_handlers
from timeledger.api.models import HealthResponse
from timeledger.api.routers.sync import router as sync_router
from timeledger.config import SyncEngineConfig

logger = logging.getLogger(__name__)


def create_app(
    config: SyncEngineConfig | None = None,
    *,
    run_scheduler: bool = False,
    manage_engine: bool = True,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    config:
        Engine configuration; loaded with :func:`load_config` when omitted.
    run_scheduler:
        Start the periodic poller alongside the API.
    manage_engine:
        When False the lifespan does not open the engine; callers (tests)
        provide dependency overrides instead.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if not manage_engine:
            yield
            return
        engine = await init_engine(config)
        wire_dependencies(app, engine)
        if run_scheduler:
            await engine.scheduler.start()
        try:
            yield
        finally:
            await shutdown_engine()

    app = FastAPI(
        title="TimeLedger Calendar Sync API",
        version=__version__,
        lifespan=lifespan,
    )
    app.router.redirect_slashes = False

    register_error_handlers(app)
    app.include_router(sync_router)

    @app.get("/api/health", response_model=HealthResponse)
    async def health() -> HealthResponse:
        return HealthResponse()

    return app
