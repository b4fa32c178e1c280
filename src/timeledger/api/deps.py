"""Engine singleton and FastAPI dependency wiring for the sync API.

Routers declare ``_get_orchestrator`` / ``_get_credential_store`` stubs that
raise until :func:`wire_dependencies` overrides them with the live engine's
components (or tests override them with fakes).
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from timeledger.config import SyncEngineConfig, load_config
from timeledger.engine import SyncEngine

if TYPE_CHECKING:
    from fastapi import FastAPI

logger = logging.getLogger(__name__)

_engine: SyncEngine | None = None


async def init_engine(config: SyncEngineConfig | None = None) -> SyncEngine:
    """Open the process-wide engine; a second call returns the existing one."""
    global _engine
    if _engine is None:
        _engine = await SyncEngine.open(config or load_config())
    return _engine


async def shutdown_engine() -> None:
    global _engine
    if _engine is not None:
        await _engine.aclose()
        _engine = None


def get_engine() -> SyncEngine:
    if _engine is None:
        raise RuntimeError("Sync engine not initialized")
    return _engine


def wire_dependencies(app: FastAPI, engine: SyncEngine) -> None:
    """Override router-level dependency stubs with *engine*'s components."""
    from timeledger.api.routers import sync

    app.dependency_overrides[sync._get_orchestrator] = lambda: engine.orchestrator
    app.dependency_overrides[sync._get_credential_store] = lambda: engine.credentials
    logger.debug("Wired sync router dependencies")
