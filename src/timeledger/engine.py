"""Runtime wiring: database pool, credential store, providers and orchestrator.

:class:`SyncEngine` owns every long-lived resource of a process (API server,
poller or one-shot CLI command) and closes them in reverse order.

Usage::

    engine = await SyncEngine.open(load_config())
    try:
        await engine.orchestrator.sync_user(user_id)
    finally:
        await engine.aclose()
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import httpx

from timeledger.config import SyncEngineConfig
from timeledger.credential_store import CredentialStore
from timeledger.crypto import TokenCipher
from timeledger.db import Database
from timeledger.models import Provider
from timeledger.oauth import TokenRefresher
from timeledger.orchestrator import SyncOrchestrator
from timeledger.providers import CalendarProvider, build_providers
from timeledger.scheduler import SyncScheduler
from timeledger.storage import PgConnectionRepository, PgEventRepository, ensure_schema

logger = logging.getLogger(__name__)


@dataclass
class SyncEngine:
    config: SyncEngineConfig
    database: Database
    http_client: httpx.AsyncClient
    credentials: CredentialStore
    events: PgEventRepository
    providers: dict[Provider, CalendarProvider]
    orchestrator: SyncOrchestrator
    scheduler: SyncScheduler

    @classmethod
    async def open(cls, config: SyncEngineConfig, *, init_schema: bool = True) -> SyncEngine:
        """Connect to PostgreSQL and build every component from *config*.

        Raises
        ------
        CredentialKeyError
            If no token encryption key is configured.
        """
        cipher = TokenCipher(config.credentials.token_keys)
        database = Database.from_config(config.database)
        pool = await database.connect()
        if init_schema:
            await ensure_schema(pool)

        http_client = httpx.AsyncClient(timeout=config.http.timeout_seconds)
        refreshers = {}
        if config.google.configured:
            refreshers[Provider.GOOGLE] = TokenRefresher.for_google(config.google, http_client)
        else:
            logger.warning("Google OAuth client is not configured; token refresh disabled")
        if config.outlook.configured:
            refreshers[Provider.OUTLOOK] = TokenRefresher.for_outlook(config.outlook, http_client)
        else:
            logger.warning("Outlook OAuth client is not configured; token refresh disabled")

        connections = PgConnectionRepository(pool)
        events = PgEventRepository(pool)
        credentials = CredentialStore(
            connections,
            cipher,
            refreshers,
            refresh_margin_seconds=config.credentials.refresh_margin_seconds,
        )
        providers = build_providers(config, http_client)
        orchestrator = SyncOrchestrator(credentials, events, providers, sync_config=config.sync)
        scheduler = SyncScheduler(orchestrator, connections, config.sync)
        logger.info("Sync engine ready (database=%s)", database.db_name)
        return cls(
            config=config,
            database=database,
            http_client=http_client,
            credentials=credentials,
            events=events,
            providers=providers,
            orchestrator=orchestrator,
            scheduler=scheduler,
        )

    async def aclose(self) -> None:
        await self.scheduler.stop()
        for provider in self.providers.values():
            await provider.aclose()
        await self.http_client.aclose()
        await self.database.close()
