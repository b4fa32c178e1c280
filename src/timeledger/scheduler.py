"""Periodic sync trigger.

Every ``sync.interval_minutes`` the scheduler lists the users that have at
least one calendar connection and syncs each of them, at most
``sync.max_concurrent_users`` at a time.  :meth:`SyncScheduler.request_sync`
wakes the loop immediately.
"""

from __future__ import annotations

import asyncio
import logging

from timeledger.config import SyncConfig
from timeledger.orchestrator import SyncOrchestrator, UserSyncSummary
from timeledger.storage.base import ConnectionRepository

logger = logging.getLogger(__name__)


class SyncScheduler:
    def __init__(
        self,
        orchestrator: SyncOrchestrator,
        connections: ConnectionRepository,
        config: SyncConfig | None = None,
    ) -> None:
        self._orchestrator = orchestrator
        self._connections = connections
        self._config = config or SyncConfig()
        self._semaphore = asyncio.Semaphore(self._config.max_concurrent_users)
        self._force_sync_event: asyncio.Event = asyncio.Event()
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Spawn the poller task."""
        if self.running:
            return
        self._task = asyncio.create_task(self._run_sync_poller(), name="calendar-sync-poller")
        logger.info(
            "Sync scheduler started: interval_minutes=%d, max_concurrent_users=%d",
            self._config.interval_minutes,
            self._config.max_concurrent_users,
        )

    async def stop(self) -> None:
        """Cancel the poller and wait for it to finish."""
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Sync scheduler stopped")

    def request_sync(self) -> None:
        """Wake the poller so the next pass starts immediately."""
        self._force_sync_event.set()

    # ------------------------------------------------------------------
    # Passes
    # ------------------------------------------------------------------

    async def run_once(self) -> list[UserSyncSummary]:
        """Sync every user with a connection once and return their summaries."""
        user_ids = await self._connections.list_user_ids()
        logger.debug("Sync pass starting for %d user(s)", len(user_ids))
        results = await asyncio.gather(
            *(self._sync_user(user_id) for user_id in user_ids),
            return_exceptions=True,
        )
        summaries: list[UserSyncSummary] = []
        for user_id, result in zip(user_ids, results, strict=True):
            if isinstance(result, BaseException):
                if isinstance(result, asyncio.CancelledError):
                    raise result
                logger.error("Sync pass failed for user %s: %s", user_id, result, exc_info=result)
                continue
            summaries.append(result)
        return summaries

    async def _sync_user(self, user_id: str) -> UserSyncSummary:
        async with self._semaphore:
            return await self._orchestrator.sync_user(user_id)

    async def _run_sync_poller(self) -> None:
        """Background task: sync all users at the configured interval.

        The poller also listens for ``_force_sync_event`` to trigger an
        immediate pass.
        """
        interval_seconds = self._config.interval_minutes * 60

        logger.debug("Sync poller loop started (interval=%ds)", interval_seconds)
        while True:
            try:
                await self.run_once()
            except Exception as exc:
                logger.error("Sync poller error: %s", exc, exc_info=True)

            try:
                await asyncio.wait_for(self._force_sync_event.wait(), timeout=interval_seconds)
                self._force_sync_event.clear()
                logger.debug("Sync poller: immediate sync requested")
            except TimeoutError:
                pass
