"""Sync orchestration: one isolated run per (user, connection).

A run moves through ``credential_check -> fetching -> reconciling ->
applying_local -> applying_remote -> done``; any failure ends it in
``failed`` with a :class:`FailureKind`.  Local mutations are applied in one
transaction before remote mutations are pushed; each remote mutation commits
its local side (an adopted UID, a purged tombstone) as soon as it lands.

Usage::

    orchestrator = SyncOrchestrator(credential_store, event_repository, providers)
    summary = await orchestrator.sync_user(user_id)
    for outcome in summary.outcomes:
        print(outcome.provider, outcome.status, outcome.counts)
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Collection, Mapping
from datetime import datetime
from enum import StrEnum
from typing import NoReturn

from pydantic import BaseModel, Field

from timeledger.config import SyncConfig
from timeledger.core.logging import sync_context
from timeledger.core.metrics import sync_metrics
from timeledger.credential_store import CredentialStore
from timeledger.errors import (
    AuthExpiredError,
    CalendarSyncError,
    ErrorKind,
    LocalPersistenceError,
    MalformedRemoteDataError,
    RateLimitedError,
    RemoteNotFoundError,
    RemoteRejectedError,
    TransportFailureError,
    sanitize_error_message,
)
from timeledger.models import (
    CalendarConnection,
    ConnectionStatus,
    Credential,
    Event,
    Provider,
    SyncWindow,
    utcnow,
)
from timeledger.providers.base import CalendarProvider
from timeledger.reconciler import MUTATION_KINDS, MutationPlan, reconcile
from timeledger.storage.base import EventRepository

logger = logging.getLogger(__name__)


class SyncState(StrEnum):
    IDLE = "idle"
    CREDENTIAL_CHECK = "credential_check"
    FETCHING = "fetching"
    RECONCILING = "reconciling"
    APPLYING_LOCAL = "applying_local"
    APPLYING_REMOTE = "applying_remote"
    DONE = "done"
    FAILED = "failed"


class SyncStatus(StrEnum):
    SUCCEEDED = "succeeded"
    PARTIAL_FAILURE = "partial_failure"
    AUTH_FAILURE = "auth_failure"
    TRANSPORT_FAILURE = "transport_failure"
    RATE_LIMITED = "rate_limited"
    PERSISTENCE_FAILURE = "persistence_failure"
    CANCELLED = "cancelled"


class FailureKind(StrEnum):
    NEEDS_REAUTH = "needs_reauth"
    TRANSIENT = "transient"
    PERSISTENCE = "persistence"


class SyncIssue(BaseModel):
    """A recovered or fatal error recorded during a run."""

    kind: ErrorKind
    message: str
    uid: str | None = None

    @classmethod
    def from_error(cls, error: CalendarSyncError) -> SyncIssue:
        return cls(kind=error.kind, message=sanitize_error_message(error.message), uid=error.uid)


class ConnectionSyncOutcome(BaseModel):
    """Result of one connection's sync run."""

    user_id: str
    connection_id: str
    provider: Provider
    state: SyncState = SyncState.IDLE
    status: SyncStatus | None = None
    failure: FailureKind | None = None
    counts: dict[str, int] = Field(default_factory=lambda: dict.fromkeys(MUTATION_KINDS, 0))
    issues: list[SyncIssue] = Field(default_factory=list)
    window: SyncWindow | None = None
    last_synced_at: datetime | None = None
    duration_ms: float | None = None

    @property
    def succeeded(self) -> bool:
        return self.state == SyncState.DONE


class UserSyncSummary(BaseModel):
    user_id: str
    outcomes: list[ConnectionSyncOutcome] = Field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return all(outcome.succeeded for outcome in self.outcomes)


class _RunFailed(Exception):
    """Internal signal that the run has already been marked failed."""


def _remote_uid(event: Event) -> str:
    if not event.uid:
        raise RemoteRejectedError(f"Event {event.id} has no remote UID")
    return event.uid


class SyncOrchestrator:
    """Runs connection syncs against the credential store, providers and storage.

    Parameters
    ----------
    credentials:
        Source of valid credentials and connection bookkeeping.
    events:
        Local event storage.
    providers:
        One protocol client per provider.
    sync_config:
        Window and timeout defaults.
    clock:
        Returns the current aware UTC time.
    """

    def __init__(
        self,
        credentials: CredentialStore,
        events: EventRepository,
        providers: Mapping[Provider, CalendarProvider],
        *,
        sync_config: SyncConfig | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._credentials = credentials
        self._events = events
        self._providers = dict(providers)
        self._config = sync_config or SyncConfig()
        self._clock = clock

    def default_window(self) -> SyncWindow:
        return SyncWindow.around(
            self._clock(),
            past_days=self._config.window_past_days,
            future_days=self._config.window_future_days,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def sync_user(
        self,
        user_id: str,
        *,
        providers: Collection[Provider] | None = None,
        window: SyncWindow | None = None,
        timeout: float | None = None,
    ) -> UserSyncSummary:
        """Sync every connection of *user_id* concurrently.

        A failing connection never affects the others; its error becomes its
        outcome.
        """
        connections = await self._credentials.connections.list_for_user(user_id)
        if providers is not None:
            connections = [c for c in connections if c.provider in providers]
        if not connections:
            logger.debug("No calendar connections to sync for user %s", user_id)
            return UserSyncSummary(user_id=user_id)

        window = window or self.default_window()
        results = await asyncio.gather(
            *(self.sync_connection(c, window=window, timeout=timeout) for c in connections),
            return_exceptions=True,
        )

        outcomes: list[ConnectionSyncOutcome] = []
        for connection, result in zip(connections, results, strict=True):
            if isinstance(result, ConnectionSyncOutcome):
                outcomes.append(result)
                continue
            outcome = ConnectionSyncOutcome(
                user_id=user_id,
                connection_id=connection.id,
                provider=connection.provider,
                state=SyncState.FAILED,
                window=window,
                last_synced_at=connection.last_synced_at,
            )
            if isinstance(result, asyncio.CancelledError):
                outcome.status = SyncStatus.CANCELLED
            else:
                logger.error(
                    "Unexpected error syncing %s for user %s",
                    connection.provider.value,
                    user_id,
                    exc_info=result,
                )
                outcome.status = SyncStatus.TRANSPORT_FAILURE
                outcome.failure = FailureKind.TRANSIENT
                outcome.issues.append(
                    SyncIssue(
                        kind=ErrorKind.TRANSPORT_FAILURE,
                        message=sanitize_error_message(f"{type(result).__name__}: {result}"),
                    )
                )
            outcomes.append(outcome)
        return UserSyncSummary(user_id=user_id, outcomes=outcomes)

    async def sync_connection(
        self,
        connection: CalendarConnection,
        *,
        window: SyncWindow | None = None,
        timeout: float | None = None,
    ) -> ConnectionSyncOutcome:
        """Run one sync for *connection* and return its outcome.

        Caller cancellation propagates; persisted state is whatever the last
        committed step left behind.
        """
        window = window or self.default_window()
        timeout = timeout if timeout is not None else self._config.run_timeout_seconds
        outcome = ConnectionSyncOutcome(
            user_id=connection.user_id,
            connection_id=connection.id,
            provider=connection.provider,
            window=window,
            last_synced_at=connection.last_synced_at,
        )
        started = time.monotonic()

        with sync_context(
            user_id=connection.user_id,
            provider=connection.provider.value,
            connection_id=connection.id,
        ):
            try:
                try:
                    if timeout and timeout > 0:
                        await asyncio.wait_for(self._run(connection, window, outcome), timeout)
                    else:
                        await self._run(connection, window, outcome)
                except TimeoutError:
                    error = TransportFailureError(f"Sync run timed out after {timeout:g}s")
                    await self._fail(
                        connection,
                        outcome,
                        error,
                        FailureKind.TRANSIENT,
                        SyncStatus.TRANSPORT_FAILURE,
                    )
            except _RunFailed:
                pass

            outcome.duration_ms = (time.monotonic() - started) * 1000
            sync_metrics.record_run(
                connection.provider.value, str(outcome.status), outcome.duration_ms
            )
            sync_metrics.record_mutations(connection.provider.value, outcome.counts)
            logger.info(
                "Sync %s for %s: status=%s counts=%s issues=%d",
                outcome.state.value,
                connection.provider.value,
                outcome.status,
                outcome.counts,
                len(outcome.issues),
            )
        return outcome

    async def status(self, user_id: str) -> list[ConnectionStatus]:
        return await self._credentials.list_status(user_id)

    # ------------------------------------------------------------------
    # Run steps
    # ------------------------------------------------------------------

    async def _run(
        self,
        connection: CalendarConnection,
        window: SyncWindow,
        outcome: ConnectionSyncOutcome,
    ) -> None:
        client = self._providers.get(connection.provider)
        if client is None:
            error = TransportFailureError(f"No client configured for {connection.provider.value}")
            await self._fail(
                connection, outcome, error, FailureKind.TRANSIENT, SyncStatus.TRANSPORT_FAILURE
            )

        outcome.state = SyncState.CREDENTIAL_CHECK
        try:
            credential = await self._credentials.get_valid_credential(connection)
        except CalendarSyncError as exc:
            await self._fail_for_error(connection, outcome, exc)

        outcome.state = SyncState.FETCHING
        fetch_issues: list[CalendarSyncError] = []
        try:
            remote_events = [
                remote
                async for remote in client.list_events(
                    credential, window, on_issue=fetch_issues.append
                )
            ]
        except CalendarSyncError as exc:
            await self._fail_for_error(connection, outcome, exc)
        for issue in fetch_issues:
            logger.warning("Skipped unreadable remote event: %s", issue.message)
            outcome.issues.append(SyncIssue.from_error(issue))

        outcome.state = SyncState.RECONCILING
        now = self._clock()
        try:
            source = connection.provider.event_source
            local_events = await self._events.list_events(connection.user_id, window, source)
            # a local copy moved outside the window still owns its remote UID
            seen = {event.uid for event in local_events if event.uid}
            missing = {remote.uid for remote in remote_events} - seen
            if missing:
                local_events += await self._events.list_by_uids(
                    connection.user_id, source, missing
                )
        except LocalPersistenceError as exc:
            await self._fail_for_error(connection, outcome, exc)
        plan = reconcile(
            local_events,
            remote_events,
            provider=connection.provider,
            user_id=connection.user_id,
            unresolved_uids=frozenset(issue.uid for issue in fetch_issues if issue.uid),
            allow_local_deletes=all(issue.uid for issue in fetch_issues),
            now=now,
        )

        outcome.state = SyncState.APPLYING_LOCAL
        try:
            await self._events.apply(
                plan.local_upserts, [event.id for event in plan.local_deletes]
            )
        except LocalPersistenceError as exc:
            await self._fail_for_error(connection, outcome, exc)
        outcome.counts["local_create"] = len(plan.local_creates)
        outcome.counts["local_update"] = len(plan.local_updates)
        outcome.counts["local_delete"] = len(plan.local_deletes)

        outcome.state = SyncState.APPLYING_REMOTE
        await self._apply_remote(connection, client, credential, plan, outcome, now)

        outcome.state = SyncState.DONE
        summary = None
        if outcome.issues:
            outcome.status = SyncStatus.PARTIAL_FAILURE
            first = outcome.issues[0].message
            summary = f"{len(outcome.issues)} event(s) could not be synced: {first}"
        else:
            outcome.status = SyncStatus.SUCCEEDED
        await self._credentials.mark_synced(connection, now, error=summary)
        outcome.last_synced_at = now

    async def _apply_remote(
        self,
        connection: CalendarConnection,
        client: CalendarProvider,
        credential: Credential,
        plan: MutationPlan,
        outcome: ConnectionSyncOutcome,
        now: datetime,
    ) -> None:
        """Push remote mutations, committing each UID adoption or purge as it lands.

        Per-event rejections are recorded and skipped.  An authorization or
        transport failure stops pushing and fails the run; everything pushed
        before it is already committed locally.
        """
        per_event = (RemoteRejectedError, RateLimitedError, MalformedRemoteDataError)

        try:
            for event in plan.remote_creates:
                try:
                    remote = await client.create_event(credential, event)
                except per_event as exc:
                    outcome.issues.append(SyncIssue.from_error(exc))
                    continue
                adopted = event.model_copy(update={"uid": remote.uid, "synced_at": now})
                await self._commit(connection, outcome, [adopted], [])
                outcome.counts["remote_create"] += 1

            for event in plan.remote_updates:
                try:
                    await client.update_event(credential, _remote_uid(event), event)
                except (*per_event, RemoteNotFoundError) as exc:
                    outcome.issues.append(SyncIssue.from_error(exc))
                    continue
                if event.synced_at is None:
                    confirmed = event.model_copy(update={"synced_at": now})
                    await self._commit(connection, outcome, [confirmed], [])
                outcome.counts["remote_update"] += 1

            for event in plan.remote_deletes:
                try:
                    await client.delete_event(credential, _remote_uid(event))
                except RemoteNotFoundError:
                    logger.debug("Remote event already gone; purging tombstone %s", event.id)
                except per_event as exc:
                    outcome.issues.append(SyncIssue.from_error(exc))
                    continue
                await self._commit(connection, outcome, [], [event.id])
                outcome.counts["remote_delete"] += 1
        except (AuthExpiredError, TransportFailureError) as exc:
            await self._fail_for_error(connection, outcome, exc)

    async def _commit(
        self,
        connection: CalendarConnection,
        outcome: ConnectionSyncOutcome,
        upserts: list[Event],
        delete_ids: list[str],
    ) -> None:
        """Persist the local side of a mutation that already happened remotely.

        Shielded: once the provider holds the event, its UID must reach local
        storage even when the run is timed out or cancelled meanwhile.
        """
        try:
            await asyncio.shield(self._events.apply(upserts, delete_ids))
        except LocalPersistenceError as exc:
            await self._fail_for_error(connection, outcome, exc)

    # ------------------------------------------------------------------
    # Failure bookkeeping
    # ------------------------------------------------------------------

    async def _fail_for_error(
        self,
        connection: CalendarConnection,
        outcome: ConnectionSyncOutcome,
        error: CalendarSyncError,
    ) -> NoReturn:
        if isinstance(error, AuthExpiredError):
            await self._fail(
                connection, outcome, error, FailureKind.NEEDS_REAUTH, SyncStatus.AUTH_FAILURE
            )
        if isinstance(error, LocalPersistenceError):
            await self._fail(
                connection,
                outcome,
                error,
                FailureKind.PERSISTENCE,
                SyncStatus.PERSISTENCE_FAILURE,
            )
        if isinstance(error, RateLimitedError):
            await self._fail(
                connection, outcome, error, FailureKind.TRANSIENT, SyncStatus.RATE_LIMITED
            )
        await self._fail(
            connection, outcome, error, FailureKind.TRANSIENT, SyncStatus.TRANSPORT_FAILURE
        )

    async def _fail(
        self,
        connection: CalendarConnection,
        outcome: ConnectionSyncOutcome,
        error: CalendarSyncError,
        failure: FailureKind,
        status: SyncStatus,
    ) -> NoReturn:
        """Mark the run failed, record the error on the connection and stop the run."""
        logger.warning(
            "Sync failed in %s for %s: %s (%s)",
            outcome.state.value,
            connection.provider.value,
            status.value,
            error.message,
        )
        outcome.state = SyncState.FAILED
        outcome.failure = failure
        outcome.status = status
        outcome.issues.append(SyncIssue.from_error(error))
        try:
            if failure is FailureKind.NEEDS_REAUTH:
                await self._credentials.mark_needs_reauth(connection, error.message)
            else:
                await self._credentials.record_error(connection, error.message)
        except Exception:
            logger.warning(
                "Could not record sync failure on connection %s", connection.id, exc_info=True
            )
        raise _RunFailed
