"""Credential lifecycle for external calendar connections.

Tokens and app passwords are stored encrypted on the
:class:`~timeledger.models.CalendarConnection` row.  The store hands out a
decrypted :class:`~timeledger.models.Credential` that is valid for at least
``refresh_margin_seconds``, refreshing OAuth access tokens when needed.

Depositing tokens from the OAuth redirect flow::

    await store.store_oauth_tokens(
        user_id, Provider.GOOGLE, access_token=token, refresh_token=refresh,
        expires_at=expires_at,
    )

Obtaining a credential for a sync run::

    credential = await store.get_valid_credential(connection)

Refreshes are serialized per connection id.  A run that waits on the lock
re-reads the connection and reuses a token another run already refreshed.

Note: decrypted values are NEVER logged and never appear in ``repr``.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Mapping
from datetime import datetime, timedelta

from timeledger.core.metrics import sync_metrics
from timeledger.crypto import TokenCipher
from timeledger.errors import AuthExpiredError, TransportFailureError, sanitize_error_message
from timeledger.models import (
    BasicCredential,
    BearerCredential,
    CalendarConnection,
    ConnectionStatus,
    Credential,
    Provider,
    ensure_utc,
    utcnow,
)
from timeledger.oauth import TokenRefresher
from timeledger.storage.base import ConnectionRepository

logger = logging.getLogger(__name__)


class CredentialStore:
    """Encrypted connection credentials with on-demand OAuth refresh.

    Parameters
    ----------
    connections:
        Repository holding ``calendar_connections`` rows.
    cipher:
        Encrypts and decrypts token material.
    refreshers:
        One :class:`~timeledger.oauth.TokenRefresher` per OAuth provider.
        A provider without a refresher cannot refresh and reports
        ``AuthExpiredError`` once its token expires.
    refresh_margin_seconds:
        A token expiring within this many seconds is refreshed first.
    clock:
        Returns the current aware UTC time.
    """

    def __init__(
        self,
        connections: ConnectionRepository,
        cipher: TokenCipher,
        refreshers: Mapping[Provider, TokenRefresher] | None = None,
        *,
        refresh_margin_seconds: int = 60,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.connections = connections
        self._cipher = cipher
        self._refreshers = dict(refreshers or {})
        self._refresh_margin = timedelta(seconds=refresh_margin_seconds)
        self._clock = clock
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, connection_id: str) -> asyncio.Lock:
        lock = self._locks.get(connection_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[connection_id] = lock
        return lock

    # ------------------------------------------------------------------
    # Credential retrieval
    # ------------------------------------------------------------------

    def needs_refresh(self, connection: CalendarConnection) -> bool:
        """Return True when the access token expires within the refresh margin.

        A connection without a known expiry is treated as valid.
        """
        expires_at = ensure_utc(connection.expires_at)
        if expires_at is None:
            return False
        return expires_at <= self._clock() + self._refresh_margin

    async def get_valid_credential(self, connection: CalendarConnection) -> Credential:
        """Return a usable credential for *connection*.

        Raises
        ------
        AuthExpiredError
            The stored credential cannot be decrypted, no refresh token is
            stored, or the provider rejected the refresh.
        TransportFailureError
            The token endpoint could not be reached.
        """
        if not connection.provider.uses_oauth:
            return self._basic_credential(connection)

        if not self.needs_refresh(connection):
            return self._bearer_credential(connection)

        async with self._lock_for(connection.id):
            current = await self.connections.get_by_id(connection.id)
            if current is None:
                raise AuthExpiredError(f"{connection.provider.value} connection no longer exists")
            if not self.needs_refresh(current):
                logger.debug("Connection %s was refreshed concurrently", connection.id)
                return self._bearer_credential(current)
            refreshed = await self._refresh(current)
        return self._bearer_credential(refreshed)

    def _bearer_credential(self, connection: CalendarConnection) -> BearerCredential:
        return BearerCredential(
            access_token=self._cipher.decrypt(connection.access_token_encrypted),
            expires_at=connection.expires_at,
        )

    def _basic_credential(self, connection: CalendarConnection) -> BasicCredential:
        if not connection.account_email:
            raise AuthExpiredError("CalDAV connection has no stored username")
        return BasicCredential(
            username=connection.account_email,
            password=self._cipher.decrypt(connection.access_token_encrypted),
            calendar_url=connection.calendar_url,
        )

    async def _refresh(self, connection: CalendarConnection) -> CalendarConnection:
        provider = connection.provider
        if not connection.refresh_token_encrypted:
            raise AuthExpiredError(f"{provider.value} access token expired without a refresh token")
        refresher = self._refreshers.get(provider)
        if refresher is None:
            raise AuthExpiredError(f"No token refresher configured for {provider.value}")

        refresh_token = self._cipher.decrypt(connection.refresh_token_encrypted)
        try:
            grant = await refresher.refresh(refresh_token, now=self._clock())
        except AuthExpiredError:
            sync_metrics.record_refresh(provider.value, "rejected")
            raise
        except TransportFailureError:
            sync_metrics.record_refresh(provider.value, "transport_error")
            raise

        refresh_encrypted = (
            self._cipher.encrypt(grant.refresh_token)
            if grant.refresh_token
            else connection.refresh_token_encrypted
        )
        updated = connection.model_copy(
            update={
                "access_token_encrypted": self._cipher.encrypt(grant.access_token),
                "refresh_token_encrypted": refresh_encrypted,
                "expires_at": grant.expires_at,
                "scope": grant.scope or connection.scope,
                "needs_reauth": False,
            }
        )
        stored = await self.persist(updated)
        sync_metrics.record_refresh(provider.value, "success")
        logger.info(
            "Refreshed %s access token for connection %s (expires_at=%s)",
            provider.value,
            connection.id,
            stored.expires_at.isoformat() if stored.expires_at else None,
        )
        return stored

    # ------------------------------------------------------------------
    # Write operations
    # ------------------------------------------------------------------

    async def persist(self, connection: CalendarConnection) -> CalendarConnection:
        """Write *connection* with ``updated_at`` set to now."""
        return await self.connections.upsert(
            connection.model_copy(update={"updated_at": self._clock()})
        )

    async def store_oauth_tokens(
        self,
        user_id: str,
        provider: Provider,
        *,
        access_token: str,
        refresh_token: str | None = None,
        expires_at: datetime | None = None,
        scope: str | None = None,
        account_email: str | None = None,
    ) -> CalendarConnection:
        """Deposit tokens obtained from the OAuth consent flow.

        When the provider does not return a new refresh token the previously
        stored one is kept.
        """
        if not provider.uses_oauth:
            raise ValueError(f"{provider.value} does not use OAuth tokens")
        if not access_token:
            raise ValueError("access_token must be a non-empty string")

        existing = await self.connections.get(user_id, provider)
        refresh_encrypted = self._cipher.encrypt_optional(refresh_token)
        if refresh_encrypted is None and existing is not None:
            refresh_encrypted = existing.refresh_token_encrypted

        values = {
            "access_token_encrypted": self._cipher.encrypt(access_token),
            "refresh_token_encrypted": refresh_encrypted,
            "expires_at": expires_at,
            "scope": scope,
            "needs_reauth": False,
            "last_error": None,
            "last_error_at": None,
        }
        if existing is not None:
            values["account_email"] = account_email or existing.account_email
            connection = existing.model_copy(update=values)
        else:
            connection = CalendarConnection(
                user_id=user_id,
                provider=provider,
                account_email=account_email,
                created_at=self._clock(),
                **values,
            )
        stored = await self.persist(connection)
        logger.info(
            "Stored %s OAuth tokens for user %s (refresh_token=%s)",
            provider.value,
            user_id,
            "present" if stored.refresh_token_encrypted else "absent",
        )
        return stored

    async def store_caldav_credentials(
        self,
        user_id: str,
        username: str,
        app_password: str,
        calendar_url: str | None = None,
    ) -> CalendarConnection:
        """Store an iCloud username and app-specific password."""
        username = username.strip()
        if not username:
            raise ValueError("username must be a non-empty string")
        if not app_password:
            raise ValueError("app_password must be a non-empty string")

        existing = await self.connections.get(user_id, Provider.ICLOUD)
        values = {
            "account_email": username,
            "access_token_encrypted": self._cipher.encrypt(app_password),
            "refresh_token_encrypted": None,
            "expires_at": None,
            "calendar_url": calendar_url,
            "needs_reauth": False,
            "last_error": None,
            "last_error_at": None,
        }
        if existing is not None:
            connection = existing.model_copy(update=values)
        else:
            connection = CalendarConnection(
                user_id=user_id,
                provider=Provider.ICLOUD,
                created_at=self._clock(),
                **values,
            )
        stored = await self.persist(connection)
        logger.info("Stored CalDAV credentials for user %s", user_id)
        return stored

    async def disconnect(self, user_id: str, provider: Provider) -> bool:
        """Remove the connection row; synced events are left in place."""
        existing = await self.connections.get(user_id, provider)
        deleted = await self.connections.delete(user_id, provider)
        if existing is not None:
            self._locks.pop(existing.id, None)
        if deleted:
            logger.info("Disconnected %s for user %s", provider.value, user_id)
        return deleted

    async def _update_status(
        self, connection: CalendarConnection, **values: object
    ) -> CalendarConnection:
        # Re-read under the refresh lock so status writes never clobber a
        # token refreshed by a concurrent run.
        async with self._lock_for(connection.id):
            current = await self.connections.get_by_id(connection.id) or connection
            return await self.persist(current.model_copy(update=values))

    async def mark_synced(
        self,
        connection: CalendarConnection,
        at: datetime | None = None,
        *,
        error: str | None = None,
    ) -> CalendarConnection:
        """Advance the ``last_synced_at`` watermark.

        *error* records a summary of per-event issues from the run; without
        it the previous error is cleared.
        """
        now = self._clock()
        return await self._update_status(
            connection,
            last_synced_at=at or now,
            needs_reauth=False,
            last_error=sanitize_error_message(error) if error else None,
            last_error_at=now if error else None,
        )

    async def mark_needs_reauth(
        self, connection: CalendarConnection, message: str
    ) -> CalendarConnection:
        logger.warning(
            "%s connection %s needs re-authorization", connection.provider.value, connection.id
        )
        return await self._update_status(
            connection,
            needs_reauth=True,
            last_error=sanitize_error_message(message),
            last_error_at=self._clock(),
        )

    async def record_error(
        self, connection: CalendarConnection, message: str
    ) -> CalendarConnection:
        """Record a transient failure without flagging the connection for reauth."""
        return await self._update_status(
            connection,
            last_error=sanitize_error_message(message),
            last_error_at=self._clock(),
        )

    # ------------------------------------------------------------------
    # Read operations
    # ------------------------------------------------------------------

    async def list_status(self, user_id: str) -> list[ConnectionStatus]:
        connections = await self.connections.list_for_user(user_id)
        return [ConnectionStatus.from_connection(connection) for connection in connections]

    def __repr__(self) -> str:
        providers = ",".join(sorted(p.value for p in self._refreshers))
        return f"CredentialStore(refreshers=[{providers}], margin={self._refresh_margin})"
