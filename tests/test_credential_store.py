"""Unit tests for timeledger.credential_store.CredentialStore.

All tests use an in-memory connection repository and a mocked refresher; no
database or network is required.

Coverage:
- get_valid_credential(): valid token, refresh near expiry, refresh failures
- per-connection locking: concurrent runs refresh once
- store_oauth_tokens(): insert / update, refresh token retention
- store_caldav_credentials(), disconnect()
- status bookkeeping: mark_synced / mark_needs_reauth / record_error
- repr never exposes secrets
"""

from __future__ import annotations

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from tests.fakes import NOW, InMemoryConnectionRepository
from timeledger.credential_store import CredentialStore
from timeledger.crypto import TokenCipher
from timeledger.errors import AuthExpiredError, TransportFailureError
from timeledger.models import BasicCredential, BearerCredential, CalendarConnection, Provider
from timeledger.oauth import TokenGrant

pytestmark = pytest.mark.unit

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _grant(access_token: str = "fresh-token", refresh_token: str | None = None) -> TokenGrant:
    return TokenGrant(
        access_token=access_token,
        refresh_token=refresh_token,
        expires_at=NOW + timedelta(hours=1),
        scope="https://www.googleapis.com/auth/calendar",
    )


def _refresher(grant: TokenGrant | None = None) -> AsyncMock:
    refresher = AsyncMock()
    refresher.refresh.return_value = grant or _grant()
    return refresher


async def _seed(
    repo: InMemoryConnectionRepository,
    cipher: TokenCipher,
    *,
    expires_in: timedelta | None = timedelta(hours=1),
    refresh_token: str | None = "refresh-token",
) -> CalendarConnection:
    connection = CalendarConnection(
        user_id="user-1",
        provider=Provider.GOOGLE,
        account_email="ada@example.com",
        access_token_encrypted=cipher.encrypt("old-token"),
        refresh_token_encrypted=cipher.encrypt_optional(refresh_token),
        expires_at=NOW + expires_in if expires_in is not None else None,
    )
    return await repo.upsert(connection)


def _store(repo, cipher, refresher=None) -> CredentialStore:
    refreshers = {Provider.GOOGLE: refresher} if refresher is not None else {}
    return CredentialStore(repo, cipher, refreshers, clock=lambda: NOW)


# ---------------------------------------------------------------------------
# get_valid_credential()
# ---------------------------------------------------------------------------


class TestGetValidCredential:
    async def test_valid_token_is_returned_without_refresh(self, connection_repo, cipher) -> None:
        connection = await _seed(connection_repo, cipher)
        refresher = _refresher()

        credential = await _store(connection_repo, cipher, refresher).get_valid_credential(
            connection
        )

        assert credential == BearerCredential(
            access_token="old-token", expires_at=connection.expires_at
        )
        refresher.refresh.assert_not_awaited()

    async def test_token_expiring_in_30_seconds_is_refreshed(self, connection_repo, cipher) -> None:
        connection = await _seed(connection_repo, cipher, expires_in=timedelta(seconds=30))
        refresher = _refresher()

        credential = await _store(connection_repo, cipher, refresher).get_valid_credential(
            connection
        )

        assert isinstance(credential, BearerCredential)
        assert credential.access_token == "fresh-token"
        refresher.refresh.assert_awaited_once_with("refresh-token", now=NOW)
        stored = await connection_repo.get_by_id(connection.id)
        assert stored.expires_at == NOW + timedelta(hours=1)
        assert stored.updated_at == NOW
        assert cipher.decrypt(stored.access_token_encrypted) == "fresh-token"
        assert cipher.decrypt(stored.refresh_token_encrypted) == "refresh-token"

    async def test_rotated_refresh_token_is_stored(self, connection_repo, cipher) -> None:
        connection = await _seed(connection_repo, cipher, expires_in=timedelta(seconds=-5))
        refresher = _refresher(_grant(refresh_token="rotated"))

        await _store(connection_repo, cipher, refresher).get_valid_credential(connection)

        stored = await connection_repo.get_by_id(connection.id)
        assert cipher.decrypt(stored.refresh_token_encrypted) == "rotated"

    async def test_refresh_clears_needs_reauth(self, connection_repo, cipher) -> None:
        connection = await _seed(connection_repo, cipher, expires_in=timedelta(0))
        await connection_repo.upsert(connection.model_copy(update={"needs_reauth": True}))

        await _store(connection_repo, cipher, _refresher()).get_valid_credential(connection)

        assert (await connection_repo.get_by_id(connection.id)).needs_reauth is False

    async def test_unknown_expiry_is_treated_as_valid(self, connection_repo, cipher) -> None:
        connection = await _seed(connection_repo, cipher, expires_in=None)
        refresher = _refresher()

        await _store(connection_repo, cipher, refresher).get_valid_credential(connection)

        refresher.refresh.assert_not_awaited()

    async def test_invalid_grant_raises_auth_expired(self, connection_repo, cipher) -> None:
        connection = await _seed(connection_repo, cipher, expires_in=timedelta(seconds=30))
        refresher = AsyncMock()
        refresher.refresh.side_effect = AuthExpiredError("invalid_grant")

        with pytest.raises(AuthExpiredError, match="invalid_grant"):
            await _store(connection_repo, cipher, refresher).get_valid_credential(connection)

        stored = await connection_repo.get_by_id(connection.id)
        assert cipher.decrypt(stored.access_token_encrypted) == "old-token"

    async def test_network_error_during_refresh_is_transient(self, connection_repo, cipher) -> None:
        connection = await _seed(connection_repo, cipher, expires_in=timedelta(seconds=30))
        refresher = AsyncMock()
        refresher.refresh.side_effect = TransportFailureError("ConnectError")

        with pytest.raises(TransportFailureError):
            await _store(connection_repo, cipher, refresher).get_valid_credential(connection)

    async def test_missing_refresh_token_raises_auth_expired(
        self, connection_repo, cipher
    ) -> None:
        connection = await _seed(
            connection_repo, cipher, expires_in=timedelta(seconds=30), refresh_token=None
        )
        with pytest.raises(AuthExpiredError, match="without a refresh token"):
            await _store(connection_repo, cipher, _refresher()).get_valid_credential(connection)

    async def test_missing_refresher_raises_auth_expired(self, connection_repo, cipher) -> None:
        connection = await _seed(connection_repo, cipher, expires_in=timedelta(seconds=30))
        with pytest.raises(AuthExpiredError, match="No token refresher"):
            await _store(connection_repo, cipher).get_valid_credential(connection)

    async def test_undecryptable_token_raises_auth_expired(self, connection_repo) -> None:
        old_cipher = TokenCipher([TokenCipher.generate_key()])
        connection = await _seed(connection_repo, old_cipher)
        new_cipher = TokenCipher([TokenCipher.generate_key()])

        with pytest.raises(AuthExpiredError, match="could not be decrypted"):
            await _store(connection_repo, new_cipher).get_valid_credential(connection)

    async def test_deleted_connection_raises_auth_expired(self, connection_repo, cipher) -> None:
        connection = await _seed(connection_repo, cipher, expires_in=timedelta(seconds=30))
        await connection_repo.delete("user-1", Provider.GOOGLE)

        with pytest.raises(AuthExpiredError, match="no longer exists"):
            await _store(connection_repo, cipher, _refresher()).get_valid_credential(connection)

    async def test_caldav_credential_is_decrypted_pass_through(
        self, connection_repo, cipher
    ) -> None:
        store = _store(connection_repo, cipher)
        connection = await store.store_caldav_credentials(
            "user-1", "ada@icloud.com", "abcd-efgh-ijkl-mnop"
        )

        credential = await store.get_valid_credential(connection)

        assert credential == BasicCredential(
            username="ada@icloud.com", password="abcd-efgh-ijkl-mnop"
        )


class TestRefreshLocking:
    async def test_concurrent_runs_refresh_once(self, connection_repo, cipher) -> None:
        connection = await _seed(connection_repo, cipher, expires_in=timedelta(seconds=30))
        release = asyncio.Event()
        calls = 0

        async def _slow_refresh(refresh_token, *, now=None):
            nonlocal calls
            calls += 1
            await release.wait()
            return _grant()

        refresher = AsyncMock()
        refresher.refresh.side_effect = _slow_refresh
        store = _store(connection_repo, cipher, refresher)

        tasks = [asyncio.create_task(store.get_valid_credential(connection)) for _ in range(3)]
        await asyncio.sleep(0)
        release.set()
        credentials = await asyncio.gather(*tasks)

        assert calls == 1
        assert {c.access_token for c in credentials} == {"fresh-token"}

    async def test_locks_are_per_connection(self, connection_repo, cipher) -> None:
        store = _store(connection_repo, cipher)
        assert store._lock_for("a") is store._lock_for("a")
        assert store._lock_for("a") is not store._lock_for("b")


# ---------------------------------------------------------------------------
# Write operations
# ---------------------------------------------------------------------------


class TestStoreTokens:
    async def test_store_oauth_tokens_creates_connection(self, connection_repo, cipher) -> None:
        store = _store(connection_repo, cipher)

        connection = await store.store_oauth_tokens(
            "user-1",
            Provider.OUTLOOK,
            access_token="at",
            refresh_token="rt",
            expires_at=NOW + timedelta(hours=1),
            account_email="ada@contoso.com",
        )

        assert connection.provider == Provider.OUTLOOK
        assert connection.access_token_encrypted != "at"
        assert cipher.decrypt(connection.refresh_token_encrypted) == "rt"
        assert connection.created_at == NOW

    async def test_reconnect_keeps_previous_refresh_token(self, connection_repo, cipher) -> None:
        store = _store(connection_repo, cipher)
        first = await store.store_oauth_tokens(
            "user-1", Provider.GOOGLE, access_token="at-1", refresh_token="rt-1"
        )
        await store.mark_needs_reauth(first, "revoked")

        second = await store.store_oauth_tokens("user-1", Provider.GOOGLE, access_token="at-2")

        assert second.id == first.id
        assert cipher.decrypt(second.access_token_encrypted) == "at-2"
        assert cipher.decrypt(second.refresh_token_encrypted) == "rt-1"
        assert second.needs_reauth is False
        assert second.last_error is None
        assert second.account_email == first.account_email

    async def test_icloud_rejects_oauth_tokens(self, connection_repo, cipher) -> None:
        with pytest.raises(ValueError, match="does not use OAuth"):
            await _store(connection_repo, cipher).store_oauth_tokens(
                "user-1", Provider.ICLOUD, access_token="at"
            )

    async def test_empty_app_password_is_rejected(self, connection_repo, cipher) -> None:
        with pytest.raises(ValueError, match="app_password"):
            await _store(connection_repo, cipher).store_caldav_credentials(
                "user-1", "ada@icloud.com", ""
            )

    async def test_disconnect_removes_only_the_connection(self, connection_repo, cipher) -> None:
        store = _store(connection_repo, cipher)
        await store.store_caldav_credentials("user-1", "ada@icloud.com", "pw")

        assert await store.disconnect("user-1", Provider.ICLOUD) is True
        assert await store.disconnect("user-1", Provider.ICLOUD) is False
        assert await connection_repo.list_for_user("user-1") == []


class TestStatusBookkeeping:
    async def test_mark_synced_sets_watermark_and_clears_error(
        self, connection_repo, cipher
    ) -> None:
        connection = await _seed(connection_repo, cipher)
        store = _store(connection_repo, cipher)
        await store.record_error(connection, "timed out")

        synced = await store.mark_synced(connection, NOW)

        assert synced.last_synced_at == NOW
        assert synced.last_error is None
        assert synced.last_error_at is None

    async def test_mark_synced_with_summary_keeps_error(self, connection_repo, cipher) -> None:
        connection = await _seed(connection_repo, cipher)

        synced = await _store(connection_repo, cipher).mark_synced(
            connection, NOW, error="1 event(s) could not be synced"
        )

        assert synced.last_synced_at == NOW
        assert synced.last_error == "1 event(s) could not be synced"

    async def test_status_update_does_not_clobber_refreshed_tokens(
        self, connection_repo, cipher
    ) -> None:
        stale = await _seed(connection_repo, cipher)
        await connection_repo.upsert(
            stale.model_copy(update={"access_token_encrypted": cipher.encrypt("newer")})
        )

        await _store(connection_repo, cipher).mark_synced(stale, NOW)

        stored = await connection_repo.get_by_id(stale.id)
        assert cipher.decrypt(stored.access_token_encrypted) == "newer"

    async def test_needs_reauth_is_distinct_from_stale(self, connection_repo, cipher) -> None:
        connection = await _seed(connection_repo, cipher)
        store = _store(connection_repo, cipher)

        stale = await store.record_error(connection, "HTTP 503")
        assert stale.needs_reauth is False
        assert stale.last_error == "HTTP 503"

        flagged = await store.mark_needs_reauth(connection, "access_token=abc123 rejected")
        assert flagged.needs_reauth is True
        assert "abc123" not in flagged.last_error

    async def test_list_status(self, connection_repo, cipher) -> None:
        await _seed(connection_repo, cipher)

        (status,) = await _store(connection_repo, cipher).list_status("user-1")

        assert status.provider == Provider.GOOGLE
        assert status.account_email == "ada@example.com"


class TestRedaction:
    async def test_repr_never_contains_tokens(self, connection_repo, cipher) -> None:
        connection = await _seed(connection_repo, cipher)
        text = repr(connection)
        assert connection.access_token_encrypted not in text
        assert "<REDACTED>" in text

    def test_credential_reprs_redact_secrets(self) -> None:
        bearer = BearerCredential(access_token="ya29.secret")
        basic = BasicCredential(username="ada", password="hunter2")
        assert "ya29.secret" not in repr(bearer)
        assert "hunter2" not in repr(basic)
        assert "hunter2" not in str(basic)

    def test_store_repr_is_safe(self, connection_repo, cipher) -> None:
        text = repr(_store(connection_repo, cipher, _refresher()))
        assert "google" in text
