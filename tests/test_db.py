"""Tests for timeledger.db connection settings and pool management."""

from __future__ import annotations

from unittest.mock import AsyncMock, patch

import pytest

from timeledger.config import DatabaseConfig
from timeledger.db import Database, parse_database_url, should_retry_with_ssl_disable

pytestmark = pytest.mark.unit


class TestDatabaseUrl:
    def test_full_url(self) -> None:
        params = parse_database_url(
            "postgres://sync:pw@db.internal:6543/ledger?sslmode=require"
        )
        assert params == {
            "host": "db.internal",
            "port": 6543,
            "user": "sync",
            "password": "pw",
            "db_name": "ledger",
            "ssl": "require",
        }

    def test_defaults_fill_missing_parts(self) -> None:
        params = parse_database_url("postgres://")
        assert params["host"] == "localhost"
        assert params["port"] == 5432
        assert params["db_name"] == "timeledger"
        assert params["ssl"] is None

    def test_invalid_sslmode_is_ignored(self) -> None:
        params = parse_database_url("postgres://h/db?sslmode=sometimes")
        assert params["ssl"] is None

    def test_credentials_are_unquoted(self) -> None:
        params = parse_database_url("postgres://sync%40corp:p%2Fw@h/db")
        assert params["user"] == "sync@corp"
        assert params["password"] == "p/w"


class TestFromConfig:
    def test_url_takes_precedence(self) -> None:
        database = Database.from_config(
            DatabaseConfig(url="postgres://u:p@h:1/ledger", host="other", max_pool_size=3)
        )
        assert database.host == "h"
        assert database.db_name == "ledger"
        assert database.max_pool_size == 3

    def test_discrete_fields(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("POSTGRES_SSLMODE", raising=False)
        database = Database.from_config(DatabaseConfig(host="pg", port=5433, name="tl"))
        assert (database.host, database.port, database.db_name) == ("pg", 5433, "tl")
        assert database.ssl is None


class TestSslFallback:
    def test_retry_only_for_upgrade_loss_without_explicit_ssl(self) -> None:
        lost = ConnectionError("unexpected connection_lost() call")
        assert should_retry_with_ssl_disable(lost, None) is True
        assert should_retry_with_ssl_disable(lost, "require") is False
        assert should_retry_with_ssl_disable(ConnectionError("refused"), None) is False

    async def test_connect_retries_with_ssl_disabled(self) -> None:
        pool = AsyncMock()
        create_pool = AsyncMock(
            side_effect=[ConnectionError("unexpected connection_lost() call"), pool]
        )
        database = Database("ledger")

        with patch("timeledger.db.asyncpg.create_pool", create_pool):
            assert await database.connect() is pool

        assert create_pool.await_args_list[1].kwargs["ssl"] == "disable"
        assert database.require_pool() is pool

    async def test_close_releases_pool(self) -> None:
        database = Database("ledger")
        database.pool = AsyncMock()
        pool = database.pool

        await database.close()

        pool.close.assert_awaited_once()
        with pytest.raises(RuntimeError, match="no active connection pool"):
            database.require_pool()


class TestProvision:
    async def test_creates_missing_database(self) -> None:
        conn = AsyncMock()
        conn.fetchval.return_value = None
        with patch("timeledger.db.asyncpg.connect", AsyncMock(return_value=conn)):
            await Database('led"ger').provision()

        conn.execute.assert_awaited_once_with('CREATE DATABASE "led""ger" TEMPLATE template0')
        conn.close.assert_awaited_once()

    async def test_existing_database_is_left_alone(self) -> None:
        conn = AsyncMock()
        conn.fetchval.return_value = 1
        with patch("timeledger.db.asyncpg.connect", AsyncMock(return_value=conn)):
            await Database("ledger").provision()

        conn.execute.assert_not_awaited()
