"""asyncpg repository for ``calendar_connections`` rows."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from timeledger.models import CalendarConnection, Provider
from timeledger.storage.schema import CONNECTIONS_TABLE

if TYPE_CHECKING:
    import asyncpg

logger = logging.getLogger(__name__)

_COLUMNS = (
    "id",
    "user_id",
    "provider",
    "account_email",
    "access_token_encrypted",
    "refresh_token_encrypted",
    "expires_at",
    "scope",
    "calendar_url",
    "last_synced_at",
    "needs_reauth",
    "last_error",
    "last_error_at",
    "created_at",
    "updated_at",
)
_SELECT = f"SELECT {', '.join(_COLUMNS)} FROM {CONNECTIONS_TABLE}"


def _row_to_connection(row: Any) -> CalendarConnection:
    return CalendarConnection(**{column: row[column] for column in _COLUMNS})


class PgConnectionRepository:
    """Connection rows in PostgreSQL, one per ``(user_id, provider)``."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self.pool = pool

    async def get(self, user_id: str, provider: Provider) -> CalendarConnection | None:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f"{_SELECT} WHERE user_id = $1 AND provider = $2",
                user_id,
                provider.value,
            )
        return _row_to_connection(row) if row is not None else None

    async def get_by_id(self, connection_id: str) -> CalendarConnection | None:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(f"{_SELECT} WHERE id = $1", connection_id)
        return _row_to_connection(row) if row is not None else None

    async def list_for_user(self, user_id: str) -> list[CalendarConnection]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(f"{_SELECT} WHERE user_id = $1 ORDER BY provider", user_id)
        return [_row_to_connection(row) for row in rows]

    async def list_user_ids(self) -> list[str]:
        """Return every user with at least one connection."""
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                f"SELECT DISTINCT user_id FROM {CONNECTIONS_TABLE} ORDER BY user_id"
            )
        return [row["user_id"] for row in rows]

    async def upsert(self, connection: CalendarConnection) -> CalendarConnection:
        """Insert or replace the connection for its ``(user_id, provider)`` pair.

        The existing row id wins on conflict so foreign references stay
        stable; the stored row is returned.
        """
        values = connection.model_dump()
        values["provider"] = connection.provider.value
        placeholders = ", ".join(f"${index}" for index in range(1, len(_COLUMNS) + 1))
        updates = ",\n                    ".join(
            f"{column} = EXCLUDED.{column}"
            for column in _COLUMNS
            if column not in ("id", "user_id", "provider", "created_at")
        )
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                INSERT INTO {CONNECTIONS_TABLE} ({", ".join(_COLUMNS)})
                VALUES ({placeholders})
                ON CONFLICT (user_id, provider) DO UPDATE SET
                    {updates}
                RETURNING {", ".join(_COLUMNS)}
                """,
                *(values[column] for column in _COLUMNS),
            )
        # Log identifiers only; token columns never leave this module.
        logger.debug(
            "Connection stored: id=%s user_id=%s provider=%s",
            row["id"],
            connection.user_id,
            connection.provider.value,
        )
        return _row_to_connection(row)

    async def delete(self, user_id: str, provider: Provider) -> bool:
        async with self.pool.acquire() as conn:
            result = await conn.execute(
                f"DELETE FROM {CONNECTIONS_TABLE} WHERE user_id = $1 AND provider = $2",
                user_id,
                provider.value,
            )
        # asyncpg returns a string like "DELETE 1" or "DELETE 0"
        return result.split()[-1] != "0" if result else False
