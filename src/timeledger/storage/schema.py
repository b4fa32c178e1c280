"""Idempotent DDL for the sync engine's two tables."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    import asyncpg

logger = logging.getLogger(__name__)

CONNECTIONS_TABLE = "calendar_connections"
EVENTS_TABLE = "events"

_CONNECTIONS_DDL = f"""
CREATE TABLE IF NOT EXISTS {CONNECTIONS_TABLE} (
    id                      TEXT PRIMARY KEY,
    user_id                 TEXT NOT NULL,
    provider                TEXT NOT NULL,
    account_email           TEXT,
    access_token_encrypted  TEXT NOT NULL DEFAULT '',
    refresh_token_encrypted TEXT,
    expires_at              TIMESTAMPTZ,
    scope                   TEXT,
    calendar_url            TEXT,
    last_synced_at          TIMESTAMPTZ,
    needs_reauth            BOOLEAN NOT NULL DEFAULT false,
    last_error              TEXT,
    last_error_at           TIMESTAMPTZ,
    created_at              TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at              TIMESTAMPTZ NOT NULL DEFAULT now(),
    CONSTRAINT uq_calendar_connections_user_provider UNIQUE (user_id, provider)
)
"""

_EVENTS_DDL = f"""
CREATE TABLE IF NOT EXISTS {EVENTS_TABLE} (
    id                      TEXT PRIMARY KEY,
    user_id                 TEXT NOT NULL,
    uid                     TEXT,
    title                   TEXT NOT NULL DEFAULT '',
    start_at                TIMESTAMPTZ,
    end_at                  TIMESTAMPTZ,
    all_day                 BOOLEAN NOT NULL DEFAULT false,
    last_modified           TIMESTAMPTZ,
    source                  TEXT NOT NULL DEFAULT 'local',
    description             TEXT,
    location                TEXT,
    attendees               TEXT[] NOT NULL DEFAULT '{{}}',
    category_id             TEXT,
    priority                TEXT NOT NULL DEFAULT 'normal',
    recurrence              TEXT NOT NULL DEFAULT 'none',
    reminder_minutes_before INTEGER,
    synced_at               TIMESTAMPTZ,
    pending_delete          BOOLEAN NOT NULL DEFAULT false
)
"""

_EVENTS_UID_INDEX_DDL = f"""
CREATE UNIQUE INDEX IF NOT EXISTS uq_events_user_uid_source
ON {EVENTS_TABLE} (user_id, uid, source)
WHERE uid IS NOT NULL AND source <> 'local'
"""

_EVENTS_RANGE_INDEX_DDL = f"""
CREATE INDEX IF NOT EXISTS ix_events_user_source_start
ON {EVENTS_TABLE} (user_id, source, start_at)
"""

SCHEMA_STATEMENTS: tuple[str, ...] = (
    _CONNECTIONS_DDL,
    _EVENTS_DDL,
    _EVENTS_UID_INDEX_DDL,
    _EVENTS_RANGE_INDEX_DDL,
)


async def ensure_schema(pool: asyncpg.Pool) -> None:
    """Create the connection and event tables when they are missing."""
    async with pool.acquire() as conn:
        async with conn.transaction():
            for statement in SCHEMA_STATEMENTS:
                await conn.execute(statement)
    logger.info("Ensured sync schema: %s, %s", CONNECTIONS_TABLE, EVENTS_TABLE)
