"""asyncpg repository for local ``events`` rows."""

from __future__ import annotations

import logging
from collections.abc import Collection, Sequence
from typing import TYPE_CHECKING, Any

import asyncpg

from timeledger.errors import LocalPersistenceError
from timeledger.models import Event, EventSource, SyncWindow, utcnow
from timeledger.storage.schema import EVENTS_TABLE

if TYPE_CHECKING:
    from datetime import datetime

logger = logging.getLogger(__name__)

_COLUMNS = (
    "id",
    "user_id",
    "uid",
    "title",
    "start_at",
    "end_at",
    "all_day",
    "last_modified",
    "source",
    "description",
    "location",
    "attendees",
    "category_id",
    "priority",
    "recurrence",
    "reminder_minutes_before",
    "synced_at",
    "pending_delete",
)
_ENUM_COLUMNS = frozenset({"source", "priority", "recurrence"})
_SELECT = f"SELECT {', '.join(_COLUMNS)} FROM {EVENTS_TABLE}"

_UPSERT = f"""
INSERT INTO {EVENTS_TABLE} ({", ".join(_COLUMNS)})
VALUES ({", ".join(f"${index}" for index in range(1, len(_COLUMNS) + 1))})
ON CONFLICT (id) DO UPDATE SET
    {", ".join(f"{column} = EXCLUDED.{column}" for column in _COLUMNS if column != "id")}
"""


def _row_to_event(row: Any) -> Event:
    values = {column: row[column] for column in _COLUMNS}
    values["attendees"] = list(values["attendees"] or [])
    return Event(**values)


def _event_to_args(event: Event) -> tuple[Any, ...]:
    values = event.model_dump()
    return tuple(
        values[column].value if column in _ENUM_COLUMNS else values[column]
        for column in _COLUMNS
    )


class PgEventRepository:
    """Local event rows in PostgreSQL."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self.pool = pool

    async def list_events(
        self,
        user_id: str,
        window: SyncWindow | None = None,
        source: EventSource | None = None,
    ) -> list[Event]:
        """Return the user's events, optionally narrowed to a source and window.

        Events without a start or end are open-ended and always match the
        window.
        """
        clauses = ["user_id = $1"]
        params: list[Any] = [user_id]
        if source is not None:
            params.append(source.value)
            clauses.append(f"source = ${len(params)}")
        if window is not None:
            params.append(window.end)
            clauses.append(f"(start_at IS NULL OR start_at < ${len(params)})")
            params.append(window.start)
            clauses.append(f"(end_at IS NULL OR end_at > ${len(params)})")

        query = f"{_SELECT} WHERE {' AND '.join(clauses)} ORDER BY start_at NULLS FIRST, id"
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(query, *params)
        return [_row_to_event(row) for row in rows]

    async def list_by_uids(
        self, user_id: str, source: EventSource, uids: Collection[str]
    ) -> list[Event]:
        """Return the user's *source* events carrying any of *uids*, in or out of any window."""
        if not uids:
            return []
        query = f"{_SELECT} WHERE user_id = $1 AND source = $2 AND uid = ANY($3::text[])"
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(query, user_id, source.value, sorted(uids))
        return [_row_to_event(row) for row in rows]

    async def get(self, event_id: str) -> Event | None:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(f"{_SELECT} WHERE id = $1", event_id)
        return _row_to_event(row) if row is not None else None

    async def apply(self, upserts: Sequence[Event], delete_ids: Sequence[str]) -> None:
        """Write *upserts* and delete *delete_ids* atomically.

        Raises
        ------
        LocalPersistenceError
            When any statement fails; the transaction is rolled back and
            nothing is written.
        """
        if not upserts and not delete_ids:
            return
        try:
            async with self.pool.acquire() as conn:
                async with conn.transaction():
                    if upserts:
                        await conn.executemany(
                            _UPSERT, [_event_to_args(event) for event in upserts]
                        )
                    if delete_ids:
                        await conn.execute(
                            f"DELETE FROM {EVENTS_TABLE} WHERE id = ANY($1::text[])",
                            list(delete_ids),
                        )
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as exc:
            logger.error(
                "Local event transaction rolled back (%d upserts, %d deletes): %s",
                len(upserts),
                len(delete_ids),
                type(exc).__name__,
            )
            raise LocalPersistenceError(
                f"Local event transaction failed: {type(exc).__name__}"
            ) from exc

    async def delete_local(self, event_id: str, *, at: datetime | None = None) -> bool:
        """Delete an event on behalf of the user.

        Events already confirmed on a provider become tombstones so the next
        sync removes the remote copy; everything else is deleted outright.
        """
        event = await self.get(event_id)
        if event is None:
            return False
        if event.uid and event.synced_at is not None and event.source != EventSource.LOCAL:
            tombstone = event.touch(at or utcnow()).model_copy(update={"pending_delete": True})
            await self.apply([tombstone], [])
            logger.debug("Event %s tombstoned for remote deletion", event_id)
        else:
            await self.apply([], [event_id])
        return True
