"""Repository protocols consumed by the credential store and orchestrator."""

from __future__ import annotations

from collections.abc import Collection, Sequence
from datetime import datetime
from typing import Protocol

from timeledger.models import CalendarConnection, Event, EventSource, Provider, SyncWindow


class ConnectionRepository(Protocol):
    async def get(self, user_id: str, provider: Provider) -> CalendarConnection | None: ...

    async def get_by_id(self, connection_id: str) -> CalendarConnection | None: ...

    async def list_for_user(self, user_id: str) -> list[CalendarConnection]: ...

    async def list_user_ids(self) -> list[str]: ...

    async def upsert(self, connection: CalendarConnection) -> CalendarConnection: ...

    async def delete(self, user_id: str, provider: Provider) -> bool: ...


class EventRepository(Protocol):
    async def list_events(
        self,
        user_id: str,
        window: SyncWindow | None = None,
        source: EventSource | None = None,
    ) -> list[Event]: ...

    async def apply(self, upserts: Sequence[Event], delete_ids: Sequence[str]) -> None:
        """Write *upserts* and delete *delete_ids* in a single transaction."""
        ...

    async def list_by_uids(
        self, user_id: str, source: EventSource, uids: Collection[str]
    ) -> list[Event]: ...

    async def get(self, event_id: str) -> Event | None: ...

    async def delete_local(self, event_id: str, *, at: datetime | None = None) -> bool: ...
