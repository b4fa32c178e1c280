"""Capability interface implemented by every calendar provider client."""

from __future__ import annotations

import abc
from collections.abc import AsyncIterator, Callable
from datetime import date, datetime, timedelta

from timeledger.errors import AuthExpiredError, CalendarSyncError, RemoteRejectedError
from timeledger.models import (
    BasicCredential,
    BearerCredential,
    Credential,
    Event,
    Provider,
    RemoteEvent,
    SyncWindow,
    all_day_bounds,
)

IssueCallback = Callable[[CalendarSyncError], None]


class CalendarProvider(abc.ABC):
    """Provider abstraction used by the sync orchestrator."""

    @property
    @abc.abstractmethod
    def provider(self) -> Provider:
        """Provider kind served by this client."""
        ...

    @abc.abstractmethod
    def list_events(
        self,
        credential: Credential,
        window: SyncWindow,
        *,
        on_issue: IssueCallback | None = None,
    ) -> AsyncIterator[RemoteEvent]:
        """Yield the remote events intersecting *window*, paging transparently.

        Items that cannot be parsed are reported to *on_issue* as
        ``MalformedRemoteDataError`` and skipped.
        """
        ...

    @abc.abstractmethod
    async def create_event(self, credential: Credential, event: Event) -> RemoteEvent:
        """Create *event* remotely and return it with its assigned UID."""
        ...

    @abc.abstractmethod
    async def update_event(self, credential: Credential, uid: str, event: Event) -> RemoteEvent:
        """Overwrite the remote event *uid* with the fields of *event*."""
        ...

    @abc.abstractmethod
    async def delete_event(self, credential: Credential, uid: str) -> None:
        """Delete the remote event *uid*.

        Raises ``RemoteNotFoundError`` when the provider no longer has it.
        """
        ...

    @abc.abstractmethod
    async def aclose(self) -> None:
        """Release provider resources."""
        ...


def require_bearer(credential: Credential, provider: Provider) -> BearerCredential:
    if not isinstance(credential, BearerCredential):
        raise AuthExpiredError(f"{provider.value} requires an OAuth access token")
    return credential


def require_basic(credential: Credential, provider: Provider) -> BasicCredential:
    if not isinstance(credential, BasicCredential):
        raise AuthExpiredError(f"{provider.value} requires a username and app password")
    return credential


def report(on_issue: IssueCallback | None, error: CalendarSyncError) -> None:
    if on_issue is not None:
        on_issue(error)


def timed_bounds(event: Event) -> tuple[datetime, datetime]:
    """Return the UTC start and end to send for a timed event.

    An end at or before the start becomes start plus one hour.
    """
    if event.start_at is None:
        raise RemoteRejectedError("Event has no start time", uid=event.uid)
    end_at = event.end_at if event.end_at is not None else event.start_at
    if end_at <= event.start_at:
        end_at = event.start_at + timedelta(hours=1)
    return event.start_at, end_at


def day_bounds(event: Event) -> tuple[date, date]:
    """Return the first day and exclusive end day for an all-day event."""
    if event.start_at is None:
        raise RemoteRejectedError("Event has no start date", uid=event.uid)
    return all_day_bounds(event.start_at, event.end_at)
