"""Domain models for external calendar synchronization.

- ``CalendarConnection``: one stored credential binding per (user, provider)
- ``Event``: the canonical local event record
- ``RemoteEvent``: a provider event normalized for reconciliation
- ``SyncWindow``: the time range a sync run covers
- ``BearerCredential`` / ``BasicCredential``: decrypted, in-memory credentials
"""

from __future__ import annotations

import uuid
from datetime import UTC, date, datetime, timedelta
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class Provider(StrEnum):
    """Supported external calendar providers."""

    GOOGLE = "google"
    OUTLOOK = "outlook"
    ICLOUD = "icloud"

    @property
    def event_source(self) -> EventSource:
        return EventSource(self.value)

    @property
    def uses_oauth(self) -> bool:
        return self is not Provider.ICLOUD


class EventSource(StrEnum):
    """Provenance of a local event."""

    LOCAL = "local"
    GOOGLE = "google"
    ICLOUD = "icloud"
    OUTLOOK = "outlook"
    WORK = "work"


class EventPriority(StrEnum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"


class EventRecurrence(StrEnum):
    NONE = "none"
    DAILY = "daily"
    WEEKLY = "weekly"
    BIWEEKLY = "biweekly"
    MONTHLY = "monthly"


def utcnow() -> datetime:
    return datetime.now(UTC)


def ensure_utc(value: datetime | None) -> datetime | None:
    """Normalize a datetime to aware UTC; naive values are assumed to be UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def new_id() -> str:
    return uuid.uuid4().hex


# ---------------------------------------------------------------------------
# Connections and credentials
# ---------------------------------------------------------------------------


class CalendarConnection(BaseModel):
    """Stored binding between one user and one provider account.

    Token fields only ever hold ciphertext produced by
    :class:`~timeledger.crypto.TokenCipher`.
    """

    model_config = ConfigDict(validate_assignment=True)

    id: str = Field(default_factory=new_id)
    user_id: str = Field(min_length=1)
    provider: Provider
    account_email: str | None = None
    access_token_encrypted: str = ""
    refresh_token_encrypted: str | None = None
    expires_at: datetime | None = None
    scope: str | None = None
    calendar_url: str | None = None
    last_synced_at: datetime | None = None
    needs_reauth: bool = False
    last_error: str | None = None
    last_error_at: datetime | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("expires_at", "last_synced_at", "last_error_at", "created_at", "updated_at")
    @classmethod
    def _normalize_timestamps(cls, value: datetime | None) -> datetime | None:
        return ensure_utc(value)

    def __repr__(self) -> str:
        return (
            f"CalendarConnection("
            f"id={self.id!r}, "
            f"user_id={self.user_id!r}, "
            f"provider={self.provider.value!r}, "
            f"account_email={self.account_email!r}, "
            f"access_token=<REDACTED>, "
            f"refresh_token={'<REDACTED>' if self.refresh_token_encrypted else None}, "
            f"expires_at={self.expires_at!r}, "
            f"needs_reauth={self.needs_reauth!r})"
        )

    __str__ = __repr__


class BearerCredential(BaseModel):
    """Decrypted OAuth access token."""

    model_config = ConfigDict(frozen=True)

    access_token: str = Field(min_length=1)
    expires_at: datetime | None = None

    def __repr__(self) -> str:
        return f"BearerCredential(access_token=<REDACTED>, expires_at={self.expires_at!r})"

    __str__ = __repr__


class BasicCredential(BaseModel):
    """Decrypted CalDAV username/app-password pair."""

    model_config = ConfigDict(frozen=True)

    username: str = Field(min_length=1)
    password: str = Field(min_length=1)
    calendar_url: str | None = None

    def __repr__(self) -> str:
        return f"BasicCredential(username={self.username!r}, password=<REDACTED>)"

    __str__ = __repr__


Credential = BearerCredential | BasicCredential


class ConnectionStatus(BaseModel):
    """Connection summary for settings UIs; never carries token material."""

    provider: Provider
    account_email: str | None = None
    last_synced_at: datetime | None = None
    needs_reauth: bool = False
    last_error: str | None = None
    last_error_at: datetime | None = None
    connected_at: datetime | None = None

    @classmethod
    def from_connection(cls, connection: CalendarConnection) -> ConnectionStatus:
        return cls(
            provider=connection.provider,
            account_email=connection.account_email,
            last_synced_at=connection.last_synced_at,
            needs_reauth=connection.needs_reauth,
            last_error=connection.last_error,
            last_error_at=connection.last_error_at,
            connected_at=connection.created_at,
        )


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


class Event(BaseModel):
    """Canonical local event record.

    ``synced_at`` is set once the event has been confirmed on the remote side.
    ``pending_delete`` marks a local deletion that still has to be pushed.
    """

    id: str = Field(default_factory=new_id)
    user_id: str = Field(min_length=1)
    uid: str | None = None
    title: str = ""
    start_at: datetime | None = None
    end_at: datetime | None = None
    all_day: bool = False
    last_modified: datetime | None = None
    source: EventSource = EventSource.LOCAL
    description: str | None = None
    location: str | None = None
    attendees: list[str] = Field(default_factory=list)
    category_id: str | None = None
    priority: EventPriority = EventPriority.NORMAL
    recurrence: EventRecurrence = EventRecurrence.NONE
    reminder_minutes_before: int | None = None
    synced_at: datetime | None = None
    pending_delete: bool = False

    @field_validator("start_at", "end_at", "last_modified", "synced_at")
    @classmethod
    def _normalize_timestamps(cls, value: datetime | None) -> datetime | None:
        return ensure_utc(value)

    @field_validator("uid")
    @classmethod
    def _normalize_uid(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip()
        return normalized or None

    @field_validator("attendees")
    @classmethod
    def _normalize_attendees(cls, value: list[str]) -> list[str]:
        return normalize_attendees(value)

    def touch(self, at: datetime | None = None) -> Event:
        """Return a copy with ``last_modified`` advanced, never moved backwards."""
        candidate = ensure_utc(at) or utcnow()
        if self.last_modified is not None and candidate <= self.last_modified:
            candidate = self.last_modified + timedelta(microseconds=1)
        return self.model_copy(update={"last_modified": candidate})


class RemoteEvent(BaseModel):
    """Provider event normalized for reconciliation.

    ``href`` and ``etag`` locate CalDAV resources and are never compared.
    """

    uid: str = Field(min_length=1)
    title: str = ""
    start_at: datetime | None = None
    end_at: datetime | None = None
    all_day: bool = False
    last_modified: datetime | None = None
    description: str | None = None
    location: str | None = None
    attendees: list[str] = Field(default_factory=list)
    href: str | None = None
    etag: str | None = None

    @field_validator("start_at", "end_at", "last_modified")
    @classmethod
    def _normalize_timestamps(cls, value: datetime | None) -> datetime | None:
        return ensure_utc(value)

    @field_validator("attendees")
    @classmethod
    def _normalize_attendees(cls, value: list[str]) -> list[str]:
        return normalize_attendees(value)


def normalize_attendees(values: list[str]) -> list[str]:
    """Lower-case, strip ``mailto:`` and de-duplicate attendee addresses, keeping order."""
    seen: set[str] = set()
    normalized: list[str] = []
    for raw in values:
        if not isinstance(raw, str):
            continue
        address = raw.strip()
        if address.lower().startswith("mailto:"):
            address = address[len("mailto:") :]
        address = address.strip().lower()
        if not address or address in seen:
            continue
        seen.add(address)
        normalized.append(address)
    return normalized


def all_day_bounds(start_at: datetime | None, end_at: datetime | None) -> tuple[date, date]:
    """Return (first day, exclusive end day) for an all-day event."""
    start = (start_at or utcnow()).date()
    last = end_at.date() if end_at is not None else start
    if last <= start:
        last = start + timedelta(days=1)
    return start, last


# ---------------------------------------------------------------------------
# Sync window
# ---------------------------------------------------------------------------


class SyncWindow(BaseModel):
    """Half-open UTC time range ``[start, end)`` covered by a sync run."""

    model_config = ConfigDict(frozen=True)

    start: datetime
    end: datetime

    @field_validator("start", "end")
    @classmethod
    def _normalize(cls, value: datetime) -> datetime:
        return value.replace(tzinfo=UTC) if value.tzinfo is None else value.astimezone(UTC)

    @model_validator(mode="after")
    def _validate_order(self) -> SyncWindow:
        if self.end <= self.start:
            raise ValueError("window end must be after window start")
        return self

    @classmethod
    def around(
        cls,
        now: datetime | None = None,
        *,
        past_days: int = 30,
        future_days: int = 150,
    ) -> SyncWindow:
        anchor = ensure_utc(now) or utcnow()
        return cls(
            start=anchor - timedelta(days=past_days),
            end=anchor + timedelta(days=future_days),
        )

    def intersects(self, start_at: datetime | None, end_at: datetime | None) -> bool:
        """Return True when an event range overlaps the window.

        A missing start is open towards the past, a missing end is open
        towards the future.
        """
        start = ensure_utc(start_at)
        end = ensure_utc(end_at)
        if start is not None and start >= self.end:
            return False
        if end is not None and end <= self.start:
            return False
        return True
