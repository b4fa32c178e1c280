"""Two-way reconciliation of local events against one provider's events.

:func:`reconcile` is pure and synchronous: it compares the local events of a
provider with the events fetched from it and returns a :class:`MutationPlan`.
The orchestrator applies the plan.

Rules, keyed by UID:

- present on both sides: a local tombstone becomes a remote delete.  Equal
  provider fields are a no-op regardless of timestamps.  Otherwise the later
  ``last_modified`` wins; equal timestamps prefer the remote copy.
- remote only: a local create.
- local only, never synced (or without a UID): a remote create.
- local only, previously synced: the remote copy was deleted, so the local
  event is deleted too.  Tombstones whose remote copy is already gone are
  purged.

UIDs listed in ``unresolved_uids`` exist remotely but could not be parsed and
are left untouched.  ``allow_local_deletes=False`` keeps every local event
when the fetch is known to be incomplete.
"""

from __future__ import annotations

import logging
from collections.abc import Collection, Iterable
from dataclasses import dataclass, field
from datetime import datetime

from timeledger.models import (
    Event,
    Provider,
    RemoteEvent,
    all_day_bounds,
    ensure_utc,
    utcnow,
)

logger = logging.getLogger(__name__)

MUTATION_KINDS = (
    "local_create",
    "local_update",
    "local_delete",
    "remote_create",
    "remote_update",
    "remote_delete",
)


@dataclass
class MutationPlan:
    """Disjoint sets of mutations produced by :func:`reconcile`.

    ``confirmations`` are matching events seen on the remote side for the
    first time; they only gain ``synced_at`` and are not counted as
    mutations.
    """

    local_creates: list[Event] = field(default_factory=list)
    local_updates: list[Event] = field(default_factory=list)
    local_deletes: list[Event] = field(default_factory=list)
    remote_creates: list[Event] = field(default_factory=list)
    remote_updates: list[Event] = field(default_factory=list)
    remote_deletes: list[Event] = field(default_factory=list)
    confirmations: list[Event] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not any(self.counts().values())

    @property
    def local_upserts(self) -> list[Event]:
        return [*self.local_creates, *self.local_updates, *self.confirmations]

    def counts(self) -> dict[str, int]:
        return {
            "local_create": len(self.local_creates),
            "local_update": len(self.local_updates),
            "local_delete": len(self.local_deletes),
            "remote_create": len(self.remote_creates),
            "remote_update": len(self.remote_updates),
            "remote_delete": len(self.remote_deletes),
        }


# ---------------------------------------------------------------------------
# Comparison helpers
# ---------------------------------------------------------------------------


def _is_newer(candidate: datetime | None, reference: datetime | None) -> bool:
    """Return True when *candidate* is strictly later; a missing time is oldest."""
    if candidate is None:
        return False
    if reference is None:
        return True
    return candidate > reference


def _text(value: str | None) -> str:
    return (value or "").strip()


def _instant(value: datetime | None) -> datetime | None:
    normalized = ensure_utc(value)
    return normalized.replace(microsecond=0) if normalized is not None else None


def _span(item: Event | RemoteEvent) -> tuple[object, object]:
    if item.all_day and item.start_at is not None:
        return all_day_bounds(item.start_at, item.end_at)
    return _instant(item.start_at), _instant(item.end_at)


def same_fields(local: Event, remote: RemoteEvent) -> bool:
    """Compare the fields both sides carry; timestamps are compared to the second."""
    return (
        _text(local.title) == _text(remote.title)
        and local.all_day == remote.all_day
        and _span(local) == _span(remote)
        and _text(local.description) == _text(remote.description)
        and _text(local.location) == _text(remote.location)
        and sorted(local.attendees) == sorted(remote.attendees)
    )


def _latest_remote(events: Iterable[RemoteEvent]) -> dict[str, RemoteEvent]:
    by_uid: dict[str, RemoteEvent] = {}
    for remote in events:
        uid = remote.uid.strip()
        if not uid:
            continue
        current = by_uid.get(uid)
        if current is None or _is_newer(remote.last_modified, current.last_modified):
            by_uid[uid] = remote
    return by_uid


def _apply_remote(local: Event, remote: RemoteEvent, now: datetime) -> Event:
    return local.model_copy(
        update={
            "title": remote.title,
            "start_at": remote.start_at,
            "end_at": remote.end_at,
            "all_day": remote.all_day,
            "description": remote.description,
            "location": remote.location,
            "attendees": list(remote.attendees),
            "last_modified": remote.last_modified or local.last_modified,
            "synced_at": now,
        }
    )


def _event_from_remote(
    remote: RemoteEvent, *, user_id: str, provider: Provider, now: datetime
) -> Event:
    return Event(
        user_id=user_id,
        uid=remote.uid,
        title=remote.title,
        start_at=remote.start_at,
        end_at=remote.end_at,
        all_day=remote.all_day,
        last_modified=remote.last_modified or now,
        source=provider.event_source,
        description=remote.description,
        location=remote.location,
        attendees=list(remote.attendees),
        synced_at=now,
    )


# ---------------------------------------------------------------------------
# reconcile()
# ---------------------------------------------------------------------------


def reconcile(
    local_events: Iterable[Event],
    remote_events: Iterable[RemoteEvent],
    *,
    provider: Provider,
    user_id: str,
    unresolved_uids: Collection[str] = frozenset(),
    allow_local_deletes: bool = True,
    now: datetime | None = None,
) -> MutationPlan:
    """Compute the mutations that make both sides agree.

    Parameters
    ----------
    local_events:
        The user's local events; events of other sources are ignored.
    remote_events:
        Events fetched from *provider* for the same window.
    provider:
        Provider being reconciled; selects local events by
        ``provider.event_source``.
    user_id:
        Owner of the local events and of any local creates.
    unresolved_uids:
        Remote UIDs that exist but could not be parsed.
    allow_local_deletes:
        When False no local event is deleted because it is missing remotely.
    now:
        Time recorded as ``synced_at`` on events confirmed by this run.
    """
    now = ensure_utc(now) or utcnow()
    source = provider.event_source
    plan = MutationPlan()
    remote_by_uid = _latest_remote(remote_events)

    local_by_uid: dict[str, Event] = {}
    for event in local_events:
        if event.source != source or event.user_id != user_id:
            continue
        if not event.uid:
            if event.pending_delete:
                plan.local_deletes.append(event)
            else:
                plan.remote_creates.append(event)
            continue
        current = local_by_uid.get(event.uid)
        if current is None:
            local_by_uid[event.uid] = event
        elif _is_newer(event.last_modified, current.last_modified):
            plan.local_deletes.append(current)
            local_by_uid[event.uid] = event
        else:
            plan.local_deletes.append(event)

    for uid, local in local_by_uid.items():
        remote = remote_by_uid.get(uid)
        if remote is None:
            if uid in unresolved_uids:
                continue
            if local.synced_at is None and not local.pending_delete:
                plan.remote_creates.append(local)
            elif allow_local_deletes:
                plan.local_deletes.append(local)
            continue

        if local.pending_delete:
            plan.remote_deletes.append(local)
        elif same_fields(local, remote):
            if local.synced_at is None:
                plan.confirmations.append(local.model_copy(update={"synced_at": now}))
        elif _is_newer(local.last_modified, remote.last_modified):
            plan.remote_updates.append(local)
        else:
            plan.local_updates.append(_apply_remote(local, remote, now))

    for uid, remote in remote_by_uid.items():
        if uid not in local_by_uid and uid not in unresolved_uids:
            plan.local_creates.append(
                _event_from_remote(remote, user_id=user_id, provider=provider, now=now)
            )

    logger.debug("Reconciled %s for user %s: %s", provider.value, user_id, plan.counts())
    return plan
