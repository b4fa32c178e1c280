"""iCalendar (RFC 5545) conversion for CalDAV payloads, built on vobject."""

from __future__ import annotations

import logging
from datetime import UTC, date, datetime, timedelta

import vobject

from timeledger.errors import MalformedRemoteDataError
from timeledger.models import Event, RemoteEvent, all_day_bounds, ensure_utc, utcnow

logger = logging.getLogger(__name__)

PRODID = "-//TimeLedger//CalDAV Sync//EN"
MIN_TIMED_DURATION = timedelta(hours=1)


def _as_utc_datetime(value: date | datetime) -> datetime:
    if isinstance(value, datetime):
        return value.replace(tzinfo=UTC) if value.tzinfo is None else value.astimezone(UTC)
    return datetime(value.year, value.month, value.day, tzinfo=UTC)


def _text(component: vobject.base.Component, name: str) -> str | None:
    line = getattr(component, name, None)
    if line is None:
        return None
    value = line.value
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    return normalized or None


def _attendees(component: vobject.base.Component) -> list[str]:
    lines = component.contents.get("attendee", [])
    return [line.value for line in lines if isinstance(line.value, str)]


def vevent_to_remote_event(
    vevent: vobject.base.Component,
    *,
    href: str | None = None,
    etag: str | None = None,
) -> RemoteEvent:
    """Convert one VEVENT into a :class:`RemoteEvent`.

    Floating times are read as UTC.  A missing DTEND falls back to DURATION,
    then to one day for all-day events.
    """
    uid = _text(vevent, "uid")
    if uid is None:
        raise MalformedRemoteDataError("VEVENT has no UID")

    dtstart = getattr(vevent, "dtstart", None)
    if dtstart is None:
        raise MalformedRemoteDataError("VEVENT has no DTSTART", uid=uid)
    start_value = dtstart.value
    all_day = isinstance(start_value, date) and not isinstance(start_value, datetime)
    start_at = _as_utc_datetime(start_value)

    end_at: datetime | None = None
    dtend = getattr(vevent, "dtend", None)
    duration = getattr(vevent, "duration", None)
    if dtend is not None:
        end_at = _as_utc_datetime(dtend.value)
    elif duration is not None and isinstance(duration.value, timedelta):
        end_at = start_at + duration.value
    elif all_day:
        end_at = start_at + timedelta(days=1)

    modified_line = getattr(vevent, "last_modified", None) or getattr(vevent, "dtstamp", None)
    last_modified = _as_utc_datetime(modified_line.value) if modified_line is not None else None

    return RemoteEvent(
        uid=uid,
        title=_text(vevent, "summary") or "",
        start_at=start_at,
        end_at=end_at,
        all_day=all_day,
        last_modified=last_modified,
        description=_text(vevent, "description"),
        location=_text(vevent, "location"),
        attendees=_attendees(vevent),
        href=href,
        etag=etag,
    )


def parse_calendar_data(
    data: str,
    *,
    href: str | None = None,
    etag: str | None = None,
) -> list[RemoteEvent]:
    """Parse a ``calendar-data`` block into remote events.

    Recurrence overrides (VEVENTs with RECURRENCE-ID) are folded into their
    master event.

    Raises
    ------
    MalformedRemoteDataError
        When the payload is not valid iCalendar or a VEVENT lacks the
        properties needed for reconciliation.
    """
    try:
        calendar = vobject.readOne(data)
        vevents = [
            vevent
            for vevent in calendar.contents.get("vevent", [])
            if getattr(vevent, "recurrence_id", None) is None
        ]
        return [vevent_to_remote_event(vevent, href=href, etag=etag) for vevent in vevents]
    except MalformedRemoteDataError:
        raise
    except (vobject.base.ParseError, StopIteration, ValueError, TypeError) as exc:
        raise MalformedRemoteDataError(
            f"Unparseable calendar data at {href or 'unknown resource'}: {type(exc).__name__}"
        ) from exc


def serialize_event(
    event: Event,
    uid: str,
    *,
    now: datetime | None = None,
    sequence: int | None = None,
) -> str:
    """Render *event* as a VCALENDAR document with a single VEVENT.

    All-day events are written as ``VALUE=DATE`` with an exclusive end date.
    Timed events are written in UTC; an end at or before the start becomes
    start plus one hour.
    """
    stamp = (ensure_utc(now) or utcnow()).replace(microsecond=0)
    calendar = vobject.iCalendar()
    calendar.add("prodid").value = PRODID
    calendar.add("calscale").value = "GREGORIAN"

    vevent = calendar.add("vevent")
    vevent.add("uid").value = uid
    vevent.add("dtstamp").value = stamp
    vevent.add("last-modified").value = stamp
    vevent.add("sequence").value = str(sequence if sequence is not None else int(stamp.timestamp()))

    if event.all_day:
        first_day, end_day = all_day_bounds(event.start_at or stamp, event.end_at)
        vevent.add("dtstart").value = first_day
        vevent.add("dtend").value = end_day
    else:
        start_at = (event.start_at or stamp).replace(microsecond=0)
        end_at = event.end_at.replace(microsecond=0) if event.end_at is not None else start_at
        if end_at <= start_at:
            end_at = start_at + MIN_TIMED_DURATION
        vevent.add("dtstart").value = start_at
        vevent.add("dtend").value = end_at

    vevent.add("summary").value = event.title or ""
    if event.description and event.description.strip():
        vevent.add("description").value = event.description
    if event.location and event.location.strip():
        vevent.add("location").value = event.location
    for address in event.attendees:
        vevent.add("attendee").value = f"mailto:{address}"

    return calendar.serialize()
