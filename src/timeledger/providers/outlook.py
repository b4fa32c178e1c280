"""Microsoft Graph calendar client for Outlook connections."""

from __future__ import annotations

import asyncio
import html
import logging
import re
from collections.abc import AsyncIterator
from datetime import UTC, datetime, time
from typing import Any
from urllib.parse import quote

import httpx

from timeledger.config import HttpConfig, OutlookProviderConfig
from timeledger.errors import MalformedRemoteDataError
from timeledger.models import Credential, Event, Provider, RemoteEvent, SyncWindow
from timeledger.providers._http import Sleep, error_for_response, send_with_retry
from timeledger.providers.base import (
    CalendarProvider,
    IssueCallback,
    day_bounds,
    report,
    require_bearer,
    timed_bounds,
)

logger = logging.getLogger(__name__)

LABEL = "Microsoft Graph"
PAGE_SIZE = 100
PREFER = 'outlook.timezone="UTC", outlook.body-content-type="text"'

# Graph returns seven fractional digits; datetime accepts at most six.
_FRACTION_PATTERN = re.compile(r"(\.\d{6})\d+")
_LINE_BREAK_PATTERN = re.compile(r"<br\s*/?>|</p\s*>|</div\s*>", re.IGNORECASE)
_TAG_PATTERN = re.compile(r"<[^>]+>")


def _graph_datetime(value: datetime) -> str:
    return value.astimezone(UTC).replace(tzinfo=None).isoformat(timespec="seconds")


def _parse_graph_datetime(value: Any, *, time_zone: Any = "UTC") -> datetime:
    if not isinstance(value, str) or not value.strip():
        raise ValueError("Microsoft Graph event is missing a dateTime value")
    normalized = _FRACTION_PATTERN.sub(r"\1", value.strip())
    if normalized.endswith("Z"):
        normalized = f"{normalized[:-1]}+00:00"
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError as exc:
        raise ValueError(f"Microsoft Graph returned an invalid dateTime: {value}") from exc
    if parsed.tzinfo is None:
        if isinstance(time_zone, str) and time_zone.strip() not in ("", "UTC"):
            raise ValueError(f"Microsoft Graph returned a non-UTC time zone: {time_zone}")
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def _boundary(payload: Any) -> datetime:
    if not isinstance(payload, dict):
        raise ValueError("Microsoft Graph event is missing start/end payloads")
    return _parse_graph_datetime(payload.get("dateTime"), time_zone=payload.get("timeZone"))


def _text(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    return normalized or None


def _description(payload: dict[str, Any]) -> str | None:
    """Event body as plain text; an HTML body is reduced to its text."""
    body = payload.get("body")
    if not isinstance(body, dict):
        return None
    content = body.get("content")
    if not isinstance(content, str):
        return None
    if str(body.get("contentType", "")).lower() == "html":
        content = html.unescape(_TAG_PATTERN.sub("", _LINE_BREAK_PATTERN.sub("\n", content)))
    return _text(content)


def _attendees(payload: Any) -> list[str]:
    if not isinstance(payload, list):
        return []
    addresses: list[str] = []
    for entry in payload:
        if not isinstance(entry, dict):
            continue
        email = entry.get("emailAddress")
        if isinstance(email, dict) and isinstance(email.get("address"), str):
            addresses.append(email["address"])
    return addresses


def graph_event_to_remote_event(payload: dict[str, Any]) -> RemoteEvent | None:
    """Convert a Graph event resource; cancelled events return ``None``."""
    if payload.get("isCancelled") is True:
        return None
    event_id = _text(payload.get("id"))
    if event_id is None:
        raise ValueError("Microsoft Graph event payload is missing a non-empty id")

    location = payload.get("location")
    modified = _text(payload.get("lastModifiedDateTime"))
    return RemoteEvent(
        uid=event_id,
        title=_text(payload.get("subject")) or "",
        start_at=_boundary(payload.get("start")),
        end_at=_boundary(payload.get("end")),
        all_day=payload.get("isAllDay") is True,
        last_modified=_parse_graph_datetime(modified) if modified else None,
        description=_description(payload),
        location=_text(location.get("displayName")) if isinstance(location, dict) else None,
        attendees=_attendees(payload.get("attendees")),
        etag=_text(payload.get("@odata.etag")),
    )


def build_graph_event_body(event: Event) -> dict[str, Any]:
    """Translate a local event into a Graph event body.

    All-day events are sent with midnight boundaries and an exclusive end.
    """
    if event.all_day:
        first_day, end_day = day_bounds(event)
        start_at = datetime.combine(first_day, time.min, tzinfo=UTC)
        end_at = datetime.combine(end_day, time.min, tzinfo=UTC)
    else:
        start_at, end_at = timed_bounds(event)
    return {
        "subject": event.title,
        "body": {"contentType": "text", "content": event.description or ""},
        "start": {"dateTime": _graph_datetime(start_at), "timeZone": "UTC"},
        "end": {"dateTime": _graph_datetime(end_at), "timeZone": "UTC"},
        "isAllDay": event.all_day,
        "location": {"displayName": event.location or ""},
        "attendees": [
            {"emailAddress": {"address": address}, "type": "required"}
            for address in event.attendees
        ],
    }


class OutlookCalendarProvider(CalendarProvider):
    """Outlook calendar through Microsoft Graph ``/me`` endpoints.

    The Graph event ``id`` serves as the UID.
    """

    def __init__(
        self,
        config: OutlookProviderConfig,
        http_config: HttpConfig,
        http_client: httpx.AsyncClient | None = None,
        *,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._config = config
        self._http_config = http_config
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=http_config.timeout_seconds)
        self._sleep = sleep

    @property
    def provider(self) -> Provider:
        return Provider.OUTLOOK

    def _url(self, path: str) -> str:
        return f"{self._config.api_base_url}{path}"

    async def _request(
        self,
        method: str,
        url: str,
        credential: Credential,
        *,
        uid: str | None = None,
        **kwargs: Any,
    ) -> httpx.Response:
        bearer = require_bearer(credential, self.provider)
        response = await send_with_retry(
            self._http_client,
            method,
            url,
            config=self._http_config,
            label=LABEL,
            sleep=self._sleep,
            headers={"Authorization": f"Bearer {bearer.access_token}", "Prefer": PREFER},
            **kwargs,
        )
        if response.status_code < 200 or response.status_code >= 300:
            raise error_for_response(response, label=LABEL, uid=uid)
        return response

    @staticmethod
    def _json(response: httpx.Response) -> dict[str, Any]:
        try:
            payload = response.json()
        except ValueError as exc:
            raise MalformedRemoteDataError(
                "Microsoft Graph returned invalid JSON for a successful response"
            ) from exc
        if not isinstance(payload, dict):
            raise MalformedRemoteDataError("Microsoft Graph returned an unexpected payload shape")
        return payload

    async def list_events(
        self,
        credential: Credential,
        window: SyncWindow,
        *,
        on_issue: IssueCallback | None = None,
    ) -> AsyncIterator[RemoteEvent]:
        url: str | None = self._url("/me/calendarView")
        params: dict[str, Any] | None = {
            "startDateTime": _graph_datetime(window.start),
            "endDateTime": _graph_datetime(window.end),
            "$top": PAGE_SIZE,
        }
        while url is not None:
            payload = self._json(await self._request("GET", url, credential, params=params))
            items = payload.get("value")
            if not isinstance(items, list):
                raise MalformedRemoteDataError(
                    "Microsoft Graph calendarView response missing value"
                )
            logger.debug("Fetched Microsoft Graph calendarView page (%d items)", len(items))

            for item in items:
                if not isinstance(item, dict):
                    report(on_issue, MalformedRemoteDataError("Graph event is not an object"))
                    continue
                try:
                    remote = graph_event_to_remote_event(item)
                except ValueError as exc:
                    report(on_issue, MalformedRemoteDataError(str(exc), uid=_text(item.get("id"))))
                    continue
                if remote is not None:
                    yield remote

            # nextLink already carries the query string.
            url = _text(payload.get("@odata.nextLink"))
            params = None

    async def create_event(self, credential: Credential, event: Event) -> RemoteEvent:
        response = await self._request(
            "POST",
            self._url("/me/events"),
            credential,
            uid=event.uid,
            json=build_graph_event_body(event),
        )
        return self._remote_from_response(response, uid=event.uid)

    async def update_event(self, credential: Credential, uid: str, event: Event) -> RemoteEvent:
        response = await self._request(
            "PATCH",
            self._url(f"/me/events/{quote(uid, safe='')}"),
            credential,
            uid=uid,
            json=build_graph_event_body(event),
        )
        return self._remote_from_response(response, uid=uid)

    async def delete_event(self, credential: Credential, uid: str) -> None:
        await self._request(
            "DELETE", self._url(f"/me/events/{quote(uid, safe='')}"), credential, uid=uid
        )

    def _remote_from_response(self, response: httpx.Response, *, uid: str | None) -> RemoteEvent:
        try:
            remote = graph_event_to_remote_event(self._json(response))
        except ValueError as exc:
            raise MalformedRemoteDataError(str(exc), uid=uid) from exc
        if remote is None:
            raise MalformedRemoteDataError("Microsoft Graph returned a cancelled event", uid=uid)
        return remote

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()
