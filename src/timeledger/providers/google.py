"""Google Calendar API v3 client."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from datetime import UTC, date, datetime
from typing import Any
from urllib.parse import quote

import httpx

from timeledger.config import GoogleProviderConfig, HttpConfig
from timeledger.errors import MalformedRemoteDataError
from timeledger.models import Credential, Event, Provider, RemoteEvent, SyncWindow
from timeledger.providers._http import Sleep, error_for_response, error_reasons, send_with_retry
from timeledger.providers.base import (
    CalendarProvider,
    IssueCallback,
    day_bounds,
    report,
    require_bearer,
    timed_bounds,
)

logger = logging.getLogger(__name__)

LABEL = "Google Calendar"
PAGE_SIZE = 250
RATE_LIMIT_REASONS = frozenset({"rateLimitExceeded", "userRateLimitExceeded", "quotaExceeded"})


def _google_rfc3339(value: datetime) -> str:
    normalized = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    return normalized.astimezone(UTC).isoformat().replace("+00:00", "Z")


def _parse_google_datetime(value: str) -> datetime:
    normalized = value.strip()
    if normalized.endswith("Z"):
        normalized = f"{normalized[:-1]}+00:00"
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError as exc:
        raise ValueError(f"Google Calendar returned an invalid dateTime: {value}") from exc
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)


def _parse_google_boundary(payload: Any) -> tuple[datetime, bool]:
    if not isinstance(payload, dict):
        raise ValueError("Google Calendar event is missing start/end payloads")
    date_time = payload.get("dateTime")
    if isinstance(date_time, str) and date_time.strip():
        return _parse_google_datetime(date_time), False
    date_value = payload.get("date")
    if isinstance(date_value, str) and date_value.strip():
        try:
            parsed = date.fromisoformat(date_value.strip())
        except ValueError as exc:
            msg = f"Google Calendar returned an invalid date value: {date_value}"
            raise ValueError(msg) from exc
        return datetime(parsed.year, parsed.month, parsed.day, tzinfo=UTC), True
    raise ValueError("Google Calendar event is missing start/end dateTime or date values")


def _normalize_optional_text(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    return normalized or None


def _extract_attendees(payload: Any) -> list[str]:
    if not isinstance(payload, list):
        return []
    return [
        entry["email"]
        for entry in payload
        if isinstance(entry, dict) and isinstance(entry.get("email"), str)
    ]


def google_event_to_remote_event(payload: dict[str, Any]) -> RemoteEvent | None:
    """Convert a Google event resource; cancelled events return ``None``."""
    status_raw = payload.get("status")
    if isinstance(status_raw, str) and status_raw.lower() == "cancelled":
        return None

    event_id = _normalize_optional_text(payload.get("id"))
    if event_id is None:
        raise ValueError("Google Calendar event payload is missing a non-empty id")

    start_at, all_day = _parse_google_boundary(payload.get("start"))
    end_at, _ = _parse_google_boundary(payload.get("end"))
    updated = _normalize_optional_text(payload.get("updated"))

    return RemoteEvent(
        uid=event_id,
        title=_normalize_optional_text(payload.get("summary")) or "",
        start_at=start_at,
        end_at=end_at,
        all_day=all_day,
        last_modified=_parse_google_datetime(updated) if updated else None,
        description=_normalize_optional_text(payload.get("description")),
        location=_normalize_optional_text(payload.get("location")),
        attendees=_extract_attendees(payload.get("attendees")),
        etag=_normalize_optional_text(payload.get("etag")),
    )


def build_google_event_body(event: Event) -> dict[str, Any]:
    """Translate a local event into a Google Calendar event body."""
    body: dict[str, Any] = {
        "summary": event.title,
        "description": event.description or "",
        "location": event.location or "",
        "attendees": [{"email": address} for address in event.attendees],
    }
    if event.all_day:
        first_day, end_day = day_bounds(event)
        body["start"] = {"date": first_day.isoformat()}
        body["end"] = {"date": end_day.isoformat()}
    else:
        start_at, end_at = timed_bounds(event)
        body["start"] = {"dateTime": _google_rfc3339(start_at), "timeZone": "UTC"}
        body["end"] = {"dateTime": _google_rfc3339(end_at), "timeZone": "UTC"}
    return body


def _is_quota_response(response: httpx.Response) -> bool:
    return response.status_code == 403 and bool(error_reasons(response) & RATE_LIMIT_REASONS)


class GoogleCalendarProvider(CalendarProvider):
    """Google Calendar client authenticated with a bearer token per call.

    The provider event ``id`` is used as the UID since updates and deletes
    address events by id.
    """

    def __init__(
        self,
        config: GoogleProviderConfig,
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
        return Provider.GOOGLE

    @property
    def _events_path(self) -> str:
        calendar_id = quote(self._config.calendar_id, safe="")
        return f"{self._config.api_base_url}/calendars/{calendar_id}/events"

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
            retry_response=_is_quota_response,
            sleep=self._sleep,
            headers={"Authorization": f"Bearer {bearer.access_token}"},
            **kwargs,
        )
        if response.status_code < 200 or response.status_code >= 300:
            raise error_for_response(
                response, label=LABEL, uid=uid, rate_limit_reasons=RATE_LIMIT_REASONS
            )
        return response

    @staticmethod
    def _json(response: httpx.Response) -> dict[str, Any]:
        try:
            payload = response.json()
        except ValueError as exc:
            raise MalformedRemoteDataError(
                "Google Calendar API returned invalid JSON for a successful response"
            ) from exc
        if not isinstance(payload, dict):
            raise MalformedRemoteDataError(
                "Google Calendar API returned an unexpected JSON payload shape"
            )
        return payload

    async def list_events(
        self,
        credential: Credential,
        window: SyncWindow,
        *,
        on_issue: IssueCallback | None = None,
    ) -> AsyncIterator[RemoteEvent]:
        params: dict[str, Any] = {
            "timeMin": _google_rfc3339(window.start),
            "timeMax": _google_rfc3339(window.end),
            "singleEvents": "true",
            "showDeleted": "false",
            "maxResults": PAGE_SIZE,
        }
        page = 0
        while True:
            payload = self._json(
                await self._request("GET", self._events_path, credential, params=params)
            )
            items = payload.get("items")
            if not isinstance(items, list):
                raise MalformedRemoteDataError(
                    "Google Calendar events response missing items array"
                )
            page += 1
            logger.debug("Fetched Google Calendar page %d (%d items)", page, len(items))

            for item in items:
                if not isinstance(item, dict):
                    report(
                        on_issue, MalformedRemoteDataError("Google Calendar item is not an object")
                    )
                    continue
                try:
                    remote = google_event_to_remote_event(item)
                except ValueError as exc:
                    report(
                        on_issue,
                        MalformedRemoteDataError(
                            str(exc), uid=_normalize_optional_text(item.get("id"))
                        ),
                    )
                    continue
                if remote is not None:
                    yield remote

            next_token = _normalize_optional_text(payload.get("nextPageToken"))
            if next_token is None:
                return
            params = {**params, "pageToken": next_token}

    async def create_event(self, credential: Credential, event: Event) -> RemoteEvent:
        response = await self._request(
            "POST",
            self._events_path,
            credential,
            uid=event.uid,
            json=build_google_event_body(event),
        )
        return self._remote_from_response(response, uid=event.uid)

    async def update_event(self, credential: Credential, uid: str, event: Event) -> RemoteEvent:
        url = f"{self._events_path}/{quote(uid, safe='')}"
        response = await self._request(
            "PATCH", url, credential, uid=uid, json=build_google_event_body(event)
        )
        return self._remote_from_response(response, uid=uid)

    async def delete_event(self, credential: Credential, uid: str) -> None:
        url = f"{self._events_path}/{quote(uid, safe='')}"
        await self._request("DELETE", url, credential, uid=uid, params={"sendUpdates": "none"})

    def _remote_from_response(self, response: httpx.Response, *, uid: str | None) -> RemoteEvent:
        try:
            remote = google_event_to_remote_event(self._json(response))
        except ValueError as exc:
            raise MalformedRemoteDataError(str(exc), uid=uid) from exc
        if remote is None:
            raise MalformedRemoteDataError("Google Calendar returned a cancelled event", uid=uid)
        return remote

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()
