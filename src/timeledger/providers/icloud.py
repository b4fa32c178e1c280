"""iCloud CalDAV client.

Discovery walks ``/.well-known/caldav`` to the user's principal, then to the
calendar home, then lists calendar collections with their privileges.  The
result is cached per username for the lifetime of the client.  Event
resources live at ``{calendar}/{uid}.ics``; writes are conditional on the
resource etag.
"""

from __future__ import annotations

import asyncio
import logging
import re
import uuid
import xml.etree.ElementTree as ET
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any
from urllib.parse import urljoin, urlsplit
from xml.sax.saxutils import escape

import httpx

from timeledger.config import HttpConfig, ICloudProviderConfig
from timeledger.errors import MalformedRemoteDataError, RemoteNotFoundError
from timeledger.models import (
    BasicCredential,
    Credential,
    Event,
    Provider,
    RemoteEvent,
    SyncWindow,
    utcnow,
)
from timeledger.providers._http import Sleep, error_for_response, send_with_retry
from timeledger.providers.base import CalendarProvider, IssueCallback, report, require_basic
from timeledger.providers.ical import parse_calendar_data, serialize_event

logger = logging.getLogger(__name__)

LABEL = "iCloud CalDAV"
DAV_NS = "DAV:"
CALDAV_NS = "urn:ietf:params:xml:ns:caldav"
WRITE_PRIVILEGES = frozenset({"write", "write-content", "write-properties", "all"})

_XML_CONTENT_TYPE = "application/xml; charset=utf-8"
_ICS_CONTENT_TYPE = "text/calendar; charset=utf-8"
_UID_LINE = re.compile(r"^UID:(.+?)\r?$", re.MULTILINE)

_PRINCIPAL_QUERY = """<?xml version="1.0" encoding="utf-8"?>
<d:propfind xmlns:d="DAV:">
  <d:prop>
    <d:current-user-principal/>
  </d:prop>
</d:propfind>"""

_HOME_SET_QUERY = """<?xml version="1.0" encoding="utf-8"?>
<d:propfind xmlns:d="DAV:" xmlns:c="urn:ietf:params:xml:ns:caldav">
  <d:prop>
    <c:calendar-home-set/>
  </d:prop>
</d:propfind>"""

_CALENDAR_LIST_QUERY = """<?xml version="1.0" encoding="utf-8"?>
<d:propfind xmlns:d="DAV:" xmlns:c="urn:ietf:params:xml:ns:caldav">
  <d:prop>
    <d:displayname/>
    <d:resourcetype/>
    <c:supported-calendar-component-set/>
    <d:current-user-privilege-set/>
  </d:prop>
</d:propfind>"""

_TIME_RANGE_QUERY = """<?xml version="1.0" encoding="utf-8"?>
<c:calendar-query xmlns:d="DAV:" xmlns:c="urn:ietf:params:xml:ns:caldav">
  <d:prop>
    <d:getetag/>
    <c:calendar-data/>
  </d:prop>
  <c:filter>
    <c:comp-filter name="VCALENDAR">
      <c:comp-filter name="VEVENT">
        <c:time-range start="{start}" end="{end}"/>
      </c:comp-filter>
    </c:comp-filter>
  </c:filter>
</c:calendar-query>"""

_UID_QUERY = """<?xml version="1.0" encoding="utf-8"?>
<c:calendar-query xmlns:d="DAV:" xmlns:c="urn:ietf:params:xml:ns:caldav">
  <d:prop>
    <d:getetag/>
  </d:prop>
  <c:filter>
    <c:comp-filter name="VCALENDAR">
      <c:comp-filter name="VEVENT">
        <c:prop-filter name="UID">
          <c:text-match collation="i;octet">{uid}</c:text-match>
        </c:prop-filter>
      </c:comp-filter>
    </c:comp-filter>
  </c:filter>
</c:calendar-query>"""


def _dav(tag: str) -> str:
    return f"{{{DAV_NS}}}{tag}"


def _caldav(tag: str) -> str:
    return f"{{{CALDAV_NS}}}{tag}"


def _caldav_timestamp(value: datetime) -> str:
    return value.astimezone(UTC).strftime("%Y%m%dT%H%M%SZ")


def _parse_multistatus(response: httpx.Response) -> ET.Element:
    try:
        return ET.fromstring(response.content)
    except ET.ParseError as exc:
        raise MalformedRemoteDataError(f"{LABEL} returned malformed XML") from exc


def _first_href(root: ET.Element, container: str) -> str | None:
    for element in root.iter(container):
        href = element.find(_dav("href"))
        if href is not None and href.text and href.text.strip():
            return href.text.strip()
    return None


def _sniff_uid(data: str) -> str | None:
    match = _UID_LINE.search(data)
    return match.group(1).strip() if match else None


def _origin(url: str) -> str:
    parts = urlsplit(url)
    return f"{parts.scheme}://{parts.netloc}/"


@dataclass(frozen=True)
class CalDavCalendar:
    href: str
    name: str
    can_write: bool


@dataclass
class CalDavContext:
    """Discovered calendar collections for one account."""

    base_url: str
    calendars: list[CalDavCalendar] = field(default_factory=list)

    def url(self, href: str) -> str:
        return urljoin(self.base_url, href)

    @property
    def write_target(self) -> CalDavCalendar:
        return next((c for c in self.calendars if c.can_write), self.calendars[0])


def parse_calendar_list(root: ET.Element) -> list[CalDavCalendar]:
    """Extract VEVENT-capable calendar collections from a Depth 1 PROPFIND."""
    calendars: list[CalDavCalendar] = []
    for response in root.iter(_dav("response")):
        href_element = response.find(_dav("href"))
        href = href_element.text.strip() if href_element is not None and href_element.text else ""
        resource_type = response.find(f".//{_dav('resourcetype')}")
        if not href or resource_type is None or resource_type.find(_caldav("calendar")) is None:
            continue

        components = {
            (comp.get("name") or "").upper()
            for comp in response.iter(_caldav("comp"))
        }
        if components and "VEVENT" not in components:
            continue

        privileges = {
            child.tag.rsplit("}", 1)[-1].lower()
            for privilege in response.iter(_dav("privilege"))
            for child in privilege
        }
        name_element = response.find(f".//{_dav('displayname')}")
        name = (name_element.text or "").strip() if name_element is not None else ""
        calendars.append(
            CalDavCalendar(href=href, name=name, can_write=bool(privileges & WRITE_PRIVILEGES))
        )
    return calendars


class ICloudCalendarProvider(CalendarProvider):
    """CalDAV client for iCloud using a username and app-specific password.

    UIDs of new events are generated client-side and name the resource.
    """

    def __init__(
        self,
        config: ICloudProviderConfig,
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
        self._contexts: dict[str, CalDavContext] = {}
        self._discovery_locks: dict[str, asyncio.Lock] = {}

    @property
    def provider(self) -> Provider:
        return Provider.ICLOUD

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _send(
        self,
        method: str,
        url: str,
        credential: BasicCredential,
        *,
        headers: dict[str, str] | None = None,
        content: str | None = None,
    ) -> httpx.Response:
        return await send_with_retry(
            self._http_client,
            method,
            url,
            config=self._http_config,
            label=LABEL,
            sleep=self._sleep,
            auth=httpx.BasicAuth(credential.username, credential.password),
            headers=headers,
            content=content.encode("utf-8") if content is not None else None,
            follow_redirects=True,
        )

    async def _request(
        self,
        method: str,
        url: str,
        credential: BasicCredential,
        *,
        uid: str | None = None,
        headers: dict[str, str] | None = None,
        content: str | None = None,
    ) -> httpx.Response:
        response = await self._send(method, url, credential, headers=headers, content=content)
        if response.status_code < 200 or response.status_code >= 300:
            if response.status_code == 401:
                self._contexts.pop(credential.username, None)
            raise error_for_response(response, label=LABEL, uid=uid)
        return response

    async def _xml(
        self,
        method: str,
        url: str,
        credential: BasicCredential,
        body: str,
        *,
        depth: str,
    ) -> tuple[ET.Element, httpx.Response]:
        response = await self._request(
            method,
            url,
            credential,
            headers={"Depth": depth, "Content-Type": _XML_CONTENT_TYPE},
            content=body,
        )
        return _parse_multistatus(response), response

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------

    async def _context(self, credential: BasicCredential) -> CalDavContext:
        if credential.calendar_url:
            return CalDavContext(
                base_url=_origin(credential.calendar_url),
                calendars=[
                    CalDavCalendar(
                        href=urlsplit(credential.calendar_url).path, name="", can_write=True
                    )
                ],
            )

        cached = self._contexts.get(credential.username)
        if cached is not None:
            return cached

        lock = self._discovery_locks.setdefault(credential.username, asyncio.Lock())
        async with lock:
            cached = self._contexts.get(credential.username)
            if cached is None:
                cached = await self._discover(credential)
                self._contexts[credential.username] = cached
        return cached

    async def _discover(self, credential: BasicCredential) -> CalDavContext:
        base_url = self._config.base_url
        root, _ = await self._xml(
            "PROPFIND",
            urljoin(base_url, "/.well-known/caldav"),
            credential,
            _PRINCIPAL_QUERY,
            depth="0",
        )
        principal = _first_href(root, _dav("current-user-principal"))
        if principal is None:
            raise MalformedRemoteDataError(f"{LABEL} did not report a current-user-principal")

        root, response = await self._xml(
            "PROPFIND", urljoin(base_url, principal), credential, _HOME_SET_QUERY, depth="0"
        )
        mme_host = response.headers.get("X-Apple-MMe-Host", "").strip().rstrip("/")
        base_url = f"https://{mme_host}/" if mme_host else _origin(str(response.url))

        home = _first_href(root, _caldav("calendar-home-set"))
        if home is None:
            raise MalformedRemoteDataError(f"{LABEL} did not report a calendar-home-set")
        if urlsplit(home).scheme:
            base_url = _origin(home)
            home = urlsplit(home).path

        root, _ = await self._xml(
            "PROPFIND", urljoin(base_url, home), credential, _CALENDAR_LIST_QUERY, depth="1"
        )
        calendars = parse_calendar_list(root)
        writable = [calendar for calendar in calendars if calendar.can_write]
        logger.info(
            "Discovered %d CalDAV calendars (%d writable) at %s",
            len(calendars),
            len(writable),
            base_url,
        )
        if writable:
            calendars = writable
        if not calendars:
            raise MalformedRemoteDataError(f"{LABEL} account has no event calendars")
        return CalDavContext(base_url=base_url, calendars=calendars)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def list_events(
        self,
        credential: Credential,
        window: SyncWindow,
        *,
        on_issue: IssueCallback | None = None,
    ) -> AsyncIterator[RemoteEvent]:
        basic = require_basic(credential, self.provider)
        context = await self._context(basic)
        query = _TIME_RANGE_QUERY.format(
            start=_caldav_timestamp(window.start), end=_caldav_timestamp(window.end)
        )
        for calendar in context.calendars:
            root, _ = await self._xml(
                "REPORT", context.url(calendar.href), basic, query, depth="1"
            )
            for response in root.iter(_dav("response")):
                data_element = response.find(f".//{_caldav('calendar-data')}")
                if data_element is None or not (data_element.text or "").strip():
                    continue
                href_element = response.find(_dav("href"))
                etag_element = response.find(f".//{_dav('getetag')}")
                data = data_element.text or ""
                try:
                    events = parse_calendar_data(
                        data,
                        href=href_element.text.strip() if href_element is not None else None,
                        etag=etag_element.text if etag_element is not None else None,
                    )
                except MalformedRemoteDataError as exc:
                    report(on_issue, MalformedRemoteDataError(exc.message, uid=_sniff_uid(data)))
                    continue
                for event in events:
                    yield event

    async def _find(
        self, credential: BasicCredential, context: CalDavContext, uid: str
    ) -> tuple[str, str | None]:
        query = _UID_QUERY.format(uid=escape(uid))
        for calendar in context.calendars:
            root, _ = await self._xml(
                "REPORT", context.url(calendar.href), credential, query, depth="1"
            )
            for response in root.iter(_dav("response")):
                href_element = response.find(_dav("href"))
                if href_element is None or not (href_element.text or "").strip():
                    continue
                etag_element = response.find(f".//{_dav('getetag')}")
                etag = etag_element.text if etag_element is not None else None
                return href_element.text.strip(), etag
        raise RemoteNotFoundError(f"{LABEL} has no event with this UID", uid=uid)

    def _written(self, ics: str, href: str, response: httpx.Response, uid: str) -> RemoteEvent:
        events = parse_calendar_data(ics, href=href, etag=response.headers.get("ETag"))
        if not events:
            raise MalformedRemoteDataError("Serialized event could not be read back", uid=uid)
        return events[0]

    async def create_event(self, credential: Credential, event: Event) -> RemoteEvent:
        basic = require_basic(credential, self.provider)
        context = await self._context(basic)
        uid = event.uid or uuid.uuid4().hex
        href = f"{context.write_target.href.rstrip('/')}/{uid}.ics"
        ics = serialize_event(event, uid, now=utcnow())
        response = await self._request(
            "PUT",
            context.url(href),
            basic,
            uid=uid,
            headers={"Content-Type": _ICS_CONTENT_TYPE, "If-None-Match": "*"},
            content=ics,
        )
        logger.debug("Created CalDAV resource %s", href)
        return self._written(ics, href, response, uid)

    async def update_event(self, credential: Credential, uid: str, event: Event) -> RemoteEvent:
        basic = require_basic(credential, self.provider)
        context = await self._context(basic)
        href, etag = await self._find(basic, context, uid)
        ics = serialize_event(event, uid, now=utcnow())
        headers = {"Content-Type": _ICS_CONTENT_TYPE}
        if etag:
            headers["If-Match"] = etag

        response = await self._send("PUT", context.url(href), basic, headers=headers, content=ics)
        if response.status_code in (409, 412):
            logger.info(
                "CalDAV precondition failed (status=%d), retrying without etag",
                response.status_code,
            )
            response = await self._send(
                "PUT",
                context.url(href),
                basic,
                headers={"Content-Type": _ICS_CONTENT_TYPE},
                content=ics,
            )
        if response.status_code < 200 or response.status_code >= 300:
            raise error_for_response(response, label=LABEL, uid=uid)
        return self._written(ics, href, response, uid)

    async def delete_event(self, credential: Credential, uid: str) -> None:
        basic = require_basic(credential, self.provider)
        context = await self._context(basic)
        href, etag = await self._find(basic, context, uid)
        headers: dict[str, Any] = {"If-Match": etag} if etag else {}
        await self._request("DELETE", context.url(href), basic, uid=uid, headers=headers)

    async def aclose(self) -> None:
        self._contexts.clear()
        if self._owns_http_client:
            await self._http_client.aclose()
