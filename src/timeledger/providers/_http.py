"""HTTP helpers shared by the provider clients: bounded retries and error mapping."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Collection
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from typing import Any

import httpx

from timeledger.config import HttpConfig
from timeledger.errors import (
    AuthExpiredError,
    CalendarSyncError,
    RateLimitedError,
    RemoteNotFoundError,
    RemoteRejectedError,
    TransportFailureError,
    sanitize_error_message,
)

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})
MAX_RETRY_AFTER_SECONDS = 60.0

Sleep = Callable[[float], Awaitable[None]]


def parse_retry_after(value: str | None, *, now: datetime | None = None) -> float | None:
    """Parse a ``Retry-After`` header given in seconds or as an HTTP date."""
    if value is None:
        return None
    value = value.strip()
    if not value:
        return None
    try:
        seconds = float(value)
    except ValueError:
        try:
            when = parsedate_to_datetime(value)
        except (TypeError, ValueError):
            return None
        if when.tzinfo is None:
            when = when.replace(tzinfo=UTC)
        seconds = (when - (now or datetime.now(UTC))).total_seconds()
    return min(max(seconds, 0.0), MAX_RETRY_AFTER_SECONDS)


async def send_with_retry(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    config: HttpConfig,
    label: str,
    retry_response: Callable[[httpx.Response], bool] | None = None,
    sleep: Sleep = asyncio.sleep,
    **kwargs: Any,
) -> httpx.Response:
    """Send a request, retrying timeouts, transport errors, 429 and 5xx.

    Other 4xx responses are returned immediately.  After ``config.max_retries``
    retries the last response is returned so the caller can map it; a
    request that never produced a response raises ``TransportFailureError``.

    *retry_response* marks additional responses as retryable (Google reports
    quota exhaustion as 403).
    """
    attempt = 0
    while True:
        try:
            response = await client.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            if attempt >= config.max_retries:
                raise TransportFailureError(
                    f"{label} request failed after {attempt + 1} attempts: {type(exc).__name__}"
                ) from exc
            delay = config.backoff_seconds * (2**attempt)
            logger.warning(
                "%s request error (%s), retrying in %.1fs (attempt %d/%d)",
                label,
                type(exc).__name__,
                delay,
                attempt + 1,
                config.max_retries,
            )
        else:
            retryable = response.status_code in RETRYABLE_STATUS_CODES or (
                retry_response is not None and retry_response(response)
            )
            if not retryable or attempt >= config.max_retries:
                return response
            delay = config.backoff_seconds * (2**attempt)
            if response.status_code == 429:
                retry_after = parse_retry_after(response.headers.get("Retry-After"))
                if retry_after is not None:
                    delay = retry_after
            logger.warning(
                "%s responded %d, retrying in %.1fs (attempt %d/%d)",
                label,
                response.status_code,
                delay,
                attempt + 1,
                config.max_retries,
            )
        await sleep(delay)
        attempt += 1


def error_payload_message(response: httpx.Response) -> str:
    """Extract a short, redacted message from a provider error response."""
    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict):
            message = error.get("message")
            code = error.get("code")
            if isinstance(message, str) and message.strip():
                if isinstance(code, str) and code.strip():
                    return sanitize_error_message(f"{code}: {message}")
                return sanitize_error_message(message)
        if isinstance(error, str) and error.strip():
            description = payload.get("error_description")
            if isinstance(description, str) and description.strip():
                return sanitize_error_message(f"{error}: {description}")
            return sanitize_error_message(error)

    raw_text = response.text.strip()
    if raw_text:
        return sanitize_error_message(raw_text)
    return "Request failed without an error payload"


def error_for_response(
    response: httpx.Response,
    *,
    label: str,
    uid: str | None = None,
    rate_limit_reasons: Collection[str] = (),
) -> CalendarSyncError:
    """Map a non-success provider response to the sync error taxonomy."""
    status = response.status_code
    message = f"{label} request failed ({status}): {error_payload_message(response)}"

    if status == 401:
        return AuthExpiredError(message, uid=uid)
    if status == 429 or (status == 403 and error_reasons(response) & set(rate_limit_reasons)):
        return RateLimitedError(
            message,
            uid=uid,
            retry_after=parse_retry_after(response.headers.get("Retry-After")),
        )
    if status in (404, 410):
        return RemoteNotFoundError(message, uid=uid)
    if status >= 500:
        return TransportFailureError(message, uid=uid)
    return RemoteRejectedError(message, uid=uid, status_code=status)


def error_reasons(response: httpx.Response) -> set[str]:
    """Return the ``error.errors[].reason`` values of a Google-style error body."""
    try:
        payload = response.json()
    except ValueError:
        return set()
    if not isinstance(payload, dict):
        return set()
    error = payload.get("error")
    if not isinstance(error, dict):
        return set()
    reasons: set[str] = set()
    for entry in error.get("errors") or []:
        if isinstance(entry, dict) and isinstance(entry.get("reason"), str):
            reasons.add(entry["reason"])
    return reasons
