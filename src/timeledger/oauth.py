"""OAuth refresh-token exchange for Google and Microsoft identity platforms.

A :class:`TokenRefresher` turns a refresh token into a fresh
:class:`TokenGrant`.  Rejections by the identity provider (``invalid_grant``
and any other 4xx, or a malformed token payload) raise ``AuthExpiredError``;
network failures raise ``TransportFailureError`` so a blip never forces the
user through consent again.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

import httpx

from timeledger.config import (
    GOOGLE_SCOPES,
    OUTLOOK_SCOPES,
    GoogleProviderConfig,
    OutlookProviderConfig,
)
from timeledger.errors import AuthExpiredError, TransportFailureError, sanitize_error_message
from timeledger.models import Provider

logger = logging.getLogger(__name__)

DEFAULT_EXPIRES_IN_SECONDS = 3600


@dataclass(frozen=True)
class TokenGrant:
    """Result of a successful refresh-token exchange."""

    access_token: str
    refresh_token: str | None
    expires_at: datetime | None
    scope: str | None

    def __repr__(self) -> str:
        return (
            "TokenGrant(access_token=<REDACTED>, "
            f"refresh_token={'<REDACTED>' if self.refresh_token else None}, "
            f"expires_at={self.expires_at!r}, scope={self.scope!r})"
        )


def _coerce_expires_in_seconds(value: Any) -> int:
    if isinstance(value, bool):
        return DEFAULT_EXPIRES_IN_SECONDS
    if isinstance(value, int | float):
        return int(value) if value > 0 else DEFAULT_EXPIRES_IN_SECONDS
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip()) or DEFAULT_EXPIRES_IN_SECONDS
    return DEFAULT_EXPIRES_IN_SECONDS


def _safe_oauth_error_message(response: httpx.Response) -> str:
    """Return a short description of an OAuth error response without secrets."""
    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        error = payload.get("error")
        description = payload.get("error_description")
        if isinstance(error, str) and error.strip():
            if isinstance(description, str) and description.strip():
                return sanitize_error_message(f"{error}: {description}")
            return sanitize_error_message(error)
        if isinstance(error, dict):
            message = error.get("message")
            if isinstance(message, str) and message.strip():
                return sanitize_error_message(message)

    raw_text = response.text.strip()
    if raw_text:
        return sanitize_error_message(raw_text)
    return "Request failed without an error payload"


class TokenRefresher:
    """Refresh-token exchange against one provider's token endpoint."""

    def __init__(
        self,
        *,
        provider: Provider,
        token_url: str,
        client_id: str | None,
        client_secret: str | None,
        http_client: httpx.AsyncClient,
        scopes: tuple[str, ...] = (),
        send_scope: bool = False,
    ) -> None:
        self.provider = provider
        self._token_url = token_url
        self._client_id = client_id
        self._client_secret = client_secret
        self._http_client = http_client
        self._scopes = scopes
        self._send_scope = send_scope

    @classmethod
    def for_google(
        cls, config: GoogleProviderConfig, http_client: httpx.AsyncClient
    ) -> TokenRefresher:
        return cls(
            provider=Provider.GOOGLE,
            token_url=config.token_url,
            client_id=config.client_id,
            client_secret=config.client_secret,
            http_client=http_client,
            scopes=GOOGLE_SCOPES,
        )

    @classmethod
    def for_outlook(
        cls, config: OutlookProviderConfig, http_client: httpx.AsyncClient
    ) -> TokenRefresher:
        return cls(
            provider=Provider.OUTLOOK,
            token_url=config.token_url,
            client_id=config.client_id,
            client_secret=config.client_secret,
            http_client=http_client,
            scopes=OUTLOOK_SCOPES,
            send_scope=True,
        )

    @property
    def default_scope(self) -> str:
        return " ".join(self._scopes)

    async def refresh(self, refresh_token: str, *, now: datetime | None = None) -> TokenGrant:
        """Exchange *refresh_token* for a new access token.

        The provider may omit a rotated refresh token; callers keep the old
        one in that case.
        """
        if not self._client_id or not self._client_secret:
            raise AuthExpiredError(
                f"{self.provider.value} OAuth client credentials are not configured"
            )

        form = {
            "client_id": self._client_id,
            "client_secret": self._client_secret,
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
        }
        if self._send_scope and self._scopes:
            form["scope"] = self.default_scope

        try:
            response = await self._http_client.post(
                self._token_url,
                data=form,
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise TransportFailureError(
                f"{self.provider.value} OAuth token refresh request failed: {type(exc).__name__}"
            ) from exc

        if response.status_code >= 500:
            raise TransportFailureError(
                f"{self.provider.value} OAuth token endpoint unavailable ({response.status_code})"
            )

        if response.status_code < 200 or response.status_code >= 300:
            logger.warning(
                "%s token refresh rejected (status=%d)", self.provider.value, response.status_code
            )
            raise AuthExpiredError(
                f"{self.provider.value} OAuth token refresh failed "
                f"({response.status_code}): {_safe_oauth_error_message(response)}"
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise AuthExpiredError(
                f"{self.provider.value} OAuth token endpoint returned invalid JSON"
            ) from exc

        access_token = payload.get("access_token") if isinstance(payload, dict) else None
        if not isinstance(access_token, str) or not access_token.strip():
            raise AuthExpiredError(
                f"{self.provider.value} OAuth token response is missing a non-empty access_token"
            )

        rotated = payload.get("refresh_token")
        scope = payload.get("scope")
        expires_in_seconds = _coerce_expires_in_seconds(payload.get("expires_in"))
        issued_at = now or datetime.now(UTC)

        return TokenGrant(
            access_token=access_token.strip(),
            refresh_token=rotated.strip() if isinstance(rotated, str) and rotated.strip() else None,
            expires_at=issued_at + timedelta(seconds=expires_in_seconds),
            scope=scope.strip() if isinstance(scope, str) and scope.strip() else self.default_scope,
        )
