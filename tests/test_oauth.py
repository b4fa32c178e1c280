"""Unit tests for the OAuth refresh-token exchange."""

from __future__ import annotations

import json
from datetime import timedelta
from urllib.parse import parse_qs

import httpx
import pytest

from tests.fakes import NOW
from timeledger.config import GoogleProviderConfig, OutlookProviderConfig
from timeledger.errors import AuthExpiredError, TransportFailureError
from timeledger.models import Provider
from timeledger.oauth import DEFAULT_EXPIRES_IN_SECONDS, TokenRefresher

pytestmark = pytest.mark.unit


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def _google(handler) -> TokenRefresher:
    config = GoogleProviderConfig(client_id="client-id", client_secret="client-secret")
    return TokenRefresher.for_google(config, _client(handler))


def _form(request: httpx.Request) -> dict[str, str]:
    return {k: v[0] for k, v in parse_qs(request.content.decode()).items()}


class TestSuccessfulRefresh:
    async def test_google_refresh_posts_form_and_parses_grant(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(
                200, json={"access_token": "ya29.new", "expires_in": 1800, "scope": "calendar"}
            )

        grant = await _google(handler).refresh("refresh-1", now=NOW)

        assert grant.access_token == "ya29.new"
        assert grant.refresh_token is None
        assert grant.expires_at == NOW + timedelta(seconds=1800)
        assert grant.scope == "calendar"
        (request,) = seen
        assert str(request.url) == "https://oauth2.googleapis.com/token"
        form = _form(request)
        assert form["grant_type"] == "refresh_token"
        assert form["refresh_token"] == "refresh-1"
        assert "scope" not in form

    async def test_outlook_sends_scope_to_tenant_endpoint(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(
                200, json={"access_token": "eyJ.new", "refresh_token": "rotated"}
            )

        config = OutlookProviderConfig(client_id="app", client_secret="secret", tenant="contoso")
        grant = await TokenRefresher.for_outlook(config, _client(handler)).refresh("r", now=NOW)

        assert grant.refresh_token == "rotated"
        assert grant.scope == "offline_access Calendars.ReadWrite User.Read"
        assert seen[0].url.path == "/contoso/oauth2/v2.0/token"
        assert _form(seen[0])["scope"] == "offline_access Calendars.ReadWrite User.Read"

    @pytest.mark.parametrize("expires_in", [None, 0, -5, "soon", True])
    async def test_missing_or_invalid_expires_in_uses_default(self, expires_in) -> None:
        body = {"access_token": "tok"}
        if expires_in is not None:
            body["expires_in"] = expires_in

        grant = await _google(lambda request: httpx.Response(200, json=body)).refresh(
            "r", now=NOW
        )

        assert grant.expires_at == NOW + timedelta(seconds=DEFAULT_EXPIRES_IN_SECONDS)

    async def test_grant_repr_redacts_tokens(self) -> None:
        body = {"access_token": "ya29.secret", "refresh_token": "1//secret"}
        grant = await _google(lambda request: httpx.Response(200, json=body)).refresh("r")
        assert "secret" not in repr(grant)


class TestRejectedRefresh:
    async def test_invalid_grant_raises_auth_expired(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                400,
                json={"error": "invalid_grant", "error_description": "Token has been revoked."},
            )

        with pytest.raises(AuthExpiredError, match="invalid_grant: Token has been revoked"):
            await _google(handler).refresh("revoked")

    async def test_error_body_secrets_are_redacted(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(401, text="bad refresh_token=1//abcdef")

        with pytest.raises(AuthExpiredError) as exc_info:
            await _google(handler).refresh("1//abcdef")

        assert "1//abcdef" not in str(exc_info.value)

    async def test_missing_access_token_raises_auth_expired(self) -> None:
        refresher = _google(lambda request: httpx.Response(200, json={"token_type": "Bearer"}))
        with pytest.raises(AuthExpiredError, match="missing a non-empty access_token"):
            await refresher.refresh("r")

    async def test_invalid_json_raises_auth_expired(self) -> None:
        with pytest.raises(AuthExpiredError, match="invalid JSON"):
            await _google(lambda request: httpx.Response(200, text="<html>")).refresh("r")

    async def test_unconfigured_client_raises_auth_expired(self) -> None:
        refresher = TokenRefresher.for_google(
            GoogleProviderConfig(), _client(lambda request: httpx.Response(200))
        )
        with pytest.raises(AuthExpiredError, match="not configured"):
            await refresher.refresh("r")


class TestTransportFailures:
    async def test_server_error_is_transient(self) -> None:
        with pytest.raises(TransportFailureError, match="unavailable \\(503\\)"):
            await _google(lambda request: httpx.Response(503)).refresh("r")

    async def test_network_error_is_transient(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(TransportFailureError, match="ConnectError"):
            await _google(handler).refresh("r")

    async def test_network_error_message_omits_refresh_token(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout(json.dumps(_form(request)), request=request)

        with pytest.raises(TransportFailureError) as exc_info:
            await _google(handler).refresh("1//very-secret")

        assert "very-secret" not in str(exc_info.value)
        assert exc_info.value.kind.value == "transport_failure"
        assert Provider.GOOGLE.value in str(exc_info.value)
