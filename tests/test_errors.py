"""Tests for the error taxonomy and secret redaction."""

from __future__ import annotations

import pytest

from timeledger.errors import (
    AuthExpiredError,
    ErrorKind,
    LocalPersistenceError,
    RateLimitedError,
    RemoteRejectedError,
    redact_secrets,
    sanitize_error_message,
)

pytestmark = pytest.mark.unit


class TestRedaction:
    @pytest.mark.parametrize(
        "message",
        [
            "refresh failed: refresh_token=1//abc123",
            "Authorization: Bearer ya29.abc123",
            'payload {"access_token": "abc123"}',
            "client_secret: abc123",
            "Basic YWRhOmFiYzEyMw==",
            "password=abc123&user=ada",
        ],
    )
    def test_secret_values_are_removed(self, message: str) -> None:
        redacted = redact_secrets(message)
        assert "abc123" not in redacted
        assert "YWRhOmFiYzEyMw" not in redacted
        assert "REDACTED" in redacted

    def test_plain_messages_are_untouched(self) -> None:
        assert redact_secrets("HTTP 503 from graph.microsoft.com") == (
            "HTTP 503 from graph.microsoft.com"
        )

    def test_sanitize_collapses_whitespace_and_truncates(self) -> None:
        assert sanitize_error_message("a\n  b\tc") == "a b c"
        assert len(sanitize_error_message("x" * 500)) == 200


class TestErrors:
    def test_messages_are_redacted_on_construction(self) -> None:
        error = AuthExpiredError("rejected access_token=abc123")
        assert "abc123" not in str(error)
        assert error.kind is ErrorKind.AUTH_EXPIRED

    def test_event_errors_carry_uid(self) -> None:
        error = RemoteRejectedError("bad payload", uid="evt-1", status_code=400)
        assert error.uid == "evt-1"
        assert error.status_code == 400
        assert error.kind is ErrorKind.REMOTE_REJECTED

    def test_rate_limited_carries_retry_after(self) -> None:
        assert RateLimitedError("slow down", retry_after=12.0).retry_after == 12.0

    def test_persistence_kind(self) -> None:
        assert LocalPersistenceError("rolled back").kind.value == "local_persistence_failure"
