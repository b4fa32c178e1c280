"""Error taxonomy shared by the credential store, provider clients and orchestrator.

Per-event errors (``RemoteRejectedError``, ``MalformedRemoteDataError``) are
recovered by the orchestrator: recorded in the run outcome and skipped.
Per-connection errors (``AuthExpiredError``, exhausted
``TransportFailureError``, ``LocalPersistenceError``) end that connection's run.
"""

from __future__ import annotations

import re
from enum import StrEnum


class ErrorKind(StrEnum):
    """Stable identifiers surfaced in run outcomes and API payloads."""

    AUTH_EXPIRED = "auth_expired"
    RATE_LIMITED = "rate_limited"
    TRANSPORT_FAILURE = "transport_failure"
    REMOTE_REJECTED = "remote_rejected"
    REMOTE_NOT_FOUND = "remote_not_found"
    MALFORMED_REMOTE_DATA = "malformed_remote_data"
    LOCAL_PERSISTENCE_FAILURE = "local_persistence_failure"
    CONFIGURATION = "configuration"


class CalendarSyncError(RuntimeError):
    """Base error for the sync engine.

    ``uid`` is set when the error concerns a single event.
    """

    kind: ErrorKind = ErrorKind.TRANSPORT_FAILURE

    def __init__(self, message: str, *, uid: str | None = None) -> None:
        self.message = redact_secrets(message)
        self.uid = uid
        super().__init__(self.message)


class AuthExpiredError(CalendarSyncError):
    """Credential is unusable; the user must re-authorize the connection."""

    kind = ErrorKind.AUTH_EXPIRED


class RateLimitedError(CalendarSyncError):
    """Provider throttled the request after retries were exhausted."""

    kind = ErrorKind.RATE_LIMITED

    def __init__(
        self,
        message: str,
        *,
        uid: str | None = None,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message, uid=uid)
        self.retry_after = retry_after


class TransportFailureError(CalendarSyncError):
    """Network error, timeout or provider 5xx after bounded retries."""

    kind = ErrorKind.TRANSPORT_FAILURE


class RemoteRejectedError(CalendarSyncError):
    """Provider refused the payload for a single event."""

    kind = ErrorKind.REMOTE_REJECTED

    def __init__(self, message: str, *, uid: str | None = None, status_code: int | None = None):
        super().__init__(message, uid=uid)
        self.status_code = status_code


class RemoteNotFoundError(CalendarSyncError):
    """The remote event no longer exists."""

    kind = ErrorKind.REMOTE_NOT_FOUND


class MalformedRemoteDataError(CalendarSyncError):
    """A remote object could not be parsed; it is skipped."""

    kind = ErrorKind.MALFORMED_REMOTE_DATA


class LocalPersistenceError(CalendarSyncError):
    """The local storage transaction failed and was rolled back."""

    kind = ErrorKind.LOCAL_PERSISTENCE_FAILURE


class CredentialKeyError(CalendarSyncError):
    """Token encryption keys are missing or invalid."""

    kind = ErrorKind.CONFIGURATION


# ---------------------------------------------------------------------------
# Redaction
# ---------------------------------------------------------------------------

_SECRET_KEYS = r"client_secret|refresh_token|access_token|id_token|password|token"

_KEY_VALUE_PATTERN = re.compile(rf"(?i)\b({_SECRET_KEYS})\s*=\s*([^\s,;&]+)")
_QUOTED_PATTERN = re.compile(rf"""(?i)(['"]?(?:{_SECRET_KEYS})['"]?\s*:\s*)(['"]).*?\2""")
_COLON_PATTERN = re.compile(rf"(?i)\b({_SECRET_KEYS})\s*:\s*([^\s,;]+)")
_AUTH_HEADER_PATTERN = re.compile(r"(?i)\b(Bearer|Basic)\s+[A-Za-z0-9\-._~+/]+=*")


def redact_secrets(message: str) -> str:
    """Redact credential values from a message before it is logged or surfaced."""
    redacted = _AUTH_HEADER_PATTERN.sub(r"\1 [REDACTED]", message)
    redacted = _KEY_VALUE_PATTERN.sub(r"\1=[REDACTED]", redacted)
    redacted = _QUOTED_PATTERN.sub(r'\1"[REDACTED]"', redacted)
    redacted = _COLON_PATTERN.sub(r"\1: [REDACTED]", redacted)
    return redacted


def sanitize_error_message(message: str, *, limit: int = 200) -> str:
    """Redact, collapse whitespace and truncate an error message."""
    return " ".join(redact_secrets(message).split())[:limit]
