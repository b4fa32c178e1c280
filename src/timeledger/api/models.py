"""Shared Pydantic request/response models for the sync API.

All successful responses follow ``{"data": T, "meta": {...}}``; errors follow
``{"error": {"code": "...", "message": "..."}}``.
"""

from __future__ import annotations

from pydantic import BaseModel, Field

from timeledger.models import Provider

# ---------------------------------------------------------------------------
# Base response wrappers
# ---------------------------------------------------------------------------


class ApiMeta(BaseModel):
    """Extensible metadata bag attached to every API response."""

    model_config = {"extra": "allow"}


class ApiResponse[T](BaseModel):
    """Generic API response wrapper."""

    data: T
    meta: ApiMeta = Field(default_factory=ApiMeta)


class ErrorDetail(BaseModel):
    """Structured error payload."""

    code: str
    message: str
    provider: str | None = None


class ErrorResponse(BaseModel):
    """Standard error response envelope."""

    error: ErrorDetail


# ---------------------------------------------------------------------------
# Calendar connections
# ---------------------------------------------------------------------------


class ICloudCredentialsRequest(BaseModel):
    """Body for ``PUT /api/users/{user_id}/calendar-connections/icloud``.

    ``app_password`` is an Apple app-specific password, never the account
    password.
    """

    username: str = Field(min_length=1)
    app_password: str = Field(min_length=1, repr=False)
    calendar_url: str | None = None


class DisconnectResult(BaseModel):
    provider: Provider
    deleted: bool


class HealthResponse(BaseModel):
    status: str = "ok"
