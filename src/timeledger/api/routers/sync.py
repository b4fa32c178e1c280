"""Calendar sync endpoints.

Endpoints
---------
POST    /api/users/{user_id}/calendar-sync
    Run a sync for every connection of the user (``?provider=`` limits it to
    one) and return the per-connection outcomes.

GET     /api/users/{user_id}/calendar-connections
    Connection status for the settings UI.

PUT     /api/users/{user_id}/calendar-connections/icloud
    Store iCloud CalDAV credentials.  Body: {username, app_password,
    calendar_url?}.

DELETE  /api/users/{user_id}/calendar-connections/{provider}
    Disconnect a provider.  404 if not connected.

Token material is never included in any response.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Query

from timeledger.api.models import ApiResponse, DisconnectResult, ICloudCredentialsRequest
from timeledger.credential_store import CredentialStore
from timeledger.models import ConnectionStatus, Provider
from timeledger.orchestrator import SyncOrchestrator, UserSyncSummary

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/users", tags=["calendar-sync"])


def _get_orchestrator() -> SyncOrchestrator:
    """Dependency stub: overridden at app startup or in tests."""
    raise RuntimeError("SyncOrchestrator not initialized")


def _get_credential_store() -> CredentialStore:
    """Dependency stub: overridden at app startup or in tests."""
    raise RuntimeError("CredentialStore not initialized")


@router.post(
    "/{user_id}/calendar-sync",
    response_model=ApiResponse[UserSyncSummary],
)
async def trigger_sync(
    user_id: str,
    provider: Provider | None = Query(default=None, description="Sync only this provider."),
    orchestrator: SyncOrchestrator = Depends(_get_orchestrator),
) -> ApiResponse[UserSyncSummary]:
    """Run a sync now.

    Failed connections are reported in the summary; the request itself
    still succeeds.
    """
    providers = [provider] if provider is not None else None
    summary = await orchestrator.sync_user(user_id, providers=providers)
    if provider is not None and not summary.outcomes:
        raise HTTPException(status_code=404, detail=f"{provider.value} is not connected")
    return ApiResponse[UserSyncSummary](data=summary)


@router.get(
    "/{user_id}/calendar-connections",
    response_model=ApiResponse[list[ConnectionStatus]],
)
async def list_connections(
    user_id: str,
    orchestrator: SyncOrchestrator = Depends(_get_orchestrator),
) -> ApiResponse[list[ConnectionStatus]]:
    statuses = await orchestrator.status(user_id)
    return ApiResponse[list[ConnectionStatus]](data=statuses)


@router.put(
    "/{user_id}/calendar-connections/icloud",
    response_model=ApiResponse[ConnectionStatus],
)
async def put_icloud_credentials(
    user_id: str,
    body: ICloudCredentialsRequest,
    store: CredentialStore = Depends(_get_credential_store),
) -> ApiResponse[ConnectionStatus]:
    """Store an Apple ID and app-specific password for CalDAV access."""
    connection = await store.store_caldav_credentials(
        user_id,
        body.username,
        body.app_password,
        calendar_url=body.calendar_url,
    )
    return ApiResponse[ConnectionStatus](data=ConnectionStatus.from_connection(connection))


@router.delete(
    "/{user_id}/calendar-connections/{provider}",
    response_model=ApiResponse[DisconnectResult],
)
async def delete_connection(
    user_id: str,
    provider: Provider,
    store: CredentialStore = Depends(_get_credential_store),
) -> ApiResponse[DisconnectResult]:
    deleted = await store.disconnect(user_id, provider)
    if not deleted:
        raise HTTPException(status_code=404, detail=f"{provider.value} is not connected")
    logger.info("Calendar connection %s removed for user %s", provider.value, user_id)
    return ApiResponse[DisconnectResult](data=DisconnectResult(provider=provider, deleted=True))
