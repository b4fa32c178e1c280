"""Calendar provider protocol clients."""

from __future__ import annotations

import httpx

from timeledger.config import SyncEngineConfig
from timeledger.models import Provider
from timeledger.providers.base import CalendarProvider
from timeledger.providers.google import GoogleCalendarProvider
from timeledger.providers.icloud import ICloudCalendarProvider
from timeledger.providers.outlook import OutlookCalendarProvider

__all__ = [
    "CalendarProvider",
    "GoogleCalendarProvider",
    "ICloudCalendarProvider",
    "OutlookCalendarProvider",
    "build_providers",
]


def build_providers(
    config: SyncEngineConfig,
    http_client: httpx.AsyncClient | None = None,
) -> dict[Provider, CalendarProvider]:
    """Create one client per provider.

    When *http_client* is given it is shared and stays owned by the caller.
    """
    return {
        Provider.GOOGLE: GoogleCalendarProvider(config.google, config.http, http_client),
        Provider.OUTLOOK: OutlookCalendarProvider(config.outlook, config.http, http_client),
        Provider.ICLOUD: ICloudCalendarProvider(config.icloud, config.http, http_client),
    }
