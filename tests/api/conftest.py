"""Shared fixtures for sync API tests.

The app is built without opening the engine; each test wires the router
dependencies to a credential store and orchestrator backed by in-memory
repositories and fake providers.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import dataclass

import httpx
import pytest
from fastapi import FastAPI

from tests.fakes import (
    NOW,
    FakeCalendarProvider,
    InMemoryConnectionRepository,
    InMemoryEventRepository,
)
from timeledger.api.app import create_app
from timeledger.api.routers.sync import _get_credential_store, _get_orchestrator
from timeledger.credential_store import CredentialStore
from timeledger.crypto import TokenCipher
from timeledger.models import Provider
from timeledger.orchestrator import SyncOrchestrator


@dataclass
class ApiStack:
    app: FastAPI
    store: CredentialStore
    orchestrator: SyncOrchestrator
    connections: InMemoryConnectionRepository
    events: InMemoryEventRepository
    providers: dict[Provider, FakeCalendarProvider]
    cipher: TokenCipher


@pytest.fixture
def stack() -> ApiStack:
    cipher = TokenCipher([TokenCipher.generate_key()])
    connections = InMemoryConnectionRepository()
    events = InMemoryEventRepository()
    providers = {provider: FakeCalendarProvider(provider) for provider in Provider}
    store = CredentialStore(connections, cipher, clock=lambda: NOW)
    orchestrator = SyncOrchestrator(store, events, providers, clock=lambda: NOW)

    app = create_app(manage_engine=False)
    app.dependency_overrides[_get_orchestrator] = lambda: orchestrator
    app.dependency_overrides[_get_credential_store] = lambda: store
    return ApiStack(app, store, orchestrator, connections, events, providers, cipher)


@pytest.fixture
async def client(stack: ApiStack) -> AsyncIterator[httpx.AsyncClient]:
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=stack.app), base_url="http://test"
    ) as client:
        yield client
