"""Shared fixtures for the timeledger test suite."""

from __future__ import annotations

import pytest

from tests.fakes import (
    NOW,
    FakeCalendarProvider,
    InMemoryConnectionRepository,
    InMemoryEventRepository,
)
from timeledger.crypto import TokenCipher
from timeledger.models import Provider


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def cipher() -> TokenCipher:
    return TokenCipher([TokenCipher.generate_key()])


@pytest.fixture
def connection_repo() -> InMemoryConnectionRepository:
    return InMemoryConnectionRepository()


@pytest.fixture
def event_repo() -> InMemoryEventRepository:
    return InMemoryEventRepository()


@pytest.fixture
def google_provider() -> FakeCalendarProvider:
    return FakeCalendarProvider(Provider.GOOGLE)
