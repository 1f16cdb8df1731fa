# tests/core/conftest.py
"""
Shared fixtures for session lifecycle tests.

Provides a controllable clock, an in-memory session store and a
session manager wired to a mocked activity logger.
"""

import pytest
from datetime import datetime, timedelta, timezone
from unittest.mock import Mock

from rideguard.core.security import CredentialService, SessionConfig, SessionManager
from rideguard.models.session import RequestContext
from rideguard.services.session_store import InMemorySessionStore


class FakeClock:
    """Callable clock that only moves when told to"""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def session_config():
    return SessionConfig()


@pytest.fixture
def credentials():
    return CredentialService("test-signing-secret-with-enough-entropy")


@pytest.fixture
def session_store():
    return InMemorySessionStore()


@pytest.fixture
def activity_logger():
    """Mock ActivityLogger; record_* are plain (non-async) calls"""
    return Mock()


@pytest.fixture
def manager(session_store, credentials, session_config, activity_logger, clock):
    return SessionManager(
        session_store,
        credentials,
        session_config,
        activity_logger=activity_logger,
        clock=clock,
    )


@pytest.fixture
def request_context():
    return RequestContext(
        ip_address="203.0.113.7",
        user_agent="Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 Chrome/124.0 Safari/537.36",
        method="POST",
        endpoint="/api/users/login",
    )
