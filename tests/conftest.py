"""
Pytest configuration and fixtures for Shade tests.

Provides common fixtures and test utilities for unit and integration tests.
"""

import shutil
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Generator, List

import pytest
from argon2 import PasswordHasher

from shade.accounts import AccountStore
from shade.crypto import generate_identity_keys
from shade.message_store import MessageStore
from shade.presence import PresenceRegistry


class FakeClock:
    """Controllable UTC clock for lifecycle tests."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class FakeConnection:
    """Connection handle that records every event written to it."""

    def __init__(self, name: str, broken: bool = False):
        self.name = name
        self.broken = broken
        self.events: List[Dict[str, Any]] = []

    def named(self, event_name: str) -> List[Dict[str, Any]]:
        return [e["data"] for e in self.events if e["data"]["event"] == event_name]

    def __repr__(self) -> str:
        return f"FakeConnection({self.name})"


async def fake_send(handle: FakeConnection, event: Dict[str, Any]) -> None:
    """send_event implementation for relays wired to FakeConnection handles."""
    if handle.broken:
        raise ConnectionResetError(f"{handle.name} is gone")
    handle.events.append(event)


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """
    Create a temporary directory for test data.

    Yields:
        Path: Temporary directory path
    """
    tmp = Path(tempfile.mkdtemp(prefix="shade_test_"))
    try:
        yield tmp
    finally:
        shutil.rmtree(tmp, ignore_errors=True)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2025, 1, 1, 12, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def message_store(temp_dir: Path, clock: FakeClock) -> Generator[MessageStore, None, None]:
    store = MessageStore(temp_dir / "messages.db", clock=clock)
    try:
        yield store
    finally:
        store.close()


@pytest.fixture
def fast_hasher() -> PasswordHasher:
    """Argon2id with tiny costs so account tests stay quick."""
    return PasswordHasher(time_cost=1, memory_cost=1024, parallelism=1)


@pytest.fixture
def account_store(temp_dir: Path, fast_hasher: PasswordHasher) -> Generator[AccountStore, None, None]:
    store = AccountStore(temp_dir / "accounts.db", password_hasher=fast_hasher)
    try:
        yield store
    finally:
        store.close()


@pytest.fixture
def presence() -> PresenceRegistry:
    return PresenceRegistry()


@pytest.fixture
def send_event():
    return fake_send


@pytest.fixture
def connection():
    """Factory for recording connection handles."""
    return FakeConnection


@pytest.fixture
def alice_keys():
    """(public_jwk, private_jwk) for alice."""
    return generate_identity_keys()


@pytest.fixture
def bob_keys():
    """(public_jwk, private_jwk) for bob."""
    return generate_identity_keys()


# Pytest marks
def pytest_configure(config):
    """
    Configure pytest markers.

    Args:
        config: Pytest configuration object
    """
    config.addinivalue_line("markers", "unit: mark test as a unit test")
    config.addinivalue_line("markers", "integration: mark test as an integration test")
    config.addinivalue_line("markers", "slow: mark test as slow running")


# Test collection hooks
def pytest_collection_modifyitems(config, items):
    """
    Modify test collection to add markers based on test location.

    Args:
        config: Pytest configuration
        items: List of collected test items
    """
    for item in items:
        # Add unit marker to tests in unit/ directory
        if "unit" in str(item.fspath):
            item.add_marker(pytest.mark.unit)

        if "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)
