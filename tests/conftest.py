"""
Pytest fixtures and test configuration for workshop tests.
"""

from datetime import datetime, timedelta, timezone

import pytest
from sync_helpers import TOKEN, USER_ID, FakeRemote

from workshop.config import SyncSettings
from workshop.credentials import CredentialProvider
from workshop.storage import SQLiteStorage, SyncEngine


@pytest.fixture
def settings():
    """Settings with timers short enough for tests."""
    return SyncSettings(
        backend_url="http://localhost:8000",
        debounce_seconds=0.05,
        periodic_interval_seconds=3600,
        backoff_base_seconds=60,
        backoff_max_seconds=300,
        batch_size=10,
        max_retries=3,
        pull_page_size=1000,
    )


@pytest.fixture
def storage(tmp_path):
    """SQLite storage in a temp directory."""
    s = SQLiteStorage(db_path=tmp_path / "workshop.db")
    yield s
    s.close()


@pytest.fixture
def credentials(tmp_path):
    """Credential provider holding a test credential (not persisted)."""
    provider = CredentialProvider(tmp_path / "credentials.json", load=False)
    provider.set_credential(USER_ID, TOKEN, persist=False)
    return provider


@pytest.fixture
def no_credentials(tmp_path):
    return CredentialProvider(tmp_path / "credentials.json", load=False)


@pytest.fixture
def remote():
    return FakeRemote()


@pytest.fixture
def engine(storage, credentials, remote, settings):
    return SyncEngine(storage, credentials, remote, settings=settings)


@pytest.fixture
def t0():
    return datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def later(t0):
    return t0 + timedelta(hours=1)
