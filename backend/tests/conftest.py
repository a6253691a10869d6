"""Pytest configuration and fixtures."""

import os
import secrets
import tempfile

import pytest

# Generate a unique test secret for this test run to prevent token forgery
_TEST_JWT_SECRET = f"test-only-{secrets.token_urlsafe(32)}"

os.environ.setdefault("JWT_SECRET_KEY", _TEST_JWT_SECRET)
os.environ.setdefault(
    "DATABASE_PATH", os.path.join(tempfile.gettempdir(), "workshop_backend_test.db")
)

from app.database import connect_database, get_db  # noqa: E402
from app.main import app  # noqa: E402
from backend_helpers import OTHER_USER_ID, TEST_USER_ID, make_auth_headers  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402


@pytest.fixture
def db(tmp_path):
    """A fresh SQLite database per test, injected into the app."""
    conn = connect_database(str(tmp_path / "backend.db"))
    app.dependency_overrides[get_db] = lambda: conn
    yield conn
    app.dependency_overrides.pop(get_db, None)
    conn.close()


@pytest.fixture
def client(db):
    """Create a test client."""
    return TestClient(app)


@pytest.fixture
def auth_headers():
    """Create auth headers with a test token."""
    return make_auth_headers(TEST_USER_ID)


@pytest.fixture
def other_auth_headers():
    return make_auth_headers(OTHER_USER_ID)