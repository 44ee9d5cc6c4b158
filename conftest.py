"""
Pytest configuration and shared fixtures.

Environment defaults are set here, before any pigeon import, so settings
pick up the test database and signing secret. Values already exported in the
environment take precedence.
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_pigeon.db")
os.environ.setdefault("JWT_SECRET", "pigeon-test-signing-secret-0123456789abcdef")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest

# Clear settings cache before any app imports to ensure test env vars are used
from pigeon.config import get_settings
get_settings.cache_clear()

from fastapi.testclient import TestClient

from pigeon.main import app
from pigeon.storage import Base, engine


DEFAULT_PASSWORD = "s3cret-pass"


@pytest.fixture(scope="function")
def client():
    """Create test client with fresh database for each test."""
    Base.metadata.create_all(bind=engine)

    with TestClient(app) as test_client:
        yield test_client

    # Cleanup - drop all tables after test
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def make_user(client):
    """
    Factory registering and logging in a user.

    Returns a dict with id, phone_number, username, token and headers.
    """
    def _make_user(phone_number: str, username: str = None, password: str = DEFAULT_PASSWORD) -> dict:
        response = client.post(
            "/api/users/register",
            json={"phone_number": phone_number, "username": username, "password": password},
        )
        assert response.status_code == 201, response.text
        user = response.json()

        response = client.post("/api/users/login", json={"phone_number": phone_number, "password": password})
        assert response.status_code == 200, response.text
        token = response.json()["token"]

        user["token"] = token
        user["headers"] = {"Authorization": f"Bearer {token}"}
        return user

    return _make_user


@pytest.fixture
def alice(make_user):
    return make_user("0611111111", "alice")


@pytest.fixture
def bob(make_user):
    return make_user("0622222222", "bob")


@pytest.fixture
def carol(make_user):
    return make_user("0633333333", "carol")
