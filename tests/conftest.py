"""Pytest configuration and fixtures for API tests."""
import os
import tempfile
from pathlib import Path

# Set test env BEFORE any imports that use config
_db_dir = tempfile.mkdtemp(prefix="quiz-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{Path(_db_dir) / 'quiz-test.db'}"
os.environ["JWT_SECRET"] = "test-secret-that-is-long-enough-for-hs256"
os.environ["GUEST_LEADERBOARD_TOKEN"] = "guest-token-for-tests"
os.environ["BCRYPT_ROUNDS"] = "4"
os.environ["RATE_LIMIT_MAX"] = "100000"
os.environ["INITIAL_ADMIN_EMAIL"] = "admin@example.com"
os.environ["INITIAL_ADMIN_USERNAME"] = "admin"
os.environ["INITIAL_ADMIN_PASSWORD"] = "testpass123"

import pytest
from httpx import ASGITransport, AsyncClient

from quiz.models.base import drop_db, engine, init_db
from web.api.main import app, rate_limit_store
from web.auth import bootstrap_admin

GUEST_TOKEN = "guest-token-for-tests"


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture(autouse=True)
async def _fresh_db():
    """Recreate tables for every test (ASGI lifespan doesn't run with httpx)."""
    await drop_db()
    await init_db()
    await bootstrap_admin()
    await rate_limit_store.reset()
    yield
    await engine.dispose()


@pytest.fixture
async def client():
    """Async HTTP client for testing the API."""
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac


@pytest.fixture
def signup(client):
    """Create an account over the API and return its Authorization headers.

    The ``jwt`` cookie the API sets is dropped so requests only authenticate
    through the headers a test passes explicitly.
    """

    async def _signup(username, email=None, password="password123"):
        r = await client.post(
            "/api/auth/signup",
            json={
                "username": username,
                "email": email or f"{username.lower()}@example.com",
                "password": password,
            },
        )
        assert r.status_code == 201, f"Signup failed: {r.text}"
        client.cookies.clear()
        return {"Authorization": f"Bearer {r.json()['token']}"}

    return _signup


@pytest.fixture
async def auth_headers(signup):
    """Signed-up regular player."""
    return await signup("Isabelle")


@pytest.fixture
async def admin_headers(client):
    """Login as bootstrapped admin and return Authorization headers."""
    r = await client.post(
        "/api/auth/login",
        json={"email": "admin@example.com", "password": "testpass123"},
    )
    assert r.status_code == 200, f"Login failed: {r.text}"
    client.cookies.clear()
    return {"Authorization": f"Bearer {r.json()['token']}"}
