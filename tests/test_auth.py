"""Tests for accounts, JWT handling and password storage."""
from datetime import datetime, timedelta, timezone

import jwt
import pytest

import config
from quiz.errors import AuthError, ForbiddenError, ValidationError
from quiz.models import User
from quiz.models.base import async_session_factory
from web import auth


async def _register(username="Isabelle", email="isabelle@example.com", password="password123", **kwargs):
    async with async_session_factory() as session:
        return await auth.register(session, username, email, password, **kwargs)


def _token(claims, secret=None):
    return jwt.encode(claims, secret or config.JWT_SECRET, algorithm=config.JWT_ALGORITHM)


@pytest.mark.asyncio
async def test_register_hashes_password():
    user = await _register()
    assert user.password_hash != "password123"
    assert user.password_hash.startswith("$2b$")
    assert auth.verify_password("password123", user.password_hash)
    assert user.role == "user"
    assert user.active is True
    assert user.password_changed_at is None


@pytest.mark.asyncio
async def test_register_lowercases_email():
    user = await _register(email="  Isabelle@Example.COM ")
    assert user.email == "isabelle@example.com"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "kwargs,message",
    [
        ({"password": "short12"}, "Password must be at least 8 characters long"),
        ({"username": "ab"}, "Username must be between 3 and 20 characters"),
        ({"password_confirm": "different1"}, "Passwords do not match"),
        ({"email": ""}, "Please provide your email"),
    ],
)
async def test_register_validation(kwargs, message):
    with pytest.raises(ValidationError) as exc:
        await _register(**kwargs)
    assert exc.value.message == message


@pytest.mark.asyncio
async def test_password_minimum_is_eight():
    assert await _register(password="12345678")


@pytest.mark.asyncio
async def test_register_duplicates():
    await _register()
    with pytest.raises(ValidationError, match="Email is already in use"):
        await _register(username="Other", email="ISABELLE@example.com")
    with pytest.raises(ValidationError, match="Username is already in use"):
        await _register(username="isabelle", email="other@example.com")


@pytest.mark.asyncio
async def test_unrelated_updates_do_not_rehash():
    user = await _register()
    original_hash = user.password_hash
    async with async_session_factory() as session:
        stored = await session.get(User, user.id)
        stored.role = "admin"
        stored.games_played = 4
        await session.commit()
    async with async_session_factory() as session:
        stored = await session.get(User, user.id)
    assert stored.password_hash == original_hash
    assert auth.verify_password("password123", stored.password_hash)


@pytest.mark.asyncio
async def test_set_password_hashes_once_and_stamps_change():
    user = await _register()
    old_hash = user.password_hash
    auth.set_password(user, "newpassword1")
    assert user.password_hash != old_hash
    assert auth.verify_password("newpassword1", user.password_hash)
    assert user.password_changed_at is not None


def test_long_passwords_are_not_truncated():
    base = "a" * 72
    hashed = auth.hash_password(base + "x")
    assert auth.verify_password(base + "x", hashed)
    assert not auth.verify_password(base + "y", hashed)


@pytest.mark.asyncio
async def test_login_returns_verifiable_token():
    user = await _register()
    async with async_session_factory() as session:
        logged_in, token = await auth.login(session, "ISABELLE@example.com", "password123")
    assert logged_in.id == user.id
    claims = auth.verify_token(token)
    assert claims["id"] == user.id
    assert claims["sub"] == "Isabelle"
    assert claims["exp"] - claims["iat"] == pytest.approx(config.JWT_EXPIRES_DAYS * 24 * 60 * 60, abs=1)


@pytest.mark.asyncio
async def test_login_failures():
    await _register()
    async with async_session_factory() as session:
        with pytest.raises(AuthError):
            await auth.login(session, "isabelle@example.com", "wrongpassword")
        with pytest.raises(AuthError):
            await auth.login(session, "nobody@example.com", "password123")


@pytest.mark.asyncio
async def test_login_deactivated_account_forbidden():
    user = await _register()
    async with async_session_factory() as session:
        stored = await session.get(User, user.id)
        stored.active = False
        await session.commit()
    async with async_session_factory() as session:
        with pytest.raises(ForbiddenError):
            await auth.login(session, "isabelle@example.com", "password123")


def test_expired_token_fails_verification():
    now = datetime.now(timezone.utc)
    token = _token({"id": 1, "iat": now - timedelta(days=8), "exp": now - timedelta(days=1)})
    with pytest.raises(AuthError, match="expired"):
        auth.verify_token(token)


def test_wrong_secret_fails_verification():
    now = datetime.now(timezone.utc)
    token = _token({"id": 1, "iat": now, "exp": now + timedelta(days=1)}, secret="x" * 40)
    with pytest.raises(AuthError, match="Invalid token"):
        auth.verify_token(token)


def test_garbage_token_fails_verification():
    with pytest.raises(AuthError):
        auth.verify_token("not-a-jwt")


@pytest.mark.asyncio
async def test_signup_and_login_over_http(client):
    r = await client.post(
        "/api/auth/signup",
        json={"username": "Isabelle", "email": "isabelle@example.com", "password": "password123"},
    )
    assert r.status_code == 201
    data = r.json()
    assert data["token"]
    assert data["user"]["username"] == "Isabelle"
    assert data["user"]["highScores"] == {"fish": 0, "bugs": 0, "sea": 0, "villagers": 0}

    r = await client.post("/api/auth/login", json={"email": "isabelle@example.com", "password": "password123"})
    assert r.status_code == 200
    assert r.json()["user"]["email"] == "isabelle@example.com"

    r = await client.post("/api/auth/login", json={"email": "isabelle@example.com", "password": "wrong-pass"})
    assert r.status_code == 401
    assert r.json() == {"status": "fail", "message": "Incorrect email or password"}


@pytest.mark.asyncio
async def test_signup_invalid_input(client):
    r = await client.post(
        "/api/auth/signup",
        json={"username": "Isabelle", "email": "isabelle@example.com", "password": "short"},
    )
    assert r.status_code == 400
    r = await client.post(
        "/api/auth/signup",
        json={"username": "Isabelle", "email": "not-an-email", "password": "password123"},
    )
    assert r.status_code == 400
    assert r.json()["status"] == "fail"


@pytest.mark.asyncio
async def test_password_never_serialized(client, auth_headers, admin_headers):
    responses = [
        await client.get("/api/auth/me", headers=auth_headers),
        await client.get("/api/auth/users", headers=admin_headers),
        await client.post("/api/auth/login", json={"email": "isabelle@example.com", "password": "password123"}),
    ]
    for r in responses:
        assert r.status_code == 200
        body = r.text
        assert "password" not in body.lower()
        assert "$2b$" not in body


@pytest.mark.asyncio
async def test_expired_token_rejected_over_http(client, auth_headers):
    me = (await client.get("/api/auth/me", headers=auth_headers)).json()
    now = datetime.now(timezone.utc)
    token = _token({"id": me["id"], "iat": now - timedelta(days=8), "exp": now - timedelta(seconds=1)})
    r = await client.get("/api/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert r.status_code == 401


@pytest.mark.asyncio
async def test_x_auth_token_header(client, auth_headers):
    token = auth_headers["Authorization"].split(" ", 1)[1]
    r = await client.get("/api/auth/me", headers={"X-Auth-Token": token})
    assert r.status_code == 200


@pytest.mark.asyncio
async def test_update_password_invalidates_older_tokens(client, auth_headers):
    me = (await client.get("/api/auth/me", headers=auth_headers)).json()
    r = await client.post(
        "/api/auth/update-password",
        json={"passwordCurrent": "password123", "password": "newpassword1", "passwordConfirm": "newpassword1"},
        headers=auth_headers,
    )
    assert r.status_code == 200
    client.cookies.clear()
    new_headers = {"Authorization": f"Bearer {r.json()['token']}"}
    assert (await client.get("/api/auth/me", headers=new_headers)).status_code == 200

    now = datetime.now(timezone.utc)
    stale = _token({"id": me["id"], "iat": now - timedelta(hours=1), "exp": now + timedelta(days=1)})
    r = await client.get("/api/auth/me", headers={"Authorization": f"Bearer {stale}"})
    assert r.status_code == 401

    r = await client.post("/api/auth/login", json={"email": "isabelle@example.com", "password": "newpassword1"})
    assert r.status_code == 200


@pytest.mark.asyncio
async def test_token_issued_moments_before_password_change_is_rejected():
    user = await _register()
    old_token = auth.create_access_token(user)
    async with async_session_factory() as session:
        new_token = await auth.update_password(session, user, "password123", "newpassword1")

    with pytest.raises(AuthError, match="recently changed password"):
        await auth._user_from_token(old_token)
    assert (await auth._user_from_token(new_token)).id == user.id


@pytest.mark.asyncio
async def test_update_password_wrong_current(client, auth_headers):
    r = await client.post(
        "/api/auth/update-password",
        json={"passwordCurrent": "wrong-pass", "password": "newpassword1"},
        headers=auth_headers,
    )
    assert r.status_code == 401


@pytest.mark.asyncio
async def test_deactivate_and_reactivate(client, auth_headers):
    r = await client.post("/api/auth/deactivate", headers=auth_headers)
    assert r.status_code == 200
    client.cookies.clear()

    assert (await client.get("/api/auth/me", headers=auth_headers)).status_code == 401
    r = await client.post("/api/auth/login", json={"email": "isabelle@example.com", "password": "password123"})
    assert r.status_code == 403

    r = await client.post(
        "/api/auth/reactivate-account",
        json={"email": "isabelle@example.com", "password": "wrong-pass"},
    )
    assert r.status_code == 401
    r = await client.post(
        "/api/auth/reactivate-account",
        json={"email": "isabelle@example.com", "password": "password123"},
    )
    assert r.status_code == 200

    r = await client.post("/api/auth/login", json={"email": "isabelle@example.com", "password": "password123"})
    assert r.status_code == 200


@pytest.mark.asyncio
async def test_admin_user_management(client, auth_headers, admin_headers):
    r = await client.get("/api/auth/users", headers=auth_headers)
    assert r.status_code == 403

    r = await client.get("/api/auth/users", headers=admin_headers)
    assert r.status_code == 200
    assert {u["username"] for u in r.json()} == {"admin", "Isabelle"}

    r = await client.patch("/api/auth/users/Isabelle", json={"role": "admin"}, headers=admin_headers)
    assert r.status_code == 200
    assert r.json()["role"] == "admin"

    r = await client.patch("/api/auth/users/Isabelle", json={"role": "owner"}, headers=admin_headers)
    assert r.status_code == 400

    r = await client.patch("/api/auth/users/admin", json={"active": False}, headers=admin_headers)
    assert r.status_code == 400

    r = await client.patch("/api/auth/users/Nobody", json={"active": False}, headers=admin_headers)
    assert r.status_code == 404


@pytest.mark.asyncio
async def test_logout_clears_cookie(client):
    await client.post(
        "/api/auth/signup",
        json={"username": "Isabelle", "email": "isabelle@example.com", "password": "password123"},
    )
    assert (await client.get("/api/auth/me")).status_code == 200
    r = await client.post("/api/auth/logout")
    assert r.status_code == 200
    assert (await client.get("/api/auth/me")).status_code == 401


@pytest.mark.asyncio
async def test_me_optional(client, auth_headers):
    r = await client.get("/api/auth/me/optional")
    assert r.status_code == 200
    assert r.json() is None

    r = await client.get("/api/auth/me/optional", headers={"Authorization": "Bearer garbage"})
    assert r.json() is None

    r = await client.get("/api/auth/me/optional", headers=auth_headers)
    assert r.json()["username"] == "Isabelle"
