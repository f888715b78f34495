"""Authentication for web API: JWT, password hashing, account lifecycle, role checks."""
from __future__ import annotations

import hashlib
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from fastapi import Cookie, Depends, Header, Request, Response
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from passlib.context import CryptContext
from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

import config
from quiz.errors import AuthError, ForbiddenError, ValidationError
from quiz.models import User
from quiz.models.base import as_utc, async_session_factory, utcnow
from quiz.services.scores import validate_username

logger = logging.getLogger("quiz.auth")

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=config.BCRYPT_ROUNDS)
http_bearer = HTTPBearer(auto_error=False)

ROLES = ("user", "admin")
COOKIE_NAME = "jwt"


def _prepare_password(password: str) -> str:
    """Bcrypt has a 72-byte limit. Pre-hash longer passwords with SHA256."""
    encoded = password.encode("utf-8")
    if len(encoded) > 72:
        return hashlib.sha256(encoded).hexdigest()
    return password


def hash_password(password: str) -> str:
    return pwd_context.hash(_prepare_password(password))


def verify_password(plain: str, hashed: str) -> bool:
    return pwd_context.verify(_prepare_password(plain), hashed)


def check_password_policy(password: Optional[str]) -> str:
    """The one place the password minimum is enforced."""
    if not password or len(password) < config.PASSWORD_MIN_LENGTH:
        raise ValidationError(f"Password must be at least {config.PASSWORD_MIN_LENGTH} characters long")
    return password


def set_password(user: User, password: str) -> None:
    """Hash and store a new password. Only writer of ``password_hash``."""
    is_new = user.password_hash is None
    user.password_hash = hash_password(check_password_policy(password))
    if not is_new:
        user.password_changed_at = utcnow()


def create_access_token(user: User) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "id": user.id,
        "sub": user.username,
        "role": user.role,
        # float seconds, compared against password_changed_at
        "iat": now.timestamp(),
        "exp": now + timedelta(days=config.JWT_EXPIRES_DAYS),
    }
    return jwt.encode(payload, config.JWT_SECRET, algorithm=config.JWT_ALGORITHM)


def verify_token(token: str) -> dict:
    """Decode and check a token. Raises AuthError if tampered, malformed or expired."""
    try:
        return jwt.decode(token, config.JWT_SECRET, algorithms=[config.JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise AuthError("Your token has expired. Please log in again.") from None
    except jwt.InvalidTokenError:
        raise AuthError("Invalid token. Please log in again.") from None


def set_auth_cookie(response: Response, request: Request, token: str) -> None:
    secure = request.url.scheme == "https" or request.headers.get("x-forwarded-proto") == "https"
    response.set_cookie(
        COOKIE_NAME,
        token,
        max_age=config.JWT_COOKIE_EXPIRES_DAYS * 24 * 60 * 60,
        httponly=True,
        secure=secure,
        samesite="lax",
    )


async def get_user_by_email(session: AsyncSession, email: str) -> Optional[User]:
    result = await session.execute(select(User).where(User.email == email.strip().lower()))
    return result.scalar_one_or_none()


async def get_user_by_username(session: AsyncSession, username: str) -> Optional[User]:
    result = await session.execute(select(User).where(User.username == username))
    return result.scalar_one_or_none()


async def register(
    session: AsyncSession,
    username: str,
    email: str,
    password: str,
    password_confirm: Optional[str] = None,
    role: str = "user",
) -> User:
    """Create an account. Raises ValidationError on bad input or a taken email/username."""
    username = validate_username(username)
    email = (email or "").strip().lower()
    if not email:
        raise ValidationError("Please provide your email")
    check_password_policy(password)
    if password_confirm is not None and password_confirm != password:
        raise ValidationError("Passwords do not match")
    if role not in ROLES:
        raise ValidationError("Invalid role")

    result = await session.execute(
        select(User).where(or_(User.email == email, func.lower(User.username) == username.lower()))
    )
    existing = result.scalars().first()
    if existing:
        if existing.email == email:
            raise ValidationError("Email is already in use")
        raise ValidationError("Username is already in use")

    user = User(username=username, email=email, role=role)
    set_password(user, password)
    session.add(user)
    try:
        await session.commit()
    except IntegrityError:
        # Lost a race with a concurrent signup for the same email/username.
        await session.rollback()
        raise ValidationError("Email or username is already in use") from None
    await session.refresh(user)
    logger.info("Registered user %s", user.username)
    return user


async def login(session: AsyncSession, email: str, password: str) -> tuple[User, str]:
    """Check credentials and return the user with a fresh token."""
    if not email or not password:
        raise ValidationError("Please provide email and password")
    user = await get_user_by_email(session, email)
    if not user or not verify_password(password, user.password_hash):
        raise AuthError("Incorrect email or password")
    if not user.active:
        raise ForbiddenError(
            "This account has been deactivated. Please reactivate it to log in again."
        )
    logger.info("User %s logged in", user.username)
    return user, create_access_token(user)


async def update_password(session: AsyncSession, user: User, current: str, new: str) -> str:
    """Change a password after checking the current one. Returns a new token."""
    if not verify_password(current or "", user.password_hash):
        raise AuthError("Your current password is wrong")
    set_password(user, new)
    session.add(user)
    await session.commit()
    return create_access_token(user)


async def reactivate(session: AsyncSession, email: str, password: str) -> User:
    user = await get_user_by_email(session, email or "")
    if not user or not verify_password(password or "", user.password_hash):
        raise AuthError("Incorrect email or password")
    user.active = True
    await session.commit()
    logger.info("Reactivated user %s", user.username)
    return user


def _changed_password_after(user: User, issued_at) -> bool:
    if not user.password_changed_at or issued_at is None:
        return False
    return float(issued_at) < as_utc(user.password_changed_at).timestamp()


async def _user_from_token(token: str) -> User:
    claims = verify_token(token)
    user_id = claims.get("id")
    if user_id is None:
        raise AuthError("Invalid token. Please log in again.")
    async with async_session_factory() as session:
        user = await session.get(User, user_id)
    if not user or not user.active:
        raise AuthError("The user belonging to this token no longer exists.")
    if _changed_password_after(user, claims.get("iat")):
        raise AuthError("User recently changed password! Please log in again.")
    return user


def _extract_token(
    credentials: Optional[HTTPAuthorizationCredentials],
    x_auth_token: Optional[str],
    cookie_token: Optional[str],
) -> Optional[str]:
    if credentials and credentials.credentials:
        return credentials.credentials
    return x_auth_token or cookie_token or None


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(http_bearer),
    x_auth_token: Optional[str] = Header(None, alias="X-Auth-Token"),
    jwt_cookie: Optional[str] = Cookie(None, alias=COOKIE_NAME),
) -> Optional[User]:
    """Return current user from JWT, or None if not authenticated.

    Accepts Authorization: Bearer, X-Auth-Token (fallback for proxies that strip
    Authorization) or the ``jwt`` cookie.
    """
    token = _extract_token(credentials, x_auth_token, jwt_cookie)
    if not token:
        return None
    try:
        return await _user_from_token(token)
    except AuthError:
        return None


async def require_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(http_bearer),
    x_auth_token: Optional[str] = Header(None, alias="X-Auth-Token"),
    jwt_cookie: Optional[str] = Cookie(None, alias=COOKIE_NAME),
) -> User:
    """Require authenticated user. Raises AuthError (401) if not logged in."""
    token = _extract_token(credentials, x_auth_token, jwt_cookie)
    if not token:
        raise AuthError("You are not logged in! Please log in to get access.")
    return await _user_from_token(token)


def require_admin(user: User) -> User:
    """Require admin role. Raises ForbiddenError if insufficient."""
    if user.role != "admin":
        raise ForbiddenError("You do not have permission to perform this action")
    return user


async def require_admin_user(
    user: User = Depends(require_user),
) -> User:
    """Dependency: require logged-in admin."""
    return require_admin(user)


async def bootstrap_admin() -> None:
    """Create the initial admin from config if it does not exist yet."""
    if not (config.INITIAL_ADMIN_EMAIL and config.INITIAL_ADMIN_PASSWORD):
        return
    async with async_session_factory() as session:
        if await get_user_by_email(session, config.INITIAL_ADMIN_EMAIL):
            return
        await register(
            session,
            config.INITIAL_ADMIN_USERNAME,
            config.INITIAL_ADMIN_EMAIL,
            config.INITIAL_ADMIN_PASSWORD,
            role="admin",
        )
        logger.info("Bootstrapped initial admin %s", config.INITIAL_ADMIN_USERNAME)
