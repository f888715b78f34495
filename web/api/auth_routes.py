"""Auth API routes: signup, login, current user, password and account lifecycle, user management."""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Request, Response
from sqlalchemy import select

from quiz.errors import NotFoundError, ValidationError
from quiz.models import User
from quiz.models.base import async_session_factory
from web import auth
from web.api.schemas import (
    AdminUserResponse,
    AuthResponse,
    LoginRequest,
    MessageResponse,
    ReactivateRequest,
    SignupRequest,
    UpdatePasswordRequest,
    UpdateUserRequest,
    UserResponse,
)
from web.auth import (
    create_access_token,
    get_current_user,
    require_admin_user,
    require_user,
    set_auth_cookie,
)

router = APIRouter(prefix="/api/auth", tags=["auth"])


def _auth_response(user: User, token: str) -> AuthResponse:
    return AuthResponse(token=token, user=UserResponse.model_validate(user))


@router.post("/signup", response_model=AuthResponse, status_code=201)
async def signup(body: SignupRequest, request: Request, response: Response):
    """Create an account and log it in."""
    async with async_session_factory() as session:
        user = await auth.register(
            session, body.username, body.email, body.password, body.password_confirm
        )
    token = create_access_token(user)
    set_auth_cookie(response, request, token)
    return _auth_response(user, token)


@router.post("/login", response_model=AuthResponse)
async def login(body: LoginRequest, request: Request, response: Response):
    """Authenticate and return JWT."""
    async with async_session_factory() as session:
        user, token = await auth.login(session, body.email, body.password)
    set_auth_cookie(response, request, token)
    return _auth_response(user, token)


@router.post("/logout", response_model=MessageResponse)
async def logout(response: Response):
    response.delete_cookie(auth.COOKIE_NAME)
    return MessageResponse(message="Logged out")


@router.get("/me", response_model=UserResponse)
async def get_me(user: User = Depends(require_user)):
    """Get current authenticated user."""
    return UserResponse.model_validate(user)


@router.get("/me/optional", response_model=Optional[UserResponse])
async def get_me_optional(user: Optional[User] = Depends(get_current_user)):
    """Get current user if logged in, else null. For frontend auth check."""
    if not user:
        return None
    return UserResponse.model_validate(user)


@router.post("/update-password", response_model=AuthResponse)
async def update_password(
    body: UpdatePasswordRequest,
    request: Request,
    response: Response,
    user: User = Depends(require_user),
):
    """Change password; older tokens stop working."""
    if body.password_confirm is not None and body.password_confirm != body.password:
        raise ValidationError("Passwords do not match")
    async with async_session_factory() as session:
        current = await session.get(User, user.id)
        token = await auth.update_password(session, current, body.password_current, body.password)
    set_auth_cookie(response, request, token)
    return _auth_response(current, token)


@router.post("/deactivate", response_model=MessageResponse)
async def deactivate(response: Response, user: User = Depends(require_user)):
    """Deactivate own account. Scores are hidden from leaderboards until reactivated."""
    async with async_session_factory() as session:
        current = await session.get(User, user.id)
        current.active = False
        await session.commit()
    response.delete_cookie(auth.COOKIE_NAME)
    return MessageResponse(message="Account deactivated")


@router.post("/reactivate-account", response_model=MessageResponse)
async def reactivate_account(body: ReactivateRequest):
    """Reactivate a deactivated account with its credentials."""
    async with async_session_factory() as session:
        await auth.reactivate(session, body.email, body.password)
    return MessageResponse(message="Account reactivated successfully")


@router.get("/users", response_model=list[AdminUserResponse])
async def list_users(admin: User = Depends(require_admin_user)):
    """List all users (admin only)."""
    async with async_session_factory() as session:
        result = await session.execute(select(User).order_by(User.username))
        users = result.scalars().all()
        return [AdminUserResponse.model_validate(u) for u in users]


@router.patch("/users/{username}", response_model=AdminUserResponse)
async def update_user(username: str, body: UpdateUserRequest, admin: User = Depends(require_admin_user)):
    """Update user role or active flag (admin only). Cannot change self."""
    if username == admin.username:
        raise ValidationError("Cannot change your own account here")
    async with async_session_factory() as session:
        user = await auth.get_user_by_username(session, username)
        if not user:
            raise NotFoundError("User not found")
        if body.role is not None:
            if body.role not in auth.ROLES:
                raise ValidationError("Invalid role")
            user.role = body.role
        if body.active is not None:
            user.active = body.active
        await session.commit()
        return AdminUserResponse.model_validate(user)
