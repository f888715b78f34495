"""Pydantic request/response models. JSON keys are camelCase."""
from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field
from pydantic.alias_generators import to_camel

import config
from quiz.models import Category


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


# --- Auth ---


class SignupRequest(CamelModel):
    username: str
    email: EmailStr
    password: str
    password_confirm: Optional[str] = None


class LoginRequest(CamelModel):
    email: str
    password: str


class UserResponse(CamelModel):
    """Public view of an account. Never carries the password hash."""

    id: int
    username: str
    email: str
    role: str
    high_scores: dict[str, int]
    games_played: int
    created_at: datetime


class AdminUserResponse(UserResponse):
    active: bool


class AuthResponse(CamelModel):
    token: str
    user: UserResponse


class UpdatePasswordRequest(CamelModel):
    password_current: str
    password: str
    password_confirm: Optional[str] = None


class ReactivateRequest(CamelModel):
    email: str
    password: str


class UpdateUserRequest(CamelModel):
    role: Optional[str] = None
    active: Optional[bool] = None


class MessageResponse(CamelModel):
    status: str = "success"
    message: str


# --- Scores ---


class SubmitScoreRequest(CamelModel):
    category: Category
    score: int = Field(ge=0, le=config.SCORE_MAX)


class GuestScoreRequest(CamelModel):
    device_id: str
    username: str
    category: Category
    score: int = Field(ge=0, le=config.SCORE_MAX)
    guest_token: Optional[str] = None


class SubmitScoreResponse(CamelModel):
    accepted: bool
    new_best: int


class ScoreRecordResponse(CamelModel):
    """Leaderboard row. The guest deviceId stays server-side."""

    username: str
    category: str
    score: int
    date: datetime
    is_guest: bool


class LeaderboardResponse(CamelModel):
    category: str
    leaderboard: list[ScoreRecordResponse]


class HighScoresResponse(CamelModel):
    high_scores: dict[str, int]
    games_played: int
    last_played: Optional[datetime] = None
