"""Quiz player account."""
from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, Boolean, DateTime, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from quiz.models.base import Base, utcnow
from quiz.models.score import CATEGORIES


def empty_high_scores() -> dict[str, int]:
    return {c: 0 for c in CATEGORIES}


class User(Base):
    """Registered player with role-based access.

    ``password_hash`` is only ever written through ``web.auth.set_password``.
    """

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    username: Mapped[str] = mapped_column(String(20), unique=True, nullable=False, index=True)
    email: Mapped[str] = mapped_column(String(254), unique=True, nullable=False, index=True)
    password_hash: Mapped[str] = mapped_column(String(128), nullable=False)
    role: Mapped[str] = mapped_column(String(16), nullable=False, default="user")  # user, admin
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    high_scores: Mapped[dict] = mapped_column(JSON, nullable=False, default=empty_high_scores)
    games_played: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_played: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    password_changed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
