"""Per-identity best score in one quiz category."""
from __future__ import annotations

import enum
from datetime import datetime
from typing import Optional

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from quiz.models.base import Base, utcnow


class Category(str, enum.Enum):
    fish = "fish"
    bugs = "bugs"
    sea = "sea"
    villagers = "villagers"


CATEGORIES = tuple(c.value for c in Category)


def user_owner_key(username: str) -> str:
    return f"user:{username}"


def guest_owner_key(device_id: str) -> str:
    return f"guest:{device_id}"


class ScoreRecord(Base):
    """Best score for one account or guest device in one category.

    ``owner_key`` is ``user:<username>`` for accounts and ``guest:<deviceId>``
    for guests, so a guest never shares a row with an account of the same name.
    """

    __tablename__ = "scores"
    __table_args__ = (
        UniqueConstraint("owner_key", "category", name="uq_scores_owner_category"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    owner_key: Mapped[str] = mapped_column(String(160), nullable=False)
    username: Mapped[str] = mapped_column(String(20), nullable=False)
    category: Mapped[str] = mapped_column(String(16), nullable=False)  # fish, bugs, sea, villagers
    score: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    is_guest: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    device_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    user_id: Mapped[Optional[int]] = mapped_column(ForeignKey("users.id"), nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


Index("ix_scores_ranking", ScoreRecord.category, ScoreRecord.score.desc(), ScoreRecord.date)
