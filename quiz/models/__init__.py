"""Database models."""
from quiz.models.base import Base, init_db
from quiz.models.score import CATEGORIES, Category, ScoreRecord
from quiz.models.user import User  # noqa: F401 - for metadata

__all__ = [
    "Base",
    "CATEGORIES",
    "Category",
    "ScoreRecord",
    "User",
    "init_db",
]
