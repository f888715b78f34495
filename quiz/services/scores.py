"""Score submission and leaderboard queries.

Best scores are kept with a single conditional upsert per submission:
insert if the (owner, category) row is absent, otherwise raise the stored
score only when the new one is strictly greater. There is no separate
read-compare-write step, so concurrent submissions for the same key can't
both win against a stale value.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

import config
from quiz.errors import StoreError, ValidationError
from quiz.models import CATEGORIES, Category, ScoreRecord, User
from quiz.models.base import upsert_insert, utcnow
from quiz.models.score import guest_owner_key, user_owner_key
from quiz.models.user import empty_high_scores

logger = logging.getLogger("quiz.scores")

DEVICE_ID_MAX_LENGTH = 128


@dataclass(frozen=True)
class SubmitResult:
    accepted: bool
    new_best: int


def validate_category(category) -> str:
    value = category.value if isinstance(category, Category) else category
    if value not in CATEGORIES:
        raise ValidationError(f"Invalid category. Must be one of: {', '.join(CATEGORIES)}")
    return value


def validate_score(score) -> int:
    # bool is an int subclass; True is not a score
    if isinstance(score, bool) or not isinstance(score, int):
        raise ValidationError("Score must be an integer")
    if score < 0:
        raise ValidationError("Score cannot be negative")
    if score > config.SCORE_MAX:
        raise ValidationError(f"Score cannot exceed {config.SCORE_MAX}")
    return score


def validate_username(username: Optional[str]) -> str:
    name = (username or "").strip()
    if not config.USERNAME_MIN_LENGTH <= len(name) <= config.USERNAME_MAX_LENGTH:
        raise ValidationError(
            f"Username must be between {config.USERNAME_MIN_LENGTH} "
            f"and {config.USERNAME_MAX_LENGTH} characters"
        )
    return name


async def _upsert_best(
    session: AsyncSession,
    *,
    owner_key: str,
    username: str,
    category: str,
    score: int,
    is_guest: bool,
    device_id: Optional[str] = None,
    user_id: Optional[int] = None,
) -> SubmitResult:
    table = ScoreRecord.__table__
    now = utcnow()
    stmt = upsert_insert(table).values(
        owner_key=owner_key,
        username=username,
        category=category,
        score=score,
        date=now,
        is_guest=is_guest,
        device_id=device_id,
        user_id=user_id,
        created_at=now,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[table.c.owner_key, table.c.category],
        set_={
            "score": stmt.excluded.score,
            "date": stmt.excluded.date,
            "username": stmt.excluded.username,
        },
        where=table.c.score < stmt.excluded.score,
    ).returning(table.c.score)
    row = (await session.execute(stmt)).first()
    if row is not None:
        return SubmitResult(accepted=True, new_best=row.score)
    # Conflict row was not raised; report the best that stands.
    current = await session.scalar(
        select(table.c.score).where(table.c.owner_key == owner_key, table.c.category == category)
    )
    return SubmitResult(accepted=False, new_best=current)


async def user_high_scores(session: AsyncSession, user_id: int) -> dict[str, int]:
    """Best score per category for an account, 0 where nothing was submitted."""
    scores = empty_high_scores()
    result = await session.execute(
        select(ScoreRecord.category, ScoreRecord.score).where(
            ScoreRecord.user_id == user_id,
            ScoreRecord.is_guest.is_(False),
        )
    )
    for category, score in result.all():
        scores[category] = score
    return scores


async def submit_score(
    session: AsyncSession,
    username: str,
    category,
    score,
    user_id: Optional[int] = None,
) -> SubmitResult:
    """Record an authenticated player's score, keeping only their best per category."""
    category = validate_category(category)
    score = validate_score(score)
    username = validate_username(username)
    try:
        result = await _upsert_best(
            session,
            owner_key=user_owner_key(username),
            username=username,
            category=category,
            score=score,
            is_guest=False,
            user_id=user_id,
        )
        if user_id is not None:
            await session.execute(
                update(User)
                .where(User.id == user_id)
                .values(games_played=User.games_played + 1, last_played=utcnow())
            )
            if result.accepted:
                snapshot = await user_high_scores(session, user_id)
                await session.execute(update(User).where(User.id == user_id).values(high_scores=snapshot))
        await session.commit()
    except SQLAlchemyError as e:
        await session.rollback()
        logger.exception("Score submission failed for %s/%s", username, category)
        raise StoreError("Could not save score") from e
    if result.accepted:
        logger.info("New best for %s in %s: %d", username, category, result.new_best)
    return result


async def submit_guest_score(
    session: AsyncSession,
    device_id: Optional[str],
    username: str,
    category,
    score,
) -> SubmitResult:
    """Record a guest score keyed by device, never by display name."""
    category = validate_category(category)
    score = validate_score(score)
    username = validate_username(username)
    device_id = (device_id or "").strip()
    if not device_id:
        raise ValidationError("deviceId is required for guest scores")
    if len(device_id) > DEVICE_ID_MAX_LENGTH:
        raise ValidationError(f"deviceId must be at most {DEVICE_ID_MAX_LENGTH} characters")
    try:
        result = await _upsert_best(
            session,
            owner_key=guest_owner_key(device_id),
            username=username,
            category=category,
            score=score,
            is_guest=True,
            device_id=device_id,
        )
        await session.commit()
    except SQLAlchemyError as e:
        await session.rollback()
        logger.exception("Guest score submission failed for device %s/%s", device_id, category)
        raise StoreError("Could not save score") from e
    return result


async def top_scores(
    session: AsyncSession,
    category,
    limit: int = config.LEADERBOARD_DEFAULT_LIMIT,
) -> list[ScoreRecord]:
    """Highest scores first; on ties the earliest achiever ranks higher.

    ``limit`` is capped at LEADERBOARD_MAX_LIMIT. Deactivated accounts are hidden.
    """
    category = validate_category(category)
    if limit < 1:
        raise ValidationError("Limit must be at least 1")
    limit = min(limit, config.LEADERBOARD_MAX_LIMIT)
    stmt = (
        select(ScoreRecord)
        .outerjoin(User, ScoreRecord.user_id == User.id)
        .where(
            ScoreRecord.category == category,
            or_(ScoreRecord.user_id.is_(None), User.active.is_(True)),
        )
        .order_by(ScoreRecord.score.desc(), ScoreRecord.date.asc(), ScoreRecord.id.asc())
        .limit(limit)
    )
    try:
        result = await session.execute(stmt)
    except SQLAlchemyError as e:
        logger.exception("Leaderboard query failed for %s", category)
        raise StoreError("Could not load leaderboard") from e
    return list(result.scalars().all())
