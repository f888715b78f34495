"""API routes for score submission and leaderboards."""
from __future__ import annotations

import logging
import secrets
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request

import config
from quiz.errors import ForbiddenError, NotFoundError
from quiz.models import CATEGORIES, Category, User
from quiz.models.base import async_session_factory
from quiz.services import scores
from web.api.schemas import (
    GuestScoreRequest,
    HighScoresResponse,
    LeaderboardResponse,
    ScoreRecordResponse,
    SubmitScoreRequest,
    SubmitScoreResponse,
)
from web.auth import require_user

logger = logging.getLogger("quiz.api")

router = APIRouter(prefix="/api", tags=["scores"])


def check_guest_token(token: Optional[str]) -> None:
    """Guests authenticate with the shared leaderboard secret, not a JWT."""
    expected = config.GUEST_LEADERBOARD_TOKEN
    if not token:
        logger.warning("Rejected guest score: no guest token")
        raise ForbiddenError("Guest token is required")
    if not expected or not secrets.compare_digest(token.encode("utf-8"), expected.encode("utf-8")):
        logger.warning("Rejected guest score: invalid guest token")
        raise ForbiddenError("Invalid guest token")


async def require_guest_token(
    request: Request,
    x_guest_token: Optional[str] = Header(None, alias="X-Guest-Token"),
) -> None:
    """Check the guest token before the request body is validated."""
    try:
        data = await request.json()
    except ValueError:
        data = None
    token = data.get("guestToken") if isinstance(data, dict) else None
    if not isinstance(token, str):
        token = None
    check_guest_token(token or x_guest_token)


@router.get("/categories")
async def list_categories():
    """Quiz categories a score can be submitted for."""
    return {"results": len(CATEGORIES), "categories": list(CATEGORIES)}


@router.get("/leaderboard/{category}", response_model=list[ScoreRecordResponse])
async def get_leaderboard(category: Category, limit: int = config.LEADERBOARD_DEFAULT_LIMIT):
    """Top scores for a category, best first."""
    async with async_session_factory() as session:
        records = await scores.top_scores(session, category, limit)
    return [ScoreRecordResponse.model_validate(r) for r in records]


@router.get("/leaderboard", response_model=LeaderboardResponse)
async def get_leaderboard_by_query(category: Category = Category.fish, limit: int = config.LEADERBOARD_DEFAULT_LIMIT):
    """Query-string form: /api/leaderboard?category=fish."""
    async with async_session_factory() as session:
        records = await scores.top_scores(session, category, limit)
    return LeaderboardResponse(
        category=category.value,
        leaderboard=[ScoreRecordResponse.model_validate(r) for r in records],
    )


@router.post("/submit-score", response_model=SubmitScoreResponse)
async def submit_score(body: SubmitScoreRequest, user: User = Depends(require_user)):
    """Submit a score for the logged-in player. Only a strictly higher score replaces the best."""
    async with async_session_factory() as session:
        result = await scores.submit_score(session, user.username, body.category, body.score, user_id=user.id)
    return SubmitScoreResponse(accepted=result.accepted, new_best=result.new_best)


@router.post("/submit-guest-score", response_model=SubmitScoreResponse)
async def submit_guest_score(body: GuestScoreRequest, _: None = Depends(require_guest_token)):
    """Submit a score for a guest device, gated by the shared guest token."""
    async with async_session_factory() as session:
        result = await scores.submit_guest_score(
            session, body.device_id, body.username, body.category, body.score
        )
    return SubmitScoreResponse(accepted=result.accepted, new_best=result.new_best)


@router.get("/highscores", response_model=HighScoresResponse)
async def get_highscores(user: User = Depends(require_user)):
    """Logged-in player's best per category."""
    async with async_session_factory() as session:
        fresh = await session.get(User, user.id)
        if not fresh:
            raise NotFoundError("User not found")
        best = await scores.user_high_scores(session, user.id)
    return HighScoresResponse(
        high_scores=best,
        games_played=fresh.games_played,
        last_played=fresh.last_played,
    )
