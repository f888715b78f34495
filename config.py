"""Configuration for the ACNH quiz backend."""
from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()


class ConfigError(RuntimeError):
    """Required configuration is missing or invalid."""


def _parse_list(value: str) -> list[str]:
    if not value:
        return []
    return [x.strip() for x in value.split(",") if x.strip()]


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


ENVIRONMENT = os.getenv("ENVIRONMENT", "development").lower()
IS_PRODUCTION = ENVIRONMENT == "production"
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
PORT = int(os.getenv("PORT", "8000"))

# Database
DATABASE_URL = os.getenv(
    "DATABASE_URL",
    f"sqlite+aiosqlite:///{Path(__file__).parent / 'quiz.db'}",
)

# Web auth
JWT_SECRET = os.getenv("JWT_SECRET", "")
JWT_ALGORITHM = "HS256"
JWT_EXPIRES_DAYS = int(os.getenv("JWT_EXPIRES_DAYS", "7"))
JWT_COOKIE_EXPIRES_DAYS = int(os.getenv("JWT_COOKIE_EXPIRES_DAYS", str(JWT_EXPIRES_DAYS)))
BCRYPT_ROUNDS = int(os.getenv("BCRYPT_ROUNDS", "12"))

# Account constraints
PASSWORD_MIN_LENGTH = 8
USERNAME_MIN_LENGTH = 3
USERNAME_MAX_LENGTH = 20

# Scores are stored in a 32-bit integer column
SCORE_MAX = 2**31 - 1

# Shared secret for guest (deviceId-keyed) score submissions
GUEST_LEADERBOARD_TOKEN = os.getenv("GUEST_LEADERBOARD_TOKEN", "")

# Security middleware
CORS_ORIGINS = _parse_list(
    os.getenv("CORS_ORIGINS", "http://localhost:3000,http://localhost:5173,http://127.0.0.1:5173")
)
RATE_LIMIT_WINDOW_SECONDS = int(os.getenv("RATE_LIMIT_WINDOW_SECONDS", str(15 * 60)))
RATE_LIMIT_MAX = int(os.getenv("RATE_LIMIT_MAX", "100"))
REDIS_URL = os.getenv("REDIS_URL", "")
TRUST_PROXY = _parse_bool(os.getenv("TRUST_PROXY", "false"))
HPP_WHITELIST = set(_parse_list(os.getenv("HPP_WHITELIST", "")))

# Leaderboard
LEADERBOARD_DEFAULT_LIMIT = 10
LEADERBOARD_MAX_LIMIT = 100

# Initial admin bootstrap (created at startup if missing)
INITIAL_ADMIN_EMAIL = os.getenv("INITIAL_ADMIN_EMAIL", "")
INITIAL_ADMIN_USERNAME = os.getenv("INITIAL_ADMIN_USERNAME", "admin")
INITIAL_ADMIN_PASSWORD = os.getenv("INITIAL_ADMIN_PASSWORD", "")


def check_required() -> None:
    """Raise ConfigError if a setting the server cannot run without is missing."""
    missing = []
    if not JWT_SECRET:
        missing.append("JWT_SECRET")
    if not DATABASE_URL:
        missing.append("DATABASE_URL")
    if missing:
        raise ConfigError(f"Missing required configuration: {', '.join(missing)}")
