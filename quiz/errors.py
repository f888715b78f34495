"""Application errors. Each maps to one HTTP status at the request boundary."""
from __future__ import annotations


class AppError(Exception):
    """Base for errors that are safe to report to the client."""

    status_code = 500

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code

    @property
    def status(self) -> str:
        return "fail" if 400 <= self.status_code < 500 else "error"

    def to_dict(self) -> dict:
        return {"status": self.status, "message": self.message}


class ValidationError(AppError):
    status_code = 400


class AuthError(AppError):
    status_code = 401


class ForbiddenError(AppError):
    status_code = 403


class RateLimitError(ForbiddenError):
    status_code = 429


class NotFoundError(AppError):
    status_code = 404


class StoreError(AppError):
    status_code = 500
