"""FastAPI quiz API - auth, score submission and leaderboards."""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

import config
from quiz.errors import AppError, StoreError, ValidationError
from quiz.models.base import engine, init_db

from web.api.auth_routes import router as auth_router
from web.api.routes import router as api_router
from web.auth import bootstrap_admin
from web.security import build_rate_limit_store, install_security

logger = logging.getLogger("quiz.api")


@asynccontextmanager
async def lifespan(app: FastAPI):
    try:
        config.check_required()
    except config.ConfigError as e:
        logger.critical("Startup aborted: %s", e)
        raise
    await init_db()
    await bootstrap_admin()
    logger.info("Quiz API started (%s)", config.ENVIRONMENT)
    yield
    await engine.dispose()


app = FastAPI(title="ACNH Quiz API", lifespan=lifespan)

rate_limit_store = build_rate_limit_store()
install_security(app, rate_limit_store)

app.include_router(api_router)
app.include_router(auth_router)


def _error_response(err: AppError, headers=None) -> JSONResponse:
    return JSONResponse(err.to_dict(), status_code=err.status_code, headers=headers)


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return _error_response(exc)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    messages = []
    for error in exc.errors():
        field = ".".join(str(part) for part in error.get("loc", ())[1:])
        messages.append(f"{field}: {error['msg']}" if field else error["msg"])
    return _error_response(ValidationError(f"Invalid input data: {'. '.join(messages)}"))


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    if exc.status_code == 404:
        message = f"Can't find {request.url.path} on this server"
    else:
        message = str(exc.detail)
    return _error_response(AppError(message, exc.status_code), headers=getattr(exc, "headers", None))


@app.exception_handler(SQLAlchemyError)
async def store_error_handler(request: Request, exc: SQLAlchemyError):
    logger.error("Database error on %s %s", request.method, request.url.path, exc_info=exc)
    return _error_response(StoreError("A database error occurred"))


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.error("Unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
    message = "Something went very wrong!" if config.IS_PRODUCTION else str(exc)
    return _error_response(AppError(message, 500))


@app.get("/api/health")
async def health():
    return {"status": "ok"}


@app.get("/api/health/db")
async def health_db():
    """Database reachability for deployment checks."""
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except (SQLAlchemyError, OSError) as e:
        logger.error("Database health check failed: %s", e)
        raise StoreError("Database not reachable") from e
    return {"status": "ok", "connection": "connected", "dialect": engine.dialect.name}
