"""Request filtering ahead of the API: CORS, headers, body sanitizing, rate limits, HPP."""
from __future__ import annotations

import json
import logging
import secrets
import time
from collections import deque
from typing import Iterable, Optional
from urllib.parse import parse_qsl, urlencode

import redis.asyncio as aioredis
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from redis.exceptions import RedisError
from starlette.datastructures import Headers
from starlette.middleware.base import BaseHTTPMiddleware

import config
from quiz.errors import RateLimitError

logger = logging.getLogger("quiz.security")

RATE_LIMIT_MESSAGE = "Too many requests from this IP, please try again later."

CSP_DIRECTIVES = [
    "default-src 'self'",
    "img-src 'self' data: https://*.dodo.ac https://*.nookipedia.com",
    "style-src 'self' 'unsafe-inline' https://fonts.googleapis.com",
    "font-src 'self' https://fonts.gstatic.com",
    "script-src 'self'",
    "connect-src 'self' https://api.nookipedia.com",
    "frame-ancestors 'none'",
    "base-uri 'self'",
    "form-action 'self'",
]


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Hardening headers on every response. HSTS only in production."""

    def __init__(self, app, production: bool = False):
        super().__init__(app)
        self.production = production

    async def dispatch(self, request, call_next):
        response = await call_next(request)
        headers = response.headers
        headers.setdefault("X-Frame-Options", "DENY")
        headers.setdefault("X-Content-Type-Options", "nosniff")
        headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
        headers.setdefault(
            "Permissions-Policy",
            "camera=(), microphone=(), geolocation=(), payment=(), interest-cohort=()",
        )
        headers.setdefault("Content-Security-Policy", "; ".join(CSP_DIRECTIVES))
        if self.production:
            headers.setdefault("Strict-Transport-Security", "max-age=31536000; includeSubDomains; preload")
        return response


# Secrets are compared or hashed verbatim, never rendered.
CREDENTIAL_KEYS = frozenset({"password", "passwordCurrent", "passwordConfirm", "guestToken"})


def sanitize(value):
    """Drop operator-style keys ($..., dotted) and escape angle brackets in strings.

    String values under CREDENTIAL_KEYS are left as sent.
    """
    if isinstance(value, dict):
        return {
            k: v if k in CREDENTIAL_KEYS and isinstance(v, str) else sanitize(v)
            for k, v in value.items()
            if not (k.startswith("$") or "." in k)
        }
    if isinstance(value, list):
        return [sanitize(v) for v in value]
    if isinstance(value, str):
        return value.replace("<", "&lt;").replace(">", "&gt;")
    return value


class SanitizeBodyMiddleware:
    """Rewrite JSON request bodies through ``sanitize`` before the app reads them."""

    METHODS = ("POST", "PUT", "PATCH", "DELETE")

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http" or scope["method"] not in self.METHODS:
            await self.app(scope, receive, send)
            return
        if "application/json" not in Headers(scope=scope).get("content-type", ""):
            await self.app(scope, receive, send)
            return

        chunks = []
        while True:
            message = await receive()
            if message["type"] != "http.request":
                break
            chunks.append(message.get("body", b""))
            if not message.get("more_body", False):
                break
        body = b"".join(chunks)
        try:
            data = json.loads(body) if body else None
        except ValueError:
            data = None  # left as-is; FastAPI reports the malformed JSON
        else:
            body = json.dumps(sanitize(data)).encode("utf-8")

        scope = dict(scope)
        scope["headers"] = [(k, v) for k, v in scope["headers"] if k != b"content-length"]
        scope["headers"].append((b"content-length", str(len(body)).encode("latin-1")))

        replayed = False

        async def replay():
            nonlocal replayed
            if not replayed:
                replayed = True
                return {"type": "http.request", "body": body, "more_body": False}
            return await receive()

        await self.app(scope, replay, send)


class MemoryRateLimitStore:
    """Sliding-window hit log per key, local to this process."""

    PRUNE_THRESHOLD = 10_000

    def __init__(self):
        self._hits: dict[str, deque] = {}

    async def hit(self, key: str, window: float, now: float) -> int:
        cutoff = now - window
        if len(self._hits) > self.PRUNE_THRESHOLD:
            self._prune(cutoff)
        hits = self._hits.setdefault(key, deque())
        while hits and hits[0] <= cutoff:
            hits.popleft()
        hits.append(now)
        return len(hits)

    def _prune(self, cutoff: float) -> None:
        for key in [k for k, v in self._hits.items() if not v or v[-1] <= cutoff]:
            del self._hits[key]

    async def reset(self) -> None:
        self._hits.clear()


class RedisRateLimitStore:
    """Sliding window in a Redis sorted set, shared by every server instance."""

    KEY_PREFIX = "rate_limit:"

    def __init__(self, url: Optional[str] = None, client=None):
        if client is None:
            client = aioredis.from_url(url, decode_responses=True, socket_timeout=2)
        self.client = client

    async def hit(self, key: str, window: float, now: float) -> int:
        redis_key = f"{self.KEY_PREFIX}{key}"
        member = f"{now:.6f}-{secrets.token_hex(4)}"
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.zremrangebyscore(redis_key, 0, now - window)
            pipe.zadd(redis_key, {member: now})
            pipe.zcard(redis_key)
            pipe.expire(redis_key, int(window) + 1)
            _, _, count, _ = await pipe.execute()
        return count

    async def reset(self) -> None:
        async for key in self.client.scan_iter(f"{self.KEY_PREFIX}*"):
            await self.client.delete(key)


def build_rate_limit_store():
    if config.REDIS_URL:
        logger.info("Rate limiting backed by Redis")
        return RedisRateLimitStore(config.REDIS_URL)
    return MemoryRateLimitStore()


def client_ip(request: Request, trust_proxy: bool = False) -> str:
    if trust_proxy:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Per-IP request cap over a sliding window, applied to API paths only."""

    def __init__(
        self,
        app,
        store=None,
        window_seconds: float = 900,
        max_requests: int = 100,
        path_prefix: str = "/api/",
        exempt_prefixes: Iterable[str] = ("/api/health",),
        trust_proxy: bool = False,
    ):
        super().__init__(app)
        self.store = store if store is not None else MemoryRateLimitStore()
        self.window_seconds = window_seconds
        self.max_requests = max_requests
        self.path_prefix = path_prefix
        self.exempt_prefixes = tuple(exempt_prefixes)
        self.trust_proxy = trust_proxy

    async def dispatch(self, request, call_next):
        path = request.url.path
        if not path.startswith(self.path_prefix) or path.startswith(self.exempt_prefixes):
            return await call_next(request)
        key = client_ip(request, self.trust_proxy)
        try:
            count = await self.store.hit(key, self.window_seconds, time.time())
        except RedisError as e:
            logger.warning("Rate limit store unavailable, allowing request: %s", e)
            return await call_next(request)
        if count > self.max_requests:
            logger.warning("Rate limit exceeded for %s on %s", key, path)
            err = RateLimitError(RATE_LIMIT_MESSAGE)
            return JSONResponse(
                err.to_dict(),
                status_code=err.status_code,
                headers={"Retry-After": str(int(self.window_seconds))},
            )
        response = await call_next(request)
        response.headers["X-RateLimit-Limit"] = str(self.max_requests)
        response.headers["X-RateLimit-Remaining"] = str(max(self.max_requests - count, 0))
        return response


class ParameterPollutionMiddleware:
    """Collapse repeated query parameters to their last value unless whitelisted."""

    def __init__(self, app, whitelist: Optional[Iterable[str]] = None):
        self.app = app
        self.whitelist = set(whitelist or ())

    async def __call__(self, scope, receive, send):
        if scope["type"] == "http" and scope.get("query_string"):
            scope = dict(scope)
            scope["query_string"] = self.clean(scope["query_string"])
        await self.app(scope, receive, send)

    def clean(self, query_string: bytes) -> bytes:
        pairs = parse_qsl(query_string.decode("latin-1"), keep_blank_values=True)
        last: dict[str, str] = {}
        for key, value in pairs:
            if key not in self.whitelist:
                last[key] = value
        kept = []
        seen = set()
        for key, value in pairs:
            if key in self.whitelist:
                kept.append((key, value))
            elif key not in seen:
                seen.add(key)
                kept.append((key, last[key]))
        return urlencode(kept).encode("latin-1")


def install_security(app: FastAPI, rate_limit_store=None) -> None:
    """Wire the middleware stack. Starlette runs the last-added middleware first."""
    app.add_middleware(ParameterPollutionMiddleware, whitelist=config.HPP_WHITELIST)
    app.add_middleware(
        RateLimitMiddleware,
        store=rate_limit_store,
        window_seconds=config.RATE_LIMIT_WINDOW_SECONDS,
        max_requests=config.RATE_LIMIT_MAX,
        trust_proxy=config.TRUST_PROXY,
    )
    app.add_middleware(SanitizeBodyMiddleware)
    app.add_middleware(SecurityHeadersMiddleware, production=config.IS_PRODUCTION)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Auth-Token", "X-Guest-Token"],
    )
