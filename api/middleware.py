"""HTTP guards for the correction API.

- ``verify_api_key``: optional X-API-Key check against ``NAVARB_API_KEYS``
- ``RateLimitMiddleware``: sliding windows per caller and per scope. Calls
  that can submit transactions or mutate the ledger (check, events, reset,
  finalize) draw on a small ``correction`` budget; everything else on ``read``
- ``RequestContextMiddleware``: request id bound into structlog contextvars
- ``get_allowed_origins``: CORS origins from ``NAVARB_ALLOWED_ORIGINS``
"""

import enum
import hashlib
import hmac
import logging
import os
import time
import uuid
from collections import deque

import structlog.contextvars
from fastapi import HTTPException, Request, Security
from fastapi.security import APIKeyHeader
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

logger = logging.getLogger("navarb.security")

# ── API keys ────────────────────────────────────────────────────────

_api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


def configured_api_keys() -> frozenset[str]:
    raw = os.environ.get("NAVARB_API_KEYS", "")
    return frozenset(k.strip() for k in raw.split(",") if k.strip())


def key_fingerprint(api_key: str) -> str:
    """Short stable id for logs and rate buckets; the raw key is never stored."""
    return hashlib.sha256(api_key.encode()).hexdigest()[:12]


def _is_known_key(api_key: str | None, keys: frozenset[str]) -> bool:
    if not api_key:
        return False
    return any(hmac.compare_digest(api_key, k) for k in keys)


async def verify_api_key(api_key: str | None = Security(_api_key_header)) -> str | None:
    """Returns the caller's key fingerprint, or None when no keys are configured (dev mode)."""
    keys = configured_api_keys()
    if not keys:
        return None
    if not _is_known_key(api_key, keys):
        logger.warning("Rejected request with invalid API key")
        raise HTTPException(status_code=401, detail="Invalid or missing API key")
    fingerprint = key_fingerprint(api_key)
    structlog.contextvars.bind_contextvars(api_key_id=fingerprint)
    return fingerprint


# ── Rate limiting ───────────────────────────────────────────────────


class RateScope(str, enum.Enum):
    CORRECTION = "correction"
    READ = "read"


_WINDOW_SECONDS = 60
_SCOPE_ENV = {
    RateScope.CORRECTION: ("NAVARB_RATE_LIMIT_WRITE", 30),
    RateScope.READ: ("NAVARB_RATE_LIMIT_READ", 120),
}
_CORRECTION_PATHS = ("/arb/check", "/arb/events", "/arb/reset", "/finalize")
_EXEMPT_PATHS = frozenset({"/health", "/openapi.json", "/docs", "/redoc"})


def rate_scope(method: str, path: str) -> RateScope | None:
    """None for unmetered paths (health, docs, Prometheus scrapes)."""
    if path in _EXEMPT_PATHS or path.startswith("/metrics"):
        return None
    if method == "POST" and path.rstrip("/").endswith(_CORRECTION_PATHS):
        return RateScope.CORRECTION
    return RateScope.READ


def scope_limit(scope: RateScope) -> int:
    env, default = _SCOPE_ENV[scope]
    return int(os.environ.get(env, default))


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Sliding window per (caller, scope).

    A caller presenting a configured API key is metered by key fingerprint;
    anyone else (including unknown keys) by client address, so rotating
    bogus keys does not buy fresh budget.
    """

    def __init__(self, app):
        super().__init__(app)
        self._windows: dict[tuple[str, RateScope], deque[float]] = {}

    def _caller(self, request: Request) -> str:
        api_key = request.headers.get("x-api-key")
        if _is_known_key(api_key, configured_api_keys()):
            return f"key:{key_fingerprint(api_key)}"
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            return f"ip:{forwarded.split(',')[0].strip()}"
        return f"ip:{request.client.host}" if request.client else "ip:unknown"

    async def dispatch(self, request: Request, call_next):
        scope = rate_scope(request.method, request.url.path)
        if scope is None:
            return await call_next(request)

        limit = scope_limit(scope)
        caller = self._caller(request)
        window = self._windows.setdefault((caller, scope), deque())
        now = time.monotonic()
        while window and window[0] <= now - _WINDOW_SECONDS:
            window.popleft()

        if len(window) >= limit:
            retry_after = int(_WINDOW_SECONDS - (now - window[0])) + 1
            logger.warning("Rate limit hit: caller=%s scope=%s limit=%d", caller, scope.value, limit)
            return JSONResponse(
                status_code=429,
                content={"detail": f"{scope.value} rate limit exceeded", "retry_after": retry_after},
                headers={"Retry-After": str(retry_after), "X-RateLimit-Scope": scope.value},
            )

        window.append(now)
        response = await call_next(request)
        response.headers["X-RateLimit-Scope"] = scope.value
        response.headers["X-RateLimit-Limit"] = str(limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, limit - len(window)))
        return response


# ── Request context ─────────────────────────────────────────────────


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Binds a request_id into structlog contextvars for the request's lifetime."""

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("x-request-id") or uuid.uuid4().hex[:16]
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id)
        try:
            response = await call_next(request)
        finally:
            structlog.contextvars.clear_contextvars()
        response.headers["X-Request-ID"] = request_id
        return response


# ── CORS ────────────────────────────────────────────────────────────


def get_allowed_origins() -> list[str]:
    """Comma-separated ``NAVARB_ALLOWED_ORIGINS``; ``*`` opens CORS fully. Defaults to local dev origins."""
    raw = os.environ.get("NAVARB_ALLOWED_ORIGINS", "").strip()
    if raw == "*":
        return ["*"]
    origins = [o.strip() for o in raw.split(",") if o.strip()]
    return origins or ["http://localhost:8000", "http://localhost:3000"]
