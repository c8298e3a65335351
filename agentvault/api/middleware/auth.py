"""Optional service API-key check in front of the identity header.

When AGENTVAULT_API_KEY is set, every /api/ request except the public
paths must carry a matching ``X-API-Key``. Only the auth proxy knows the
key, so ``X-User-Id`` is trusted only on requests that pass this check.
With the variable unset the check is off, for local development behind a
proxy that already strips client-supplied identity headers.

Repeated failures from one client address are throttled for a sliding
window.
"""

from __future__ import annotations

import hmac
import logging
import os

from fastapi import Request
from fastapi.responses import JSONResponse, Response

from agentvault.api.dependencies import get_client_ip
from agentvault.services.expiring_counters import ExpiringCounterArena

logger = logging.getLogger(__name__)

API_KEY_ENV = "AGENTVAULT_API_KEY"
API_KEY_HEADER = "X-API-Key"

_PUBLIC_PATH_PREFIXES = (
    "/api/v1/health",
    "/docs",
    "/redoc",
    "/openapi.json",
)

AUTH_FAIL_MAX = 10
AUTH_FAIL_WINDOW_SECONDS = 300.0
_MIN_API_KEY_LENGTH = 32

_failures = ExpiringCounterArena(idle_ttl=AUTH_FAIL_WINDOW_SECONDS)


def reset_rate_limiter() -> None:
    """Forget every recorded failure. Used by tests."""
    _failures.clear()


def get_expected_api_key() -> str:
    """Configured key; empty means the check is off."""
    return os.environ.get(API_KEY_ENV, "").strip()


def validate_api_key_strength() -> None:
    """Refuse to start with a configured key shorter than 32 characters.

    Raises:
        ValueError: AGENTVAULT_API_KEY is set but too short.
    """
    key = get_expected_api_key()
    if key and len(key) < _MIN_API_KEY_LENGTH:
        raise ValueError(
            f"{API_KEY_ENV} is too short ({len(key)} chars). "
            f"Minimum length is {_MIN_API_KEY_LENGTH} characters."
        )


def should_authenticate(path: str) -> bool:
    if path.startswith(_PUBLIC_PATH_PREFIXES):
        return False
    return path.startswith("/api/")


def _rejection(status_code: int, code: str, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": {"code": code, "message": message}})


async def require_api_key(request: Request, call_next) -> Response:
    """Middleware entrypoint."""
    if request.method.upper() == "OPTIONS":
        return await call_next(request)

    expected = get_expected_api_key()
    if not expected or not should_authenticate(request.url.path):
        return await call_next(request)

    client_ip = get_client_ip(request) or "unknown"
    window_key = ("auth_failure", client_ip)
    if _failures.count(window_key) >= AUTH_FAIL_MAX:
        logger.warning("Auth rate limit exceeded for %s", client_ip)
        return _rejection(429, "AUTH_RATE_LIMITED", "Too many authentication failures. Try again later.")

    provided = request.headers.get(API_KEY_HEADER, "")
    if not provided or not hmac.compare_digest(provided.encode(), expected.encode()):
        _failures.increment(window_key, window=AUTH_FAIL_WINDOW_SECONDS)
        logger.info("Rejected request to %s from %s: bad API key", request.url.path, client_ip)
        return _rejection(401, "AUTH_REQUIRED", "Invalid or missing API key")
    return await call_next(request)
