"""Request-scoped dependencies shared by the API routers.

Authentication happens upstream: an auth proxy sets ``X-User-Id`` after
sign-in. With AGENTVAULT_API_KEY set, the header is honoured only on
requests that also carry the proxy's ``X-API-Key`` (see middleware/auth.py).
The client IP honours ``X-Forwarded-For`` only when AGENTVAULT_TRUST_PROXY
is enabled.
"""

import os

from fastapi import Header, HTTPException, Request

from agentvault.services.broker import ConnectionBroker


def get_broker(request: Request) -> ConnectionBroker:
    """Return the broker built at startup."""
    broker = getattr(request.app.state, "broker", None)
    if broker is None:
        raise HTTPException(status_code=503, detail="Broker not initialized")
    return broker


def get_user_id(x_user_id: str | None = Header(default=None)) -> str:
    """Authenticated user id from the upstream proxy."""
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    return x_user_id.strip()


def _trust_proxy() -> bool:
    return os.environ.get("AGENTVAULT_TRUST_PROXY", "").strip().lower() in ("1", "true")


def get_client_ip(request: Request) -> str | None:
    """Client IP address, recorded on logs and security events."""
    if _trust_proxy():
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


def get_user_agent(request: Request) -> str | None:
    return request.headers.get("User-Agent")
