"""
Subscription Root Service - API Key Authentication Middleware

Only the routes that change ledger state need a key. Proof lookup,
verification and probes stay open to subscribers and orchestrators.
"""

import secrets
from collections.abc import Callable

import structlog
from fastapi import Request, status
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

from subroot.core.config import settings

logger = structlog.get_logger(__name__)

API_KEY_HEADER = "X-API-Key"

# (method, path) pairs that trigger ledger writes
PROTECTED_ROUTES = frozenset({
    ("POST", "/api/v1/sync"),
})


def is_protected(method: str, path: str) -> bool:
    return (method.upper(), path.rstrip("/") or "/") in PROTECTED_ROUTES


def check_auth_config() -> bool:
    """
    Log a warning when API key auth is enabled without a key.

    Returns:
        True if protected routes will actually require a key
    """
    if not settings.API_AUTH_ENABLED:
        return False
    if not settings.API_KEY:
        logger.warning(
            "API_AUTH_ENABLED is set but API_KEY is empty; protected routes are open",
            routes=sorted(f"{m} {p}" for m, p in PROTECTED_ROUTES),
        )
        return False
    return True


class APIKeyAuthMiddleware(BaseHTTPMiddleware):
    """Rejects protected routes unless the configured API key is presented."""

    async def dispatch(self, request: Request, call_next: Callable):
        if not settings.API_AUTH_ENABLED or not settings.API_KEY:
            return await call_next(request)

        if not is_protected(request.method, request.url.path):
            return await call_next(request)

        provided_key = request.headers.get(API_KEY_HEADER)
        if provided_key and secrets.compare_digest(provided_key, settings.API_KEY):
            return await call_next(request)

        reason = "missing" if not provided_key else "invalid"
        logger.warning(
            "Rejected sync trigger",
            reason=reason,
            path=request.url.path,
            client=request.client.host if request.client else "unknown",
        )
        return JSONResponse(
            status_code=status.HTTP_401_UNAUTHORIZED,
            content={
                "detail": f"Missing {API_KEY_HEADER} header"
                if reason == "missing"
                else "Invalid API key"
            },
        )
