"""Inter-service authentication.

The scheduler, the orchestrator and the module services share one
``SERVICE_AUTH_TOKEN``. Outgoing calls attach it with
:func:`get_service_auth_headers`; protected endpoints depend on
:func:`require_service_auth`.
"""

from __future__ import annotations

import hmac

import structlog
from fastapi import HTTPException, Request

from shared.config import get_settings

logger = structlog.get_logger()


def get_service_auth_headers() -> dict[str, str]:
    """Return HTTP headers for inter-service calls (empty in dev mode)."""
    token = get_settings().service_auth_token
    if not token:
        return {}
    return {"Authorization": f"Bearer {token}"}


async def require_service_auth(request: Request) -> None:
    """FastAPI dependency that validates the inter-service bearer token.

    Skips validation when no token is configured.
    """
    expected = get_settings().service_auth_token
    if not expected:
        logger.warning("service_auth_disabled", path=request.url.path)
        return

    auth_header = request.headers.get("authorization", "")
    if not auth_header.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Missing service auth token")

    if not hmac.compare_digest(auth_header[len("Bearer "):], expected):
        logger.warning(
            "service_auth_failed",
            path=request.url.path,
            remote=request.client.host if request.client else "unknown",
        )
        raise HTTPException(status_code=401, detail="Invalid service auth token")
