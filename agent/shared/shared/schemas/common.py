"""Common schemas used across services."""

from __future__ import annotations

from pydantic import BaseModel


class HealthResponse(BaseModel):
    """Health check response.

    ``worker_running`` is False when the background dispatcher has died;
    the HTTP side may still answer in that state.
    """

    status: str = "ok"
    service: str = "scheduler"
    worker_running: bool | None = None
