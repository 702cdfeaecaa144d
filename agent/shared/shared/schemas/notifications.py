"""Notification schemas for proactive messages via Redis pub/sub."""

from __future__ import annotations

from pydantic import BaseModel


class Notification(BaseModel):
    """A proactive message for a user, routed by the transport to a channel."""

    owner_id: str  # assistant/tenant the message belongs to
    channel: str  # preferred channel: "app" | "email" | "chat" | ...
    content: str  # the message text
    title: str | None = None
    job_id: str | None = None  # scheduler job ID that triggered this
    task_id: str | None = None  # linked task, if any
