"""Scheduled job model: reminders, agent tasks and follow-ups."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, CheckConstraint, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from shared.models.base import Base, UTCDateTime

JOB_KINDS = ("reminder", "one_time", "recurring", "follow_up")
SCHEDULE_TYPES = ("once", "cron")
ACTION_TYPES = ("notify", "agent_task")
JOB_STATUSES = ("active", "paused", "completed", "cancelled")
TERMINAL_STATUSES = ("completed", "cancelled")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ScheduledJob(Base):
    __tablename__ = "scheduled_jobs"
    __table_args__ = (
        Index("ix_scheduled_jobs_status_next_run", "status", "next_run_at"),
        Index("ix_scheduled_jobs_owner_status", "owner_id", "status"),
        CheckConstraint(
            "(schedule_type = 'once' AND run_at IS NOT NULL AND cron_expression IS NULL)"
            " OR (schedule_type = 'cron' AND cron_expression IS NOT NULL AND run_at IS NULL)",
            name="ck_scheduled_jobs_schedule_fields",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    owner_id: Mapped[uuid.UUID] = mapped_column(index=True)

    # Display
    title: Mapped[str] = mapped_column(String)
    description: Mapped[str | None] = mapped_column(Text, default=None)

    # Classification of intent: reminder | one_time | recurring | follow_up
    job_kind: Mapped[str] = mapped_column(String)

    # Schedule: exactly one of run_at / cron_expression, matching schedule_type
    schedule_type: Mapped[str] = mapped_column(String)  # once | cron
    run_at: Mapped[datetime | None] = mapped_column(UTCDateTime, default=None)
    cron_expression: Mapped[str | None] = mapped_column(String, default=None)
    timezone: Mapped[str] = mapped_column(String, default="UTC")
    next_run_at: Mapped[datetime] = mapped_column(UTCDateTime)

    # What to do: notify | agent_task
    action_type: Mapped[str] = mapped_column(String)
    action_payload: Mapped[dict] = mapped_column(JSON, default=dict)

    # Lifecycle: active | paused | completed | cancelled
    status: Mapped[str] = mapped_column(String, default="active")
    status_reason: Mapped[str | None] = mapped_column(Text, default=None)

    # Soft links, never enforced here, callers verify ownership
    task_id: Mapped[uuid.UUID | None] = mapped_column(default=None)
    project_id: Mapped[uuid.UUID | None] = mapped_column(default=None)
    conversation_id: Mapped[uuid.UUID | None] = mapped_column(default=None)

    # Claim marker (compare-and-swap guarded by version)
    version: Mapped[int] = mapped_column(Integer, default=0)
    claimed_by: Mapped[str | None] = mapped_column(String, default=None)
    claimed_until: Mapped[datetime | None] = mapped_column(UTCDateTime, default=None)

    # Dispatch bookkeeping
    run_count: Mapped[int] = mapped_column(Integer, default=0)
    consecutive_failures: Mapped[int] = mapped_column(Integer, default=0)
    last_run_at: Mapped[datetime | None] = mapped_column(UTCDateTime, default=None)
    last_outcome: Mapped[str | None] = mapped_column(String, default=None)
    last_error: Mapped[str | None] = mapped_column(Text, default=None)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=_utcnow, onupdate=_utcnow
    )
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, default=None)

    @property
    def is_recurring(self) -> bool:
        return self.schedule_type == "cron"

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES
