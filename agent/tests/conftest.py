"""Shared test fixtures for the scheduler test suite.

Store and dispatcher tests run against a real SQLite database (aiosqlite)
in a temp directory; external collaborators are AsyncMocks.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from modules.scheduler.clock import FrozenClock
from modules.scheduler.recurrence import RecurrenceEvaluator
from modules.scheduler.store import JobStore
from shared.config import Settings
from shared.models import Base
from shared.models.scheduled_job import ScheduledJob


# ---------------------------------------------------------------------------
# Clock / settings
# ---------------------------------------------------------------------------


@pytest.fixture
def clock():
    """Frozen clock one hour before the canonical 'call mom' reminder."""
    return FrozenClock(datetime(2026, 1, 31, 19, 0, tzinfo=timezone.utc))


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        default_timezone="America/New_York",
        scheduler_backoff_base_seconds=0.0,
        scheduler_handler_timeout_seconds=1.0,
        scheduler_max_attempts=3,
        scheduler_batch_size=50,
    )


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    """Session factory bound to a fresh SQLite database with all tables."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'scheduler.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    try:
        yield async_sessionmaker(engine, expire_on_commit=False)
    finally:
        await engine.dispose()


@pytest.fixture
def store(session_factory, clock):
    return JobStore(session_factory, RecurrenceEvaluator(), clock)


# ---------------------------------------------------------------------------
# External collaborators
# ---------------------------------------------------------------------------


@pytest.fixture
def mock_redis():
    """Mock async Redis client."""
    redis = AsyncMock()
    redis.publish = AsyncMock(return_value=1)
    return redis


@pytest.fixture
def transport():
    """Notification transport that accepts everything."""
    t = AsyncMock()
    t.send = AsyncMock(return_value=None)
    return t


@pytest.fixture
def engine():
    """Execution engine that starts every task."""
    e = AsyncMock()
    e.start_task = AsyncMock(return_value={"conversation_id": str(uuid.uuid4())})
    return e


@pytest.fixture
def task_store():
    """Task store holding a single task owned by whoever asks."""
    ts = AsyncMock()
    ts.task_id = str(uuid.uuid4())
    ts.get_task = AsyncMock(
        return_value={"id": ts.task_id, "title": "Send the contract", "project_id": None}
    )
    ts.append_comment = AsyncMock(return_value=None)
    return ts


# ---------------------------------------------------------------------------
# Model factories
# ---------------------------------------------------------------------------


@pytest.fixture
def owner_id():
    """Return a stable UUID string for the test owner."""
    return str(uuid.uuid4())


@pytest.fixture
def make_job(clock):
    """Factory for unsaved ScheduledJob instances with a computed next_run_at."""
    evaluator = RecurrenceEvaluator()

    def _make(
        owner_id: str | uuid.UUID | None = None,
        title: str = "call mom",
        run_at: datetime | None = None,
        cron_expression: str | None = None,
        tz_name: str = "UTC",
        action_type: str = "notify",
        action_payload: dict | None = None,
        next_run_at: datetime | None = None,
    ) -> ScheduledJob:
        if cron_expression:
            schedule_type = "cron"
            job_kind = "recurring"
            next_run_at = next_run_at or evaluator.next_run(cron_expression, tz_name, clock.now())
        else:
            schedule_type = "once"
            job_kind = "reminder" if action_type == "notify" else "one_time"
            run_at = run_at or datetime(2026, 1, 31, 20, 0, tzinfo=timezone.utc)
            next_run_at = next_run_at or run_at

        if action_payload is None:
            action_payload = (
                {"message": title} if action_type == "notify" else {"instruction": f"Do: {title}"}
            )

        return ScheduledJob(
            owner_id=uuid.UUID(str(owner_id)) if owner_id else uuid.uuid4(),
            title=title,
            job_kind=job_kind,
            schedule_type=schedule_type,
            run_at=run_at,
            cron_expression=cron_expression,
            timezone=tz_name,
            next_run_at=next_run_at,
            action_type=action_type,
            action_payload=action_payload,
            status="active",
        )

    return _make
