"""Scheduler background worker: claims due jobs and runs their actions."""

from __future__ import annotations

import asyncio
import os
import socket
import uuid
from datetime import datetime, timedelta
from typing import Awaitable, Callable

import redis.asyncio as aioredis
import structlog
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from modules.scheduler.actions import ActionHandler, ActionOutcome, build_handlers
from modules.scheduler.clients import (
    ModuleTaskStore,
    OrchestratorExecutionEngine,
    RedisNotificationTransport,
)
from modules.scheduler.clock import Clock, SystemClock
from modules.scheduler.errors import InvalidScheduleError, PermanentActionError
from modules.scheduler.recurrence import RecurrenceEvaluator
from modules.scheduler.store import JobStore
from shared.config import Settings
from shared.models.scheduled_job import ScheduledJob

logger = structlog.get_logger()


def default_worker_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


class Dispatcher:
    """Runs one dispatch pass at a time over the store's due jobs.

    Several dispatchers may run against the same database; the store's
    claim guarantees each due occurrence is handed to exactly one of them.
    """

    def __init__(
        self,
        store: JobStore,
        handlers: dict[str, ActionHandler],
        settings: Settings,
        clock: Clock | None = None,
        worker_id: str | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.store = store
        self.handlers = handlers
        self.settings = settings
        self.clock = clock or SystemClock()
        self.worker_id = worker_id or default_worker_id()
        self._sleep = sleep

    @property
    def batch_size(self) -> int:
        return self.settings.scheduler_batch_size

    async def process_due_jobs(self) -> int:
        """Claim a batch of due jobs and dispatch them concurrently.

        Returns the number of jobs claimed.
        """
        jobs = await self.store.claim_due(
            self.batch_size,
            self.clock.now(),
            worker_id=self.worker_id,
            lease_seconds=self.settings.scheduler_claim_lease_seconds,
        )
        if not jobs:
            return 0

        logger.info("processing_due_jobs", count=len(jobs), worker_id=self.worker_id)
        await asyncio.gather(*(self._dispatch_safely(job) for job in jobs))
        return len(jobs)

    async def _dispatch_safely(self, job: ScheduledJob) -> None:
        try:
            await self.dispatch(job)
        except Exception as e:
            # The claim lease expires and another pass picks the job up again
            logger.error("job_dispatch_error", job_id=str(job.id), error=str(e))

    async def dispatch(self, job: ScheduledJob) -> None:
        if job.schedule_type == "cron":
            await self._dispatch_recurring(job)
        else:
            await self._dispatch_once(job)

    # ------------------------------------------------------------------
    # One-shot jobs
    # ------------------------------------------------------------------

    async def _dispatch_once(self, job: ScheduledJob) -> None:
        started_at = self.clock.now()
        attempts, outcome, error = await self._run_action(
            job, max_attempts=self.settings.scheduler_max_attempts
        )

        status = "succeeded" if error is None else "failed"
        if error is not None:
            logger.warning(
                "job_failed",
                job_id=str(job.id),
                attempts=attempts,
                error=error,
            )

        # An edit made while the action was running (now recurring, or
        # moved to a later run_at) turns this run into one past occurrence
        current = await self.store.refresh(job) or job
        moved = current.next_run_at is not None and current.next_run_at > job.next_run_at
        if current.schedule_type == "cron" or moved:
            await self._advance(job, current, status, error)
        else:
            # Finalised even on failure
            await self.store.mark_completed(job, outcome=status, error=error)

        await self._record(job, status, attempts, started_at, error, outcome)

    # ------------------------------------------------------------------
    # Recurring jobs
    # ------------------------------------------------------------------

    async def _dispatch_recurring(self, job: ScheduledJob) -> None:
        started_at = self.clock.now()
        window = timedelta(seconds=self.settings.scheduler_catch_up_window_seconds)
        attempts = 0
        outcome: ActionOutcome | None = None
        error: str | None = None

        if started_at - job.next_run_at > window:
            status = "missed"
            logger.warning(
                "job_occurrence_missed",
                job_id=str(job.id),
                scheduled_for=job.next_run_at.isoformat(),
            )
        else:
            # No in-cycle retries: the next occurrence is the retry
            attempts, outcome, error = await self._run_action(job, max_attempts=1)
            status = "succeeded" if error is None else "failed"
            if error is not None:
                logger.warning("recurring_job_failed", job_id=str(job.id), error=error)

        # Pick up schedule edits made while the action was running
        current = await self.store.refresh(job) or job
        await self._advance(job, current, status, error, pause_reason=self._pause_reason(job, status))
        await self._record(job, status, attempts, started_at, error, outcome)

    async def _advance(
        self,
        job: ScheduledJob,
        current: ScheduledJob,
        status: str,
        error: str | None,
        pause_reason: str | None = None,
    ) -> None:
        """Release the claim on ``job`` and move it to its next occurrence.

        ``current`` is the freshly re-read row; its schedule wins over the
        one the job was claimed with.
        """
        if current.schedule_type == "cron":
            try:
                next_run_at = self.store.evaluator.next_run(
                    current.cron_expression, current.timezone, self.clock.now()
                )
            except InvalidScheduleError as e:
                await self.store.mark_cancelled(job, f"Schedule can no longer be evaluated: {e}")
                return
        else:
            next_run_at = current.next_run_at

        await self.store.reschedule(
            job,
            next_run_at,
            outcome=status,
            error=error,
            pause_reason=pause_reason,
        )

    def _pause_reason(self, job: ScheduledJob, status: str) -> str | None:
        threshold = self.settings.scheduler_pause_after_failures
        if threshold <= 0 or status != "failed":
            return None
        failures = (job.consecutive_failures or 0) + 1
        if failures < threshold:
            return None
        logger.warning("job_paused_after_failures", job_id=str(job.id), failures=failures)
        return f"Paused after {failures} consecutive failed runs"

    async def _record(
        self,
        job: ScheduledJob,
        status: str,
        attempts: int,
        started_at: datetime,
        error: str | None,
        outcome: ActionOutcome | None,
    ) -> None:
        await self.store.record_execution(
            job,
            status=status,
            attempts=attempts,
            started_at=started_at,
            error=error,
            result=outcome.detail if outcome else None,
        )

    # ------------------------------------------------------------------
    # Action invocation
    # ------------------------------------------------------------------

    def backoff_seconds(self, attempt: int) -> float:
        base = self.settings.scheduler_backoff_base_seconds
        return min(base * (2 ** (attempt - 1)), self.settings.scheduler_backoff_max_seconds)

    async def _run_action(
        self,
        job: ScheduledJob,
        max_attempts: int,
    ) -> tuple[int, ActionOutcome | None, str | None]:
        """Invoke the job's handler with timeout and bounded retries.

        Returns (attempts, outcome, error); exactly one of outcome/error is set.
        """
        handler = self.handlers.get(job.action_type)
        if handler is None:
            return 0, None, f"No handler for action_type {job.action_type!r}"

        timeout = self.settings.scheduler_handler_timeout_seconds
        error = "not attempted"
        for attempt in range(1, max(max_attempts, 1) + 1):
            try:
                outcome = await asyncio.wait_for(handler.execute(job), timeout=timeout)
                logger.info(
                    "job_action_succeeded",
                    job_id=str(job.id),
                    action_type=job.action_type,
                    attempt=attempt,
                )
                return attempt, outcome, None
            except (PermanentActionError, ValidationError) as e:
                logger.warning(
                    "job_action_permanent_error",
                    job_id=str(job.id),
                    attempt=attempt,
                    error=str(e),
                )
                return attempt, None, str(e)
            except asyncio.TimeoutError:
                error = f"Action timed out after {timeout}s"
            except Exception as e:
                error = str(e) or e.__class__.__name__

            logger.warning(
                "job_action_transient_error",
                job_id=str(job.id),
                action_type=job.action_type,
                attempt=attempt,
                max_attempts=max_attempts,
                error=error,
            )
            if attempt < max_attempts:
                await self._sleep(self.backoff_seconds(attempt))

        return max(max_attempts, 1), None, error


async def scheduler_loop(dispatcher: Dispatcher, poll_interval: float) -> None:
    """Background loop that keeps dispatching until cancelled.

    A full batch means more work may be waiting, so the next pass starts
    right away; otherwise the loop sleeps for one poll interval.
    """
    logger.info("scheduler_worker_started", worker_id=dispatcher.worker_id)
    while True:
        try:
            claimed = await dispatcher.process_due_jobs()
        except Exception as e:
            logger.error("scheduler_loop_error", error=str(e))
            claimed = 0

        if claimed < dispatcher.batch_size:
            await asyncio.sleep(poll_interval)


def create_dispatcher(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    redis: aioredis.Redis,
) -> Dispatcher:
    """Wire a dispatcher to the Redis transport, the orchestrator and the task store."""
    store = JobStore(session_factory, RecurrenceEvaluator(settings.scheduler_horizon_years))
    handlers = build_handlers(
        RedisNotificationTransport(redis),
        OrchestratorExecutionEngine(
            settings.orchestrator_url,
            timeout=settings.scheduler_handler_timeout_seconds,
        ),
        ModuleTaskStore(
            settings.module_services["project_planner"],
            timeout=settings.scheduler_handler_timeout_seconds / 2,
        ),
    )
    return Dispatcher(store, handlers, settings)
