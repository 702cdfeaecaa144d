"""Job store: persistence and lifecycle invariants for scheduled jobs.

All writes go through this narrow set of operations. ``claim_due`` is the
only way the dispatcher admits work: it is a conditional UPDATE guarded by
the job's status, due time, claim lease and version, so two workers racing
for the same row can never both win it.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from typing import Any

import structlog
from pydantic import ValidationError
from sqlalchemy import and_, case, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from modules.scheduler.clock import Clock, SystemClock
from modules.scheduler.errors import (
    ConflictingScheduleFieldsError,
    InvalidPayloadError,
    InvalidScheduleError,
    InvalidTransitionError,
    NotFoundError,
)
from modules.scheduler.recurrence import RecurrenceEvaluator, resolve_timezone
from shared.models.job_execution import JobExecution
from shared.models.scheduled_job import (
    ACTION_TYPES,
    JOB_KINDS,
    JOB_STATUSES,
    SCHEDULE_TYPES,
    TERMINAL_STATUSES,
    ScheduledJob,
)
from shared.schemas.jobs import dump_action_payload, parse_action_payload

logger = structlog.get_logger()

# Fields callers may change through update(); everything else is owned by
# the store or the dispatcher.
_UPDATABLE_FIELDS = {
    "title",
    "description",
    "run_at",
    "cron_expression",
    "timezone",
    "status",
    "action_payload",
    "task_id",
    "project_id",
    "conversation_id",
}
_SCHEDULE_FIELDS = {"run_at", "cron_expression", "timezone"}
_LINK_FIELDS = {"task_id", "project_id", "conversation_id"}


def coerce_uuid(value: uuid.UUID | str, name: str = "id") -> uuid.UUID:
    """Parse a UUID argument, raising ValueError with the field name."""
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (ValueError, AttributeError, TypeError) as e:
        raise ValueError(f"Invalid {name}: {value!r}") from e


def _job_uuid(value: uuid.UUID | str) -> uuid.UUID:
    # Malformed ids are indistinguishable from missing ones
    try:
        return coerce_uuid(value, "job_id")
    except ValueError as e:
        raise NotFoundError(f"Scheduled job not found: {value}") from e


def _due_clause(now: datetime):
    return and_(
        ScheduledJob.status == "active",
        ScheduledJob.next_run_at <= now,
        or_(ScheduledJob.claimed_until.is_(None), ScheduledJob.claimed_until < now),
    )


def _run_counters(outcome: str, now: datetime) -> dict[str, Any]:
    # Skipped occurrences count as neither runs nor failures
    if outcome == "missed":
        return {}
    failures = 0 if outcome == "succeeded" else ScheduledJob.consecutive_failures + 1
    return {
        "run_count": ScheduledJob.run_count + 1,
        "consecutive_failures": failures,
        "last_run_at": now,
    }


def validate_job(job: ScheduledJob) -> None:
    """Check the structural invariants of a job before it is persisted.

    Normalises ``action_payload`` to its canonical JSON form.
    """
    if job.job_kind not in JOB_KINDS:
        raise ValueError(f"Invalid job_kind: {job.job_kind!r}")
    if job.schedule_type not in SCHEDULE_TYPES:
        raise InvalidScheduleError(f"Invalid schedule_type: {job.schedule_type!r}")
    if job.action_type not in ACTION_TYPES:
        raise InvalidPayloadError(f"Invalid action_type: {job.action_type!r}")
    if job.status not in JOB_STATUSES:
        raise ValueError(f"Invalid status: {job.status!r}")
    if not job.title:
        raise ValueError("title is required")

    if job.run_at is not None and job.cron_expression:
        raise ConflictingScheduleFieldsError("Provide only one of run_at or cron_expression")
    if job.schedule_type == "once" and job.run_at is None:
        raise InvalidScheduleError("run_at is required for one-time jobs")
    if job.schedule_type == "cron" and not job.cron_expression:
        raise InvalidScheduleError("cron_expression is required for recurring jobs")

    resolve_timezone(job.timezone)
    if job.next_run_at is None:
        raise InvalidScheduleError("next_run_at must be computed before persisting")

    try:
        payload = parse_action_payload(job.action_type, job.action_payload)
    except ValidationError as e:
        raise InvalidPayloadError(
            f"Invalid payload for action_type {job.action_type!r}: {e.errors()[0]['msg']}"
        ) from e
    job.action_payload = dump_action_payload(payload)


class JobStore:
    """Async store for :class:`ScheduledJob` rows."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        evaluator: RecurrenceEvaluator | None = None,
        clock: Clock | None = None,
    ):
        self.session_factory = session_factory
        self.evaluator = evaluator or RecurrenceEvaluator()
        self.clock = clock or SystemClock()

    # ------------------------------------------------------------------
    # Authoring side
    # ------------------------------------------------------------------

    async def create(self, job: ScheduledJob) -> ScheduledJob:
        if job.id is None:
            job.id = uuid.uuid4()
        if job.status is None:
            job.status = "active"
        if job.timezone is None:
            job.timezone = "UTC"
        validate_job(job)
        if job.status != "active":
            raise InvalidTransitionError("New jobs must start active")

        now = self.clock.now()
        job.version = 0
        job.run_count = 0
        job.consecutive_failures = 0
        job.created_at = now
        job.updated_at = now

        async with self.session_factory() as session:
            session.add(job)
            await session.commit()

        logger.info(
            "job_created",
            job_id=str(job.id),
            owner_id=str(job.owner_id),
            job_kind=job.job_kind,
            schedule_type=job.schedule_type,
            action_type=job.action_type,
            next_run_at=job.next_run_at.isoformat(),
        )
        return job

    async def get_by_id(self, owner_id: uuid.UUID | str, job_id: uuid.UUID | str) -> ScheduledJob:
        oid = coerce_uuid(owner_id, "owner_id")
        jid = _job_uuid(job_id)
        async with self.session_factory() as session:
            job = await self._load_owned(session, oid, jid)
        return job

    async def list_by_owner(
        self,
        owner_id: uuid.UUID | str,
        status: str | None = None,
        job_kind: str | None = None,
        limit: int = 50,
    ) -> list[ScheduledJob]:
        oid = coerce_uuid(owner_id, "owner_id")
        query = (
            select(ScheduledJob)
            .where(ScheduledJob.owner_id == oid)
            .order_by(ScheduledJob.next_run_at.asc(), ScheduledJob.created_at.asc())
            .limit(limit)
        )
        if status:
            query = query.where(ScheduledJob.status == status)
        if job_kind:
            query = query.where(ScheduledJob.job_kind == job_kind)

        async with self.session_factory() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def update(
        self,
        owner_id: uuid.UUID | str,
        job_id: uuid.UUID | str,
        **fields: Any,
    ) -> ScheduledJob:
        """Apply caller edits to a job.

        Schedule edits recompute ``next_run_at`` through the evaluator.
        Status edits follow the state machine: pause only from active,
        resume only from paused, cancel is a no-op on terminal jobs.
        """
        unknown = set(fields) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Fields cannot be updated: {sorted(unknown)}")

        oid = coerce_uuid(owner_id, "owner_id")
        jid = _job_uuid(job_id)
        now = self.clock.now()

        async with self.session_factory() as session:
            job = await self._load_owned(session, oid, jid)
            previous_status = job.status

            if "title" in fields and fields["title"] is not None:
                job.title = fields["title"]
            if "description" in fields:
                job.description = fields["description"]
            for name in _LINK_FIELDS & set(fields):
                value = fields[name]
                setattr(job, name, coerce_uuid(value, name) if value is not None else None)

            if "action_payload" in fields:
                payload = {**(job.action_payload or {}), **(fields["action_payload"] or {})}
                try:
                    parsed = parse_action_payload(job.action_type, payload)
                except ValidationError as e:
                    raise InvalidPayloadError(
                        f"Invalid payload for action_type {job.action_type!r}: {e.errors()[0]['msg']}"
                    ) from e
                job.action_payload = dump_action_payload(parsed)

            if _SCHEDULE_FIELDS & set(fields):
                self._apply_schedule(job, fields, now)

            if fields.get("status") is not None:
                self._apply_status(job, fields["status"], now)

            await session.commit()

        logger.info(
            "job_updated",
            job_id=str(jid),
            owner_id=str(oid),
            fields=sorted(fields),
            status=job.status,
            previous_status=previous_status,
        )
        return job

    # ------------------------------------------------------------------
    # Dispatcher side
    # ------------------------------------------------------------------

    async def claim_due(
        self,
        limit: int,
        now: datetime | None = None,
        *,
        worker_id: str,
        lease_seconds: int = 300,
    ) -> list[ScheduledJob]:
        """Atomically claim up to ``limit`` due jobs for ``worker_id``.

        Each candidate row is claimed with its own compare-and-swap UPDATE;
        rows another worker got to first simply fail the guard and are
        skipped. Returned jobs carry the post-claim ``version`` that the
        finalising calls must present.
        """
        now = now or self.clock.now()
        lease_until = now + timedelta(seconds=lease_seconds)
        claimed: list[uuid.UUID] = []

        async with self.session_factory() as session:
            result = await session.execute(
                select(ScheduledJob.id, ScheduledJob.version)
                .where(_due_clause(now))
                .order_by(ScheduledJob.next_run_at.asc())
                .limit(limit)
            )
            candidates = result.all()

            for job_id, version in candidates:
                outcome = await session.execute(
                    update(ScheduledJob)
                    .where(
                        ScheduledJob.id == job_id,
                        ScheduledJob.version == version,
                        _due_clause(now),
                    )
                    .values(
                        version=version + 1,
                        claimed_by=worker_id,
                        claimed_until=lease_until,
                    )
                    .execution_options(synchronize_session=False)
                )
                await session.commit()
                if outcome.rowcount == 1:
                    claimed.append(job_id)
                else:
                    logger.debug("job_claim_lost", job_id=str(job_id), worker_id=worker_id)

            if not claimed:
                return []

            result = await session.execute(
                select(ScheduledJob)
                .where(ScheduledJob.id.in_(claimed))
                .order_by(ScheduledJob.next_run_at.asc())
                .execution_options(populate_existing=True)
            )
            jobs = list(result.scalars().all())

        logger.info("jobs_claimed", count=len(jobs), worker_id=worker_id)
        return jobs

    async def reschedule(
        self,
        job: ScheduledJob,
        next_run_at: datetime,
        *,
        outcome: str,
        error: str | None = None,
        pause_reason: str | None = None,
    ) -> bool:
        """Advance a claimed recurring job and release its claim.

        ``pause_reason`` additionally pauses the job (failure circuit
        breaker) if it is still active. Returns False when the claim was
        lost to another worker, in which case nothing is written.
        """
        now = self.clock.now()
        values: dict[str, Any] = {
            "next_run_at": next_run_at,
            **_run_counters(outcome, now),
            "last_outcome": outcome,
            "last_error": error,
        }
        if pause_reason:
            values["status"] = case(
                (ScheduledJob.status == "active", "paused"), else_=ScheduledJob.status
            )
            values["status_reason"] = pause_reason
        return await self._finalize(job, values, event="job_rescheduled", next_run_at=next_run_at.isoformat())

    async def mark_completed(
        self,
        job: ScheduledJob,
        *,
        outcome: str = "succeeded",
        error: str | None = None,
    ) -> bool:
        """Finalise a claimed one-shot job.

        A job cancelled or paused while in flight keeps that status; only
        an active one-shot job becomes completed.
        """
        now = self.clock.now()
        still_active = and_(ScheduledJob.status == "active", ScheduledJob.schedule_type == "once")
        values: dict[str, Any] = {
            "status": case((still_active, "completed"), else_=ScheduledJob.status),
            "completed_at": case((still_active, now), else_=ScheduledJob.completed_at),
            **_run_counters(outcome, now),
            "last_outcome": outcome,
            "last_error": error,
        }
        return await self._finalize(job, values, event="job_completed", outcome=outcome)

    async def mark_cancelled(self, job: ScheduledJob, reason: str) -> bool:
        """Cancel a claimed job from the engine side (e.g. unsatisfiable schedule)."""
        now = self.clock.now()
        live = ScheduledJob.status.in_(("active", "paused"))
        values: dict[str, Any] = {
            "status": case((live, "cancelled"), else_=ScheduledJob.status),
            "completed_at": case((live, now), else_=ScheduledJob.completed_at),
            "status_reason": reason,
            "last_error": reason,
        }
        return await self._finalize(job, values, event="job_cancelled_by_engine", reason=reason)

    async def record_execution(
        self,
        job: ScheduledJob,
        *,
        status: str,
        attempts: int,
        started_at: datetime,
        error: str | None = None,
        result: dict | None = None,
    ) -> JobExecution:
        execution = JobExecution(
            id=uuid.uuid4(),
            job_id=job.id,
            owner_id=job.owner_id,
            status=status,
            attempts=attempts,
            scheduled_for=job.next_run_at,
            error=error,
            result=result,
            started_at=started_at,
            finished_at=self.clock.now(),
        )
        async with self.session_factory() as session:
            session.add(execution)
            await session.commit()
        return execution

    async def list_executions(
        self,
        owner_id: uuid.UUID | str,
        job_id: uuid.UUID | str,
        limit: int = 10,
    ) -> list[JobExecution]:
        oid = coerce_uuid(owner_id, "owner_id")
        jid = _job_uuid(job_id)
        async with self.session_factory() as session:
            await self._load_owned(session, oid, jid)
            result = await session.execute(
                select(JobExecution)
                .where(JobExecution.job_id == jid, JobExecution.owner_id == oid)
                .order_by(JobExecution.started_at.desc())
                .limit(limit)
            )
            return list(result.scalars().all())

    async def refresh(self, job: ScheduledJob) -> ScheduledJob | None:
        """Reload a job by id without owner scoping (dispatcher use only)."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(ScheduledJob)
                .where(ScheduledJob.id == job.id)
                .execution_options(populate_existing=True)
            )
            return result.scalar_one_or_none()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _load_owned(
        self, session: AsyncSession, owner_id: uuid.UUID, job_id: uuid.UUID
    ) -> ScheduledJob:
        result = await session.execute(
            select(ScheduledJob).where(
                ScheduledJob.id == job_id,
                ScheduledJob.owner_id == owner_id,
            )
        )
        job = result.scalar_one_or_none()
        if job is None:
            raise NotFoundError(f"Scheduled job not found: {job_id}")
        return job

    async def _finalize(self, job: ScheduledJob, values: dict[str, Any], *, event: str, **log: Any) -> bool:
        values.update(
            version=job.version + 1,
            claimed_by=None,
            claimed_until=None,
        )
        async with self.session_factory() as session:
            result = await session.execute(
                update(ScheduledJob)
                .where(ScheduledJob.id == job.id, ScheduledJob.version == job.version)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await session.commit()

        if result.rowcount != 1:
            logger.warning("job_claim_expired", job_id=str(job.id), version=job.version)
            return False

        job.version += 1
        logger.info(event, job_id=str(job.id), **log)
        return True

    def _apply_schedule(self, job: ScheduledJob, fields: dict[str, Any], now: datetime) -> None:
        if job.is_terminal:
            raise InvalidTransitionError(f"Cannot reschedule a {job.status} job")

        run_at = fields.get("run_at")
        cron_expression = fields.get("cron_expression")
        if run_at is not None and cron_expression:
            raise ConflictingScheduleFieldsError("Provide only one of run_at or cron_expression")

        tz_name = fields.get("timezone") or job.timezone
        resolve_timezone(tz_name)
        job.timezone = tz_name

        if run_at is not None:
            job.schedule_type = "once"
            job.run_at = run_at
            job.cron_expression = None
            job.next_run_at = run_at
            if job.job_kind == "recurring":
                job.job_kind = "reminder" if job.action_type == "notify" else "one_time"
        elif cron_expression:
            job.schedule_type = "cron"
            job.cron_expression = cron_expression
            job.run_at = None
            job.next_run_at = self.evaluator.next_run(cron_expression, tz_name, now)
            if job.job_kind in ("reminder", "one_time"):
                job.job_kind = "recurring"
        elif job.schedule_type == "cron":
            # Zone change only
            job.next_run_at = self.evaluator.next_run(job.cron_expression, tz_name, now)

    def _apply_status(self, job: ScheduledJob, desired: str, now: datetime) -> None:
        current = job.status
        if desired == current:
            return

        if desired == "cancelled":
            if current in TERMINAL_STATUSES:
                return
            job.status = "cancelled"
            job.completed_at = now
            return

        if current in TERMINAL_STATUSES:
            raise InvalidTransitionError(f"Job is already {current}")

        if desired == "paused":
            job.status = "paused"
            return

        if desired == "active":
            job.status = "active"
            job.status_reason = None
            # A resumed recurring job picks up at the next future occurrence
            # instead of firing a back-dated one
            if job.schedule_type == "cron":
                job.next_run_at = self.evaluator.next_run(job.cron_expression, job.timezone, now)
            return

        raise InvalidTransitionError(f"Cannot change status from {current} to {desired}")
