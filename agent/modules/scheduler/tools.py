"""Scheduler module tool implementations: reminders, agent tasks and follow-ups."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

import structlog

from modules.scheduler.clients import TaskStore
from modules.scheduler.clock import Clock, SystemClock
from modules.scheduler.errors import (
    ConflictingScheduleFieldsError,
    InvalidScheduleError,
    PastRunTimeError,
    TaskNotFoundError,
)
from modules.scheduler.recurrence import resolve_timezone
from modules.scheduler.store import JobStore, coerce_uuid
from shared.config import Settings
from shared.models.job_execution import JobExecution
from shared.models.scheduled_job import JOB_KINDS, JOB_STATUSES, ScheduledJob

logger = structlog.get_logger()


def parse_instant(value: str | datetime, field: str = "run_at") -> datetime:
    """Parse an ISO-8601 instant; values without an offset are taken as UTC."""
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as e:
            raise InvalidScheduleError(
                f"Invalid datetime format for {field}: {value}. "
                "Use UTC ISO format like '2026-01-31T20:00:00Z'"
            ) from e
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def format_local(value: datetime | None, tz_name: str) -> str | None:
    if value is None:
        return None
    local = value.astimezone(resolve_timezone(tz_name))
    return local.strftime("%a, %b %d, %I:%M %p %Z")


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _job_to_dict(job: ScheduledJob) -> dict:
    return {
        "job_id": str(job.id),
        "title": job.title,
        "description": job.description,
        "job_kind": job.job_kind,
        "schedule_type": job.schedule_type,
        "run_at": _iso(job.run_at),
        "cron_expression": job.cron_expression,
        "timezone": job.timezone,
        "next_run_at": _iso(job.next_run_at),
        "next_run_local": format_local(job.next_run_at, job.timezone),
        "action_type": job.action_type,
        "action_payload": job.action_payload,
        "status": job.status,
        "status_reason": job.status_reason,
        "task_id": str(job.task_id) if job.task_id else None,
        "project_id": str(job.project_id) if job.project_id else None,
        "conversation_id": str(job.conversation_id) if job.conversation_id else None,
        "run_count": job.run_count,
        "consecutive_failures": job.consecutive_failures,
        "last_run_at": _iso(job.last_run_at),
        "last_outcome": job.last_outcome,
        "last_error": job.last_error,
        "created_at": _iso(job.created_at),
        "completed_at": _iso(job.completed_at),
    }


def _execution_to_dict(execution: JobExecution) -> dict:
    return {
        "execution_id": str(execution.id),
        "status": execution.status,
        "attempts": execution.attempts,
        "scheduled_for": _iso(execution.scheduled_for),
        "started_at": _iso(execution.started_at),
        "finished_at": _iso(execution.finished_at),
        "error": execution.error,
        "result": execution.result,
    }


def _optional_uuid(value: str | None, name: str) -> uuid.UUID | None:
    return coerce_uuid(value, name) if value else None


class SchedulerTools:
    """Authoring surface for scheduled jobs, exposed as module tools."""

    def __init__(
        self,
        store: JobStore,
        settings: Settings,
        task_store: TaskStore | None = None,
        clock: Clock | None = None,
    ):
        self.store = store
        self.settings = settings
        self.task_store = task_store
        self.clock = clock or SystemClock()

    def _resolve_schedule(
        self,
        run_at: str | datetime | None,
        cron_expression: str | None,
        tz_name: str,
    ) -> dict:
        """Validate schedule inputs and compute the first ``next_run_at``."""
        if run_at and cron_expression:
            raise ConflictingScheduleFieldsError(
                "Provide only one: 'run_at' for one-time OR 'cron_expression' for recurring"
            )
        if not run_at and not cron_expression:
            raise InvalidScheduleError(
                "Must provide either 'run_at' for one-time or 'cron_expression' for recurring jobs"
            )

        resolve_timezone(tz_name)
        now = self.clock.now()

        if run_at:
            when = parse_instant(run_at)
            if when <= now:
                raise PastRunTimeError(f"run_at must be in the future: {when.isoformat()}")
            return {
                "schedule_type": "once",
                "run_at": when,
                "cron_expression": None,
                "next_run_at": when,
            }

        cron_expression = " ".join(cron_expression.split())
        return {
            "schedule_type": "cron",
            "run_at": None,
            "cron_expression": cron_expression,
            "next_run_at": self.store.evaluator.validate(cron_expression, tz_name, now),
        }

    async def _verify_task(self, owner_id: str, task_id: str | None) -> dict | None:
        """Look a linked task up in the owner's scope before linking it."""
        if not task_id or self.task_store is None:
            return None
        task = await self.task_store.get_task(owner_id, task_id)
        if not task:
            raise TaskNotFoundError(f"Task not found: {task_id}")
        return task

    async def _create(
        self,
        owner_id: str | None,
        *,
        title: str,
        description: str | None,
        job_kind: str,
        schedule: dict,
        tz_name: str,
        action_type: str,
        action_payload: dict,
        task_id: str | None = None,
        project_id: str | None = None,
        conversation_id: str | None = None,
    ) -> ScheduledJob:
        job = ScheduledJob(
            id=uuid.uuid4(),
            owner_id=coerce_uuid(owner_id, "owner_id"),
            title=title,
            description=description,
            job_kind=job_kind,
            timezone=tz_name,
            action_type=action_type,
            action_payload=action_payload,
            status="active",
            task_id=_optional_uuid(task_id, "task_id"),
            project_id=_optional_uuid(project_id, "project_id"),
            conversation_id=_optional_uuid(conversation_id, "conversation_id"),
            **schedule,
        )
        return await self.store.create(job)

    async def create_reminder(
        self,
        title: str,
        message: str | None = None,
        run_at: str | None = None,
        cron_expression: str | None = None,
        timezone: str | None = None,
        preferred_channel: str | None = None,
        description: str | None = None,
        task_id: str | None = None,
        project_id: str | None = None,
        conversation_id: str | None = None,
        owner_id: str | None = None,
    ) -> dict:
        """Create a one-time or recurring reminder notification."""
        if not owner_id:
            raise ValueError("owner_id is required")

        tz_name = timezone or self.settings.default_timezone
        schedule = self._resolve_schedule(run_at, cron_expression, tz_name)
        recurring = schedule["schedule_type"] == "cron"
        await self._verify_task(owner_id, task_id)

        job = await self._create(
            owner_id,
            title=title,
            description=description or message,
            job_kind="recurring" if recurring else "reminder",
            schedule=schedule,
            tz_name=tz_name,
            action_type="notify",
            action_payload={
                "message": message or title,
                "preferred_channel": preferred_channel or self.settings.default_notification_channel,
            },
            task_id=task_id,
            project_id=project_id,
            conversation_id=conversation_id,
        )

        next_local = format_local(job.next_run_at, tz_name)
        if recurring:
            text = f'Recurring reminder created: "{title}" - next: {next_local} ({tz_name})'
        else:
            text = f'Reminder set for {next_local} ({tz_name}): "{title}"'
        return {**_job_to_dict(job), "message": text}

    async def create_agent_task(
        self,
        title: str,
        instruction: str,
        run_at: str | None = None,
        cron_expression: str | None = None,
        timezone: str | None = None,
        preferred_channel: str | None = None,
        task_id: str | None = None,
        project_id: str | None = None,
        conversation_id: str | None = None,
        owner_id: str | None = None,
    ) -> dict:
        """Schedule the assistant to run an instruction later, once or on a cron schedule."""
        if not owner_id:
            raise ValueError("owner_id is required")

        tz_name = timezone or self.settings.default_timezone
        schedule = self._resolve_schedule(run_at, cron_expression, tz_name)
        recurring = schedule["schedule_type"] == "cron"
        await self._verify_task(owner_id, task_id)

        payload = {
            "instruction": instruction,
            "preferred_channel": preferred_channel or self.settings.default_notification_channel,
        }
        if task_id:
            payload["task_id"] = task_id
        if project_id:
            payload["project_id"] = project_id

        job = await self._create(
            owner_id,
            title=title,
            description=instruction,
            job_kind="recurring" if recurring else "one_time",
            schedule=schedule,
            tz_name=tz_name,
            action_type="agent_task",
            action_payload=payload,
            task_id=task_id,
            project_id=project_id,
            conversation_id=conversation_id,
        )

        next_local = format_local(job.next_run_at, tz_name)
        if recurring:
            text = (
                f'Recurring agent task created: "{title}" - next execution: {next_local} '
                f"({tz_name}). Each run will start a new conversation with results."
            )
        else:
            text = (
                f'Agent task scheduled for {next_local} ({tz_name}): "{title}" - '
                "I will execute this and send you the results in a new conversation."
            )
        return {**_job_to_dict(job), "message": text}

    async def create_follow_up(
        self,
        task_id: str,
        reason: str,
        check_at: str,
        instruction: str | None = None,
        timezone: str | None = None,
        owner_id: str | None = None,
    ) -> dict:
        """Schedule a check-back on a task and note it in the task's comments."""
        if not owner_id:
            raise ValueError("owner_id is required")
        if self.task_store is None:
            raise RuntimeError("No task store configured for follow-ups")

        tz_name = timezone or self.settings.default_timezone
        schedule = self._resolve_schedule(check_at, None, tz_name)

        task = await self._verify_task(owner_id, task_id)
        task_title = task.get("title") or "Untitled task"

        job = await self._create(
            owner_id,
            title=f"Follow-up: {task_title}",
            description=reason,
            job_kind="follow_up",
            schedule=schedule,
            tz_name=tz_name,
            action_type="agent_task",
            action_payload={
                "instruction": instruction or f'Follow up on task "{task_title}": {reason}',
                "task_id": task_id,
                "preferred_channel": self.settings.default_notification_channel,
            },
            task_id=task_id,
            project_id=task.get("project_id"),
        )

        scheduled_for = job.next_run_at.isoformat()
        comment_added = True
        try:
            await self.task_store.append_comment(
                owner_id, task_id, f"Scheduled follow-up for {scheduled_for}: {reason}"
            )
        except Exception as e:
            # The job stands even when the audit note cannot be written
            comment_added = False
            logger.warning(
                "follow_up_comment_failed", job_id=str(job.id), task_id=task_id, error=str(e)
            )

        logger.info("follow_up_scheduled", job_id=str(job.id), task_id=task_id)
        return {
            **_job_to_dict(job),
            "task_title": task_title,
            "comment_added": comment_added,
            "scheduled_for": scheduled_for,
            "message": f"Follow-up scheduled for {scheduled_for}",
        }

    async def list_jobs(
        self,
        status: str | None = "active",
        job_kind: str | None = None,
        limit: int = 50,
        owner_id: str | None = None,
    ) -> list[dict]:
        """List the owner's jobs, soonest first. ``status="all"`` disables the filter."""
        if not owner_id:
            raise ValueError("owner_id is required")
        if status == "all":
            status = None
        if status and status not in JOB_STATUSES:
            raise ValueError(f"Invalid status filter: {status!r}")
        if job_kind and job_kind not in JOB_KINDS:
            raise ValueError(f"Invalid job_kind filter: {job_kind!r}")

        jobs = await self.store.list_by_owner(owner_id, status=status, job_kind=job_kind, limit=limit)
        return [_job_to_dict(j) for j in jobs]

    async def get_job(self, job_id: str, owner_id: str | None = None) -> dict:
        """Get one job with its most recent executions."""
        if not owner_id:
            raise ValueError("owner_id is required")

        job = await self.store.get_by_id(owner_id, job_id)
        executions = await self.store.list_executions(owner_id, job_id)
        return {
            **_job_to_dict(job),
            "recent_executions": [_execution_to_dict(e) for e in executions],
        }

    async def cancel_job(self, job_id: str, owner_id: str | None = None) -> dict:
        """Cancel a job. Cancelling a finished job changes nothing."""
        if not owner_id:
            raise ValueError("owner_id is required")

        job = await self.store.get_by_id(owner_id, job_id)
        if job.is_terminal:
            return {
                "job_id": job_id,
                "status": job.status,
                "message": f"Job is already {job.status}.",
            }

        job = await self.store.update(owner_id, job_id, status="cancelled")
        logger.info("job_cancelled", job_id=job_id, owner_id=owner_id)
        return {
            "job_id": job_id,
            "status": job.status,
            "message": f'Cancelled: "{job.title}"',
        }

    async def pause_or_resume(
        self,
        job_id: str,
        desired_status: str,
        owner_id: str | None = None,
    ) -> dict:
        """Pause an active job or resume a paused one."""
        if not owner_id:
            raise ValueError("owner_id is required")
        if desired_status not in ("active", "paused"):
            raise ValueError("desired_status must be 'active' or 'paused'")

        job = await self.store.update(owner_id, job_id, status=desired_status)
        verb = "Paused" if job.status == "paused" else "Resumed"
        message = f'{verb}: "{job.title}"'
        if job.status == "active":
            message += f" - next: {format_local(job.next_run_at, job.timezone)} ({job.timezone})"
        return {**_job_to_dict(job), "message": message}

    async def update_schedule(
        self,
        job_id: str,
        run_at: str | None = None,
        cron_expression: str | None = None,
        timezone: str | None = None,
        owner_id: str | None = None,
    ) -> dict:
        """Move a job to a new time, a new cron expression or a new zone."""
        if not owner_id:
            raise ValueError("owner_id is required")
        if run_at and cron_expression:
            raise ConflictingScheduleFieldsError(
                "Provide only one: 'run_at' for one-time OR 'cron_expression' for recurring"
            )
        if not (run_at or cron_expression or timezone):
            raise InvalidScheduleError("Provide run_at, cron_expression or timezone to update")

        fields: dict = {}
        if timezone:
            resolve_timezone(timezone)
            fields["timezone"] = timezone
        if run_at:
            when = parse_instant(run_at)
            if when <= self.clock.now():
                raise PastRunTimeError(f"run_at must be in the future: {when.isoformat()}")
            fields["run_at"] = when
        if cron_expression:
            fields["cron_expression"] = " ".join(cron_expression.split())

        job = await self.store.update(owner_id, job_id, **fields)
        return {
            **_job_to_dict(job),
            "message": (
                f'Updated scheduled job: "{job.title}" - next: '
                f"{format_local(job.next_run_at, job.timezone)} ({job.timezone})"
            ),
        }

    async def update_job(
        self,
        job_id: str,
        title: str | None = None,
        description: str | None = None,
        owner_id: str | None = None,
    ) -> dict:
        """Change a job's display fields."""
        if not owner_id:
            raise ValueError("owner_id is required")

        fields: dict = {}
        if title:
            fields["title"] = title
        if description is not None:
            fields["description"] = description
        if not fields:
            raise ValueError("Nothing to update: provide title or description")

        job = await self.store.update(owner_id, job_id, **fields)
        return {**_job_to_dict(job), "message": f'Updated scheduled job: "{job.title}"'}
