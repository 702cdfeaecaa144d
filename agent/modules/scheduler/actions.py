"""Action handlers: the effect a job performs when one of its occurrences fires."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol

import structlog

from modules.scheduler.clients import ExecutionEngine, NotificationTransport, TaskStore
from shared.models.scheduled_job import ScheduledJob
from shared.schemas.jobs import AgentTaskPayload, NotifyPayload

logger = structlog.get_logger()


@dataclass
class ActionOutcome:
    """What a handler reports back after a successful hand-off."""

    detail: dict[str, Any] = field(default_factory=dict)


class ActionHandler(Protocol):
    async def execute(self, job: ScheduledJob) -> ActionOutcome: ...


class NotifyHandler:
    """Hand a message to the notification transport.

    Success means the transport accepted the message; delivery is its concern.
    When the job is linked to a task and a task store is available, the
    task's title and due date are appended to the message.
    """

    def __init__(self, transport: NotificationTransport, task_store: TaskStore | None = None):
        self.transport = transport
        self.task_store = task_store

    async def execute(self, job: ScheduledJob) -> ActionOutcome:
        payload = NotifyPayload.model_validate(job.action_payload or {"message": job.title})
        message = await self._with_task_context(job, payload.message)
        await self.transport.send(
            str(job.owner_id),
            payload.preferred_channel,
            message,
            title=job.title,
            job_id=str(job.id),
            task_id=str(job.task_id) if job.task_id else None,
        )
        return ActionOutcome(detail={"channel": payload.preferred_channel})

    async def _with_task_context(self, job: ScheduledJob, message: str) -> str:
        if not job.task_id or self.task_store is None:
            return message
        try:
            task = await self.task_store.get_task(str(job.owner_id), str(job.task_id))
        except Exception as e:
            # The reminder still goes out without the task details
            logger.warning("notify_task_lookup_failed", job_id=str(job.id), error=str(e))
            return message

        lines = [message, f"Task: {task.get('title') or 'Untitled task'}"]
        if task.get("due_date"):
            lines.append(f"Due: {task['due_date']}")
        return "\n".join(lines)


class AgentTaskHandler:
    """Start a new unit of agent work for the job's instruction.

    Success means the execution engine accepted the task, not that the
    work finished.
    """

    def __init__(self, engine: ExecutionEngine):
        self.engine = engine

    async def execute(self, job: ScheduledJob) -> ActionOutcome:
        payload = AgentTaskPayload.model_validate(job.action_payload or {})
        task_id = payload.task_id or job.task_id
        project_id = payload.project_id or job.project_id
        started = await self.engine.start_task(
            str(job.owner_id),
            payload.instruction,
            str(task_id) if task_id else None,
            str(project_id) if project_id else None,
            job_id=str(job.id),
            channel=payload.preferred_channel,
        )
        detail = {}
        if isinstance(started, dict) and started.get("conversation_id"):
            detail["conversation_id"] = str(started["conversation_id"])
        return ActionOutcome(detail=detail)


def build_handlers(
    transport: NotificationTransport,
    engine: ExecutionEngine,
    task_store: TaskStore | None = None,
) -> dict[str, ActionHandler]:
    """Handler registry keyed by ``action_type``."""
    return {
        "notify": NotifyHandler(transport, task_store),
        "agent_task": AgentTaskHandler(engine),
    }
