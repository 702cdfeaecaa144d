"""External collaborators used by the scheduler.

The engine only talks to the outside world through three narrow
protocols: a notification transport, an execution engine that starts
agent work, and a task store owned by the project planner module. The
concrete adapters here speak the service's usual wire formats (Redis
pub/sub, orchestrator HTTP, module ``/execute``).
"""

from __future__ import annotations

import uuid
from typing import Any, Protocol

import httpx
import redis.asyncio as aioredis
import structlog

from modules.scheduler.errors import PermanentActionError, TaskNotFoundError
from shared.auth import get_service_auth_headers
from shared.schemas.notifications import Notification
from shared.schemas.tools import ToolCall, ToolResult

logger = structlog.get_logger()

# Error replies that will never succeed on retry
_PERMANENT_ERROR_PATTERNS = ("not found", "does not exist", "unknown tool")


class NotificationTransport(Protocol):
    async def send(
        self,
        owner_id: str,
        channel: str,
        message: str,
        *,
        title: str | None = None,
        job_id: str | None = None,
        task_id: str | None = None,
    ) -> None: ...


class ExecutionEngine(Protocol):
    async def start_task(
        self,
        owner_id: str,
        instruction: str,
        task_id: str | None = None,
        project_id: str | None = None,
        *,
        job_id: str | None = None,
        channel: str | None = None,
    ) -> dict[str, Any]: ...


class TaskStore(Protocol):
    async def get_task(self, owner_id: str, task_id: str) -> dict[str, Any]: ...

    async def append_comment(self, owner_id: str, task_id: str, text: str) -> None: ...


class RedisNotificationTransport:
    """Publish notifications on ``notifications:{channel}`` for the comms layer."""

    def __init__(self, redis: aioredis.Redis):
        self.redis = redis

    async def send(
        self,
        owner_id: str,
        channel: str,
        message: str,
        *,
        title: str | None = None,
        job_id: str | None = None,
        task_id: str | None = None,
    ) -> None:
        notification = Notification(
            owner_id=owner_id,
            channel=channel,
            content=message,
            title=title,
            job_id=job_id,
            task_id=task_id,
        )
        redis_channel = f"notifications:{channel}"
        await self.redis.publish(redis_channel, notification.model_dump_json())
        logger.info("notification_published", channel=redis_channel, job_id=job_id)


class OrchestratorExecutionEngine:
    """Start a fresh agent conversation through the orchestrator."""

    def __init__(self, orchestrator_url: str, timeout: float = 30.0):
        self.orchestrator_url = orchestrator_url.rstrip("/")
        self.timeout = timeout

    async def start_task(
        self,
        owner_id: str,
        instruction: str,
        task_id: str | None = None,
        project_id: str | None = None,
        *,
        job_id: str | None = None,
        channel: str | None = None,
    ) -> dict[str, Any]:
        payload = {
            "user_id": owner_id,
            "content": instruction,
            "task_id": task_id,
            "project_id": project_id,
            "job_id": job_id,
            "channel": channel,
        }
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            resp = await client.post(
                f"{self.orchestrator_url}/scheduled-task",
                json=payload,
                headers=get_service_auth_headers(),
            )
            if resp.status_code in (404, 410):
                raise PermanentActionError(f"Orchestrator returned HTTP {resp.status_code}")
            resp.raise_for_status()
            data = resp.json()

        logger.info(
            "agent_task_started",
            job_id=job_id,
            conversation_id=data.get("conversation_id"),
        )
        return data


class ModuleTaskStore:
    """Task lookups and comments via the project planner module's ``/execute``."""

    def __init__(self, module_url: str, timeout: float = 30.0):
        self.module_url = module_url.rstrip("/")
        self.timeout = timeout

    async def _call(self, tool_name: str, owner_id: str, arguments: dict) -> ToolResult:
        call = ToolCall(tool_name=tool_name, arguments=arguments, user_id=owner_id)
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            resp = await client.post(
                f"{self.module_url}/execute",
                json=call.model_dump(),
                headers=get_service_auth_headers(),
            )
            resp.raise_for_status()
        return ToolResult(**resp.json())

    async def get_task(self, owner_id: str, task_id: str) -> dict[str, Any]:
        try:
            uuid.UUID(str(task_id))
        except ValueError as e:
            raise TaskNotFoundError(f"Task not found: {task_id}") from e

        result = await self._call("project_planner.get_task", owner_id, {"task_id": str(task_id)})
        if not result.success:
            error = (result.error or "").lower()
            if any(pat in error for pat in _PERMANENT_ERROR_PATTERNS):
                raise TaskNotFoundError(f"Task not found: {task_id}")
            raise RuntimeError(f"Task lookup failed: {result.error}")
        if not isinstance(result.result, dict):
            raise TaskNotFoundError(f"Task not found: {task_id}")
        return result.result

    async def append_comment(self, owner_id: str, task_id: str, text: str) -> None:
        result = await self._call(
            "project_planner.add_task_comment",
            owner_id,
            {"task_id": str(task_id), "content": text},
        )
        if not result.success:
            raise RuntimeError(f"Failed to add task comment: {result.error}")
