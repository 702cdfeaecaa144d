"""Scheduler module - FastAPI service with background dispatcher."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager

import structlog
from fastapi import Depends, FastAPI

from modules.scheduler.clients import ModuleTaskStore
from modules.scheduler.manifest import MANIFEST
from modules.scheduler.tools import SchedulerTools
from modules.scheduler.worker import create_dispatcher, scheduler_loop
from shared.auth import require_service_auth
from shared.config import get_settings
from shared.database import get_engine, get_session_factory
from shared.redis import close_redis, get_redis
from shared.schemas.common import HealthResponse
from shared.schemas.tools import ModuleManifest, ToolCall, ToolResult

structlog.configure(
    processors=[
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.JSONRenderer(),
    ],
)

logger = structlog.get_logger()

tools: SchedulerTools | None = None
worker_task: asyncio.Task | None = None

# Tools that accept orchestrator-injected conversation context
_TOOLS_WITH_CONVERSATION = ("create_reminder", "create_agent_task")
_PLATFORM_KEYS = (
    "platform",
    "platform_channel_id",
    "platform_thread_id",
    "platform_server_id",
    "conversation_id",
)
_TOOL_NAMES = {
    "create_reminder",
    "create_agent_task",
    "create_follow_up",
    "list_jobs",
    "get_job",
    "cancel_job",
    "pause_or_resume",
    "update_schedule",
    "update_job",
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    global tools, worker_task
    settings = get_settings()
    dispatcher = create_dispatcher(settings, get_session_factory(), get_redis())
    task_store = ModuleTaskStore(settings.module_services["project_planner"])
    tools = SchedulerTools(dispatcher.store, settings, task_store)

    worker_task = asyncio.create_task(
        scheduler_loop(dispatcher, settings.scheduler_poll_interval_seconds)
    )
    logger.info("scheduler_module_ready", worker_id=dispatcher.worker_id)

    try:
        yield
    finally:
        worker_task.cancel()
        try:
            await worker_task
        except asyncio.CancelledError:
            pass
        await close_redis()
        await get_engine().dispose()
        logger.info("scheduler_module_shutdown")


app = FastAPI(title="Scheduler Module", version="3.0.0", lifespan=lifespan)


@app.get("/manifest", response_model=ModuleManifest)
async def manifest(_=Depends(require_service_auth)):
    """Return the module manifest."""
    return MANIFEST


@app.post("/execute", response_model=ToolResult)
async def execute(call: ToolCall, _=Depends(require_service_auth)):
    """Execute a tool call."""
    if tools is None:
        return ToolResult(tool_name=call.tool_name, success=False, error="Module not ready")

    tool_name = call.tool_name.split(".")[-1]
    if tool_name not in _TOOL_NAMES:
        return ToolResult(
            tool_name=call.tool_name,
            success=False,
            error=f"Unknown tool: {call.tool_name}",
        )

    try:
        # The orchestrator's user id is the job owner
        args = dict(call.arguments)
        args.pop("user_id", None)
        if call.user_id:
            args["owner_id"] = call.user_id

        # Platform context is injected into every scheduler.* call; only the
        # create tools keep the conversation link.
        for key in _PLATFORM_KEYS:
            if key == "conversation_id" and tool_name in _TOOLS_WITH_CONVERSATION:
                continue
            args.pop(key, None)

        result = await getattr(tools, tool_name)(**args)
        return ToolResult(tool_name=call.tool_name, success=True, result=result)
    except Exception as e:
        logger.error("tool_execution_error", tool=call.tool_name, error=str(e), exc_info=True)
        return ToolResult(
            tool_name=call.tool_name,
            success=False,
            error=str(e),
            error_type=type(e).__name__,
        )


@app.get("/health", response_model=HealthResponse)
async def health():
    running = worker_task is not None and not worker_task.done()
    return HealthResponse(status="ok" if running else "degraded", worker_running=running)
