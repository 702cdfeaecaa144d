"""Pydantic schemas for the scheduler service."""

from shared.schemas.common import HealthResponse
from shared.schemas.jobs import ActionPayload, AgentTaskPayload, NotifyPayload
from shared.schemas.notifications import Notification
from shared.schemas.tools import (
    ModuleManifest,
    ToolCall,
    ToolDefinition,
    ToolParameter,
    ToolResult,
)

__all__ = [
    "ActionPayload",
    "AgentTaskPayload",
    "HealthResponse",
    "ModuleManifest",
    "Notification",
    "NotifyPayload",
    "ToolCall",
    "ToolDefinition",
    "ToolParameter",
    "ToolResult",
]
