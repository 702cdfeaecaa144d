"""Action payload schemas for scheduled jobs.

The ``action_payload`` column is a plain JSON map; its shape depends on the
job's ``action_type``. These models are the tagged union used to validate
payloads at the store boundary and to hand typed payloads to the handlers.
"""

from __future__ import annotations

import uuid
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class NotifyPayload(BaseModel):
    """Payload for ``action_type="notify"``."""

    model_config = ConfigDict(extra="ignore")

    action_type: Literal["notify"] = "notify"
    message: str = Field(min_length=1)
    preferred_channel: str = "app"


class AgentTaskPayload(BaseModel):
    """Payload for ``action_type="agent_task"``."""

    model_config = ConfigDict(extra="ignore")

    action_type: Literal["agent_task"] = "agent_task"
    instruction: str = Field(min_length=1)
    task_id: uuid.UUID | None = None
    project_id: uuid.UUID | None = None
    preferred_channel: str = "app"


ActionPayload = Annotated[
    Union[NotifyPayload, AgentTaskPayload],
    Field(discriminator="action_type"),
]

_payload_adapter: TypeAdapter[ActionPayload] = TypeAdapter(ActionPayload)


def parse_action_payload(action_type: str, data: dict[str, Any] | None) -> ActionPayload:
    """Validate a stored payload map against the model for ``action_type``.

    Raises ``pydantic.ValidationError`` when the shape does not match.
    """
    return _payload_adapter.validate_python({**(data or {}), "action_type": action_type})


def dump_action_payload(payload: NotifyPayload | AgentTaskPayload) -> dict[str, Any]:
    """Serialise a payload for the JSON column (the tag lives in ``action_type``)."""
    return payload.model_dump(mode="json", exclude={"action_type"}, exclude_none=True)
