"""Message contracts exchanged over the event bus."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Dict

from pydantic import BaseModel, Field

# Lifecycle notifications emitted by the engine.
WORKFLOW_STARTED = "workflow:started"
WORKFLOW_TRANSITIONED = "workflow:transitioned"
WORKFLOW_COMPLETED = "workflow:completed"
WORKFLOW_CANCELLED = "workflow:cancelled"

# Commands the engine accepts from the bus.
START_COMMAND = "workflow:start"
TRANSITION_COMMAND = "workflow:transition"
COMPLETE_COMMAND = "workflow:complete"
CANCEL_COMMAND = "workflow:cancel"

COMMAND_TOPICS = (START_COMMAND, TRANSITION_COMMAND, COMPLETE_COMMAND, CANCEL_COMMAND)


class BusMessage(BaseModel):
    """Envelope for everything published on the bus."""

    message_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    topic: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    payload: Dict[str, Any] = Field(default_factory=dict)

    def to_json(self) -> str:
        """Serialize message to JSON."""
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str | bytes) -> "BusMessage":
        """Deserialize message from JSON."""
        return cls.model_validate_json(data)
