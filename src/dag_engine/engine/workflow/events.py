from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class EventType(str, Enum):
    RUN_STARTED = "RunStarted"
    NODE_REQUESTED = "NodeRequested"
    NODE_COMPLETED = "NodeCompleted"
    USER_RESPONDED = "UserResponded"


class ExecutionEvent(BaseModel):
    """One entry of a run's event queue.

    Events are never deleted. ``processed_at`` is set once; a processed event is
    never dispatched again. ``type`` stays a plain string so events written by a
    newer producer still load.
    """

    id: str
    run_id: str
    sequence: int
    type: str
    payload: dict[str, Any] | None = Field(default=None)
    processed_at: str | None = Field(default=None)
    created_at: str

    @property
    def processed(self) -> bool:
        return self.processed_at is not None

    @property
    def event_type(self) -> EventType | None:
        try:
            return EventType(self.type)
        except ValueError:
            return None

    def payload_value(self, key: str, default: Any = None) -> Any:
        return (self.payload or {}).get(key, default)
