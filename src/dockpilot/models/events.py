"""Progress stream event models."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class EventType(str, Enum):
    """Types of progress stream events."""

    CONNECTED = "connected"
    PROGRESS = "progress"
    ERROR = "error"
    DONE = "done"
    HEARTBEAT = "heartbeat"


class StreamEvent(BaseModel):
    """One event on a progress topic.

    Attributes:
        type: Event type
        id: Topic id (deployment id or session id)
        sequence: Per-topic position, assigned by the broadcaster
        timestamp: Emission time
        data: Event payload; only changed fields for ``progress``
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    type: EventType
    id: str
    sequence: int = Field(default=0, ge=0)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    data: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def connected(cls, topic: str, snapshot: dict[str, Any]) -> StreamEvent:
        """Build the first event of a subscription."""
        return cls(type=EventType.CONNECTED, id=topic, data={"snapshot": snapshot})

    @classmethod
    def progress(cls, topic: str, **fields: Any) -> StreamEvent:
        """Build a progress event carrying only the fields that changed."""
        data = {key: value for key, value in fields.items() if value is not None}
        return cls(type=EventType.PROGRESS, id=topic, data=data)

    @classmethod
    def error(cls, topic: str, error: str, code: str) -> StreamEvent:
        """Build a non-terminal error event."""
        return cls(type=EventType.ERROR, id=topic, data={"error": error, "code": code})

    @classmethod
    def done(cls, topic: str, status: str, error: str | None = None) -> StreamEvent:
        """Build the terminal event of a topic."""
        data: dict[str, Any] = {"status": status}
        if error is not None:
            data["error"] = error
        return cls(type=EventType.DONE, id=topic, data=data)

    @classmethod
    def heartbeat(cls, topic: str) -> StreamEvent:
        """Build a keep-alive event."""
        return cls(type=EventType.HEARTBEAT, id=topic)

    def to_sse(self) -> str:
        """Render the event as a Server-Sent Events frame."""
        payload = {
            "id": self.id,
            "sequence": self.sequence,
            "timestamp": self.timestamp.isoformat(),
            **self.data,
        }
        body = json.dumps(payload, default=str)
        return f"id: {self.sequence}\nevent: {self.type.value}\ndata: {body}\n\n"
