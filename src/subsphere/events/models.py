"""Event data models."""

from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field


class EventPriority(str, Enum):
    """Delivery priority hint for subscribers."""

    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    CRITICAL = "critical"


class EventStatus(str, Enum):
    """Processing status of a published event."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class EventMetadata(BaseModel):
    """Envelope metadata attached to every event."""

    model_config = ConfigDict(extra="allow")

    source: str | None = None
    subscriber_type: str | None = None
    subscriber_id: str | None = None
    correlation_id: str | None = None


class Event(BaseModel):
    """A published domain event."""

    event_id: str = Field(default_factory=lambda: str(uuid4()))
    event_type: str
    payload: dict[str, Any] = Field(default_factory=dict)
    metadata: EventMetadata = Field(default_factory=EventMetadata)
    priority: EventPriority = EventPriority.NORMAL
    status: EventStatus = EventStatus.PENDING
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    errors: list[str] = Field(default_factory=list)
