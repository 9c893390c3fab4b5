"""In-process event bus used for lifecycle notifications."""

from subsphere.events.bus import EventBus, EventHandler, get_event_bus, reset_event_bus
from subsphere.events.exceptions import EventError, EventPublishError
from subsphere.events.models import Event, EventMetadata, EventPriority, EventStatus

__all__ = [
    "Event",
    "EventBus",
    "EventError",
    "EventHandler",
    "EventMetadata",
    "EventPriority",
    "EventPublishError",
    "EventStatus",
    "get_event_bus",
    "reset_event_bus",
]
