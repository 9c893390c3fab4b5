"""
In-process event bus.

Handlers are plain callables or coroutine functions registered per event
type (or ``"*"`` for every event). A failing handler marks the event as
FAILED and is logged; it never propagates back to the publisher.
"""

import inspect
from collections import defaultdict
from collections.abc import Awaitable, Callable
from typing import Any

import structlog
from pydantic import ValidationError as PydanticValidationError

from subsphere.events.exceptions import EventPublishError
from subsphere.events.models import Event, EventMetadata, EventPriority, EventStatus

logger = structlog.get_logger(__name__)

EventHandler = Callable[[Event], Awaitable[None] | None]

WILDCARD = "*"


class EventBus:
    """Publish/subscribe dispatcher for lifecycle events."""

    def __init__(self, keep_history: bool = True, max_history: int = 1000) -> None:
        self._handlers: dict[str, list[EventHandler]] = defaultdict(list)
        self._keep_history = keep_history
        self._max_history = max_history
        self._history: list[Event] = []

    def subscribe(self, event_type: str, handler: EventHandler) -> None:
        """Register a handler for an event type (``"*"`` matches everything)."""
        if handler not in self._handlers[event_type]:
            self._handlers[event_type].append(handler)
            logger.debug("Event handler subscribed", event_type=event_type)

    def unsubscribe(self, event_type: str, handler: EventHandler) -> bool:
        """Remove a handler. Returns False when it was not registered."""
        handlers = self._handlers.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)
            return True
        return False

    def handlers_for(self, event_type: str) -> list[EventHandler]:
        return [*self._handlers.get(event_type, []), *self._handlers.get(WILDCARD, [])]

    @property
    def history(self) -> list[Event]:
        """Events published so far, oldest first."""
        return list(self._history)

    def clear_history(self) -> None:
        self._history.clear()

    async def publish(
        self,
        event_type: str,
        payload: dict[str, Any] | None = None,
        metadata: dict[str, Any] | None = None,
        priority: EventPriority = EventPriority.NORMAL,
    ) -> Event:
        """
        Publish an event to every matching handler.

        Args:
            event_type: Dotted event name, e.g. ``subscription.started``
            payload: Event body
            metadata: Envelope fields (source, subscriber reference, ...)
            priority: Delivery priority hint

        Returns:
            The dispatched event with its final status
        """
        if not event_type:
            raise EventPublishError("Event type is required")

        try:
            event = Event(
                event_type=event_type,
                payload=payload or {},
                metadata=EventMetadata(**(metadata or {})),
                priority=priority,
            )
        except PydanticValidationError as e:
            raise EventPublishError(f"Invalid event {event_type}: {e}") from e

        failed = False
        for handler in self.handlers_for(event_type):
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                failed = True
                event.errors.append(f"{getattr(handler, '__name__', repr(handler))}: {e}")
                logger.exception(
                    "Event handler failed",
                    event_type=event_type,
                    event_id=event.event_id,
                    handler=getattr(handler, "__name__", repr(handler)),
                )

        event.status = EventStatus.FAILED if failed else EventStatus.COMPLETED

        if self._keep_history:
            self._history.append(event)
            if len(self._history) > self._max_history:
                del self._history[: len(self._history) - self._max_history]

        logger.debug(
            "Event published",
            event_type=event_type,
            event_id=event.event_id,
            status=event.status.value,
        )
        return event


_event_bus: EventBus | None = None


def get_event_bus() -> EventBus:
    """Get the process-wide event bus (singleton)."""
    global _event_bus
    if _event_bus is None:
        _event_bus = EventBus()
    return _event_bus


def reset_event_bus() -> None:
    """Drop the process-wide event bus (mainly for testing)."""
    global _event_bus
    _event_bus = None
