"""Event bus exceptions."""


class EventError(Exception):
    """Base exception for event bus errors."""


class EventPublishError(EventError):
    """Raised when an event cannot be constructed or dispatched."""
