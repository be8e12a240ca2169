"""
Services package
Event fan-out and background implementation runs
"""
from .event_service import (
    EventStreamObserver,
    publish,
    subscribe,
    get_events_since,
    clear_events,
    PROGRESS_EVENT,
)
from .implementation_service import (
    ImplementationService,
    ImplementationNotFoundError,
    ImplementationConflictError,
    get_implementation_service,
)

__all__ = [
    # Events
    "EventStreamObserver",
    "publish",
    "subscribe",
    "get_events_since",
    "clear_events",
    "PROGRESS_EVENT",
    # Implementation runs
    "ImplementationService",
    "ImplementationNotFoundError",
    "ImplementationConflictError",
    "get_implementation_service",
]
