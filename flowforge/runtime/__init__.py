"""Runtime support: execution events and the event bus."""

from flowforge.runtime.event_bus import (
    EventBus,
    EventHandler,
    ExecutionEvent,
    ExecutionEventType,
    Subscription,
    dispatch_event,
)

__all__ = [
    "EventBus",
    "EventHandler",
    "ExecutionEvent",
    "ExecutionEventType",
    "Subscription",
    "dispatch_event",
]
