"""
Event Bus - execution events and a pub/sub bus for hosts.

The engine reports everything it does through ``ExecutionEvent`` objects
handed to the run's ``on_event`` callback. Events exist for display only:
execution never depends on a listener being present, and a failing
listener never affects the run.

``EventBus.publish`` can be passed directly as ``on_event`` to fan events
out to several subscribers and keep a bounded history. The CLI streams
``--events`` through one.
"""

import inspect
import itertools
import logging
from collections import deque
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any

logger = logging.getLogger(__name__)


class ExecutionEventType(StrEnum):
    """Types of events emitted during a run."""

    # Run lifecycle
    START = "start"
    COMPLETE = "complete"
    ERROR = "error"

    # Node lifecycle
    NODE_START = "node-start"
    NODE_COMPLETE = "node-complete"
    NODE_ERROR = "node-error"
    NODE_SKIPPED = "node-skipped"

    # Retry / config side channel
    NODE_RETRY = "node-retry"
    NODE_DATA_UPDATE = "node-data-update"


@dataclass
class ExecutionEvent:
    """An event in a flow run."""

    type: ExecutionEventType
    run_id: str = ""
    node_id: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    depth: int = 0  # Subflow nesting level of the emitting engine
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "type": self.type.value,
            "run_id": self.run_id,
            "node_id": self.node_id,
            "data": self.data,
            "depth": self.depth,
            "timestamp": self.timestamp.isoformat(),
        }


# Handlers may be sync or async
EventHandler = Callable[[ExecutionEvent], Awaitable[None] | None]


async def dispatch_event(handler: EventHandler, event: ExecutionEvent) -> None:
    """Invoke a handler, awaiting it if needed. Handler errors are logged, not raised."""
    try:
        result = handler(event)
        if inspect.isawaitable(result):
            await result
    except Exception as e:
        logger.error(f"Handler error for {event.type}: {e}")


@dataclass
class Subscription:
    """A handler and the events it receives. No event types means every type."""

    id: str
    handler: EventHandler
    event_types: frozenset[ExecutionEventType] = frozenset()
    node_id: str | None = None
    run_id: str | None = None

    def matches(self, event: ExecutionEvent) -> bool:
        if self.event_types and event.type not in self.event_types:
            return False
        if self.node_id is not None and event.node_id != self.node_id:
            return False
        return self.run_id is None or event.run_id == self.run_id


class EventBus:
    """
    Fans execution events out to subscribers and keeps the latest ones.

    Example:
        bus = EventBus()
        bus.subscribe([ExecutionEventType.NODE_ERROR], report_failure)

        state = await engine.execute(nodes, edges, ExecutionOptions(on_event=bus.publish))
        retries = bus.get_history(event_type=ExecutionEventType.NODE_RETRY)

    Handlers run one at a time in subscription order, so a handler that
    streams events sees them in emission order.
    """

    def __init__(self, max_history: int = 1000):
        self._subscriptions: dict[str, Subscription] = {}
        self._history: deque[ExecutionEvent] = deque(maxlen=max_history)
        self._ids = itertools.count(1)

    def subscribe(
        self,
        event_types: Iterable[ExecutionEventType] | None,
        handler: EventHandler,
        node_id: str | None = None,
        run_id: str | None = None,
    ) -> str:
        """
        Register ``handler`` for events of ``event_types`` (None for all),
        optionally only from one node or one run.

        Returns:
            Subscription id for unsubscribe()
        """
        sub_id = f"sub_{next(self._ids)}"
        self._subscriptions[sub_id] = Subscription(
            id=sub_id,
            handler=handler,
            event_types=frozenset(event_types or ()),
            node_id=node_id,
            run_id=run_id,
        )
        return sub_id

    def unsubscribe(self, subscription_id: str) -> bool:
        return self._subscriptions.pop(subscription_id, None) is not None

    async def publish(self, event: ExecutionEvent) -> None:
        """Record ``event`` and hand it to every matching subscriber."""
        self._history.append(event)
        for subscription in list(self._subscriptions.values()):
            if subscription.matches(event):
                await dispatch_event(subscription.handler, event)

    def get_history(
        self,
        event_type: ExecutionEventType | None = None,
        node_id: str | None = None,
        run_id: str | None = None,
        limit: int | None = None,
    ) -> list[ExecutionEvent]:
        """Recorded events, oldest first; ``limit`` keeps the most recent ones."""
        events = [
            e
            for e in self._history
            if (event_type is None or e.type == event_type)
            and (node_id is None or e.node_id == node_id)
            and (run_id is None or e.run_id == run_id)
        ]
        return events[-limit:] if limit else events
