"""In-process event bus between the reconciliation engine and the broadcaster.

The engine publishes one event per committed change; the topic connection
manager subscribes and turns each event into a broadcast.  Handlers run one
after another in subscription order, so broadcasts for a single push leave
in the order the changes were applied.
"""

import logging
from enum import Enum
from typing import Any
from typing import Awaitable
from typing import Callable
from typing import Dict
from typing import List

logger = logging.getLogger(__name__)

Handler = Callable[[Dict[str, Any]], Awaitable[None]]


class EventType(str, Enum):
    """Server-side events, named exactly like the broadcast ``type`` they become."""

    # Agenda events
    AGENDA_CREATED = "agenda:created"
    AGENDA_UPDATED = "agenda:updated"
    AGENDA_DELETED = "agenda:deleted"

    # Notification events (addressed to a single user)
    NOTIFICATION_NEW = "notification:new"
    NOTIFICATION_UPDATED = "notification:updated"

    # Presence
    PRESENCE_UPDATED = "presence:updated"
    PRESENCE_LEFT = "presence:left"


class EventBus:
    """Async publish/subscribe keyed by :class:`EventType`.

    One instance per application; ``create_app`` builds it and hands it to
    both the engine and the connection manager.
    """

    def __init__(self):
        self._handlers: Dict[EventType, List[Handler]] = {}

    async def publish(self, event_type: EventType, data: Dict[str, Any]) -> None:
        """Await every handler of *event_type* in turn.

        A failing handler is logged and skipped; the publisher never sees
        the error.
        """
        handlers = self._handlers.get(event_type)
        if not handlers:
            return

        logger.debug("Publishing %s to %d handler(s)", event_type.value, len(handlers))

        for handler in list(handlers):
            try:
                await handler(data)
            except Exception as exc:
                logger.error("Handler for %s failed: %s", event_type.value, exc)

    def subscribe(self, event_type: EventType, handler: Handler) -> None:
        """Register *handler*; subscribing the same handler twice is a no-op."""
        handlers = self._handlers.setdefault(event_type, [])
        if handler not in handlers:
            handlers.append(handler)

    def unsubscribe(self, event_type: EventType, handler: Handler) -> None:
        handlers = self._handlers.get(event_type)
        if not handlers or handler not in handlers:
            return
        handlers.remove(handler)
        if not handlers:
            del self._handlers[event_type]

    def subscriber_count(self, event_type: EventType) -> int:
        return len(self._handlers.get(event_type, ()))
