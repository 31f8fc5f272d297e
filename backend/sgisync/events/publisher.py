"""
Event publishing helper.

A broadcast is fire-and-forget from the point of view of whoever committed
the mutation: publishing failures are logged and never re-raised.
"""

import logging
from typing import Any
from typing import Dict
from typing import Optional

from sgisync.events.event_bus import EventBus
from sgisync.events.event_bus import EventType

logger = logging.getLogger(__name__)


async def publish_event(bus: Optional[EventBus], event_type: EventType, data: Dict[str, Any]) -> None:
    """
    Publish *data* on *bus* as *event_type*.

    ``event_type`` is copied into the payload so subscribers that listen to
    several event types can tell them apart.

    Usage:
        await publish_event(bus, EventType.AGENDA_CREATED, {"entity": {...}})
    """
    if bus is None:
        return
    try:
        await bus.publish(event_type, {**data, "event_type": event_type.value})
    except Exception as e:
        logger.error(f"Failed to publish event {event_type}: {e}")
        # Don't re-raise - the mutation that triggered the event is already committed
