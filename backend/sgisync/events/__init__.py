from sgisync.events.event_bus import EventBus
from sgisync.events.event_bus import EventType
from sgisync.events.publisher import publish_event

__all__ = ["EventBus", "EventType", "publish_event"]
