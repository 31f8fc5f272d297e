"""Local event bus for the sync client.

In-process publish/subscribe between the sync layer and whatever renders
state (UI, CLI, tests).  Handlers run synchronously inside :meth:`emit`; a
handler that raises is logged and the remaining handlers still run.
"""

import itertools
import logging
from typing import Any
from typing import Callable
from typing import Dict

logger = logging.getLogger(__name__)

Handler = Callable[[Any], None]

# Events the client itself emits, besides the server broadcasts it relays.
AGENDA_SYNCED = "agenda:synced"
NOTIFICATION_SYNCED = "notification:synced"
PENDING_CHANGED = "sync:pending-changed"
CONNECTION_CHANGED = "sync:connection-changed"
SYNC_FAILED = "sync:error"


class LocalEventBus:
    """Pure pub/sub: no knowledge of the transport or the queue."""

    def __init__(self):
        # Keyed by subscription token, so one handler may be registered twice.
        self._handlers: Dict[str, Dict[int, Handler]] = {}
        self._tokens = itertools.count()

    def on(self, event: str, handler: Handler) -> Callable[[], None]:
        """Register *handler* for *event* and return an unsubscribe callable.

        Calling the returned function more than once is harmless.
        """
        token = next(self._tokens)
        self._handlers.setdefault(event, {})[token] = handler

        def unsubscribe() -> None:
            handlers = self._handlers.get(event)
            if not handlers or handlers.pop(token, None) is None:
                return
            if not handlers:
                del self._handlers[event]

        return unsubscribe

    def emit(self, event: str, data: Any = None) -> None:
        # Snapshot so handlers may unsubscribe themselves while running.
        for handler in list(self._handlers.get(event, {}).values()):
            try:
                handler(data)
            except Exception:
                logger.exception("Event handler error for %s", event)

    def handler_count(self, event: str) -> int:
        return len(self._handlers.get(event, ()))


__all__ = [
    "LocalEventBus",
    "AGENDA_SYNCED",
    "NOTIFICATION_SYNCED",
    "PENDING_CHANGED",
    "CONNECTION_CHANGED",
    "SYNC_FAILED",
]
