"""Client half of the sync core: queue, monitor, transport, local event bus."""

from sgisync.client.connectivity import ConnectionMonitor
from sgisync.client.events import LocalEventBus
from sgisync.client.queue import ChangeQueue
from sgisync.client.service import SubmitOutcome
from sgisync.client.service import SyncService
from sgisync.client.storage import JsonFileStore
from sgisync.client.transport import SyncTransport

__all__ = [
    "ChangeQueue",
    "ConnectionMonitor",
    "JsonFileStore",
    "LocalEventBus",
    "SubmitOutcome",
    "SyncService",
    "SyncTransport",
]
