"""Client-side sync service.

Composes the change queue, the connection monitor, the socket transport and
the local event bus.  Everything is passed in (or built from settings) by the
caller; there are no module-level singletons, so a process can run several
independent clients, which the tests rely on.

Typical use::

    service = SyncService(token=token)
    service.on("agenda:created", render)
    await service.connect()
    outcome = await service.submit("agenda", "create", {"titulo": "Reunião"})
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any
from typing import Callable
from typing import Dict
from typing import Optional

import httpx

from sgisync.client.connectivity import ConnectionMonitor
from sgisync.client.events import CONNECTION_CHANGED
from sgisync.client.events import PENDING_CHANGED
from sgisync.client.events import SYNC_FAILED
from sgisync.client.events import LocalEventBus
from sgisync.client.queue import ChangeQueue
from sgisync.client.queue import new_client_temp_id
from sgisync.client.storage import JsonFileStore
from sgisync.client.transport import SyncTransport
from sgisync.config import Settings
from sgisync.config import get_settings
from sgisync.constants import LAST_SYNC_KEY
from sgisync.constants import SYNC_PREFIX
from sgisync.constants import get_full_path
from sgisync.exceptions import AuthenticationError
from sgisync.exceptions import SyncError
from sgisync.exceptions import TransportError
from sgisync.utils.log import log

logger = logging.getLogger(__name__)

PUSH_RESULT = "sync:push-result"


@dataclass
class SubmitOutcome:
    """What happened to a mutation handed to :meth:`SyncService.submit`."""

    queued: bool
    client_temp_id: Optional[str] = None
    result: Optional[Dict[str, Any]] = None


class SyncService:
    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        token: Optional[str] = None,
        store=None,
        bus: Optional[LocalEventBus] = None,
        transport: Optional[SyncTransport] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        scope: Optional[str] = None,
    ):
        self.settings = settings or get_settings()
        self.token = token
        self.scope = scope
        self.store = store if store is not None else JsonFileStore(self.settings.sync_state_path)
        self.bus = bus or LocalEventBus()

        self.transport = transport or SyncTransport(self.settings.sync_ws_url, token)
        self.transport.on_message = self._on_server_message
        self.transport.on_close = self._on_transport_closed

        self.queue = ChangeQueue(self.store, push=self.transport.push_changes, on_change=self._on_queue_changed)
        self.monitor = ConnectionMonitor(self)

        self._http = http_client
        self._owns_http = http_client is None

        self._connecting: Optional[asyncio.Future] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._closing = False

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def is_connected(self) -> bool:
        return self.transport.connected

    @property
    def watermark(self) -> Optional[str]:
        return self.store.get(LAST_SYNC_KEY)

    def pending_count(self) -> int:
        return self.queue.pending_count()

    def on(self, event: str, handler: Callable[[Any], None]) -> Callable[[], None]:
        return self.bus.on(event, handler)

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        """Open the socket, then subscribe, pull (when a watermark exists) and drain.

        A rejected token raises :class:`AuthenticationError` after reporting
        it as ``sync:error`` with ``fatal`` set; the caller has to obtain a
        new token before connecting again.
        """
        self._closing = False
        # Callers arriving while a connect is running share it.
        if self._connecting is None or self._connecting.done():
            self._connecting = asyncio.ensure_future(self._open())
        await self._connecting

    async def _open(self) -> None:
        if self.transport.connected:
            return
        try:
            await self.transport.connect()
        except AuthenticationError as exc:
            logger.error("Sync server rejected the access token: %s", exc)
            self.bus.emit(SYNC_FAILED, {"message": str(exc), "fatal": True})
            raise
        self.bus.emit(CONNECTION_CHANGED, {"connected": True})
        await self.transport.subscribe(self.scope)
        await self.catch_up()

    async def catch_up(self) -> None:
        """Pull what was missed since the watermark, then push the queue."""
        if self.watermark:
            await self.pull()
        await self.drain()

    async def close(self) -> None:
        self._closing = True
        task, self._reconnect_task = self._reconnect_task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self.monitor.stop_watching()
        await self.transport.close()
        if self._http is not None and self._owns_http:
            await self._http.aclose()
            self._http = None

    def _on_transport_closed(self) -> None:
        self.bus.emit(CONNECTION_CHANGED, {"connected": False})
        if self._closing or not self.monitor.is_online:
            return
        if self._reconnect_task is None or self._reconnect_task.done():
            self._reconnect_task = asyncio.ensure_future(self._reconnect())

    async def _reconnect(self) -> None:
        """Reopen a dropped socket with exponential backoff.

        Runs while the monitor reports the network as up.  Gives up for good
        on a rejected token; going offline hands retries back to the monitor.
        """
        delay = self.settings.sync_reconnect_delay
        while True:
            await asyncio.sleep(delay)
            if self._closing or not self.monitor.is_online or self.transport.connected:
                return
            try:
                await self.connect()
            except AuthenticationError:
                return
            except TransportError as exc:
                logger.info("Reconnect failed: %s", exc)
            else:
                if self.transport.connected:
                    logger.info("Reconnected to sync server")
                    return
            delay = min(delay * 2, self.settings.sync_reconnect_max_delay)

    # ------------------------------------------------------------------
    # Pull
    # ------------------------------------------------------------------

    async def pull(self) -> Optional[Dict[str, Any]]:
        """Request changes since the stored watermark and apply the response.

        A server-side failure (``sync:error``) is reported on the bus and the
        watermark is left untouched.
        """
        try:
            data = await self.transport.pull(self.watermark)
        except TransportError:
            raise
        except SyncError as exc:
            logger.warning("Pull rejected by server: %s", exc)
            self.bus.emit(SYNC_FAILED, {"message": str(exc)})
            return None
        self.apply_pull(data)
        return data

    def apply_pull(self, data: Dict[str, Any]) -> None:
        """Re-emit pulled records on the bus and advance the watermark.

        The watermark is only ever set to the server's ``syncTimestamp``.
        """
        entities = data.get("entities") or []
        deleted = data.get("deleted") or []

        for entity in entities:
            kind = entity.get("entityKind")
            if kind:
                self.bus.emit(f"{kind}:synced", entity)
        for tombstone in deleted:
            kind = tombstone.get("entityKind")
            if kind:
                self.bus.emit(f"{kind}:deleted", {"id": tombstone.get("id"), "deletedAt": tombstone.get("deletedAt")})

        sync_timestamp = data.get("syncTimestamp")
        if sync_timestamp:
            self.store.set(LAST_SYNC_KEY, sync_timestamp)

        log.info("sync-pull-applied", entities=len(entities), deleted=len(deleted), watermark=sync_timestamp)

    # ------------------------------------------------------------------
    # Push
    # ------------------------------------------------------------------

    async def drain(self) -> Optional[Dict[str, Any]]:
        result = await self.queue.drain()
        if result is not None:
            self.bus.emit(PUSH_RESULT, result)
        return result

    async def queue_change(
        self,
        entity_kind: str,
        action: str,
        payload: Optional[Dict[str, Any]] = None,
        target_id: Optional[str] = None,
    ) -> str:
        """Enqueue a mutation; pushed right away when online and connected."""
        temp_id = self.queue.enqueue(entity_kind, action, payload, target_id)
        if self.monitor.is_online and self.transport.connected:
            await self.drain()
        return temp_id

    def _client(self) -> httpx.AsyncClient:
        if self._http is None:
            headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}
            self._http = httpx.AsyncClient(base_url=self.settings.sync_server_url, headers=headers)
        return self._http

    async def submit(
        self,
        entity_kind: str,
        action: str,
        payload: Optional[Dict[str, Any]] = None,
        target_id: Optional[str] = None,
    ) -> SubmitOutcome:
        """Try the mutation as a direct request; queue it when the server is unreachable.

        Raises :class:`AuthenticationError` on 401 and :class:`SyncError` for
        other client errors, which retrying would not fix.
        """
        change: Dict[str, Any] = {
            "entityKind": str(getattr(entity_kind, "value", entity_kind)),
            "action": str(getattr(action, "value", action)).lower(),
            "payload": dict(payload or {}),
            "clientTempId": new_client_temp_id(),
        }
        if target_id is not None:
            change["targetId"] = target_id

        if self.monitor.is_online:
            try:
                response = await self._client().post(get_full_path(f"{SYNC_PREFIX}/push"), json={"changes": [change]})
            except httpx.TransportError as exc:
                logger.info("Direct request failed, queueing: %s", exc)
            else:
                if response.status_code == 401:
                    raise AuthenticationError("server rejected the access token")
                if response.status_code < 500:
                    if response.status_code >= 400:
                        raise SyncError(f"server refused mutation: HTTP {response.status_code}")
                    body = response.json()
                    results = body.get("results") or []
                    return SubmitOutcome(queued=False, result=results[0] if results else None)
                logger.info("Direct request failed with HTTP %s, queueing", response.status_code)

        temp_id = await self.queue_change(entity_kind, action, payload, target_id)
        return SubmitOutcome(queued=True, client_temp_id=temp_id)

    # ------------------------------------------------------------------
    # Presence
    # ------------------------------------------------------------------

    async def update_presence(self, view: str, entity_id: Optional[str] = None) -> None:
        if self.transport.connected:
            await self.transport.update_presence(view, entity_id)

    # ------------------------------------------------------------------
    # Connectivity probe
    # ------------------------------------------------------------------

    async def probe(self) -> bool:
        """``True`` when the sync server answers HTTP at all."""
        try:
            response = await self._client().get("/")
        except httpx.TransportError:
            return False
        return response.status_code < 500

    def watch_connectivity(self, interval: float = 5.0):
        return self.monitor.start_watching(self.probe, interval)

    # ------------------------------------------------------------------
    # Inbound broadcasts and queue changes
    # ------------------------------------------------------------------

    def _on_server_message(self, message_type: str, data: Dict[str, Any]) -> None:
        self.bus.emit(message_type, data)

    def _on_queue_changed(self, count: int) -> None:
        self.bus.emit(PENDING_CHANGED, {"count": count})


__all__ = ["SyncService", "SubmitOutcome", "PUSH_RESULT"]
