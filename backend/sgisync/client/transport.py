"""Client side of the sync socket.

Wraps a ``websockets`` connection: envelopes out, envelopes in.  Replies are
matched to their request by ``req_id``; everything else is a broadcast and
goes to the ``on_message`` callback.

When the socket drops every request still waiting for its reply fails with
:class:`~sgisync.exceptions.TransportError`.  There is no timeout: a request
waits until it is answered or the connection is lost.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from typing import Any
from typing import Awaitable
from typing import Callable
from typing import Dict
from typing import List
from typing import Optional
from urllib.parse import urlencode

import websockets
from websockets.exceptions import ConnectionClosed
from websockets.exceptions import InvalidHandshake
from websockets.exceptions import WebSocketException

from sgisync.constants import WS_CLOSE_UNAUTHORIZED
from sgisync.exceptions import AuthenticationError
from sgisync.exceptions import SyncError
from sgisync.exceptions import TransportError
from sgisync.schemas.ws_messages import Envelope
from sgisync.schemas.ws_messages import EnvelopeValidationError
from sgisync.schemas.ws_messages import MessageType
from sgisync.schemas.ws_messages import validate_envelope_fast

logger = logging.getLogger(__name__)

Connector = Callable[[str], Awaitable[Any]]
MessageCallback = Callable[[str, Dict[str, Any]], Any]
CloseCallback = Callable[[], Any]

# Topic the client stamps on everything it sends.
CLIENT_TOPIC = "sync"

_ERROR_TYPES = {MessageType.ERROR.value, MessageType.SYNC_ERROR.value}

# Handshake answers that mean "bad credential", not "try again later".
# A server closing before accept shows up as HTTP 403.
_AUTH_REJECTED = {401, 403, WS_CLOSE_UNAUTHORIZED}


async def _default_connector(url: str):
    return await websockets.connect(url)


def _handshake_status(exc: InvalidHandshake) -> Optional[int]:
    response = getattr(exc, "response", None)
    status = getattr(response, "status_code", None)
    if status is None:
        status = getattr(exc, "status_code", None)
    return status


class SyncTransport:
    """One logical connection to the sync server."""

    def __init__(
        self,
        url: str,
        token: Optional[str] = None,
        *,
        connector: Optional[Connector] = None,
        on_message: Optional[MessageCallback] = None,
        on_close: Optional[CloseCallback] = None,
    ):
        self.url = url
        self.token = token
        self._connector = connector or _default_connector
        self.on_message = on_message
        self.on_close = on_close

        self._ws = None
        self._reader_task: Optional[asyncio.Task] = None
        self._pending: Dict[str, asyncio.Future] = {}

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    @property
    def connected(self) -> bool:
        return self._ws is not None

    def _handshake_url(self) -> str:
        if not self.token:
            return self.url
        separator = "&" if "?" in self.url else "?"
        return f"{self.url}{separator}{urlencode({'token': self.token})}"

    async def connect(self) -> None:
        """Open the socket; a no-op when already connected.

        Raises :class:`AuthenticationError` when the server rejects the
        credential and :class:`TransportError` when it cannot be reached or
        fails the handshake for any other reason.
        """
        if self._ws is not None:
            return
        try:
            ws = await self._connector(self._handshake_url())
        except InvalidHandshake as exc:
            status = _handshake_status(exc)
            if status in _AUTH_REJECTED:
                raise AuthenticationError(f"sync server rejected the credential (HTTP {status})") from exc
            raise TransportError(f"handshake with {self.url} failed: {exc}") from exc
        except (OSError, WebSocketException, asyncio.TimeoutError) as exc:
            raise TransportError(f"could not connect to {self.url}: {exc}") from exc

        self._ws = ws
        self._reader_task = asyncio.create_task(self._reader(ws))
        logger.info("Connected to sync server %s", self.url)

    async def close(self) -> None:
        ws = self._ws
        if ws is None:
            return
        try:
            await ws.close()
        except Exception as exc:
            logger.debug("Error closing sync socket: %s", exc)
        if self._reader_task is not None and self._reader_task is not asyncio.current_task():
            try:
                await asyncio.wait_for(asyncio.shield(self._reader_task), timeout=1.0)
            except (asyncio.TimeoutError, asyncio.CancelledError):
                self._reader_task.cancel()
        self._connection_lost(ws)

    def _connection_lost(self, ws) -> None:
        if self._ws is not ws:
            return
        self._ws = None
        self._fail_pending(TransportError("connection lost"))
        logger.info("Disconnected from sync server %s", self.url)
        if self.on_close is not None:
            try:
                result = self.on_close()
                if asyncio.iscoroutine(result):
                    asyncio.ensure_future(result)
            except Exception:
                logger.exception("on_close callback failed")

    def _fail_pending(self, exc: Exception) -> None:
        pending, self._pending = self._pending, {}
        for future in pending.values():
            if not future.done():
                future.set_exception(exc)

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    async def _reader(self, ws) -> None:
        try:
            async for raw in ws:
                self._handle_frame(raw)
        except ConnectionClosed as exc:
            logger.info("Sync socket closed: %s", exc)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("Sync socket reader failed: %s", exc)
        finally:
            self._connection_lost(ws)

    def _handle_frame(self, raw: Any) -> None:
        try:
            message = json.loads(raw)
            validate_envelope_fast(message)
        except (json.JSONDecodeError, TypeError, EnvelopeValidationError) as exc:
            logger.warning("Dropping malformed frame from server: %s", exc)
            return

        message_type = message["type"]
        data = message.get("data") or {}
        req_id = message.get("req_id")

        future = self._pending.pop(req_id, None) if req_id else None
        if future is not None:
            if future.done():
                return
            if message_type in _ERROR_TYPES:
                future.set_exception(SyncError(data.get("message") or data.get("error") or message_type))
            else:
                future.set_result(data)
            return

        if self.on_message is not None:
            try:
                self.on_message(message_type, data)
            except Exception:
                logger.exception("on_message callback failed for %s", message_type)

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    async def send(self, message_type: str, data: Dict[str, Any], req_id: Optional[str] = None) -> None:
        """Send one envelope; raises :class:`TransportError` when not connected."""
        ws = self._ws
        if ws is None:
            raise TransportError("not connected")
        envelope = Envelope.create(message_type=message_type, topic=CLIENT_TOPIC, data=data, req_id=req_id)
        try:
            await ws.send(json.dumps(envelope.model_dump()))
        except Exception as exc:
            raise TransportError(f"send failed: {exc}") from exc

    async def request(self, message_type: str, data: Dict[str, Any]) -> Dict[str, Any]:
        """Send an envelope and wait for the reply carrying the same ``req_id``."""
        req_id = uuid.uuid4().hex
        future = asyncio.get_running_loop().create_future()
        self._pending[req_id] = future
        try:
            await self.send(message_type, data, req_id=req_id)
        except TransportError:
            self._pending.pop(req_id, None)
            raise
        return await future

    async def subscribe(self, scope: Optional[str] = None) -> None:
        await self.send(MessageType.SUBSCRIBE.value, {"scope": scope} if scope else {})

    async def unsubscribe(self, scope: str) -> None:
        await self.send(MessageType.UNSUBSCRIBE.value, {"scope": scope})

    async def pull(self, since: Optional[str]) -> Dict[str, Any]:
        return await self.request(MessageType.PULL_REQUEST.value, {"since": since})

    async def push_changes(self, changes: List[Dict[str, Any]]) -> Dict[str, Any]:
        return await self.request(MessageType.PUSH_REQUEST.value, {"changes": changes})

    async def update_presence(self, view: str, entity_id: Optional[str] = None) -> None:
        data: Dict[str, Any] = {"view": view}
        if entity_id is not None:
            data["entityId"] = entity_id
        await self.send(MessageType.PRESENCE_UPDATE.value, data)


__all__ = ["SyncTransport", "CLIENT_TOPIC"]
