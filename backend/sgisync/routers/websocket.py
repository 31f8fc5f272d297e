"""WebSocket routing module.

One socket per device.  The bearer credential is checked before the
handshake is accepted; a rejected socket never reaches the connection
manager, so it leaves no group membership behind.
"""

from __future__ import annotations

import json
import logging
import uuid
from typing import Optional

from fastapi import APIRouter
from fastapi import WebSocket
from fastapi import WebSocketDisconnect

from sgisync.constants import WS_CLOSE_UNAUTHORIZED
from sgisync.constants import WS_ENDPOINT
from sgisync.dependencies.auth import verify_credential
from sgisync.events import EventType
from sgisync.events import publish_event
from sgisync.websocket.handlers import ConnectionContext
from sgisync.websocket.handlers import dispatch_message
from sgisync.websocket.handlers import send_error

router = APIRouter()
logger = logging.getLogger(__name__)


@router.websocket(WS_ENDPOINT)
async def websocket_endpoint(
    websocket: WebSocket,
    token: Optional[str] = None,
):
    """Sync socket: subscribe, pull-request, push-request and presence.

    Args:
        websocket: The WebSocket connection
        token: Bearer credential; the ``Authorization`` header is used when
            the query parameter is absent
    """
    client_id = str(uuid.uuid4())
    state = websocket.app.state
    logger.info(f"New WebSocket connection attempt from client {client_id}")

    # ------------------------------------------------------------------
    # Authenticate BEFORE accepting the WebSocket handshake.
    # ------------------------------------------------------------------

    credential = token or websocket.headers.get("authorization")
    db_for_auth = state.session_factory()
    try:
        user = verify_credential(credential, db_for_auth, settings=state.settings)
    finally:
        db_for_auth.close()

    if user is None:
        # 4401 mirrors HTTP 401.
        logger.info("WebSocket auth failed – closing connection for client %s", client_id)
        await websocket.close(code=WS_CLOSE_UNAUTHORIZED, reason="Unauthorized")
        return

    manager = state.topic_manager
    ctx = ConnectionContext(client_id=client_id, user=user, manager=manager, engine=state.engine)

    try:
        await websocket.accept()
        await manager.connect(client_id, websocket, user.user_id, user.role)
        logger.info(f"WebSocket connection established for client {client_id}")

        # Main message loop
        while True:
            raw_data = await websocket.receive_text()
            try:
                data = json.loads(raw_data)
            except json.JSONDecodeError as e:
                logger.warning(f"Invalid JSON from client {client_id}: {e}")
                await send_error(ctx, "Invalid JSON payload")
                continue
            await dispatch_message(ctx, data)

    except WebSocketDisconnect:
        logger.info(f"WebSocket connection closed for client {client_id}")
    except Exception as e:
        logger.error(f"WebSocket error for client {client_id}: {str(e)}")
    finally:
        await manager.disconnect(client_id)
        await publish_event(manager.event_bus, EventType.PRESENCE_LEFT, {"userId": user.user_id})
        logger.info(f"Cleaned up connection for client {client_id}")
