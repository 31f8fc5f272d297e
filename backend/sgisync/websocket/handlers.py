"""WebSocket message handlers for the sync protocol.

Each inbound envelope is validated against the payload model registered for
its ``type`` and handed to one handler.  Handlers reply through the
connection's own queue, so replies keep the order in which requests arrived.
"""

import logging
from dataclasses import dataclass
from typing import Any
from typing import Dict
from typing import Optional

from pydantic import BaseModel
from pydantic import ValidationError

from sgisync.constants import AGENDA_ALL_TOPIC
from sgisync.dependencies.auth import AuthenticatedUser
from sgisync.events import EventType
from sgisync.events import publish_event
from sgisync.exceptions import WatermarkError
from sgisync.schemas.ws_messages import Envelope
from sgisync.schemas.ws_messages import EnvelopeValidationError
from sgisync.schemas.ws_messages import ErrorData
from sgisync.schemas.ws_messages import MessageType
from sgisync.schemas.ws_messages import PresenceUpdateData
from sgisync.schemas.ws_messages import PresenceUpdatedData
from sgisync.schemas.ws_messages import PullRequestData
from sgisync.schemas.ws_messages import PushRequestData
from sgisync.schemas.ws_messages import SubscribeData
from sgisync.schemas.ws_messages import SyncErrorData
from sgisync.schemas.ws_messages import UnsubscribeData
from sgisync.schemas.ws_messages import validate_envelope_fast
from sgisync.services.reconciliation import ReconciliationEngine
from sgisync.utils.time import to_iso
from sgisync.utils.time import utc_now
from sgisync.websocket.manager import TopicConnectionManager

logger = logging.getLogger(__name__)

# Topic stamped on replies addressed to a single connection.
SYNC_TOPIC = "sync"


@dataclass
class ConnectionContext:
    """Everything a handler needs to know about the socket it serves."""

    client_id: str
    user: AuthenticatedUser
    manager: TopicConnectionManager
    engine: ReconciliationEngine


async def send_to_client(
    ctx: ConnectionContext,
    message_type: str,
    data: Dict[str, Any],
    req_id: Optional[str] = None,
) -> bool:
    """Wrap *data* in an envelope and queue it for this connection only."""
    envelope = Envelope.create(message_type=message_type, topic=SYNC_TOPIC, data=data, req_id=req_id)
    return await ctx.manager.send_to_client(ctx.client_id, envelope.model_dump())


async def send_error(ctx: ConnectionContext, error_msg: str, req_id: Optional[str] = None) -> None:
    """Send an error message to a client.

    Args:
        ctx: The connection to send to
        error_msg: The error message
        req_id: Optional request ID to correlate with request
    """
    error_data = ErrorData(
        error=error_msg,
        details={"req_id": req_id} if req_id else None,
    )
    await send_to_client(ctx, MessageType.ERROR.value, error_data.model_dump(exclude_none=True), req_id)


async def send_sync_error(ctx: ConnectionContext, message: str, req_id: Optional[str] = None) -> None:
    await send_to_client(ctx, MessageType.SYNC_ERROR.value, SyncErrorData(message=message).model_dump(), req_id)


# ---------------------------------------------------------------------------
# Subscriptions
# ---------------------------------------------------------------------------


def _allowed_scope(ctx: ConnectionContext, scope: str) -> bool:
    """Entity groups are open; personal and role groups only to their owner."""
    kind, _, ident = scope.partition(":")
    if not ident:
        return False
    if scope == AGENDA_ALL_TOPIC or kind == "project":
        return True
    if kind == "user":
        return ident == ctx.user.user_id
    if kind == "role":
        return ident == ctx.user.role
    return False


async def handle_subscribe(ctx: ConnectionContext, envelope: Envelope) -> None:
    """Join ``agenda:all`` plus the optional requested scope."""
    data = SubscribeData.model_validate(envelope.data)

    if data.scope and not _allowed_scope(ctx, data.scope):
        await send_error(ctx, f"Invalid scope: {data.scope}", envelope.req_id)
        return

    await ctx.manager.subscribe_to_topic(ctx.client_id, AGENDA_ALL_TOPIC)
    if data.scope:
        await ctx.manager.subscribe_to_topic(ctx.client_id, data.scope)


async def handle_unsubscribe(ctx: ConnectionContext, envelope: Envelope) -> None:
    data = UnsubscribeData.model_validate(envelope.data)
    # The personal group is tied to the connection's lifetime.
    if data.scope == ctx.user.user_topic:
        await send_error(ctx, f"Cannot leave {data.scope}", envelope.req_id)
        return
    await ctx.manager.unsubscribe_from_topic(ctx.client_id, data.scope)


# ---------------------------------------------------------------------------
# Pull / push
# ---------------------------------------------------------------------------


async def handle_pull_request(ctx: ConnectionContext, envelope: Envelope) -> None:
    data = PullRequestData.model_validate(envelope.data)
    try:
        result = await ctx.engine.pull_since(data.since, ctx.user)
    except WatermarkError as exc:
        logger.info("Client %s sent a bad watermark: %s", ctx.client_id, exc)
        await send_sync_error(ctx, "Sync failed", envelope.req_id)
        return
    except Exception as exc:
        logger.error("Pull failed for client %s: %s", ctx.client_id, exc)
        await send_sync_error(ctx, "Sync failed", envelope.req_id)
        return

    await send_to_client(ctx, MessageType.PULL_RESPONSE.value, result.to_wire(), envelope.req_id)


async def handle_push_request(ctx: ConnectionContext, envelope: Envelope) -> None:
    data = PushRequestData.model_validate(envelope.data)
    try:
        result = await ctx.engine.apply_batch(data.changes, ctx.user)
    except Exception as exc:
        logger.error("Push failed for client %s: %s", ctx.client_id, exc)
        await send_sync_error(ctx, "Push failed", envelope.req_id)
        return

    await send_to_client(ctx, MessageType.PUSH_RESULT.value, result.to_wire(), envelope.req_id)


# ---------------------------------------------------------------------------
# Presence
# ---------------------------------------------------------------------------


async def handle_presence_update(ctx: ConnectionContext, envelope: Envelope) -> None:
    """Tell the other agenda viewers what this user is looking at."""
    data = PresenceUpdateData.model_validate(envelope.data)
    presence = PresenceUpdatedData(
        user_id=ctx.user.user_id,
        view=data.view,
        entity_id=data.entity_id,
        timestamp=to_iso(utc_now()),
    )
    await publish_event(
        ctx.manager.event_bus,
        EventType.PRESENCE_UPDATED,
        {
            **presence.model_dump(by_alias=True, exclude_none=True),
            "scope": AGENDA_ALL_TOPIC,
            "exclude": ctx.client_id,
        },
    )


# Message handler dispatcher
MESSAGE_HANDLERS = {
    MessageType.SUBSCRIBE.value: handle_subscribe,
    MessageType.UNSUBSCRIBE.value: handle_unsubscribe,
    MessageType.PULL_REQUEST.value: handle_pull_request,
    MessageType.PUSH_REQUEST.value: handle_push_request,
    MessageType.PRESENCE_UPDATE.value: handle_presence_update,
}

# ---------------------------------------------------------------------------
# Runtime inbound payload validation
# ---------------------------------------------------------------------------

# Mapping of *client → server* message types to their strict Pydantic models.
# We validate the incoming JSON before it reaches individual handlers so that
# malformed payloads are rejected consistently in one place.

_INBOUND_SCHEMA_MAP: Dict[str, type[BaseModel]] = {
    MessageType.SUBSCRIBE.value: SubscribeData,
    MessageType.UNSUBSCRIBE.value: UnsubscribeData,
    MessageType.PULL_REQUEST.value: PullRequestData,
    MessageType.PUSH_REQUEST.value: PushRequestData,
    MessageType.PRESENCE_UPDATE.value: PresenceUpdateData,
}


async def dispatch_message(ctx: ConnectionContext, message: Dict[str, Any]) -> None:
    """Dispatch a message to the appropriate handler.

    Args:
        ctx: The connection the message arrived on
        message: The raw envelope dict
    """
    req_id = message.get("req_id") if isinstance(message, dict) else None
    try:
        # ------------------------------------------------------------------
        # 1) Envelope shape.
        # ------------------------------------------------------------------
        try:
            validate_envelope_fast(message)
            envelope = Envelope.model_validate(message)
        except (EnvelopeValidationError, ValidationError) as exc:
            logger.debug("Malformed envelope from %s: %s", ctx.client_id, exc)
            await send_error(ctx, "INVALID_ENVELOPE", req_id)
            return

        message_type = envelope.type.lower()

        # ------------------------------------------------------------------
        # 2) Fast-fail on completely unknown "type" field.
        # ------------------------------------------------------------------
        handler = MESSAGE_HANDLERS.get(message_type)
        if handler is None:
            await send_error(ctx, f"Unknown message type: {message_type}", envelope.req_id)
            return

        # ------------------------------------------------------------------
        # 3) Schema validation of the data portion.
        # ------------------------------------------------------------------
        model_cls = _INBOUND_SCHEMA_MAP.get(message_type)
        if model_cls is not None:
            try:
                model_cls.model_validate(envelope.data)
            except ValidationError as exc:
                logger.debug("Schema validation failed for %s: %s", message_type, exc)
                await send_error(ctx, "INVALID_PAYLOAD", envelope.req_id)
                return

        await handler(ctx, envelope)

    except Exception as e:
        logger.error(f"Error dispatching message: {str(e)}")
        await send_error(ctx, "Failed to process message", req_id)


__all__ = ["ConnectionContext", "dispatch_message", "send_error", "MESSAGE_HANDLERS"]
