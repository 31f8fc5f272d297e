"""Topic-based WebSocket connection manager.

Manages WebSocket connections with topic-based subscriptions (the broadcast
groups ``user:<id>``, ``role:<role>``, ``agenda:all``, ``project:<id>``) and
relays EventBus events to connected clients.

All bookkeeping happens on the event loop thread and no ``await`` sits
between related map updates, so the maps need no lock.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any
from typing import Dict
from typing import Iterable
from typing import Optional
from typing import Set

from fastapi import WebSocket
from fastapi.encoders import jsonable_encoder

from sgisync.config import Settings
from sgisync.config import get_settings
from sgisync.events import EventBus
from sgisync.events import EventType
from sgisync.schemas.ws_messages import Envelope

logger = logging.getLogger(__name__)

# Topic stamped on envelopes that go to every connection.
BROADCAST_TOPIC = "broadcast"


class TopicConnectionManager:
    """Manages WebSocket connections with topic-based subscriptions.

    Also the fan-out broadcaster: :meth:`broadcast` delivers a named event to
    one group, or to every connection when no scope is given.
    """

    def __init__(self, event_bus: Optional[EventBus] = None, settings: Optional[Settings] = None):
        """Initialize an empty topic-based connection manager."""
        settings = settings or get_settings()
        # Constants for back-pressure handling
        self.send_timeout: float = settings.ws_send_timeout
        self.queue_size: int = settings.ws_queue_size
        # Block broadcasts until queues are flushed so tests can assert right away
        self.wait_for_flush: bool = settings.testing

        # Map of client_id to WebSocket connection
        self.active_connections: Dict[str, WebSocket] = {}
        # Map of client_id to message queue
        self.client_queues: Dict[str, asyncio.Queue] = {}
        # Map of client_id to writer task
        self.writer_tasks: Dict[str, asyncio.Task] = {}
        # Map of topic to set of subscribed client_ids
        self.topic_subscriptions: Dict[str, Set[str]] = {}
        # Map of client_id to set of subscribed topics
        self.client_topics: Dict[str, Set[str]] = {}
        # Map client_id -> authenticated user_id
        self.client_users: Dict[str, Optional[str]] = {}

        self.event_bus = event_bus
        if event_bus is not None:
            self._setup_event_handlers(event_bus)

    def _setup_event_handlers(self, bus: EventBus) -> None:
        """Set up handlers for events we want to broadcast."""
        # Agenda events go to everybody, or to the project group when scoped
        bus.subscribe(EventType.AGENDA_CREATED, self._handle_entity_event)
        bus.subscribe(EventType.AGENDA_UPDATED, self._handle_entity_event)
        bus.subscribe(EventType.AGENDA_DELETED, self._handle_entity_event)

        # Notifications are private to their recipient
        bus.subscribe(EventType.NOTIFICATION_NEW, self._handle_user_event)
        bus.subscribe(EventType.NOTIFICATION_UPDATED, self._handle_user_event)

        # Presence
        bus.subscribe(EventType.PRESENCE_UPDATED, self._handle_presence_event)
        bus.subscribe(EventType.PRESENCE_LEFT, self._handle_presence_event)

    def _teardown_event_handlers(self) -> None:
        if self.event_bus is None:
            return
        for event_type in (EventType.AGENDA_CREATED, EventType.AGENDA_UPDATED, EventType.AGENDA_DELETED):
            self.event_bus.unsubscribe(event_type, self._handle_entity_event)
        for event_type in (EventType.NOTIFICATION_NEW, EventType.NOTIFICATION_UPDATED):
            self.event_bus.unsubscribe(event_type, self._handle_user_event)
        for event_type in (EventType.PRESENCE_UPDATED, EventType.PRESENCE_LEFT):
            self.event_bus.unsubscribe(event_type, self._handle_presence_event)

    async def connect(
        self,
        client_id: str,
        websocket: WebSocket,
        user_id: Optional[str] = None,
        role: Optional[str] = None,
    ) -> None:
        """Register a new client connection.

        The socket joins its personal ``user:<id>`` group and its
        ``role:<role>`` group straight away.

        Args:
            client_id: Unique identifier for the client
            websocket: The client's WebSocket connection
        """
        self.active_connections[client_id] = websocket
        self.client_topics[client_id] = set()
        self.client_users[client_id] = user_id

        # Per-connection FIFO; a writer task drains it so one slow socket
        # never blocks a broadcast.
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.queue_size)
        self.client_queues[client_id] = queue
        self.writer_tasks[client_id] = asyncio.create_task(self._writer(client_id, websocket, queue))

        if user_id is not None:
            await self.subscribe_to_topic(client_id, f"user:{user_id}")
        if role is not None:
            await self.subscribe_to_topic(client_id, f"role:{role}")

        logger.info("Client %s connected (user=%s, role=%s)", client_id, user_id, role)

    async def disconnect(self, client_id: str) -> None:
        """Remove a client connection and clean up subscriptions.

        Args:
            client_id: The client ID to remove
        """
        if client_id not in self.active_connections:
            return

        # Clean user mapping
        self.client_users.pop(client_id, None)
        # Remove from active connections
        del self.active_connections[client_id]

        # Cancel and clean up writer task
        writer_task = self.writer_tasks.pop(client_id, None)
        if writer_task is not None and not writer_task.done() and writer_task is not asyncio.current_task():
            writer_task.cancel()

        # Clean up message queue
        self.client_queues.pop(client_id, None)

        # Remove from all topic subscriptions
        for topic in self.client_topics.pop(client_id, set()):
            if topic in self.topic_subscriptions:
                self.topic_subscriptions[topic].discard(client_id)
                # Clean up empty topic subscriptions
                if not self.topic_subscriptions[topic]:
                    del self.topic_subscriptions[topic]

        logger.info("Client %s disconnected", client_id)

    async def subscribe_to_topic(self, client_id: str, topic: str) -> None:
        """Subscribe a client to a topic.

        Args:
            client_id: The client ID to subscribe
            topic: The topic to subscribe to (e.g., "agenda:all", "project:42")
        """
        if client_id not in self.client_topics:
            logger.debug("subscribe_to_topic: unknown client %s", client_id)
            return

        self.topic_subscriptions.setdefault(topic, set()).add(client_id)
        self.client_topics[client_id].add(topic)
        logger.info("Client %s subscribed to topic %s", client_id, topic)

    async def unsubscribe_from_topic(self, client_id: str, topic: str) -> None:
        """Unsubscribe a client from a topic.

        Args:
            client_id: The client ID to unsubscribe
            topic: The topic to unsubscribe from
        """
        if topic in self.topic_subscriptions:
            self.topic_subscriptions[topic].discard(client_id)
            if not self.topic_subscriptions[topic]:
                del self.topic_subscriptions[topic]

        if client_id in self.client_topics:
            self.client_topics[client_id].discard(topic)

        logger.info("Client %s unsubscribed from topic %s", client_id, topic)

    # ------------------------------------------------------------------
    # Queue-based writer for back-pressure safety
    # ------------------------------------------------------------------

    async def _writer(self, client_id: str, websocket: WebSocket, queue: asyncio.Queue) -> None:
        """Writer task that processes messages from the queue with timeout and back-pressure handling."""
        try:
            while True:
                # Wait for a message to send
                payload = await queue.get()

                try:
                    # Send with timeout to prevent hanging on slow clients
                    await asyncio.wait_for(websocket.send_json(payload), timeout=self.send_timeout)
                except asyncio.TimeoutError:
                    logger.warning("Send timeout for client %s, disconnecting", client_id)
                    await self.disconnect(client_id)
                    return
                except Exception as e:
                    logger.warning("Send error for client %s: %s, disconnecting", client_id, e)
                    await self.disconnect(client_id)
                    return
                finally:
                    # Mark task as done regardless of success/failure
                    queue.task_done()

        except asyncio.CancelledError:
            logger.debug("Writer task for client %s cancelled", client_id)

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    def _enqueue(self, client_id: str, message: Dict[str, Any]) -> Optional[asyncio.Queue]:
        queue = self.client_queues.get(client_id)
        if queue is None:
            return None
        try:
            queue.put_nowait(message)
        except asyncio.QueueFull:
            # Back-pressure: drop client to protect server memory
            logger.warning("Queue full for client %s, disconnecting due to back-pressure", client_id)
            asyncio.create_task(self.disconnect(client_id))
            return None
        return queue

    async def _flush(self, queues: Iterable[asyncio.Queue]) -> None:
        # Wait (with small timeout) for queues to drain so assertions on
        # ``send_json`` right after a broadcast become deterministic.
        await asyncio.gather(
            *(asyncio.wait_for(q.join(), timeout=1.0) for q in queues),
            return_exceptions=True,
        )

    async def send_to_client(self, client_id: str, message: Dict[str, Any]) -> bool:
        """Queue *message* for a single connection, behind anything already queued.

        Returns ``False`` when the client is gone.
        """
        queue = self._enqueue(client_id, message)
        if queue is None:
            return False
        if self.wait_for_flush:
            await self._flush([queue])
        return True

    async def broadcast_to_topic(
        self,
        topic: str,
        message: Dict[str, Any],
        exclude: Optional[str] = None,
    ) -> None:
        """Broadcast a message to all clients subscribed to a topic.

        Args:
            topic: The topic to broadcast to
            message: The message to broadcast (must be in envelope format)
            exclude: Optional client id that should not receive the message
        """
        # Envelope format is mandatory
        if not (isinstance(message, dict) and "v" in message and "topic" in message and "ts" in message):
            logger.error("broadcast_to_topic: Invalid message format - envelope required")
            raise ValueError("Message must be in envelope format")

        # Having no subscribers is normal when nobody is online.
        if topic not in self.topic_subscriptions:
            logger.debug("broadcast_to_topic: no subscribers for topic %s", topic)
            return

        await self._fan_out(set(self.topic_subscriptions[topic]), message, exclude)

    async def broadcast_to_all(self, message: Dict[str, Any], exclude: Optional[str] = None) -> None:
        """Send *message* to every open connection."""
        await self._fan_out(set(self.active_connections), message, exclude)

    async def _fan_out(self, client_ids: Set[str], message: Dict[str, Any], exclude: Optional[str]) -> None:
        queues = []
        for client_id in client_ids:
            if client_id == exclude:
                continue
            queue = self._enqueue(client_id, message)
            if queue is not None:
                queues.append(queue)

        if self.wait_for_flush and queues:
            await self._flush(queues)

    async def broadcast(
        self,
        event_name: str,
        payload: Dict[str, Any],
        scope: Optional[str] = None,
        exclude: Optional[str] = None,
    ) -> None:
        """Deliver ``event_name`` to the *scope* group, or to everyone.

        An empty group is not an error.  Delivery is best-effort and never
        raises for a closed socket.
        """
        envelope = Envelope.create(
            message_type=event_name,
            topic=scope or BROADCAST_TOPIC,
            data=jsonable_encoder(payload),
        )
        message = envelope.model_dump()
        if scope:
            await self.broadcast_to_topic(scope, message, exclude=exclude)
        else:
            await self.broadcast_to_all(message, exclude=exclude)

    # ------------------------------------------------------------------
    # EventBus relays
    # ------------------------------------------------------------------

    async def _handle_entity_event(self, data: Dict[str, Any]) -> None:
        """Handle agenda events from the event bus."""
        if "entity" not in data:
            return
        await self.broadcast(data["event_type"], data["entity"], scope=data.get("scope"))

    async def _handle_user_event(self, data: Dict[str, Any]) -> None:
        """Forward per-user events to the ``user:<id>`` group only."""
        user_id = data.get("user_id")
        if user_id is None or "entity" not in data:
            return
        await self.broadcast(data["event_type"], data["entity"], scope=f"user:{user_id}")

    async def _handle_presence_event(self, data: Dict[str, Any]) -> None:
        payload = {k: v for k, v in data.items() if k not in ("event_type", "scope", "exclude")}
        await self.broadcast(
            data["event_type"],
            payload,
            scope=data.get("scope"),
            exclude=data.get("exclude"),
        )

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def topics_for(self, client_id: str) -> Set[str]:
        return set(self.client_topics.get(client_id, ()))

    @property
    def connection_count(self) -> int:
        return len(self.active_connections)

    # ------------------------------------------------------------------
    # Graceful shutdown helper – called from FastAPI lifespan
    # ------------------------------------------------------------------

    async def shutdown(self) -> None:  # noqa: D401 – simple helper
        """Cancel writer tasks and close websockets."""

        self._teardown_event_handlers()

        for task in self.writer_tasks.values():
            if not task.done():
                task.cancel()

        for client_id, ws in list(self.active_connections.items()):
            try:
                await ws.close()
            except Exception as exc:
                logger.debug("Error closing websocket for %s during shutdown: %s", client_id, exc)

        self.active_connections.clear()
        self.client_queues.clear()
        self.writer_tasks.clear()
        self.topic_subscriptions.clear()
        self.client_topics.clear()
        self.client_users.clear()


__all__ = ["TopicConnectionManager", "BROADCAST_TOPIC"]
