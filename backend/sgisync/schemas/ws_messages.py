"""Strongly-typed WebSocket message definitions for the sync protocol.

Every frame in either direction is an :class:`Envelope`; the ``data`` member
carries one of the payload models below, keyed by ``type``.
"""

import time
from enum import Enum
from typing import Any
from typing import Dict
from typing import List
from typing import Optional

import jsonschema
from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field
from pydantic.alias_generators import to_camel

from sgisync.schemas.schemas import PullResult
from sgisync.schemas.schemas import PushResult


class EnvelopeValidationError(ValueError):
    """Raised when an envelope does not match :data:`ENVELOPE_SCHEMA`."""


class Envelope(BaseModel):
    """Unified envelope for all WebSocket messages with validation."""

    v: int = Field(default=1, description="Protocol version")
    type: str = Field(description="Message type identifier")
    topic: str = Field(description="Topic routing string")
    req_id: Optional[str] = Field(default=None, description="Request correlation ID")
    ts: int = Field(description="Timestamp in milliseconds since epoch")
    data: Dict[str, Any] = Field(description="Message payload")

    @classmethod
    def create(
        cls,
        message_type: str,
        topic: str,
        data: Dict[str, Any],
        req_id: Optional[str] = None,
    ) -> "Envelope":
        """Create and validate a new envelope."""
        envelope = cls(
            type=message_type.lower(),
            topic=topic,
            data=data,
            req_id=req_id,
            ts=int(time.time() * 1000),
        )
        # Validate on creation for fail-fast behavior
        validate_envelope_fast(envelope.model_dump())
        return envelope

    def model_dump_validated(self) -> Dict[str, Any]:
        """Dump model with runtime validation."""
        data = self.model_dump()
        validate_envelope_fast(data)
        return data


# Message payload schemas


class _Payload(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SubscribeData(_Payload):
    """Join a broadcast group, e.g. ``project:42``."""

    scope: Optional[str] = None


class UnsubscribeData(_Payload):
    scope: str = Field(min_length=1)


class PullRequestData(_Payload):
    """Request every change after *since*; ``None`` means from the beginning."""

    since: Optional[str] = None


class PushRequestData(_Payload):
    """Queued mutations; each item is validated on its own by the engine."""

    changes: List[Dict[str, Any]]


class PresenceUpdateData(_Payload):
    view: str = Field(min_length=1)
    entity_id: Optional[str] = None


class PresenceUpdatedData(_Payload):
    user_id: str
    view: str
    entity_id: Optional[str] = None
    timestamp: str


class PresenceLeftData(_Payload):
    user_id: str


class ErrorData(BaseModel):
    """Payload for ErrorData messages"""

    error: str = Field(min_length=1, description="")
    details: Optional[Dict[str, Any]] = None


class SyncErrorData(BaseModel):
    message: str


# Re-exported so handlers import every wire shape from one module.
PullResponseData = PullResult
PushResultData = PushResult


class MessageType(str, Enum):
    """Enumeration of protocol-level WebSocket message types.

    Entity broadcasts (``agenda:created`` …) use the event name as ``type``
    and are listed in :class:`sgisync.events.EventType`.
    """

    ERROR = "error"
    SUBSCRIBE = "subscribe"
    UNSUBSCRIBE = "unsubscribe"
    PULL_REQUEST = "pull-request"
    PULL_RESPONSE = "pull-response"
    PUSH_REQUEST = "push-request"
    PUSH_RESULT = "push-result"
    PRESENCE_UPDATE = "presence:update"
    PRESENCE_UPDATED = "presence:updated"
    PRESENCE_LEFT = "presence:left"
    SYNC_ERROR = "sync:error"


# Fast validation functions


def validate_envelope_fast(data: Dict[str, Any]) -> None:
    """Envelope validation using jsonschema."""
    try:
        jsonschema.validate(data, ENVELOPE_SCHEMA)
    except jsonschema.ValidationError as e:
        raise EnvelopeValidationError(f"Envelope validation failed: {e.message}") from e


# Schema constants for validation
ENVELOPE_SCHEMA = {
    "type": "object",
    "required": ["v", "type", "topic", "ts", "data"],
    "additionalProperties": False,
    "properties": {
        "v": {"type": "integer", "const": 1},
        "type": {"type": "string", "minLength": 1},
        "topic": {"type": "string"},
        "req_id": {"type": ["string", "null"]},
        "ts": {"type": "integer"},
        "data": {"type": "object"},
    },
}
