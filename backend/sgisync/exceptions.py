"""Exception hierarchy shared by the server and client halves of the sync core."""


class SyncError(Exception):
    """Base class for every sync-core failure."""


class TransportError(SyncError):
    """The connection is missing, a send failed, or the socket dropped mid-request.

    Recovered locally: queued mutations stay queued until the next trigger.
    """


class AuthenticationError(SyncError):
    """Bearer credential missing or rejected during the handshake."""


class WatermarkError(SyncError, ValueError):
    """A watermark string could not be parsed as an ISO-8601 timestamp."""


class MutationValidationError(SyncError, ValueError):
    """A pushed change has a malformed or unsupported payload."""


class EntityNotFoundError(SyncError, LookupError):
    """An update or delete referenced a record the server no longer has."""

    def __init__(self, entity_kind: str, entity_id: str):
        super().__init__(f"{entity_kind} {entity_id} not found")
        self.entity_kind = entity_kind
        self.entity_id = entity_id


__all__ = [
    "SyncError",
    "TransportError",
    "AuthenticationError",
    "WatermarkError",
    "MutationValidationError",
    "EntityNotFoundError",
]
