"""API route configuration and well-known storage keys."""

# Base prefix for all API routes
API_PREFIX = "/api"

# WebSocket endpoint (relative to API_PREFIX)
WS_ENDPOINT = "/ws"

# Router prefixes (relative to API_PREFIX)
SYNC_PREFIX = "/sync"

# Close code sent when the handshake credential is missing or invalid
# (mirrors HTTP 401).
WS_CLOSE_UNAUTHORIZED = 4401

# Client-side persistence keys
PENDING_CHANGES_KEY = "sgi_pending_changes"
LAST_SYNC_KEY = "sgi_last_sync"

# Broadcast groups every authenticated socket may join
AGENDA_ALL_TOPIC = "agenda:all"


def get_full_path(relative_path: str) -> str:
    """Get the full API path for a relative path."""
    return f"{API_PREFIX}{relative_path}"
