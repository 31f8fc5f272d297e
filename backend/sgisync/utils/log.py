"""Structured logger for sync audit events.

Modules log operational detail through the standard ``logging`` module.
Events worth aggregating (pushes, pulls, queue drains) go through this
*structlog* logger instead so they render as one JSON object per line::

    from sgisync.utils.log import log
    log.info("sync-push", user_id=3, applied=2, failed=1)
"""

from __future__ import annotations

from typing import Any

import structlog

# Keep the logger global so every import shares the same base instance.
log = structlog.get_logger("sgisync")

# Attach default processor chain only if structlog has not been configured
# by the application already.
if not structlog.is_configured():
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.JSONRenderer(),
        ]
    )


def get_logger(**bindings: Any):  # noqa: D401 – factory helper
    """Return a child/bound logger with optional key/value bindings."""

    return log.bind(**bindings)


__all__ = ["log", "get_logger"]
