"""Timezone helpers – every sync timestamp is produced and parsed here.

Watermarks travel as ISO-8601 UTC strings with millisecond precision and a
``Z`` suffix (``2024-01-01T00:00:00.000Z``).  Formatting truncates towards
the past, so a watermark never lies *ahead* of the instant it was captured.
The database stores naive UTC datetimes.
"""

from datetime import datetime
from datetime import timezone

EPOCH = datetime(1970, 1, 1)


def utc_now() -> datetime:  # noqa: D401 – simple utility
    """Return *aware* current time in UTC."""

    return datetime.now(timezone.utc)


def utc_now_naive() -> datetime:  # noqa: D401 – simple utility
    """Return *naive* current time in UTC for database compatibility."""

    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    """Normalise *value* to a naive UTC datetime."""

    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def to_iso(value: datetime | None) -> str | None:
    """Render *value* as an ISO-8601 UTC string with a ``Z`` suffix."""

    if value is None:
        return None
    value = to_naive_utc(value)
    return value.isoformat(timespec="milliseconds") + "Z"


def parse_iso(value: str) -> datetime:
    """Parse an ISO-8601 timestamp into a naive UTC datetime.

    Raises ``ValueError`` for anything :pyfunc:`datetime.fromisoformat`
    rejects.  Strings without an offset are taken to be UTC already.
    """

    text = value.strip()
    if text.endswith("Z") or text.endswith("z"):
        text = text[:-1] + "+00:00"
    return to_naive_utc(datetime.fromisoformat(text))


__all__ = ["EPOCH", "utc_now", "utc_now_naive", "to_naive_utc", "to_iso", "parse_iso"]
