"""Durable key/value state for the sync client.

Holds the pending change queue and the last server watermark.  Every write
goes to disk before returning, so a crash or restart never loses a queued
mutation.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


class JsonFileStore:
    """Tiny JSON-object-on-disk store.

    Writes go through a temporary file and ``os.replace`` so a reader never
    sees a half-written document.
    """

    def __init__(self, path: str | os.PathLike[str]):
        self.path = Path(path)
        self._data: dict[str, Any] = self._load()

    def _load(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            with self.path.open("r", encoding="utf-8") as fh:
                data = json.load(fh)
        except (OSError, json.JSONDecodeError) as exc:
            logger.error("Could not read sync state from %s: %s", self.path, exc)
            return {}
        if not isinstance(data, dict):
            logger.error("Ignoring sync state in %s: expected an object", self.path)
            return {}
        return data

    def _flush(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=".sync-", suffix=".json", dir=str(self.path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(self._data, fh, ensure_ascii=False)
            os.replace(tmp_name, self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def get(self, key: str, default: Any = None) -> Any:
        value = self._data.get(key, default)
        # Hand out copies so callers cannot mutate the persisted state in place.
        return json.loads(json.dumps(value)) if isinstance(value, (list, dict)) else value

    def set(self, key: str, value: Any) -> None:
        self._data[key] = value
        self._flush()

    def remove(self, key: str) -> None:
        if key in self._data:
            del self._data[key]
            self._flush()


__all__ = ["JsonFileStore"]
