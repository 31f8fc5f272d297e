"""Durable change queue.

Mutations made while the server is unreachable are appended here and
persisted at once.  :meth:`ChangeQueue.drain` pushes the whole queue as one
batch and, once the server has answered, removes exactly the records that
were in that batch.
"""

from __future__ import annotations

import logging
import secrets
import string
import time
from typing import Any
from typing import Awaitable
from typing import Callable
from typing import Dict
from typing import List
from typing import Optional

from sgisync.constants import PENDING_CHANGES_KEY
from sgisync.exceptions import SyncError
from sgisync.exceptions import TransportError
from sgisync.models.enums import EntityKind
from sgisync.models.enums import MutationAction
from sgisync.utils.log import log
from sgisync.utils.time import to_iso
from sgisync.utils.time import utc_now

logger = logging.getLogger(__name__)

PushFn = Callable[[List[Dict[str, Any]]], Awaitable[Dict[str, Any]]]

_BASE36 = string.digits + string.ascii_lowercase


def new_client_temp_id() -> str:
    """``temp_<epoch-ms>_<9 base36 chars>``; unique per client."""
    suffix = "".join(secrets.choice(_BASE36) for _ in range(9))
    return f"temp_{int(time.time() * 1000)}_{suffix}"


class ChangeQueue:
    """Append-only list of MutationRecords persisted under ``sgi_pending_changes``."""

    def __init__(
        self,
        store,
        push: Optional[PushFn] = None,
        on_change: Optional[Callable[[int], None]] = None,
    ):
        self._store = store
        self._push = push
        self._on_change = on_change
        self._draining = False

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _load(self) -> List[Dict[str, Any]]:
        records = self._store.get(PENDING_CHANGES_KEY, [])
        return records if isinstance(records, list) else []

    def _save(self, records: List[Dict[str, Any]]) -> None:
        if records:
            self._store.set(PENDING_CHANGES_KEY, records)
        else:
            self._store.remove(PENDING_CHANGES_KEY)
        if self._on_change is not None:
            self._on_change(len(records))

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def enqueue(
        self,
        entity_kind: str,
        action: str,
        payload: Optional[Dict[str, Any]] = None,
        target_id: Optional[str] = None,
    ) -> str:
        """Append a mutation and persist it before returning its ``clientTempId``."""
        kind = EntityKind(str(getattr(entity_kind, "value", entity_kind)).lower())
        verb = MutationAction(str(getattr(action, "value", action)).strip().lower())
        if verb != MutationAction.CREATE and not target_id:
            raise ValueError(f"target_id is required for {verb.value}")

        record = {
            "entityKind": kind.value,
            "action": verb.value,
            "payload": dict(payload or {}),
            "clientTempId": new_client_temp_id(),
            "enqueuedAt": to_iso(utc_now()),
        }
        if target_id is not None:
            record["targetId"] = target_id

        records = self._load()
        records.append(record)
        self._save(records)
        logger.debug("Queued %s %s as %s", verb.value, kind.value, record["clientTempId"])
        return record["clientTempId"]

    def pending(self) -> List[Dict[str, Any]]:
        return self._load()

    def pending_count(self) -> int:
        return len(self._load())

    @property
    def draining(self) -> bool:
        return self._draining

    def attach(self, push: PushFn) -> None:
        self._push = push

    async def drain(self) -> Optional[Dict[str, Any]]:
        """Push every queued record as one batch.

        Returns the server's push-result data, or ``None`` when nothing was
        sent: empty queue, drain already in flight, or the transport failed.
        In the failure case the queue is left exactly as it was.
        """
        if self._draining or self._push is None:
            return None

        batch = self._load()
        if not batch:
            return None

        self._draining = True
        try:
            result = await self._push(batch)

            # Records enqueued while the push was in flight stay queued.
            pushed = {record.get("clientTempId") for record in batch}
            remaining = [record for record in self._load() if record.get("clientTempId") not in pushed]
            self._save(remaining)
        except TransportError as exc:
            logger.info("Drain postponed, %d change(s) kept: %s", len(batch), exc)
            return None
        except SyncError as exc:
            logger.warning("Server rejected push of %d change(s): %s", len(batch), exc)
            return None
        finally:
            self._draining = False

        results = result.get("results", []) if isinstance(result, dict) else []
        failed = [item for item in results if not item.get("success")]
        log.info(
            "queue",
            action="drained",
            pushed=len(batch),
            failed=len(failed),
            remaining=len(remaining),
        )
        for item in failed:
            logger.warning(
                "Server refused change %s: %s",
                item.get("tempId") or item.get("id"),
                item.get("error"),
            )
        return result


__all__ = ["ChangeQueue", "new_client_temp_id"]
