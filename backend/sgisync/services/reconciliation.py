"""Reconciliation engine – server side of offline sync.

Two operations:

* :meth:`ReconciliationEngine.pull_since` returns everything changed after a
  watermark together with the new watermark to store.
* :meth:`ReconciliationEngine.apply_batch` applies queued client mutations
  one by one and reports a result per change.

Conflict policy is last-writer-wins.  No version comparison is made against
what the client last saw; each update simply bumps ``sync_version``.
"""

from __future__ import annotations

import logging
from typing import Any
from typing import Dict
from typing import Iterable
from typing import Optional

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from sgisync.crud import crud
from sgisync.database import db_session
from sgisync.dependencies.auth import AuthenticatedUser
from sgisync.events import EventBus
from sgisync.events import publish_event
from sgisync.exceptions import EntityNotFoundError
from sgisync.exceptions import MutationValidationError
from sgisync.exceptions import WatermarkError
from sgisync.models.enums import EntityKind
from sgisync.models.enums import MutationAction
from sgisync.schemas.schemas import PullResult
from sgisync.schemas.schemas import PushResult
from sgisync.schemas.schemas import PushResultItem
from sgisync.schemas.schemas import Tombstone
from sgisync.schemas.schemas import parse_mutation
from sgisync.services.stores import SyncableStore
from sgisync.services.stores import default_stores
from sgisync.services.stores import record_sync_time
from sgisync.utils.log import log
from sgisync.utils.time import EPOCH
from sgisync.utils.time import parse_iso
from sgisync.utils.time import to_iso
from sgisync.utils.time import utc_now_naive

logger = logging.getLogger(__name__)


def parse_watermark(watermark: Optional[str]):
    """Turn a client watermark into a naive UTC datetime.

    ``None`` or an empty string means "from the beginning".
    """
    if watermark is None or not str(watermark).strip():
        return EPOCH
    try:
        return parse_iso(str(watermark))
    except (TypeError, ValueError) as exc:
        raise WatermarkError(f"invalid watermark: {watermark!r}") from exc


def _first_error(exc: ValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return str(exc)
    first = errors[0]
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "__root__")
    message = first.get("msg", "invalid value")
    return f"{location}: {message}" if location else message


def _as_text(value: Any) -> Optional[str]:
    return None if value is None else str(value)


def _raw_identity(raw: Any) -> tuple[Optional[str], Optional[str], bool]:
    """Best-effort (clientTempId, targetId, is_create) from an unvalidated change."""
    if not isinstance(raw, dict):
        return None, None, False
    temp_id = raw.get("clientTempId", raw.get("client_temp_id"))
    target_id = raw.get("targetId", raw.get("target_id"))
    action = str(raw.get("action", "")).strip().lower()
    # Echoed back in the failure result, which only holds strings.
    return _as_text(temp_id), _as_text(target_id), action == MutationAction.CREATE.value


class ReconciliationEngine:
    """Applies pushed mutations and answers pulls against the server stores."""

    def __init__(
        self,
        session_factory,
        event_bus: Optional[EventBus] = None,
        stores: Optional[Dict[EntityKind, SyncableStore]] = None,
    ):
        self._session_factory = session_factory
        self._event_bus = event_bus
        self._stores = stores if stores is not None else default_stores()

    # ------------------------------------------------------------------
    # Pull
    # ------------------------------------------------------------------

    async def pull_since(self, watermark: Optional[str], user: AuthenticatedUser) -> PullResult:
        """Everything changed strictly after *watermark*, oldest first.

        The returned ``sync_timestamp`` is taken after the query ran and is
        never earlier than *watermark*, so storing it can neither skip a
        change committed before the query nor move the watermark backwards.

        Raises :class:`WatermarkError` when *watermark* cannot be parsed.
        """
        since = parse_watermark(watermark)

        with db_session(self._session_factory) as db:
            records = []
            for store in self._stores.values():
                records.extend((record, store) for record in store.find_changed_since(db, since, user))
            records.sort(key=lambda item: record_sync_time(item[0]) or EPOCH)
            entities = [store.serialize(record) for record, store in records]

            deleted = [
                Tombstone(entity_kind=stone.entity_kind, id=stone.entity_id, deleted_at=stone.deleted_at)
                for stone in crud.find_tombstones_since(db, since, user.user_id)
            ]

        captured = utc_now_naive()
        new_watermark = to_iso(max(captured, since))

        log.info(
            "sync-pull",
            user_id=user.user_id,
            since=to_iso(since),
            entities=len(entities),
            deleted=len(deleted),
            sync_timestamp=new_watermark,
        )
        return PullResult(entities=entities, deleted=deleted, sync_timestamp=new_watermark)

    # ------------------------------------------------------------------
    # Push
    # ------------------------------------------------------------------

    async def apply_pushed_change(self, raw: Any, user: AuthenticatedUser) -> PushResultItem:
        """Validate and apply one queued change in its own transaction.

        Never raises for a bad change: validation problems, missing targets
        and database errors all come back as ``success=False`` so the rest of
        the batch still runs.
        """
        temp_id, target_id, is_create = _raw_identity(raw)

        def _failure(error: str) -> PushResultItem:
            if is_create:
                return PushResultItem(temp_id=temp_id, success=False, error=error)
            return PushResultItem(id=target_id, temp_id=None if target_id else temp_id, success=False, error=error)

        try:
            change = parse_mutation(raw)
        except ValidationError as exc:
            logger.info("Rejected pushed change %s: %s", temp_id, exc)
            return _failure(_first_error(exc))

        store = self._stores.get(EntityKind(change.entity_kind))
        if store is None:
            return _failure(f"unsupported entity kind {change.entity_kind!r}")

        try:
            with db_session(self._session_factory) as db:
                applied = store.apply_mutation(db, change, user)
        except (EntityNotFoundError, MutationValidationError) as exc:
            return _failure(str(exc))
        except SQLAlchemyError as exc:
            logger.error("Database error applying change %s: %s", change.client_temp_id, exc)
            return _failure("database error")

        # Broadcast only after the commit; a failed publish does not undo it.
        for event_type, data in applied.events:
            await publish_event(self._event_bus, event_type, data)

        if change.action == MutationAction.CREATE:
            return PushResultItem(temp_id=change.client_temp_id, server_id=applied.server_id, success=True)
        return PushResultItem(id=change.target_id, success=True)

    async def apply_batch(self, changes: Iterable[Any], user: AuthenticatedUser) -> PushResult:
        """Apply *changes* strictly in order; one result per change."""
        results = []
        for raw in changes:
            try:
                item = await self.apply_pushed_change(raw, user)
            except Exception as exc:
                # Unexpected failures are still reported per item.
                logger.exception("Unexpected error applying pushed change")
                temp_id, target_id, _ = _raw_identity(raw)
                item = PushResultItem(temp_id=temp_id, id=target_id, success=False, error=f"internal error: {type(exc).__name__}")
            results.append(item)

        applied = sum(1 for item in results if item.success)
        log.info(
            "sync-push",
            user_id=user.user_id,
            received=len(results),
            applied=applied,
            failed=len(results) - applied,
        )
        return PushResult(results=results, sync_timestamp=to_iso(utc_now_naive()))


__all__ = ["ReconciliationEngine", "parse_watermark"]
