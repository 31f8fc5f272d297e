"""Per-entity adapters the reconciliation engine dispatches to.

Each store knows how to find its records changed after a watermark, how to
serialise one for the wire, and how to apply a validated mutation.  Adding
a new syncable entity means adding a store here and a mutation shape in
:mod:`sgisync.schemas.schemas`; the engine itself does not change.
"""

from __future__ import annotations

from dataclasses import dataclass
from dataclasses import field
from datetime import datetime
from typing import Any
from typing import Dict
from typing import List
from typing import Optional
from typing import Tuple

from sqlalchemy.orm import Session

from sgisync.crud import crud
from sgisync.dependencies.auth import AuthenticatedUser
from sgisync.events import EventType
from sgisync.exceptions import EntityNotFoundError
from sgisync.exceptions import MutationValidationError
from sgisync.models.enums import EntityKind
from sgisync.models.enums import MutationAction
from sgisync.schemas.schemas import AgendaEventOut
from sgisync.schemas.schemas import MutationBase
from sgisync.schemas.schemas import NotificationOut


@dataclass
class AppliedChange:
    """Outcome of one committed mutation.

    ``events`` are published in order once the transaction is committed.
    """

    server_id: str
    events: List[Tuple[EventType, Dict[str, Any]]] = field(default_factory=list)


class SyncableStore:
    """Interface every syncable entity store implements."""

    kind: EntityKind

    def find_changed_since(self, db: Session, since: datetime, user: AuthenticatedUser) -> List[Any]:
        raise NotImplementedError

    def serialize(self, record: Any) -> Dict[str, Any]:
        raise NotImplementedError

    def apply_mutation(self, db: Session, change: MutationBase, user: AuthenticatedUser) -> AppliedChange:
        raise NotImplementedError


# ---------------------------------------------------------------------------
# Agenda
# ---------------------------------------------------------------------------


class AgendaStore(SyncableStore):
    """Calendar events.  Visible to every user, broadcast to every connection."""

    kind = EntityKind.AGENDA

    def find_changed_since(self, db, since, user):
        return crud.find_agenda_changed_since(db, since)

    def serialize(self, record) -> Dict[str, Any]:
        return AgendaEventOut.model_validate(record).to_wire()

    def apply_mutation(self, db, change, user) -> AppliedChange:
        if change.action == MutationAction.CREATE:
            event, notifications = crud.create_agenda_event(db, creator_id=user.user_id, fields=change.typed_payload)
            applied = AppliedChange(
                server_id=event.id,
                events=[(EventType.AGENDA_CREATED, {"entity": self.serialize(event)})],
            )
            # Attendees hear about the invite in their private group.
            for notification in notifications:
                applied.events.append(
                    (
                        EventType.NOTIFICATION_NEW,
                        {"user_id": notification.user_id, "entity": NotificationOut.model_validate(notification).to_wire()},
                    )
                )
            return applied

        if change.action == MutationAction.UPDATE:
            event = crud.update_agenda_event(db, change.target_id, change.typed_payload)
            if event is None:
                raise EntityNotFoundError(self.kind.value, change.target_id)
            return AppliedChange(
                server_id=event.id,
                events=[(EventType.AGENDA_UPDATED, {"entity": self.serialize(event)})],
            )

        if change.action == MutationAction.DELETE:
            if not crud.delete_agenda_event(db, change.target_id):
                raise EntityNotFoundError(self.kind.value, change.target_id)
            return AppliedChange(
                server_id=change.target_id,
                events=[
                    (
                        EventType.AGENDA_DELETED,
                        {"entity": {"id": change.target_id, "entityKind": self.kind.value}},
                    )
                ],
            )

        raise MutationValidationError(f"unsupported action {change.action!r} for agenda")


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------


class NotificationStore(SyncableStore):
    """Per-user notifications; a user only ever sees and edits their own."""

    kind = EntityKind.NOTIFICATION

    def find_changed_since(self, db, since, user):
        return crud.find_notifications_changed_since(db, user.user_id, since)

    def serialize(self, record) -> Dict[str, Any]:
        return NotificationOut.model_validate(record).to_wire()

    def apply_mutation(self, db, change, user) -> AppliedChange:
        if change.action != MutationAction.UPDATE:
            raise MutationValidationError("notifications only accept update over sync")

        notification = crud.mark_notification_read(db, change.target_id, user.user_id, change.typed_payload.lido)
        if notification is None:
            raise EntityNotFoundError(self.kind.value, change.target_id)
        return AppliedChange(
            server_id=notification.id,
            events=[
                (
                    EventType.NOTIFICATION_UPDATED,
                    {"user_id": notification.user_id, "entity": self.serialize(notification)},
                )
            ],
        )


def default_stores() -> Dict[EntityKind, SyncableStore]:
    return {
        EntityKind.AGENDA: AgendaStore(),
        EntityKind.NOTIFICATION: NotificationStore(),
    }


def record_sync_time(record: Any) -> Optional[datetime]:
    return getattr(record, "last_sync_at", None)
