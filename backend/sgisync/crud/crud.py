# UTC helper
# Keep stdlib ``datetime`` for type annotations; runtime *now()* comes from
# ``utc_now_naive``.
from datetime import datetime
from typing import Iterable
from typing import List
from typing import Optional

from sqlalchemy.orm import Session
from sqlalchemy.orm import selectinload

from sgisync.models.enums import EntityKind
from sgisync.models.enums import NotificationType
from sgisync.models.enums import UserRole
from sgisync.models.models import AgendaEvent
from sgisync.models.models import EventAttendee
from sgisync.models.models import Notification
from sgisync.models.models import SyncTombstone

# NOTE: For return type hints we avoid the newer *PEP 604* union syntax
# ``User | None`` because the SQLAlchemy declarative class overrides the
# bitwise OR operator on some versions.
from sgisync.models.models import User
from sgisync.schemas.schemas import AgendaCreate
from sgisync.schemas.schemas import AgendaUpdate
from sgisync.utils.time import to_naive_utc
from sgisync.utils.time import utc_now_naive


def next_sync_at(previous: Optional[datetime]) -> datetime:
    """Return the ``last_sync_at`` for a mutation happening *now*.

    Never earlier than *previous*: ``last_sync_at`` must not move backwards
    for a record even if the wall clock does.
    """
    now = utc_now_naive()
    if previous is not None and previous > now:
        return previous
    return now


# ------------------------------------------------------------
# User CRUD operations
# ------------------------------------------------------------


def get_user(db: Session, user_id: str) -> Optional[User]:
    """Return user by primary key."""
    return db.query(User).filter(User.id == user_id).first()


def create_user(
    db: Session,
    *,
    email: str,
    name: Optional[str] = None,
    role: UserRole = UserRole.TECH,
    is_active: bool = True,
    user_id: Optional[str] = None,
) -> User:
    """Insert a user row (seeding and tests; the ERP owns real user management)."""
    user = User(email=email, name=name, role=role, is_active=is_active)
    if user_id is not None:
        user.id = user_id
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


# ------------------------------------------------------------
# Agenda events
# ------------------------------------------------------------


# Columns an update may not null out; an explicit null is ignored.
_REQUIRED_AGENDA_COLUMNS = frozenset({"titulo", "tipo", "prioridade", "data_inicio", "dia_inteiro"})


def _agenda_query(db: Session):
    # Eager-load what the serialiser touches so rows stay usable after the
    # session is closed.
    return db.query(AgendaEvent).options(
        selectinload(AgendaEvent.creator),
        selectinload(AgendaEvent.attendees).selectinload(EventAttendee.user),
    )


def get_agenda_event(db: Session, event_id: str) -> Optional[AgendaEvent]:
    """Get a single agenda event by ID"""
    return _agenda_query(db).filter(AgendaEvent.id == event_id).first()


def find_agenda_changed_since(db: Session, since: datetime) -> List[AgendaEvent]:
    """Every agenda event whose ``last_sync_at`` is strictly after *since*, oldest first."""
    return (
        _agenda_query(db)
        .filter(AgendaEvent.last_sync_at > since)
        .order_by(AgendaEvent.last_sync_at.asc(), AgendaEvent.id.asc())
        .all()
    )


def _replace_attendees(db: Session, event: AgendaEvent, attendee_ids: Iterable[str]) -> None:
    event.attendees.clear()
    db.flush()
    for user_id in dict.fromkeys(attendee_ids):
        event.attendees.append(EventAttendee(user_id=user_id))


def _notify_attendees(db: Session, event: AgendaEvent, attendee_ids: Iterable[str]) -> List[Notification]:
    created = []
    for user_id in dict.fromkeys(attendee_ids):
        notification = Notification(
            user_id=user_id,
            tipo=NotificationType.INFO.value,
            titulo="Novo Evento",
            mensagem=f"Você foi adicionado ao evento: {event.titulo}",
            link_url=f"/agenda?event={event.id}",
        )
        db.add(notification)
        created.append(notification)
    return created


def create_agenda_event(
    db: Session,
    *,
    creator_id: Optional[str],
    fields: AgendaCreate,
) -> tuple[AgendaEvent, List[Notification]]:
    """Insert a new event with ``sync_version=1`` and a fresh server id.

    Attendees listed in *fields* each receive a notification row inside the
    same transaction.  Returns the event and those notifications.
    """
    now = utc_now_naive()
    db_event = AgendaEvent(
        titulo=fields.titulo,
        descricao=fields.descricao,
        data_inicio=to_naive_utc(fields.data_inicio) if fields.data_inicio else now,
        data_fim=to_naive_utc(fields.data_fim) if fields.data_fim else None,
        dia_inteiro=bool(fields.dia_inteiro),
        local=fields.local,
        cor=fields.cor,
        project_id=fields.project_id,
        work_order_id=fields.work_order_id,
        creator_id=creator_id,
        sync_version=1,
        last_sync_at=now,
    )
    if fields.tipo is not None:
        db_event.tipo = fields.tipo.value
    if fields.prioridade is not None:
        db_event.prioridade = fields.prioridade.value
    db.add(db_event)
    db.flush()

    notifications: List[Notification] = []
    if fields.attendee_ids:
        _replace_attendees(db, db_event, fields.attendee_ids)
        notifications = _notify_attendees(db, db_event, fields.attendee_ids)

    db.commit()
    return get_agenda_event(db, db_event.id), notifications


def update_agenda_event(db: Session, event_id: str, fields: AgendaUpdate) -> Optional[AgendaEvent]:
    """Apply the provided fields, bump ``sync_version`` and refresh ``last_sync_at``.

    No comparison against a client-known version is made: last write wins.
    Returns ``None`` when the event does not exist.
    """
    db_event = get_agenda_event(db, event_id)
    if db_event is None:
        return None

    provided = fields.model_dump(exclude_unset=True)
    attendee_ids = provided.pop("attendee_ids", None)

    for key, value in provided.items():
        if value is None and key in _REQUIRED_AGENDA_COLUMNS:
            continue
        if key in ("data_inicio", "data_fim") and value is not None:
            value = to_naive_utc(value)
        elif key in ("tipo", "prioridade") and value is not None:
            value = value.value
        elif key == "dia_inteiro":
            value = bool(value)
        setattr(db_event, key, value)

    if attendee_ids is not None:
        _replace_attendees(db, db_event, attendee_ids)

    db_event.sync_version = (db_event.sync_version or 0) + 1
    db_event.last_sync_at = next_sync_at(db_event.last_sync_at)
    db.commit()
    return get_agenda_event(db, event_id)


def delete_agenda_event(db: Session, event_id: str) -> bool:
    """Delete an event and leave a tombstone for offline clients."""
    db_event = db.query(AgendaEvent).filter(AgendaEvent.id == event_id).first()
    if db_event is None:
        return False
    db.delete(db_event)
    db.add(
        SyncTombstone(
            entity_kind=EntityKind.AGENDA.value,
            entity_id=event_id,
            deleted_at=next_sync_at(db_event.last_sync_at),
        )
    )
    db.commit()
    return True


# ------------------------------------------------------------
# Notifications
# ------------------------------------------------------------


def create_notification(
    db: Session,
    *,
    user_id: str,
    titulo: str,
    mensagem: str,
    tipo: NotificationType = NotificationType.INFO,
    link_url: Optional[str] = None,
) -> Notification:
    notification = Notification(
        user_id=user_id,
        tipo=tipo.value,
        titulo=titulo,
        mensagem=mensagem,
        link_url=link_url,
    )
    db.add(notification)
    db.commit()
    db.refresh(notification)
    return notification


def find_notifications_changed_since(db: Session, user_id: str, since: datetime) -> List[Notification]:
    return (
        db.query(Notification)
        .filter(Notification.user_id == user_id, Notification.last_sync_at > since)
        .order_by(Notification.last_sync_at.asc(), Notification.id.asc())
        .all()
    )


def mark_notification_read(db: Session, notification_id: str, user_id: str, lido: bool) -> Optional[Notification]:
    """Set the read flag on one of *user_id*'s notifications.

    Notifications owned by somebody else are reported as missing.
    """
    notification = (
        db.query(Notification).filter(Notification.id == notification_id, Notification.user_id == user_id).first()
    )
    if notification is None:
        return None
    notification.lido = lido
    notification.sync_version = (notification.sync_version or 0) + 1
    notification.last_sync_at = next_sync_at(notification.last_sync_at)
    db.commit()
    db.refresh(notification)
    return notification


# ------------------------------------------------------------
# Tombstones
# ------------------------------------------------------------


def find_tombstones_since(db: Session, since: datetime, user_id: Optional[str] = None) -> List[SyncTombstone]:
    """Deletes after *since* visible to *user_id* (global ones plus the user's own)."""
    query = db.query(SyncTombstone).filter(SyncTombstone.deleted_at > since)
    if user_id is not None:
        query = query.filter((SyncTombstone.user_id.is_(None)) | (SyncTombstone.user_id == user_id))
    else:
        query = query.filter(SyncTombstone.user_id.is_(None))
    return query.order_by(SyncTombstone.deleted_at.asc(), SyncTombstone.id.asc()).all()
