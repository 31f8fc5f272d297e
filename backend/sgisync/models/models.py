import uuid

# SQLAlchemy core imports
from sqlalchemy import Boolean
from sqlalchemy import Column
from sqlalchemy import DateTime
from sqlalchemy import Enum as SAEnum
from sqlalchemy import ForeignKey
from sqlalchemy import Integer
from sqlalchemy import String
from sqlalchemy import Text
from sqlalchemy import UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

# Local helpers / enums
from sgisync.database import Base
from sgisync.models.enums import AgendaEventType
from sgisync.models.enums import AgendaPriority
from sgisync.models.enums import NotificationType
from sgisync.models.enums import UserRole
from sgisync.utils.time import utc_now_naive


def _new_id() -> str:
    return str(uuid.uuid4())


# ---------------------------------------------------------------------------
# Authentication – User table
# ---------------------------------------------------------------------------


class User(Base):
    """Application user.

    Only the columns the sync core needs to authenticate a socket and to
    address ``user:<id>`` / ``role:<role>`` broadcast groups.
    """

    __tablename__ = "users"

    id = Column(String, primary_key=True, default=_new_id)
    email = Column(String, unique=True, nullable=False, index=True)
    name = Column(String, nullable=True)
    avatar = Column(String, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)

    # Role / permission level – backed by :class:`sgisync.models.enums.UserRole`.
    role = Column(
        SAEnum(UserRole, native_enum=False, name="user_role_enum"),
        nullable=False,
        default=UserRole.TECH.value,
    )

    created_at = Column(DateTime, server_default=func.now())


# ---------------------------------------------------------------------------
# Syncable records
#
# Every syncable table carries ``sync_version`` (starts at 1, bumped on each
# server-side mutation) and ``last_sync_at`` (server clock, the only column
# watermark queries ever filter on).
# ---------------------------------------------------------------------------


class AgendaEvent(Base):
    __tablename__ = "agenda_events"

    id = Column(String, primary_key=True, default=_new_id)
    titulo = Column(String, nullable=False)
    descricao = Column(Text, nullable=True)
    tipo = Column(
        SAEnum(AgendaEventType, native_enum=False, name="agenda_event_type_enum"),
        nullable=False,
        default=AgendaEventType.OUTRO.value,
    )
    prioridade = Column(
        SAEnum(AgendaPriority, native_enum=False, name="agenda_priority_enum"),
        nullable=False,
        default=AgendaPriority.NORMAL.value,
    )
    data_inicio = Column(DateTime, nullable=False)
    data_fim = Column(DateTime, nullable=True)
    dia_inteiro = Column(Boolean, nullable=False, default=False)
    local = Column(String, nullable=True)
    cor = Column(String, nullable=True)

    # Loose references into the wider ERP (projects / work orders live in
    # other services, so no foreign keys here).
    project_id = Column(String, nullable=True, index=True)
    work_order_id = Column(String, nullable=True)

    creator_id = Column(String, ForeignKey("users.id"), nullable=True)
    creator = relationship("User")

    attendees = relationship(
        "EventAttendee",
        back_populates="event",
        cascade="all, delete-orphan",
        order_by="EventAttendee.id",
    )

    sync_version = Column(Integer, nullable=False, default=1)
    last_sync_at = Column(DateTime, nullable=False, default=utc_now_naive, index=True)

    created_at = Column(DateTime, server_default=func.now())


class EventAttendee(Base):
    __tablename__ = "event_attendees"
    __table_args__ = (UniqueConstraint("event_id", "user_id", name="uq_event_attendee"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_id = Column(String, ForeignKey("agenda_events.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(String, ForeignKey("users.id"), nullable=False)
    confirmado = Column(Boolean, nullable=False, default=False)

    event = relationship("AgendaEvent", back_populates="attendees")
    user = relationship("User")


class Notification(Base):
    """Per-user notification; syncable so a reconnecting device catches up."""

    __tablename__ = "notifications"

    id = Column(String, primary_key=True, default=_new_id)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    tipo = Column(
        SAEnum(NotificationType, native_enum=False, name="notification_type_enum"),
        nullable=False,
        default=NotificationType.INFO.value,
    )
    titulo = Column(String, nullable=False)
    mensagem = Column(Text, nullable=False)
    link_url = Column(String, nullable=True)
    lido = Column(Boolean, nullable=False, default=False)

    sync_version = Column(Integer, nullable=False, default=1)
    last_sync_at = Column(DateTime, nullable=False, default=utc_now_naive, index=True)

    created_at = Column(DateTime, nullable=False, default=utc_now_naive)


class SyncTombstone(Base):
    """Marker left behind by a delete so offline clients learn about it on pull."""

    __tablename__ = "sync_tombstones"

    id = Column(Integer, primary_key=True, autoincrement=True)
    entity_kind = Column(String, nullable=False)
    entity_id = Column(String, nullable=False, index=True)
    # Audience of the tombstone; NULL means every user.
    user_id = Column(String, nullable=True, index=True)
    deleted_at = Column(DateTime, nullable=False, default=utc_now_naive, index=True)
