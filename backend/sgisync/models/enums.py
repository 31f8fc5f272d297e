"""Shared *Enum* definitions for SQLAlchemy & Pydantic models.

The Enums inherit from ``str`` so that:

* JSON serialisation remains unchanged (values render as plain strings).
* Equality checks against raw literals (``role == "ADMIN"``) keep working.
"""

from __future__ import annotations

from enum import Enum


class UserRole(str, Enum):
    ADMIN = "ADMIN"
    MANAGER = "MANAGER"
    SAFETY = "SAFETY"
    TECH = "TECH"


class EntityKind(str, Enum):
    """Discriminant of every syncable record and queued mutation."""

    AGENDA = "agenda"
    NOTIFICATION = "notification"


class MutationAction(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class AgendaEventType(str, Enum):
    REUNIAO = "REUNIAO"
    PRAZO = "PRAZO"
    OS = "OS"
    AUDITORIA = "AUDITORIA"
    MANUTENCAO = "MANUTENCAO"
    FORMACAO = "FORMACAO"
    OUTRO = "OUTRO"


class AgendaPriority(str, Enum):
    BAIXA = "BAIXA"
    NORMAL = "NORMAL"
    ALTA = "ALTA"
    CRITICA = "CRITICA"


class NotificationType(str, Enum):
    INFO = "INFO"
    ALERTA = "ALERTA"
    URGENTE = "URGENTE"


__all__ = [
    "UserRole",
    "EntityKind",
    "MutationAction",
    "AgendaEventType",
    "AgendaPriority",
    "NotificationType",
]
