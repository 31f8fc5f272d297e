"""Pydantic models for everything that crosses the sync boundary.

Wire JSON is camelCase (``entityKind``, ``clientTempId``, ``syncTimestamp``);
Python code uses snake_case attribute names.  Every model accepts both.
"""

from datetime import datetime
from enum import Enum
from typing import Annotated
from typing import Any
from typing import Dict
from typing import List
from typing import Literal
from typing import Optional
from typing import Union

from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Discriminator
from pydantic import Field
from pydantic import PlainSerializer
from pydantic import PrivateAttr
from pydantic import Tag
from pydantic import TypeAdapter
from pydantic import field_validator
from pydantic import model_validator
from pydantic.alias_generators import to_camel

from sgisync.models.enums import AgendaEventType
from sgisync.models.enums import AgendaPriority
from sgisync.models.enums import EntityKind
from sgisync.models.enums import MutationAction
from sgisync.models.enums import NotificationType
from sgisync.utils.time import to_iso

# Datetimes always leave the process as ``...Z`` strings.
IsoDatetime = Annotated[datetime, PlainSerializer(to_iso, return_type=str)]


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> Dict[str, Any]:
        """Dump with camelCase keys and JSON-safe values."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


# ---------------------------------------------------------------------------
# Concrete payload shapes per syncable entity
# ---------------------------------------------------------------------------


class AgendaCreate(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

    titulo: str = Field(min_length=1)
    descricao: Optional[str] = None
    tipo: Optional[AgendaEventType] = None
    prioridade: Optional[AgendaPriority] = None
    # Defaults to the moment the server applies the create.
    data_inicio: Optional[datetime] = None
    data_fim: Optional[datetime] = None
    dia_inteiro: Optional[bool] = None
    local: Optional[str] = None
    cor: Optional[str] = None
    project_id: Optional[str] = None
    work_order_id: Optional[str] = None
    attendee_ids: Optional[List[str]] = None


class AgendaUpdate(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

    titulo: Optional[str] = Field(default=None, min_length=1)
    descricao: Optional[str] = None
    tipo: Optional[AgendaEventType] = None
    prioridade: Optional[AgendaPriority] = None
    data_inicio: Optional[datetime] = None
    data_fim: Optional[datetime] = None
    dia_inteiro: Optional[bool] = None
    local: Optional[str] = None
    cor: Optional[str] = None
    project_id: Optional[str] = None
    work_order_id: Optional[str] = None
    attendee_ids: Optional[List[str]] = None


class NotificationUpdate(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

    lido: bool


# ---------------------------------------------------------------------------
# MutationRecord – tagged union on ``entityKind``
# ---------------------------------------------------------------------------


class MutationBase(CamelModel):
    """Fields shared by every queued mutation regardless of entity kind."""

    action: MutationAction
    payload: Dict[str, Any] = Field(default_factory=dict)
    target_id: Optional[str] = None
    client_temp_id: str = Field(min_length=1)
    enqueued_at: Optional[str] = None

    # Validated, typed view of ``payload`` (never serialised).
    _fields: Optional[BaseModel] = PrivateAttr(default=None)

    @field_validator("action", mode="before")
    @classmethod
    def _normalise_action(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @property
    def typed_payload(self) -> Optional[BaseModel]:
        return self._fields

    def _require_target(self) -> None:
        if self.action in (MutationAction.UPDATE, MutationAction.DELETE) and not self.target_id:
            raise ValueError(f"targetId is required for {self.action.value}")


class AgendaMutation(MutationBase):
    entity_kind: Literal["agenda"] = "agenda"

    @model_validator(mode="after")
    def _validate_payload(self) -> "AgendaMutation":
        self._require_target()
        if self.action == MutationAction.CREATE:
            self._fields = AgendaCreate.model_validate(self.payload)
        elif self.action == MutationAction.UPDATE:
            self._fields = AgendaUpdate.model_validate(self.payload)
        return self


class NotificationMutation(MutationBase):
    entity_kind: Literal["notification"] = "notification"

    @model_validator(mode="after")
    def _validate_payload(self) -> "NotificationMutation":
        if self.action != MutationAction.UPDATE:
            raise ValueError("notifications only accept update over sync")
        self._require_target()
        self._fields = NotificationUpdate.model_validate(self.payload)
        return self


def _entity_kind_of(value: Any) -> Optional[str]:
    if isinstance(value, dict):
        kind = value.get("entityKind", value.get("entity_kind"))
    else:
        kind = getattr(value, "entity_kind", None)
    if isinstance(kind, Enum):
        return kind.value
    return kind


MutationRecord = Annotated[
    Union[
        Annotated[AgendaMutation, Tag(EntityKind.AGENDA.value)],
        Annotated[NotificationMutation, Tag(EntityKind.NOTIFICATION.value)],
    ],
    Discriminator(_entity_kind_of),
]

MUTATION_ADAPTER: TypeAdapter = TypeAdapter(MutationRecord)


def parse_mutation(raw: Any) -> Union[AgendaMutation, NotificationMutation]:
    """Validate one raw change dict into its concrete MutationRecord type.

    Raises ``pydantic.ValidationError`` when the record is malformed.
    """
    return MUTATION_ADAPTER.validate_python(raw)


# ---------------------------------------------------------------------------
# Push / pull results
# ---------------------------------------------------------------------------


class PushResultItem(CamelModel):
    """Per-change acknowledgement: ``tempId`` for creates, ``id`` otherwise."""

    temp_id: Optional[str] = None
    id: Optional[str] = None
    success: bool
    server_id: Optional[str] = None
    error: Optional[str] = None


class PushResult(CamelModel):
    results: List[PushResultItem]
    sync_timestamp: str


class Tombstone(CamelModel):
    entity_kind: EntityKind
    id: str
    deleted_at: IsoDatetime


class PullResult(CamelModel):
    entities: List[Dict[str, Any]]
    deleted: List[Tombstone] = Field(default_factory=list)
    sync_timestamp: str


class PushRequestBody(CamelModel):
    """Body of ``POST /api/sync/push``; items are validated one by one later."""

    changes: List[Dict[str, Any]]


# ---------------------------------------------------------------------------
# Outbound entity representations
# ---------------------------------------------------------------------------


class UserRef(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)

    id: str
    name: Optional[str] = None
    avatar: Optional[str] = None


class AttendeeOut(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)

    user_id: str
    confirmado: bool
    user: Optional[UserRef] = None


class AgendaEventOut(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)

    entity_kind: EntityKind = EntityKind.AGENDA
    id: str
    titulo: str
    descricao: Optional[str] = None
    tipo: AgendaEventType
    prioridade: AgendaPriority
    data_inicio: IsoDatetime
    data_fim: Optional[IsoDatetime] = None
    dia_inteiro: bool
    local: Optional[str] = None
    cor: Optional[str] = None
    project_id: Optional[str] = None
    work_order_id: Optional[str] = None
    creator_id: Optional[str] = None
    creator: Optional[UserRef] = None
    attendees: List[AttendeeOut] = Field(default_factory=list)
    sync_version: int
    last_sync_at: IsoDatetime


class NotificationOut(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)

    entity_kind: EntityKind = EntityKind.NOTIFICATION
    id: str
    user_id: str
    tipo: NotificationType
    titulo: str
    mensagem: str
    link_url: Optional[str] = None
    lido: bool
    sync_version: int
    last_sync_at: IsoDatetime
    created_at: IsoDatetime
