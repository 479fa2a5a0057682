"""
Persistence Core - Data Models
Pydantic models for entities, audit records, tenants and request scope
"""
import json
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, Mapping, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, model_validator

_IDENTIFIER = re.compile(r"^[a-z_][a-z0-9_]*$")

BASE_COLUMNS: Tuple[str, ...] = (
    "id",
    "tenant_id",
    "created_at",
    "updated_at",
    "deleted_at",
    "created_by",
    "updated_by",
    "version",
)


def utcnow() -> datetime:
    """Current UTC time truncated to millisecond precision"""
    now = datetime.now(timezone.utc)
    return now.replace(microsecond=now.microsecond // 1000 * 1000)


class AuditAction(str, Enum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    SOFT_DELETE = "SOFT_DELETE"
    RESTORE = "RESTORE"


class TenantMode(str, Enum):
    SINGLE_PROVIDER = "SINGLE_PROVIDER"
    MULTI_PROVIDER = "MULTI_PROVIDER"


@dataclass(frozen=True)
class EntityType:
    """
    Describes one concrete record type: its audit tag, its table and the
    entity-specific columns it carries on top of the base columns.
    """
    name: str
    table: str
    fields: Tuple[str, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        for identifier in (self.name, self.table, *self.fields):
            if not _IDENTIFIER.match(identifier):
                raise ValueError(f"Invalid identifier for entity type: {identifier!r}")
        clash = set(self.fields) & set(BASE_COLUMNS)
        if clash:
            raise ValueError(f"{self.name} redeclares base columns: {sorted(clash)}")
        object.__setattr__(self, "fields", tuple(self.fields))

    @property
    def columns(self) -> Tuple[str, ...]:
        return BASE_COLUMNS + self.fields


PATIENT = EntityType(
    name="patient",
    table="patients",
    fields=("mrn", "given_name", "family_name", "date_of_birth", "sex", "phone", "notes"),
)


class Entity(BaseModel):
    """A live or soft-deleted row of some entity type"""
    entity_type: str
    id: uuid.UUID
    tenant_id: uuid.UUID
    created_at: datetime
    updated_at: datetime
    deleted_at: Optional[datetime] = None
    created_by: Optional[uuid.UUID] = None
    updated_by: Optional[uuid.UUID] = None
    version: int = 1
    data: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def check_timestamps(self) -> "Entity":
        if self.updated_at < self.created_at:
            raise ValueError("updated_at must not precede created_at")
        return self

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    @classmethod
    def from_row(cls, entity_type: EntityType, row: Mapping[str, Any]) -> "Entity":
        values = dict(row)
        return cls(
            entity_type=entity_type.name,
            id=values["id"],
            tenant_id=values["tenant_id"],
            created_at=values["created_at"],
            updated_at=values["updated_at"],
            deleted_at=values.get("deleted_at"),
            created_by=values.get("created_by"),
            updated_by=values.get("updated_by"),
            version=values.get("version") or 1,
            data={name: values.get(name) for name in entity_type.fields},
        )

    def snapshot(self) -> Dict[str, Any]:
        """JSON-safe copy used for audit before/after states"""
        return self.model_dump(mode="json")


class AuditRecord(BaseModel):
    """Immutable description of one mutation to one entity"""
    model_config = ConfigDict(frozen=True)

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    tenant_id: uuid.UUID
    entity_type: str
    entity_id: uuid.UUID
    action: AuditAction
    before_state: Optional[Dict[str, Any]] = None
    after_state: Optional[Dict[str, Any]] = None
    actor_id: Optional[uuid.UUID] = None
    occurred_at: datetime = Field(default_factory=utcnow)

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "AuditRecord":
        values = dict(row)
        for key in ("before_state", "after_state"):
            if isinstance(values.get(key), str):
                values[key] = json.loads(values[key])
        return cls(**values)

    def to_db_record(self) -> Dict[str, Any]:
        """Column values for insertion; snapshots are JSON text for jsonb"""
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "action": self.action.value,
            "before_state": json.dumps(self.before_state) if self.before_state is not None else None,
            "after_state": json.dumps(self.after_state) if self.after_state is not None else None,
            "actor_id": self.actor_id,
            "occurred_at": self.occurred_at,
        }


class Tenant(BaseModel):
    """A clinic account - the isolation boundary"""
    id: uuid.UUID
    name: str = Field(..., min_length=1, max_length=255)
    mode: TenantMode = TenantMode.SINGLE_PROVIDER
    is_active: bool = True
    created_at: Optional[datetime] = None


class MigrationRecord(BaseModel):
    version: int
    name: str
    applied_at: datetime
    checksum: str


class RequestContext(BaseModel):
    """
    Verified caller identity, as supplied by the authentication provider.

    Tenant-scoped contexts always carry a tenant and an actor. The
    administrator scope that may cross tenants only exists through
    ``RequestContext.system()``.
    """
    model_config = ConfigDict(frozen=True)

    actor_id: Optional[uuid.UUID] = None
    tenant_id: Optional[uuid.UUID] = None
    roles: FrozenSet[str] = frozenset()
    bypass_tenant_isolation: bool = False

    @model_validator(mode="after")
    def require_scope(self) -> "RequestContext":
        if not self.bypass_tenant_isolation:
            if self.tenant_id is None:
                raise ValueError("A tenant-scoped request requires a tenant_id")
            if self.actor_id is None:
                raise ValueError("A tenant-scoped request requires an actor_id")
        return self

    @classmethod
    def system(
        cls,
        actor_id: Optional[uuid.UUID] = None,
        tenant_id: Optional[uuid.UUID] = None,
        roles: Tuple[str, ...] = ("system",),
    ) -> "RequestContext":
        return cls(
            actor_id=actor_id,
            tenant_id=tenant_id,
            roles=frozenset(roles),
            bypass_tenant_isolation=True,
        )

    @property
    def is_system(self) -> bool:
        return self.bypass_tenant_isolation


class Page(BaseModel):
    limit: int = Field(default=50, ge=1, le=500)
    offset: int = Field(default=0, ge=0)
