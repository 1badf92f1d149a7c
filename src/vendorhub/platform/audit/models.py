"""
Audit trail models: the event table, its enumerations and the API schemas.
"""

import json
from dataclasses import dataclass
from datetime import UTC, date, datetime, time
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel
from sqlalchemy import JSON, Boolean, DateTime, Index, String, Text, event
from sqlalchemy.dialects.postgresql import UUID as PostgresUUID
from sqlalchemy.orm import Mapped, mapped_column

from ..db import Base, StrictTenantMixin
from .exceptions import InvalidAuditFilter


class AuditAction(str, Enum):
    """Actions recorded in the audit trail."""

    CREATE = "CREATE"
    READ = "READ"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    LOGIN = "LOGIN"
    LOGOUT = "LOGOUT"
    EXPORT = "EXPORT"
    IMPORT = "IMPORT"


class AuditResource(str, Enum):
    """Kinds of resources an audit event can refer to."""

    USER = "USER"
    VENDOR = "VENDOR"
    CONTRACT = "CONTRACT"
    AUTH = "AUTH"
    SYSTEM = "SYSTEM"
    DATA_TYPE = "DATA_TYPE"
    TENANT = "TENANT"


@dataclass(frozen=True)
class UnrecognizedValue:
    """An action or resource value outside the known enumeration.

    Stored verbatim and tagged unrecognised instead of being rejected.
    """

    raw: str

    @property
    def value(self) -> str:
        return self.raw


def parse_action(value: "str | AuditAction") -> AuditAction | UnrecognizedValue:
    if isinstance(value, AuditAction):
        return value
    try:
        return AuditAction(str(value).strip().upper())
    except ValueError:
        return UnrecognizedValue(str(value))


def parse_resource(value: "str | AuditResource") -> AuditResource | UnrecognizedValue:
    if isinstance(value, AuditResource):
        return value
    try:
        return AuditResource(str(value).strip().upper())
    except ValueError:
        return UnrecognizedValue(str(value))


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes (SQLite drops tzinfo) and convert aware ones."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


# Column limits, shared with the writer for truncation
ACTION_MAX_LENGTH = 50
RESOURCE_MAX_LENGTH = 50
DETAILS_MAX_LENGTH = 2000
USER_AGENT_MAX_LENGTH = 500
IP_ADDRESS_MAX_LENGTH = 45


class AuditEvent(Base, StrictTenantMixin):
    """Immutable audit event. Rows are inserted once and never updated."""

    __tablename__ = "audit_events"

    id: Mapped[UUID] = mapped_column(PostgresUUID(as_uuid=True), primary_key=True, default=uuid4)

    # tenant_id is inherited from StrictTenantMixin and is NOT NULL
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    # Who
    actor_user_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    actor_email: Mapped[str | None] = mapped_column(String(320), nullable=True)

    # What
    action: Mapped[str] = mapped_column(String(ACTION_MAX_LENGTH), nullable=False)
    resource: Mapped[str] = mapped_column(String(RESOURCE_MAX_LENGTH), nullable=False)
    resource_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    details: Mapped[str | None] = mapped_column(Text, nullable=True)
    # "metadata" is reserved on declarative classes
    event_metadata: Mapped[dict[str, Any] | None] = mapped_column("metadata", JSON, nullable=True)
    is_recognized: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    # Provenance
    ip_address: Mapped[str | None] = mapped_column(String(IP_ADDRESS_MAX_LENGTH), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(USER_AGENT_MAX_LENGTH), nullable=True)

    __table_args__ = (
        Index("ix_audit_events_tenant_timestamp", "tenant_id", "timestamp", "id"),
        Index("ix_audit_events_tenant_action", "tenant_id", "action"),
        Index("ix_audit_events_tenant_resource", "tenant_id", "resource"),
        Index("ix_audit_events_tenant_actor", "tenant_id", "actor_user_id"),
    )

    def __repr__(self) -> str:
        return f"<AuditEvent {self.id} {self.tenant_id} {self.action}/{self.resource}>"


@event.listens_for(AuditEvent, "before_update")
def _reject_update(mapper: Any, connection: Any, target: AuditEvent) -> None:
    raise RuntimeError(f"Audit events are immutable (attempted update of {target.id})")


# ==========================================
# Write-side schema
# ==========================================


class AuditEventCreate(BaseModel):
    """Fully-formed event handed from the writer to storage."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    id: UUID = Field(default_factory=uuid4)
    tenant_id: str = Field(min_length=1, max_length=255)
    timestamp: datetime
    actor_user_id: str | None = None
    actor_email: str | None = None
    action: str = Field(min_length=1, max_length=ACTION_MAX_LENGTH)
    resource: str = Field(min_length=1, max_length=RESOURCE_MAX_LENGTH)
    resource_id: str | None = None
    details: str | None = None
    metadata: dict[str, Any] | None = None
    is_recognized: bool = True
    ip_address: str | None = None
    user_agent: str | None = None

    def to_orm(self) -> AuditEvent:
        return AuditEvent(
            id=self.id,
            tenant_id=self.tenant_id,
            timestamp=self.timestamp,
            actor_user_id=self.actor_user_id,
            actor_email=self.actor_email,
            action=self.action,
            resource=self.resource,
            resource_id=self.resource_id,
            details=self.details,
            event_metadata=self.metadata,
            is_recognized=self.is_recognized,
            ip_address=self.ip_address,
            user_agent=self.user_agent,
        )


# ==========================================
# Filters
# ==========================================


def parse_date_param(value: Any, *, end_of_day: bool = False) -> datetime | None:
    """Parse an ISO date or datetime; a bare date used as an upper bound covers the whole day."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, date):
        return datetime.combine(value, time.max if end_of_day else time.min, tzinfo=UTC)

    text = str(value).strip()
    if len(text) == 10:
        day = date.fromisoformat(text)
        return datetime.combine(day, time.max if end_of_day else time.min, tzinfo=UTC)
    return ensure_utc(datetime.fromisoformat(text.replace("Z", "+00:00")))


class AuditFilter(BaseModel):
    """Filter shared by the query engine, stats and export.

    All criteria are optional and AND-combined.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    action: AuditAction | None = None
    resource: AuditResource | None = None
    actor_user_id: str | None = Field(default=None, max_length=255)
    start_date: datetime | None = None
    end_date: datetime | None = None
    search: str | None = Field(default=None, max_length=200)

    @field_validator("action", "resource", mode="before")
    @classmethod
    def normalize_enum(cls, v: Any) -> Any:
        if isinstance(v, str):
            v = v.strip().upper()
            return v or None
        return v

    @field_validator("actor_user_id", "search", mode="before")
    @classmethod
    def blank_to_none(cls, v: Any) -> Any:
        if isinstance(v, str):
            return v.strip() or None
        return v

    @field_validator("start_date", mode="before")
    @classmethod
    def parse_start(cls, v: Any) -> Any:
        return parse_date_param(v)

    @field_validator("end_date", mode="before")
    @classmethod
    def parse_end(cls, v: Any) -> Any:
        return parse_date_param(v, end_of_day=True)

    @model_validator(mode="after")
    def check_range(self) -> "AuditFilter":
        if self.start_date and self.end_date and self.start_date > self.end_date:
            raise ValueError("startDate must not be after endDate")
        return self

    @classmethod
    def from_query_params(
        cls,
        *,
        action: str | None = None,
        resource: str | None = None,
        user_id: str | None = None,
        start_date: str | None = None,
        end_date: str | None = None,
        search: str | None = None,
    ) -> "AuditFilter":
        """Build a filter from raw request parameters, mapping failures to InvalidAuditFilter."""
        try:
            return cls(
                action=action,
                resource=resource,
                actor_user_id=user_id,
                start_date=start_date,
                end_date=end_date,
                search=search,
            )
        except ValidationError as e:
            first = e.errors()[0]
            field = str(first["loc"][0]) if first.get("loc") else None
            raise InvalidAuditFilter(
                f"Invalid filter: {first['msg']}", field=_FILTER_PARAM_NAMES.get(field, field)
            ) from e


_FILTER_PARAM_NAMES = {
    "actor_user_id": "userId",
    "start_date": "startDate",
    "end_date": "endDate",
}


# ==========================================
# Read-side API schemas
# ==========================================


class CamelModel(BaseModel):
    """Response models serialise with camelCase keys."""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, from_attributes=True
    )


def render_value(value: Any) -> str:
    """Render a before/after value as display text."""
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return json.dumps(value, sort_keys=True, default=str, separators=(",", ":"))


class FieldChange(CamelModel):
    """One field of an update diff, with display renderings of both sides."""

    field: str
    before: Any = None
    after: Any = None
    before_display: str = ""
    after_display: str = ""

    @classmethod
    def from_entry(cls, field: str, entry: Any) -> "FieldChange":
        if not isinstance(entry, dict):
            return cls(field=field, after=entry, after_display=render_value(entry))
        before = entry.get("before")
        after = entry.get("after")
        return cls(
            field=field,
            before=before,
            after=after,
            before_display=render_value(before),
            after_display=render_value(after),
        )


def extract_changes(metadata: dict[str, Any] | None) -> list[FieldChange]:
    """Expand ``metadata.changes``; any other metadata shape yields no changes."""
    if not metadata:
        return []
    changes = metadata.get("changes")
    if not isinstance(changes, dict):
        return []
    return [FieldChange.from_entry(str(field), entry) for field, entry in sorted(changes.items())]


class AuditEventResponse(CamelModel):
    """Audit event as returned by the API."""

    id: UUID
    tenant_id: str
    timestamp: datetime
    actor_user_id: str | None = None
    actor_email: str | None = None
    action: str
    resource: str
    resource_id: str | None = None
    details: str | None = None
    metadata: dict[str, Any] | None = Field(
        default=None,
        validation_alias=AliasChoices("event_metadata", "metadata"),
        serialization_alias="metadata",
    )
    recognized: bool = Field(
        default=True,
        validation_alias=AliasChoices("is_recognized", "recognized"),
        serialization_alias="recognized",
    )
    ip_address: str | None = None
    user_agent: str | None = None

    @field_validator("timestamp")
    @classmethod
    def normalize_timestamp(cls, v: datetime) -> datetime:
        return ensure_utc(v)


class AuditEventDetail(AuditEventResponse):
    """Single event with its update diff expanded for display."""

    changes: list[FieldChange] = Field(default_factory=list)

    @model_validator(mode="after")
    def expand_changes(self) -> "AuditEventDetail":
        if not self.changes:
            self.changes = extract_changes(self.metadata)
        return self


class AuditPagination(CamelModel):
    current_page: int
    total_pages: int
    total_count: int
    page_size: int
    has_next: bool
    has_prev: bool
    snapshot: datetime | None = None


class AuditLogListResponse(CamelModel):
    success: bool = True
    data: list[AuditEventResponse]
    pagination: AuditPagination


class AuditLogDetailResponse(CamelModel):
    success: bool = True
    data: AuditEventDetail


class ActionCount(CamelModel):
    action: str
    count: int


class ResourceCount(CamelModel):
    resource: str
    count: int


class UserCount(CamelModel):
    actor_user_id: str | None = None
    actor_email: str | None = None
    count: int


class DateRange(CamelModel):
    start_date: datetime | None = None
    end_date: datetime | None = None


class AuditStatsPayload(CamelModel):
    """Aggregates over a date window plus the independent trailing-24h count."""

    total_logs: int
    recent_activity: int
    user_stats: list[UserCount] = Field(default_factory=list)
    resource_stats: list[ResourceCount] = Field(default_factory=list)
    action_stats: list[ActionCount] = Field(default_factory=list)
    date_range: DateRange = Field(default_factory=DateRange)


class AuditStatsResponse(CamelModel):
    success: bool = True
    data: AuditStatsPayload


class AuditErrorResponse(BaseModel):
    """Error envelope shared by all audit endpoints."""

    success: bool = False
    error: str
    code: str
    retryable: bool = False
    context: dict[str, Any] = Field(default_factory=dict)
