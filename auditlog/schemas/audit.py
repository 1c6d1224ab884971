"""Pydantic schemas for audit events, filters and service reports."""
from __future__ import annotations

import enum
import hashlib
import json
from datetime import datetime
from typing import Any
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from auditlog.models.audit_event import RetentionCategory
from auditlog.utils.time import ensure_utc, utcnow

SYSTEM_ACTOR = "SYSTEM"
SYSTEM_IP_ADDRESS = "127.0.0.1"
SEARCHABLE_FIELDS = ("user_id", "action_type", "target_resource", "status", "correlation_id")
SORTABLE_FIELDS = (
    "timestamp",
    "user_id",
    "action_type",
    "target_resource",
    "status",
    "ip_address",
    "session_id",
    "correlation_id",
    "risk_level",
)
EQUALITY_FIELDS = (
    "user_id",
    "action_type",
    "target_resource",
    "status",
    "ip_address",
    "session_id",
    "correlation_id",
    "risk_level",
)
# Fields that may legitimately change after persistence; left out of the integrity hash.
UNHASHED_FIELDS = {"data_hash", "retention_category"}


class RiskLevel(str, enum.Enum):
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"
    CRITICAL = "Critical"


class SortDirection(str, enum.Enum):
    ASC = "asc"
    DESC = "desc"


class HealthStatus(str, enum.Enum):
    HEALTHY = "Healthy"
    DEGRADED = "Degraded"
    UNHEALTHY = "Unhealthy"

    @property
    def severity(self) -> int:
        return {"Healthy": 0, "Degraded": 1, "Unhealthy": 2}[self.value]


class AuditEvent(BaseModel):
    """One recorded action."""

    id: UUID = Field(default_factory=uuid4)
    timestamp: datetime = Field(default_factory=utcnow)
    user_id: str = ""
    action_type: str = ""
    target_resource: str = ""
    ip_address: str = ""
    session_id: str = ""
    status: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)
    correlation_id: str | None = None
    user_agent: str | None = None
    location: str | None = None
    risk_level: str | None = None
    contains_sensitive_data: bool = False
    data_hash: str | None = None
    retention_category: RetentionCategory = RetentionCategory.OPERATIONAL

    @field_validator("timestamp")
    @classmethod
    def _ensure_timezone(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    @property
    def is_archival(self) -> bool:
        return self.retention_category == RetentionCategory.ARCHIVAL

    def create_archival_copy(self) -> "AuditEvent":
        return self.model_copy(deep=True, update={"retention_category": RetentionCategory.ARCHIVAL})

    def canonical_payload(self) -> str:
        """Deterministic serialization used for integrity hashing."""

        payload = self.model_dump(mode="json", exclude=UNHASHED_FIELDS)
        return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


class AuditEventFilter(BaseModel):
    """Query filter; every field is optional."""

    start_date: datetime | None = None
    end_date: datetime | None = None
    user_id: str | None = None
    action_type: str | None = None
    target_resource: str | None = None
    status: str | None = None
    ip_address: str | None = None
    session_id: str | None = None
    correlation_id: str | None = None
    risk_level: str | None = None
    contains_sensitive_data: bool | None = None
    retention_category: RetentionCategory | None = None
    search_term: str | None = None
    metadata_key: str | None = None
    metadata_value: str | None = None
    max_results: int = Field(default=1000, ge=1)
    skip: int = Field(default=0, ge=0)
    sort_by: str = "timestamp"
    sort_direction: SortDirection = SortDirection.DESC

    @field_validator("start_date", "end_date")
    @classmethod
    def _ensure_timezone(cls, value: datetime | None) -> datetime | None:
        if value is None:
            return None
        return ensure_utc(value)

    @field_validator("sort_by")
    @classmethod
    def _normalise_sort_by(cls, value: str) -> str:
        cleaned = value.strip().lower()
        aliases = {field.replace("_", ""): field for field in SORTABLE_FIELDS}
        aliases["ip"] = "ip_address"
        cleaned = aliases.get(cleaned.replace("_", ""), cleaned)
        return cleaned if cleaned in SORTABLE_FIELDS else "timestamp"

    def cache_key(self, prefix: str = "query") -> str:
        digest = hashlib.sha256(self.model_dump_json().encode("utf-8")).hexdigest()
        return f"{prefix}:{digest}"

    def matches(self, event: AuditEvent) -> bool:
        """In-memory counterpart of the SQL filter; ignores pagination."""

        if self.start_date and event.timestamp < self.start_date:
            return False
        if self.end_date and event.timestamp > self.end_date:
            return False
        for name in EQUALITY_FIELDS:
            expected = getattr(self, name)
            if expected is not None and getattr(event, name) != expected:
                return False
        if self.contains_sensitive_data is not None and event.contains_sensitive_data != self.contains_sensitive_data:
            return False
        if self.retention_category is not None and event.retention_category != self.retention_category:
            return False
        if self.search_term:
            needle = self.search_term.lower()
            haystack = [getattr(event, name) or "" for name in SEARCHABLE_FIELDS]
            if not any(needle in value.lower() for value in haystack):
                return False
        if self.metadata_key:
            if self.metadata_key not in event.metadata:
                return False
            if self.metadata_value is not None and str(event.metadata[self.metadata_key]) != self.metadata_value:
                return False
        return True


class SinkWriteOutcome(BaseModel):
    sink_type: str
    succeeded: bool
    error: str | None = None
    error_type: str | None = None
    elapsed_ms: float = 0.0


class FanOutResult(BaseModel):
    """Per-sink result of a fan-out write."""

    event_ids: list[UUID] = Field(default_factory=list)
    outcomes: list[SinkWriteOutcome] = Field(default_factory=list)
    skipped: bool = False

    @property
    def succeeded(self) -> bool:
        return all(outcome.succeeded for outcome in self.outcomes)

    @property
    def successes(self) -> list[SinkWriteOutcome]:
        return [outcome for outcome in self.outcomes if outcome.succeeded]

    @property
    def failures(self) -> list[SinkWriteOutcome]:
        return [outcome for outcome in self.outcomes if not outcome.succeeded]

    def outcome_for(self, sink_type: str) -> SinkWriteOutcome | None:
        return next((outcome for outcome in self.outcomes if outcome.sink_type == sink_type), None)


class AuditEventStatistics(BaseModel):
    start_date: datetime
    end_date: datetime
    total_events: int = 0
    events_by_action_type: dict[str, int] = Field(default_factory=dict)
    events_by_status: dict[str, int] = Field(default_factory=dict)
    events_by_risk_level: dict[str, int] = Field(default_factory=dict)
    events_by_user: dict[str, int] = Field(default_factory=dict)
    events_with_sensitive_data: int = 0
    average_events_per_day: float = 0.0
    truncated: bool = False


class SinkHealth(BaseModel):
    sink_id: str
    status: HealthStatus
    response_time_ms: float = 0.0
    last_successful_operation: datetime | None = None
    error_message: str | None = None


class AuditServiceHealth(BaseModel):
    overall_status: HealthStatus
    sink_health: dict[str, SinkHealth] = Field(default_factory=dict)
    last_health_check: datetime
    messages: list[str] = Field(default_factory=list)


# ------ Request / response bodies ------


class UserActionCreate(BaseModel):
    user_id: str = Field(min_length=1)
    action_type: str = Field(min_length=1)
    target_resource: str = ""
    status: str = "Success"
    metadata: dict[str, Any] = Field(default_factory=dict)


class SystemEventCreate(BaseModel):
    action_type: str = Field(min_length=1)
    target_resource: str = ""
    status: str = "Success"
    metadata: dict[str, Any] = Field(default_factory=dict)


class SecurityEventCreate(BaseModel):
    user_id: str = Field(min_length=1)
    action_type: str = Field(min_length=1)
    target_resource: str = ""
    status: str = "Success"
    risk_level: RiskLevel = RiskLevel.HIGH
    metadata: dict[str, Any] = Field(default_factory=dict)


class AuditEventBatchCreate(BaseModel):
    events: list[AuditEvent] = Field(min_length=1, max_length=1000)


class ArchiveRequest(BaseModel):
    cutoff_date: datetime

    @field_validator("cutoff_date")
    @classmethod
    def _ensure_timezone(cls, value: datetime) -> datetime:
        return ensure_utc(value)


class ArchiveResult(BaseModel):
    archived_count: int
    cutoff_date: datetime


class CountResult(BaseModel):
    count: int


class PseudonymResolution(BaseModel):
    pseudonymized_value: str
    original_value: str
    field_name: str
    method: str
    expires_at: datetime | None = None
    model_config = ConfigDict(from_attributes=True)


__all__ = [
    "SYSTEM_ACTOR",
    "SYSTEM_IP_ADDRESS",
    "SORTABLE_FIELDS",
    "RiskLevel",
    "SortDirection",
    "HealthStatus",
    "AuditEvent",
    "AuditEventFilter",
    "SinkWriteOutcome",
    "FanOutResult",
    "AuditEventStatistics",
    "SinkHealth",
    "AuditServiceHealth",
    "UserActionCreate",
    "SystemEventCreate",
    "SecurityEventCreate",
    "AuditEventBatchCreate",
    "ArchiveRequest",
    "ArchiveResult",
    "CountResult",
    "PseudonymResolution",
]
