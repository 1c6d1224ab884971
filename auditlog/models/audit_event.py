"""Persistent audit event rows for the operational store."""
from __future__ import annotations

import enum
from datetime import datetime
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, Enum, Index, String, Text, event, inspect
from sqlalchemy.orm import Mapped, mapped_column

from auditlog.exceptions import ImmutableFieldError
from auditlog.models.base import Base


class RetentionCategory(str, enum.Enum):
    OPERATIONAL = "Operational"
    ARCHIVAL = "Archival"


IMMUTABLE_COLUMNS = ("id", "timestamp", "user_id", "action_type", "target_resource")


class AuditEventRecord(Base):
    """Row form of an audit event; identity columns are write-once."""

    __tablename__ = "audit_events"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    user_id: Mapped[str] = mapped_column(String(256), nullable=False, default="")
    action_type: Mapped[str] = mapped_column(String(128), nullable=False, default="")
    target_resource: Mapped[str] = mapped_column(String(512), nullable=False, default="")
    ip_address: Mapped[str] = mapped_column(String(64), nullable=False, default="")
    session_id: Mapped[str] = mapped_column(String(128), nullable=False, default="")
    status: Mapped[str] = mapped_column(String(64), nullable=False, default="")
    metadata_json: Mapped[dict[str, Any]] = mapped_column("metadata", JSON, nullable=False, default=dict)
    correlation_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(512), nullable=True)
    location: Mapped[str | None] = mapped_column(String(256), nullable=True)
    risk_level: Mapped[str | None] = mapped_column(String(32), nullable=True)
    contains_sensitive_data: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    data_hash: Mapped[str | None] = mapped_column(Text, nullable=True)
    retention_category: Mapped[RetentionCategory] = mapped_column(
        Enum(
            RetentionCategory,
            name="retentioncategory",
            native_enum=False,
            length=16,
            values_callable=lambda enum_cls: [member.value for member in enum_cls],
        ),
        nullable=False,
        default=RetentionCategory.OPERATIONAL,
    )

    __table_args__ = (
        Index("ix_audit_events_timestamp", "timestamp"),
        Index("ix_audit_events_user_id", "user_id"),
        Index("ix_audit_events_action_type", "action_type"),
        Index("ix_audit_events_target_resource", "target_resource"),
        Index("ix_audit_events_status", "status"),
        Index("ix_audit_events_session_id", "session_id"),
        Index("ix_audit_events_correlation_id", "correlation_id"),
        Index("ix_audit_events_risk_level", "risk_level"),
        Index("ix_audit_events_retention_timestamp", "retention_category", "timestamp"),
    )


@event.listens_for(AuditEventRecord, "before_update")
def _forbid_identity_updates(mapper, connection, target: AuditEventRecord) -> None:
    state = inspect(target)
    changed = [name for name in IMMUTABLE_COLUMNS if state.attrs[name].history.has_changes()]
    if changed:
        raise ImmutableFieldError(
            "Audit event identity fields cannot be modified.",
            details={"event_id": target.id, "fields": changed},
        )


__all__ = ["AuditEventRecord", "RetentionCategory", "IMMUTABLE_COLUMNS"]
