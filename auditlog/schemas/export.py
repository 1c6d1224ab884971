"""Pydantic schemas for export jobs."""
from __future__ import annotations

import enum
from datetime import datetime
from uuid import UUID, uuid4

from pydantic import BaseModel, Field, field_validator

from auditlog.schemas.audit import AuditEventFilter
from auditlog.utils.time import utcnow


class ExportFormat(str, enum.Enum):
    CSV = "csv"
    JSON = "json"
    EXCEL = "excel"
    PDF = "pdf"


class ExportJobStatus(str, enum.Enum):
    QUEUED = "Queued"
    PROCESSING = "Processing"
    COMPLETED = "Completed"
    FAILED = "Failed"
    CANCELLED = "Cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in {ExportJobStatus.COMPLETED, ExportJobStatus.FAILED, ExportJobStatus.CANCELLED}


class ExportStage(str, enum.Enum):
    QUEUED = "Queued"
    RETRIEVING = "Retrieving"
    PROTECTING = "Protecting"
    GENERATING = "Generating"
    SAVING = "Saving"
    COMPLETED = "Completed"

    @property
    def progress(self) -> int:
        return STAGE_PROGRESS[self]


STAGE_PROGRESS = {
    ExportStage.QUEUED: 0,
    ExportStage.RETRIEVING: 20,
    ExportStage.PROTECTING: 40,
    ExportStage.GENERATING: 60,
    ExportStage.SAVING: 80,
    ExportStage.COMPLETED: 100,
}


class ExportRequest(BaseModel):
    filter: AuditEventFilter = Field(default_factory=AuditEventFilter)
    format: ExportFormat = ExportFormat.CSV
    include_sensitive_data: bool = False
    pseudonymize_data: bool = True
    include_fields: list[str] = Field(default_factory=list)
    exclude_fields: list[str] = Field(default_factory=list)
    compress: bool = False
    encryption_key: str | None = Field(default=None, repr=False)
    notification_email: str | None = None
    priority: int = Field(default=0, ge=0, le=10)

    @field_validator("encryption_key")
    @classmethod
    def _strip_empty_key(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return value.strip() or None


class ExportStatus(BaseModel):
    export_id: UUID = Field(default_factory=uuid4)
    format: ExportFormat
    status: ExportJobStatus = ExportJobStatus.QUEUED
    progress_percentage: int = 0
    current_stage: ExportStage = ExportStage.QUEUED
    created_at: datetime = Field(default_factory=utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error_message: str | None = None
    record_count: int | None = None
    file_name: str | None = None
    file_size_bytes: int | None = None
    request: ExportRequest = Field(exclude=True)


class ExportResult(BaseModel):
    """Immediate response to an accepted export submission."""

    export_id: UUID
    status: ExportJobStatus
    format: ExportFormat
    created_at: datetime
    estimated_record_count: int


class ExportFormatOptions(BaseModel):
    format: ExportFormat
    file_extension: str
    mime_type: str
    max_records: int
    supports_field_selection: bool = True
    supports_compression: bool = True
    supports_encryption: bool = True


__all__ = [
    "ExportFormat",
    "ExportJobStatus",
    "ExportStage",
    "STAGE_PROGRESS",
    "ExportRequest",
    "ExportStatus",
    "ExportResult",
    "ExportFormatOptions",
]
