"""Pydantic schemas for the audit API."""
from .audit import (
    AuditEvent,
    AuditEventFilter,
    AuditEventStatistics,
    AuditServiceHealth,
    FanOutResult,
    HealthStatus,
    RiskLevel,
    SinkHealth,
    SinkWriteOutcome,
    SortDirection,
)
from .export import (
    ExportFormat,
    ExportFormatOptions,
    ExportJobStatus,
    ExportRequest,
    ExportResult,
    ExportStage,
    ExportStatus,
)

__all__ = [
    "AuditEvent",
    "AuditEventFilter",
    "AuditEventStatistics",
    "AuditServiceHealth",
    "FanOutResult",
    "HealthStatus",
    "RiskLevel",
    "SinkHealth",
    "SinkWriteOutcome",
    "SortDirection",
    "ExportFormat",
    "ExportFormatOptions",
    "ExportJobStatus",
    "ExportRequest",
    "ExportResult",
    "ExportStage",
    "ExportStatus",
]
