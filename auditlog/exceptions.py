"""Domain exceptions raised by the audit pipeline."""
from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from auditlog.schemas.audit import FanOutResult


class AuditError(Exception):
    """Base class for audit pipeline failures."""

    code = "AUDIT_ERROR"

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ConfigurationError(AuditError):
    """A required sink capability or secret is not configured."""

    code = "AUDIT_CONFIGURATION_ERROR"


class FanOutError(AuditError):
    """At least one sink rejected a write; carries the per-sink outcome."""

    code = "AUDIT_SINK_WRITE_FAILED"

    def __init__(self, result: "FanOutResult") -> None:
        failed = [outcome.sink_type for outcome in result.failures]
        super().__init__(
            f"Audit write failed for sink(s): {', '.join(failed)}",
            details={"failed_sinks": failed, "succeeded_sinks": [o.sink_type for o in result.successes]},
        )
        self.result = result


class NotFoundError(AuditError):
    code = "NOT_FOUND"


class ExportNotFoundError(NotFoundError):
    code = "EXPORT_NOT_FOUND"


class PseudonymNotFoundError(NotFoundError):
    """No resolvable mapping: missing, expired or non-reversible."""

    code = "PSEUDONYM_NOT_FOUND"


class ExportNotReadyError(AuditError):
    code = "EXPORT_NOT_COMPLETED"


class ExportLimitExceededError(AuditError):
    code = "EXPORT_LIMIT_EXCEEDED"


class ImmutableFieldError(AuditError):
    code = "AUDIT_EVENT_IMMUTABLE"


class PseudonymCollisionError(AuditError):
    code = "PSEUDONYM_COLLISION"


class ArchiveIntegrityError(AuditError):
    code = "ARCHIVE_INTEGRITY_MISMATCH"


class BlobExistsError(AuditError):
    code = "BLOB_EXISTS"


class BlobImmutableError(AuditError):
    code = "BLOB_IMMUTABLE"


__all__ = [
    "AuditError",
    "ConfigurationError",
    "FanOutError",
    "NotFoundError",
    "ExportNotFoundError",
    "PseudonymNotFoundError",
    "ExportNotReadyError",
    "ExportLimitExceededError",
    "ImmutableFieldError",
    "PseudonymCollisionError",
    "ArchiveIntegrityError",
    "BlobExistsError",
    "BlobImmutableError",
]
