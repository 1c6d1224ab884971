"""Process-wide service wiring, built lazily from settings."""
from __future__ import annotations

from datetime import timedelta
from pathlib import Path

from sqlalchemy.orm import Session

from auditlog import db
from auditlog.config import Settings, get_settings
from auditlog.exceptions import ConfigurationError
from auditlog.services.audit import AuditService
from auditlog.services.cache import InMemoryTTLCache
from auditlog.services.data_protection import DataProtectionService, SqlPseudonymMappingStore
from auditlog.services.export import ExportService, InMemoryExportJobStore
from auditlog.sinks.base import AuditSink
from auditlog.sinks.blob import BlobStorageSink, LocalBlobContainer
from auditlog.sinks.database import DatabaseSink
from auditlog.utils.crypto import PayloadCipher

_data_protection: DataProtectionService | None = None
_audit_service: AuditService | None = None
_export_service: ExportService | None = None


def _session_factory() -> Session:
    return db.get_sessionmaker()()


def build_sinks(settings: Settings, protection: DataProtectionService | None = None) -> list[AuditSink]:
    sinks: list[AuditSink] = []
    if settings.DATABASE_SINK_ENABLED:
        sinks.append(
            DatabaseSink(
                _session_factory,
                max_retention=timedelta(days=settings.OPERATIONAL_RETENTION_DAYS),
                use_transactions=settings.DATABASE_SINK_USE_TRANSACTIONS,
            )
        )
    if settings.BLOB_SINK_ENABLED:
        cipher = None
        if settings.BLOB_ENCRYPT_FILES:
            if not settings.BLOB_ENCRYPTION_KEY:
                raise ConfigurationError("BLOB_ENCRYPT_FILES is set but BLOB_ENCRYPTION_KEY is empty.")
            cipher = PayloadCipher(settings.BLOB_ENCRYPTION_KEY)
        verifier = None
        if protection is not None and settings.BLOB_VERIFY_INTEGRITY and settings.HASHING_ENABLED:
            verifier = protection.verify_event
        sinks.append(
            BlobStorageSink(
                LocalBlobContainer(Path(settings.BLOB_STORAGE_ROOT), settings.BLOB_CONTAINER_NAME),
                compress=settings.BLOB_COMPRESS_FILES,
                compression_level=settings.BLOB_COMPRESSION_LEVEL,
                cipher=cipher,
                immutable=settings.BLOB_IMMUTABLE_STORAGE,
                immutable_period=timedelta(days=settings.BLOB_IMMUTABLE_POLICY_DAYS),
                max_retention=timedelta(days=settings.ARCHIVAL_RETENTION_DAYS),
                verifier=verifier,
            )
        )
    return sinks


def get_data_protection_service() -> DataProtectionService:
    global _data_protection
    if _data_protection is None:
        _data_protection = DataProtectionService.from_settings(
            get_settings(), SqlPseudonymMappingStore(_session_factory)
        )
    return _data_protection


def get_audit_service() -> AuditService:
    global _audit_service
    if _audit_service is None:
        settings = get_settings()
        protection = get_data_protection_service()
        _audit_service = AuditService(
            build_sinks(settings, protection),
            protection=protection,
            cache=InMemoryTTLCache(timedelta(seconds=settings.QUERY_CACHE_TTL_SECONDS)),
            enabled=settings.AUDIT_ENABLED,
            query_cap=settings.QUERY_MAX_RESULTS_CAP,
            cache_ttl=timedelta(seconds=settings.QUERY_CACHE_TTL_SECONDS),
            health_budget_ms=settings.HEALTH_RESPONSE_BUDGET_MS,
            archive_batch_size=settings.ARCHIVE_BATCH_SIZE,
        )
    return _audit_service


def get_export_service() -> ExportService:
    global _export_service
    if _export_service is None:
        settings = get_settings()
        _export_service = ExportService(
            get_audit_service(),
            get_data_protection_service(),
            storage_path=settings.EXPORT_STORAGE_PATH,
            store=InMemoryExportJobStore(),
            max_records=settings.EXPORT_MAX_RECORDS,
            excel_max_rows=settings.EXPORT_EXCEL_MAX_ROWS,
            pdf_max_records=settings.EXPORT_PDF_MAX_RECORDS,
            file_retention=timedelta(days=settings.EXPORT_FILE_RETENTION_DAYS),
        )
    return _export_service


async def shutdown_services() -> None:
    """Let queued exports finish, then drop the cached services."""

    if _export_service is not None:
        await _export_service.wait_idle()
    reset_services()


def reset_services() -> None:
    global _data_protection, _audit_service, _export_service
    _data_protection = None
    _audit_service = None
    _export_service = None


__all__ = [
    "build_sinks",
    "get_data_protection_service",
    "get_audit_service",
    "get_export_service",
    "reset_services",
    "shutdown_services",
]
