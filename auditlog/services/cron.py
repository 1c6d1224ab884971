"""Background cron jobs for audit retention."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from auditlog.config import Settings, get_settings
from auditlog.dependencies import get_audit_service, get_export_service
from auditlog.services.audit import AuditService
from auditlog.services.export import ExportService
from auditlog.utils.time import utcnow

logger = logging.getLogger(__name__)


@dataclass
class ArchivalRunResult:
    cutoff: datetime
    archived: int = 0
    purged: dict[str, int] = field(default_factory=dict)
    expired_mappings: int = 0


async def archive_expired_events_once(
    service: AuditService,
    *,
    settings: Settings | None = None,
    now: datetime | None = None,
) -> ArchivalRunResult:
    """Move operational events past their retention window into the archive."""

    settings = settings or get_settings()
    now = now or utcnow()
    cutoff = now - timedelta(days=settings.OPERATIONAL_RETENTION_DAYS)
    result = ArchivalRunResult(cutoff=cutoff)
    try:
        result.archived = await service.archive(cutoff)
        if settings.PURGE_ARCHIVED_FROM_OPERATIONAL:
            archival_cutoff = now - timedelta(days=settings.ARCHIVAL_RETENTION_DAYS)
            result.purged = await service.purge(cutoff, archival_cutoff)
        if service.protection is not None:
            result.expired_mappings = await asyncio.to_thread(service.protection.purge_expired_mappings)
    except Exception:
        logger.exception("Scheduled archival run failed", extra={"cutoff": cutoff.isoformat()})
        raise
    logger.info(
        "Scheduled archival run finished",
        extra={
            "cutoff": cutoff.isoformat(),
            "archived": result.archived,
            "purged": result.purged,
            "expired_mappings": result.expired_mappings,
        },
    )
    return result


def cleanup_export_files_once(export_service: ExportService, *, now: datetime | None = None) -> int:
    """Remove export artifacts older than the configured retention."""

    return export_service.cleanup_expired_files(now)


async def run_scheduled_archival() -> None:
    """APScheduler entry point bound to the process-wide services."""

    await archive_expired_events_once(get_audit_service())


def run_scheduled_export_cleanup() -> None:
    cleanup_export_files_once(get_export_service())


__all__ = [
    "ArchivalRunResult",
    "archive_expired_events_once",
    "cleanup_export_files_once",
    "run_scheduled_archival",
    "run_scheduled_export_cleanup",
]
