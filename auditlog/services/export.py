"""Asynchronous export jobs rendering audit events to files."""
from __future__ import annotations

import asyncio
import gzip
import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any, Protocol
from uuid import UUID

from auditlog.exceptions import ExportLimitExceededError, ExportNotFoundError, ExportNotReadyError
from auditlog.schemas.audit import AuditEvent, AuditEventFilter
from auditlog.schemas.export import (
    ExportFormat,
    ExportFormatOptions,
    ExportJobStatus,
    ExportRequest,
    ExportResult,
    ExportStage,
    ExportStatus,
)
from auditlog.services.audit import AuditService
from auditlog.services.data_protection import DataProtectionService
from auditlog.services.export_renderers import render_csv, render_excel, render_json, render_pdf, select_fields
from auditlog.utils.crypto import PayloadCipher
from auditlog.utils.time import utcnow

logger = logging.getLogger(__name__)

FORMAT_FILES: dict[ExportFormat, tuple[str, str]] = {
    ExportFormat.CSV: (".csv", "text/csv"),
    ExportFormat.JSON: (".json", "application/json"),
    ExportFormat.EXCEL: (".xlsx", "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"),
    ExportFormat.PDF: (".pdf", "application/pdf"),
}


class ExportCancelled(Exception):
    """Raised inside a job when a stage boundary observes cancellation."""


class ExportJobStore(Protocol):
    """Job table port; the in-memory version is local to one process."""

    def add(self, job: ExportStatus) -> None: ...

    def get(self, export_id: UUID) -> ExportStatus | None: ...

    def update(self, export_id: UUID, **changes: Any) -> ExportStatus: ...

    def remove(self, export_id: UUID) -> None: ...

    def list(self) -> list[ExportStatus]: ...


class InMemoryExportJobStore:
    def __init__(self) -> None:
        self._jobs: dict[UUID, ExportStatus] = {}
        self._lock = threading.Lock()

    def add(self, job: ExportStatus) -> None:
        with self._lock:
            self._jobs[job.export_id] = job

    def get(self, export_id: UUID) -> ExportStatus | None:
        with self._lock:
            return self._jobs.get(export_id)

    def update(self, export_id: UUID, **changes: Any) -> ExportStatus:
        with self._lock:
            current = self._jobs.get(export_id)
            if current is None:
                raise ExportNotFoundError("Export not found.", details={"export_id": str(export_id)})
            updated = current.model_copy(update=changes)
            self._jobs[export_id] = updated
            return updated

    def remove(self, export_id: UUID) -> None:
        with self._lock:
            self._jobs.pop(export_id, None)

    def list(self) -> list[ExportStatus]:
        with self._lock:
            return list(self._jobs.values())


@dataclass(frozen=True)
class ExportDownload:
    path: Path
    filename: str
    media_type: str


class ExportService:
    """Accepts export requests and processes them as detached tasks.

    Callers poll ``get_status``; cancellation is advisory and observed at the
    next stage boundary.
    """

    def __init__(
        self,
        audit_service: AuditService,
        protection: DataProtectionService | None,
        *,
        storage_path: str | Path,
        store: ExportJobStore | None = None,
        max_records: int = 1_000_000,
        excel_max_rows: int = 500_000,
        pdf_max_records: int = 100_000,
        file_retention: timedelta = timedelta(days=30),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._audit = audit_service
        self._protection = protection
        self._storage = Path(storage_path)
        self._store = store if store is not None else InMemoryExportJobStore()
        self._caps = {
            ExportFormat.CSV: max_records,
            ExportFormat.JSON: max_records,
            ExportFormat.EXCEL: min(excel_max_rows, max_records),
            ExportFormat.PDF: min(pdf_max_records, max_records),
        }
        self._file_retention = file_retention
        self._clock = clock
        self._tasks: set[asyncio.Task[None]] = set()

    # ------ formats ------

    def max_records_for(self, export_format: ExportFormat) -> int:
        return self._caps[export_format]

    def format_options(self, export_format: ExportFormat) -> ExportFormatOptions:
        extension, mime_type = FORMAT_FILES[export_format]
        return ExportFormatOptions(
            format=export_format,
            file_extension=extension,
            mime_type=mime_type,
            max_records=self._caps[export_format],
        )

    def supported_formats(self) -> list[ExportFormatOptions]:
        return [self.format_options(export_format) for export_format in ExportFormat]

    # ------ submission ------

    async def _matching_count(self, filter: AuditEventFilter) -> int:
        total = await self._audit.count_uncached(filter)
        return max(total - filter.skip, 0)

    def _check_limit(self, export_format: ExportFormat, total: int) -> None:
        cap = self._caps[export_format]
        if total > cap:
            raise ExportLimitExceededError(
                f"Export of {total} records exceeds the {export_format.value} limit of {cap}.",
                details={"format": export_format.value, "matching_records": total, "max_records": cap},
            )

    async def submit(self, request: ExportRequest) -> ExportResult:
        """Validate limits, register the job and start it in the background."""

        total = await self._matching_count(request.filter)
        self._check_limit(request.format, total)
        job = ExportStatus(format=request.format, request=request, created_at=self._clock())
        self._store.add(job)
        task = asyncio.create_task(self._run(job.export_id), name=f"export-{job.export_id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        logger.info(
            "Export queued",
            extra={"export_id": str(job.export_id), "format": request.format.value, "matching_records": total},
        )
        return ExportResult(
            export_id=job.export_id,
            status=job.status,
            format=request.format,
            created_at=job.created_at,
            estimated_record_count=total,
        )

    async def wait_idle(self) -> None:
        """Wait until every in-flight export task has finished."""

        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ------ job processing ------

    def _enter(self, export_id: UUID, stage: ExportStage, **changes: Any) -> ExportStatus:
        job = self._store.get(export_id)
        if job is None or job.status == ExportJobStatus.CANCELLED:
            raise ExportCancelled(str(export_id))
        return self._store.update(
            export_id, current_stage=stage, progress_percentage=stage.progress, **changes
        )

    def _protect(self, events: list[AuditEvent], request: ExportRequest) -> list[AuditEvent]:
        if self._protection is None:
            return events
        if request.include_sensitive_data:
            return [self._protection.reveal(event) for event in events]
        if request.pseudonymize_data:
            return self._protection.pseudonymize_batch(events)
        return events

    def _render(self, events: list[AuditEvent], request: ExportRequest, generated_at: datetime) -> bytes:
        fields = select_fields(request.include_fields, request.exclude_fields)
        if request.format == ExportFormat.CSV:
            return render_csv(events, fields)
        if request.format == ExportFormat.JSON:
            return render_json(events, fields, generated_at=generated_at, filter=request.filter)
        if request.format == ExportFormat.EXCEL:
            return render_excel(events, fields)
        return render_pdf(events, fields, generated_at=generated_at)

    def _package(self, content: bytes, request: ExportRequest) -> bytes:
        if request.compress:
            content = gzip.compress(content)
        if request.encryption_key:
            content = PayloadCipher(request.encryption_key).encrypt(content)
        return content

    def _write_file(self, file_name: str, content: bytes) -> int:
        self._storage.mkdir(parents=True, exist_ok=True)
        path = self._storage / file_name
        path.write_bytes(content)
        return len(content)

    def _discard_artifact(self, export_id: UUID) -> None:
        if not self._storage.is_dir():
            return
        for path in self._storage.glob(f"{export_id}.*"):
            path.unlink(missing_ok=True)
            logger.info("Cancelled export artifact removed", extra={"export_id": str(export_id), "file": path.name})

    async def _process(self, export_id: UUID) -> None:
        job = self._enter(
            export_id, ExportStage.RETRIEVING, status=ExportJobStatus.PROCESSING, started_at=self._clock()
        )
        request = job.request
        total = await self._matching_count(request.filter)
        self._check_limit(request.format, total)
        events = await self._audit.read_for_export(request.filter, limit=total)

        self._enter(export_id, ExportStage.PROTECTING, record_count=len(events))
        events = await asyncio.to_thread(self._protect, events, request)

        self._enter(export_id, ExportStage.GENERATING)
        content = await asyncio.to_thread(self._render, events, request, self._clock())

        self._enter(export_id, ExportStage.SAVING)
        content = await asyncio.to_thread(self._package, content, request)
        file_name = f"{export_id}{self._file_suffix(request)}"
        size = await asyncio.to_thread(self._write_file, file_name, content)

        self._enter(
            export_id,
            ExportStage.COMPLETED,
            status=ExportJobStatus.COMPLETED,
            completed_at=self._clock(),
            file_name=file_name,
            file_size_bytes=size,
        )
        logger.info(
            "Export completed",
            extra={"export_id": str(export_id), "record_count": len(events), "file_size_bytes": size},
        )

    async def _run(self, export_id: UUID) -> None:
        try:
            await self._process(export_id)
        except ExportCancelled:
            logger.info("Export cancelled", extra={"export_id": str(export_id)})
            self._discard_artifact(export_id)
        except Exception as exc:  # noqa: BLE001  captured in the job's terminal state
            logger.exception("Export failed", extra={"export_id": str(export_id)})
            job = self._store.get(export_id)
            if job is not None and not job.status.is_terminal:
                self._store.update(
                    export_id,
                    status=ExportJobStatus.FAILED,
                    error_message=str(exc) or type(exc).__name__,
                    completed_at=self._clock(),
                )

    # ------ polling ------

    def get_status(self, export_id: UUID) -> ExportStatus:
        job = self._store.get(export_id)
        if job is None:
            raise ExportNotFoundError("Export not found.", details={"export_id": str(export_id)})
        return job

    def cancel(self, export_id: UUID) -> ExportStatus:
        job = self.get_status(export_id)
        if job.status.is_terminal:
            return job
        logger.info("Export cancellation requested", extra={"export_id": str(export_id)})
        return self._store.update(export_id, status=ExportJobStatus.CANCELLED, completed_at=self._clock())

    @staticmethod
    def _file_suffix(request: ExportRequest) -> str:
        suffix = FORMAT_FILES[request.format][0]
        if request.compress:
            suffix += ".gz"
        if request.encryption_key:
            suffix += ".enc"
        return suffix

    def open_download(self, export_id: UUID) -> ExportDownload:
        job = self.get_status(export_id)
        if job.status != ExportJobStatus.COMPLETED or not job.file_name or job.completed_at is None:
            raise ExportNotReadyError(
                "Export is not completed.",
                details={"export_id": str(export_id), "status": job.status.value},
            )
        path = self._storage / job.file_name
        if not path.exists():
            raise ExportNotFoundError("Export file no longer exists.", details={"export_id": str(export_id)})
        if job.request.encryption_key:
            media_type = "application/octet-stream"
        elif job.request.compress:
            media_type = "application/gzip"
        else:
            media_type = FORMAT_FILES[job.format][1]
        filename = f"audit_export_{export_id}_{job.completed_at:%Y%m%d_%H%M%S}{self._file_suffix(job.request)}"
        return ExportDownload(path=path, filename=filename, media_type=media_type)

    # ------ retention ------

    def cleanup_expired_files(self, now: datetime | None = None) -> int:
        """Delete artifacts (and their jobs) older than the file retention window."""

        cutoff = (now or self._clock()) - self._file_retention
        removed = 0
        for job in self._store.list():
            if job.completed_at is None or job.completed_at >= cutoff:
                continue
            if job.file_name:
                (self._storage / job.file_name).unlink(missing_ok=True)
                removed += 1
            self._store.remove(job.export_id)
        removed += self._remove_orphaned_files(cutoff)
        if removed:
            logger.info("Expired export files removed", extra={"removed": removed, "cutoff": cutoff.isoformat()})
        return removed

    def _remove_orphaned_files(self, cutoff: datetime) -> int:
        """Delete stale files in the storage directory that no known job owns."""

        if not self._storage.is_dir():
            return 0
        owned = {str(job.export_id) for job in self._store.list()}
        removed = 0
        for path in self._storage.iterdir():
            if not path.is_file() or path.name.split(".", 1)[0] in owned:
                continue
            modified = datetime.fromtimestamp(path.stat().st_mtime, tz=UTC)
            if modified >= cutoff:
                continue
            path.unlink(missing_ok=True)
            removed += 1
        return removed


__all__ = [
    "FORMAT_FILES",
    "ExportCancelled",
    "ExportDownload",
    "ExportJobStore",
    "InMemoryExportJobStore",
    "ExportService",
]
