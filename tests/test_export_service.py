import csv
import gzip
import io
import json
from uuid import UUID, uuid4

import pytest
from openpyxl import load_workbook

from auditlog.exceptions import ExportLimitExceededError, ExportNotFoundError, ExportNotReadyError
from auditlog.schemas.audit import AuditEventFilter
from auditlog.schemas.export import ExportFormat, ExportJobStatus, ExportRequest, ExportStage
from auditlog.services.export import ExportService
from auditlog.services.export_renderers import DEFAULT_EXPORT_FIELDS, select_fields
from auditlog.utils.crypto import PayloadCipher


async def _run(service: ExportService, request: ExportRequest):
    result = await service.submit(request)
    await service.wait_idle()
    return result, service.get_status(result.export_id)


@pytest.mark.anyio("asyncio")
async def test_export_with_no_events_completes(export_service):
    result, status = await _run(export_service, ExportRequest(format=ExportFormat.CSV))

    assert result.estimated_record_count == 0
    assert status.status == ExportJobStatus.COMPLETED
    assert status.progress_percentage == 100
    assert status.current_stage == ExportStage.COMPLETED
    assert status.record_count == 0
    download = export_service.open_download(result.export_id)
    rows = list(csv.reader(io.StringIO(download.path.read_text("utf-8"))))
    assert rows == [list(DEFAULT_EXPORT_FIELDS)]


@pytest.mark.anyio("asyncio")
async def test_limit_is_enforced_at_submit(audit_service, protection, tmp_path, make_event):
    service = ExportService(audit_service, protection, storage_path=tmp_path / "exports", max_records=3)
    await audit_service.record_batch([make_event() for _ in range(3)])

    _, status = await _run(service, ExportRequest())
    assert status.status == ExportJobStatus.COMPLETED
    assert status.record_count == 3

    await audit_service.record(make_event())
    with pytest.raises(ExportLimitExceededError) as excinfo:
        await service.submit(ExportRequest())
    assert excinfo.value.details == {"format": "csv", "matching_records": 4, "max_records": 3}


@pytest.mark.anyio("asyncio")
async def test_skip_counts_against_the_limit(audit_service, protection, tmp_path, make_event):
    service = ExportService(audit_service, protection, storage_path=tmp_path / "exports", max_records=3)
    await audit_service.record_batch([make_event() for _ in range(4)])

    _, status = await _run(service, ExportRequest(filter=AuditEventFilter(skip=1)))
    assert status.record_count == 3


def test_format_specific_caps(audit_service, protection, tmp_path):
    service = ExportService(
        audit_service,
        protection,
        storage_path=tmp_path,
        max_records=1000,
        excel_max_rows=500,
        pdf_max_records=100,
    )
    assert service.max_records_for(ExportFormat.CSV) == 1000
    assert service.max_records_for(ExportFormat.EXCEL) == 500
    assert service.max_records_for(ExportFormat.PDF) == 100
    assert {option.format for option in service.supported_formats()} == set(ExportFormat)


@pytest.mark.anyio("asyncio")
async def test_json_export_keeps_pseudonyms_by_default(export_service, audit_service):
    await audit_service.record_user_action("alice@example.com", "Login", "portal")

    result, status = await _run(export_service, ExportRequest(format=ExportFormat.JSON))
    payload = json.loads(export_service.open_download(result.export_id).path.read_text("utf-8"))

    assert payload["export_info"]["record_count"] == 1
    [row] = payload["audit_events"]
    assert row["user_id"] != "alice@example.com"
    assert row["contains_sensitive_data"] is True


@pytest.mark.anyio("asyncio")
async def test_sensitive_export_reveals_originals(export_service, audit_service):
    await audit_service.record_user_action("alice@example.com", "Login", "portal")

    result, _ = await _run(
        export_service,
        ExportRequest(format=ExportFormat.JSON, include_sensitive_data=True, include_fields=["user_id", "action_type"]),
    )
    payload = json.loads(export_service.open_download(result.export_id).path.read_text("utf-8"))
    assert payload["audit_events"] == [{"user_id": "alice@example.com", "action_type": "Login"}]


@pytest.mark.anyio("asyncio")
async def test_excel_and_pdf_exports(export_service, audit_service, make_event):
    await audit_service.record_batch([make_event(action_type=f"Action{i}") for i in range(3)])

    excel, excel_status = await _run(export_service, ExportRequest(format=ExportFormat.EXCEL))
    workbook = load_workbook(export_service.open_download(excel.export_id).path, read_only=True)
    rows = list(workbook.active.iter_rows(values_only=True))
    assert len(rows) == 4
    assert excel_status.file_size_bytes > 0

    pdf, _ = await _run(export_service, ExportRequest(format=ExportFormat.PDF))
    download = export_service.open_download(pdf.export_id)
    assert download.path.read_bytes().startswith(b"%PDF")
    assert download.media_type == "application/pdf"


@pytest.mark.anyio("asyncio")
async def test_compressed_and_encrypted_package(export_service, audit_service, make_event):
    await audit_service.record(make_event())

    result, _ = await _run(export_service, ExportRequest(compress=True, encryption_key="export-key"))
    download = export_service.open_download(result.export_id)

    assert download.filename.endswith(".csv.gz.enc")
    assert download.filename.startswith(f"audit_export_{result.export_id}_")
    assert download.media_type == "application/octet-stream"
    content = gzip.decompress(PayloadCipher("export-key").decrypt(download.path.read_bytes()))
    assert content.decode("utf-8").startswith("id,timestamp")


@pytest.mark.anyio("asyncio")
async def test_cancel_before_processing(export_service):
    result = await export_service.submit(ExportRequest())
    cancelled = export_service.cancel(result.export_id)
    await export_service.wait_idle()

    assert cancelled.status == ExportJobStatus.CANCELLED
    status = export_service.get_status(result.export_id)
    assert status.status == ExportJobStatus.CANCELLED
    assert status.file_name is None
    with pytest.raises(ExportNotReadyError):
        export_service.open_download(result.export_id)


@pytest.mark.anyio("asyncio")
async def test_cancel_after_completion_is_a_no_op(export_service):
    result, _ = await _run(export_service, ExportRequest())
    assert export_service.cancel(result.export_id).status == ExportJobStatus.COMPLETED


@pytest.mark.anyio("asyncio")
async def test_failure_is_captured_in_status(export_service, monkeypatch):
    def _boom(*args, **kwargs):
        raise RuntimeError("renderer crashed")

    monkeypatch.setattr(export_service, "_render", _boom)
    _, status = await _run(export_service, ExportRequest())
    assert status.status == ExportJobStatus.FAILED
    assert status.error_message == "renderer crashed"


def test_unknown_export_raises(export_service):
    from uuid import uuid4

    with pytest.raises(ExportNotFoundError):
        export_service.get_status(uuid4())


@pytest.mark.anyio("asyncio")
async def test_cleanup_removes_expired_files(export_service):
    from datetime import timedelta

    result, status = await _run(export_service, ExportRequest())
    path = export_service.open_download(result.export_id).path

    assert export_service.cleanup_expired_files(status.completed_at + timedelta(days=1)) == 0
    assert export_service.cleanup_expired_files(status.completed_at + timedelta(days=31)) == 1
    assert not path.exists()
    with pytest.raises(ExportNotFoundError):
        export_service.get_status(result.export_id)


def test_select_fields_order_and_exclusions():
    assert select_fields(["status", "id", "bogus"]) == ["id", "status"]
    assert "data_hash" not in select_fields(exclude=["data_hash"])


@pytest.mark.anyio("asyncio")
async def test_cancel_while_saving_discards_the_artifact(export_service, monkeypatch):
    write_file = export_service._write_file
    cancelled = {}

    def _write_then_cancel(file_name, content):
        size = write_file(file_name, content)
        export_id = UUID(file_name.split(".", 1)[0])
        assert export_service.get_status(export_id).current_stage == ExportStage.SAVING
        cancelled["status"] = export_service.cancel(export_id)
        return size

    monkeypatch.setattr(export_service, "_write_file", _write_then_cancel)
    result, status = await _run(export_service, ExportRequest())

    assert cancelled["status"].status == ExportJobStatus.CANCELLED
    assert status.status == ExportJobStatus.CANCELLED
    assert status.file_name is None
    assert list(export_service._storage.glob(f"{result.export_id}.*")) == []


@pytest.mark.anyio("asyncio")
async def test_packaging_runs_off_the_event_loop(export_service, monkeypatch):
    import threading

    package = export_service._package
    threads = []

    def _record_thread(content, request):
        threads.append(threading.current_thread())
        return package(content, request)

    monkeypatch.setattr(export_service, "_package", _record_thread)
    _, status = await _run(export_service, ExportRequest(compress=True))

    assert status.status == ExportJobStatus.COMPLETED
    assert threads and threads[0] is not threading.main_thread()


@pytest.mark.anyio("asyncio")
async def test_cleanup_removes_orphaned_files(export_service):
    from datetime import timedelta

    from auditlog.utils.time import utcnow

    result, _ = await _run(export_service, ExportRequest())
    stray = export_service._storage / f"{uuid4()}.csv"
    stray.write_bytes(b"id\n")

    assert export_service.cleanup_expired_files(utcnow() + timedelta(days=1)) == 0
    assert stray.exists()
    assert export_service.cleanup_expired_files(utcnow() + timedelta(days=31)) == 2
    assert not stray.exists()
    assert list(export_service._storage.iterdir()) == []
    with pytest.raises(ExportNotFoundError):
        export_service.get_status(result.export_id)
