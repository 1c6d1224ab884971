import pytest

from auditlog.dependencies import get_export_service
from auditlog.main import app
from auditlog.services.export import ExportService


async def _seed(client, headers, count=2):
    events = [{"user_id": f"u{i}", "action_type": "Login"} for i in range(count)]
    response = await client.post("/audit/events/batch", json={"events": events}, headers=headers)
    assert response.status_code == 201


@pytest.mark.anyio("asyncio")
async def test_csv_export_lifecycle(client, compliance_headers, export_service):
    await _seed(client, compliance_headers)

    submitted = await client.post("/export/csv", json={}, headers=compliance_headers)
    assert submitted.status_code == 202
    body = submitted.json()
    assert body["status"] == "Queued"
    assert body["format"] == "csv"
    assert body["estimated_record_count"] == 2

    await export_service.wait_idle()
    status = await client.get(f"/export/status/{body['export_id']}", headers=compliance_headers)
    assert status.status_code == 200
    job = status.json()
    assert job["status"] == "Completed"
    assert job["progress_percentage"] == 100
    assert job["record_count"] == 2
    assert "request" not in job

    download = await client.get(f"/export/download/{body['export_id']}", headers=compliance_headers)
    assert download.status_code == 200
    assert download.headers["content-type"].startswith("text/csv")
    assert f"audit_export_{body['export_id']}_" in download.headers["content-disposition"]
    lines = download.text.strip().splitlines()
    assert len(lines) == 3


@pytest.mark.anyio("asyncio")
async def test_generic_endpoint_uses_body_format(client, auditor_headers, export_service):
    submitted = await client.post("/export", json={"format": "json"}, headers=auditor_headers)
    assert submitted.status_code == 202
    assert submitted.json()["format"] == "json"
    await export_service.wait_idle()


@pytest.mark.anyio("asyncio")
async def test_download_of_failed_export_is_rejected(client, auditor_headers, export_service, monkeypatch):
    def _boom(*args, **kwargs):
        raise RuntimeError("renderer crashed")

    monkeypatch.setattr(export_service, "_render", _boom)
    submitted = (await client.post("/export/pdf", json={}, headers=auditor_headers)).json()
    await export_service.wait_idle()
    status = (await client.get(f"/export/status/{submitted['export_id']}", headers=auditor_headers)).json()
    assert status["status"] == "Failed"
    assert status["error_message"] == "renderer crashed"

    response = await client.get(f"/export/download/{submitted['export_id']}", headers=auditor_headers)
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "EXPORT_NOT_COMPLETED"


@pytest.mark.anyio("asyncio")
async def test_cancel_endpoint(client, auditor_headers, export_service):
    submitted = (await client.post("/export/excel", json={}, headers=auditor_headers)).json()
    await export_service.wait_idle()

    response = await client.post(f"/export/cancel/{submitted['export_id']}", headers=auditor_headers)
    assert response.status_code == 200
    # already finished jobs keep their terminal state
    assert response.json()["status"] == "Completed"


@pytest.mark.anyio("asyncio")
async def test_unknown_export_is_404(client, auditor_headers):
    response = await client.get(
        "/export/status/00000000-0000-0000-0000-000000000000", headers=auditor_headers
    )
    assert response.status_code == 404
    assert response.json()["error"]["code"] == "EXPORT_NOT_FOUND"


@pytest.mark.anyio("asyncio")
async def test_sensitive_export_requires_privileged_role(client, auditor_headers, compliance_headers, export_service):
    payload = {"include_sensitive_data": True}
    forbidden = await client.post("/export/json", json=payload, headers=auditor_headers)
    assert forbidden.status_code == 403
    assert forbidden.json()["error"]["code"] == "SENSITIVE_EXPORT_FORBIDDEN"

    allowed = await client.post("/export/json", json=payload, headers=compliance_headers)
    assert allowed.status_code == 202
    await export_service.wait_idle()


@pytest.mark.anyio("asyncio")
async def test_export_over_limit_is_rejected(client, compliance_headers, audit_service, protection, tmp_path):
    await _seed(client, compliance_headers, count=3)
    capped = ExportService(audit_service, protection, storage_path=tmp_path / "capped", max_records=2)
    app.dependency_overrides[get_export_service] = lambda: capped

    response = await client.post("/export/csv", json={}, headers=compliance_headers)
    assert response.status_code == 413
    assert response.json()["error"]["details"]["max_records"] == 2


@pytest.mark.anyio("asyncio")
async def test_format_listing(client, auditor_headers):
    listing = await client.get("/export/formats", headers=auditor_headers)
    assert {item["format"] for item in listing.json()} == {"csv", "json", "excel", "pdf"}

    options = await client.get("/export/formats/excel/options", headers=auditor_headers)
    assert options.json()["file_extension"] == ".xlsx"
