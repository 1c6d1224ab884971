from collections.abc import Sequence
from datetime import datetime, timedelta

import pytest

from auditlog.dependencies import get_audit_service
from auditlog.main import app
from auditlog.schemas.audit import AuditEvent, AuditEventFilter
from auditlog.services.audit import AuditService
from auditlog.sinks.base import ArchivalSink


class RejectingArchive(ArchivalSink):
    sink_type = "blob"

    def __init__(self) -> None:
        super().__init__(max_retention=timedelta(days=1))

    def write(self, event: AuditEvent) -> None:
        raise PermissionError("container is read-only")

    def write_batch(self, events: Sequence[AuditEvent]) -> None:
        raise PermissionError("container is read-only")

    def read(self, filter: AuditEventFilter) -> list[AuditEvent]:
        return []

    def count(self, filter: AuditEventFilter) -> int:
        return 0

    def delete_before(self, cutoff: datetime) -> int:
        return 0

    def probe(self) -> None: ...


@pytest.mark.anyio("asyncio")
async def test_record_user_action_captures_request_context(client, auditor_headers):
    headers = {
        **auditor_headers,
        "X-Forwarded-For": "198.51.100.7, 10.0.0.1",
        "X-Session-Id": "sess-77",
        "X-Correlation-Id": "corr-77",
        "User-Agent": "pytest-agent",
    }
    response = await client.post(
        "/audit/user-action",
        json={"user_id": "u-1", "action_type": "DeleteRecord", "target_resource": "invoice/9"},
        headers=headers,
    )
    assert response.status_code == 201
    body = response.json()
    assert {o["sink_type"] for o in body["outcomes"]} == {"database", "blob"}
    assert all(o["succeeded"] for o in body["outcomes"])

    events = (await client.get("/audit/events", params={"user_id": "u-1"}, headers=auditor_headers)).json()
    assert len(events) == 1
    [event] = events
    assert event["id"] == body["event_ids"][0]
    assert event["ip_address"] == "198.51.100.7"
    assert event["session_id"] == "sess-77"
    assert event["correlation_id"] == "corr-77"
    assert event["user_agent"] == "pytest-agent"
    assert event["risk_level"] == "High"


@pytest.mark.anyio("asyncio")
async def test_query_filters_sorting_and_count(client, compliance_headers):
    batch = {
        "events": [
            {"user_id": "u1", "action_type": "Login", "status": "Success", "timestamp": "2026-01-01T10:00:00Z"},
            {"user_id": "u1", "action_type": "Logout", "status": "Success", "timestamp": "2026-01-01T11:00:00Z"},
            {"user_id": "u2", "action_type": "Login", "status": "Failed", "timestamp": "2026-01-01T12:00:00Z"},
        ]
    }
    created = await client.post("/audit/events/batch", json=batch, headers=compliance_headers)
    assert created.status_code == 201
    assert len(created.json()["event_ids"]) == 3

    logins = await client.get(
        "/audit/events",
        params={"action_type": "Login", "sort_by": "timestamp", "sort_direction": "asc"},
        headers=compliance_headers,
    )
    assert [e["user_id"] for e in logins.json()] == ["u1", "u2"]

    paged = await client.get("/audit/events", params={"max_results": 1, "skip": 1}, headers=compliance_headers)
    assert [e["action_type"] for e in paged.json()] == ["Logout"]

    count = await client.get("/audit/events/count", params={"user_id": "u1"}, headers=compliance_headers)
    assert count.json() == {"count": 2}


@pytest.mark.anyio("asyncio")
async def test_invalid_query_parameters_are_rejected(client, auditor_headers):
    response = await client.get("/audit/events", params={"max_results": 0}, headers=auditor_headers)
    assert response.status_code == 422


@pytest.mark.anyio("asyncio")
async def test_statistics_endpoint(client, admin_headers):
    await client.post(
        "/audit/system-event",
        json={"action_type": "KeyRotation", "target_resource": "vault"},
        headers=admin_headers,
    )
    response = await client.get("/audit/statistics", headers=admin_headers)
    assert response.status_code == 200
    stats = response.json()
    assert stats["total_events"] == 1
    assert stats["events_by_user"] == {"SYSTEM": 1}


@pytest.mark.anyio("asyncio")
async def test_security_event_by_compliance_officer(client, compliance_headers):
    response = await client.post(
        "/audit/security-event",
        json={"user_id": "u9", "action_type": "PrivilegeEscalation", "risk_level": "Critical"},
        headers=compliance_headers,
    )
    assert response.status_code == 201
    events = (await client.get("/audit/events", params={"risk_level": "Critical"}, headers=compliance_headers)).json()
    assert [e["action_type"] for e in events] == ["PrivilegeEscalation"]


@pytest.mark.anyio("asyncio")
async def test_pseudonym_resolution_requires_privileged_role(client, auditor_headers, compliance_headers):
    await client.post(
        "/audit/user-action",
        json={"user_id": "carol@example.com", "action_type": "Login"},
        headers=auditor_headers,
    )
    [event] = (await client.get("/audit/events", headers=auditor_headers)).json()
    pseudonym = event["user_id"]
    assert pseudonym != "carol@example.com"
    assert event["contains_sensitive_data"] is True

    forbidden = await client.get(f"/audit/pseudonyms/{pseudonym}", headers=auditor_headers)
    assert forbidden.status_code == 403

    resolved = await client.get(f"/audit/pseudonyms/{pseudonym}", headers=compliance_headers)
    assert resolved.status_code == 200
    assert resolved.json()["original_value"] == "carol@example.com"
    assert resolved.json()["field_name"] == "user_id"

    missing = await client.get("/audit/pseudonyms/AAAAAAAAAAAAAAAA", headers=compliance_headers)
    assert missing.status_code == 404
    assert missing.json()["error"]["code"] == "PSEUDONYM_NOT_FOUND"


@pytest.mark.anyio("asyncio")
async def test_archive_endpoint(client, admin_headers):
    batch = {"events": [{"user_id": "u1", "action_type": "Login", "timestamp": "2024-03-01T00:00:00Z"}]}
    await client.post("/audit/events/batch", json=batch, headers=admin_headers)

    payload = {"cutoff_date": "2025-01-01T00:00:00Z"}
    first = await client.post("/audit/archive", json=payload, headers=admin_headers)
    assert first.status_code == 200
    assert first.json()["archived_count"] == 1

    second = await client.post("/audit/archive", json=payload, headers=admin_headers)
    assert second.json()["archived_count"] == 0


@pytest.mark.anyio("asyncio")
async def test_sink_failure_is_reported(client, admin_headers, database_sink, protection):
    service = AuditService([database_sink, RejectingArchive()], protection=protection)
    app.dependency_overrides[get_audit_service] = lambda: service

    response = await client.post(
        "/audit/user-action",
        json={"user_id": "u1", "action_type": "Login"},
        headers=admin_headers,
    )
    assert response.status_code == 500
    error = response.json()["error"]
    assert error["code"] == "AUDIT_SINK_WRITE_FAILED"
    assert error["details"]["failed_sinks"] == ["blob"]
    assert error["details"]["succeeded_sinks"] == ["database"]


@pytest.mark.anyio("asyncio")
async def test_blank_user_id_is_rejected(client, auditor_headers):
    response = await client.post(
        "/audit/user-action",
        json={"user_id": "", "action_type": "Login"},
        headers=auditor_headers,
    )
    assert response.status_code == 422
