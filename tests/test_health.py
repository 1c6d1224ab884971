from collections.abc import Sequence
from datetime import datetime, timedelta

import pytest

from auditlog.dependencies import get_audit_service
from auditlog.main import app
from auditlog.schemas.audit import AuditEvent, AuditEventFilter
from auditlog.services.audit import AuditService
from auditlog.sinks.base import ArchivalSink


class UnreachableArchive(ArchivalSink):
    sink_type = "blob"

    def __init__(self) -> None:
        super().__init__(max_retention=timedelta(days=1))

    def write(self, event: AuditEvent) -> None: ...

    def write_batch(self, events: Sequence[AuditEvent]) -> None: ...

    def read(self, filter: AuditEventFilter) -> list[AuditEvent]:
        return []

    def count(self, filter: AuditEventFilter) -> int:
        return 0

    def delete_before(self, cutoff: datetime) -> int:
        return 0

    def probe(self) -> None:
        raise TimeoutError("container did not answer")


@pytest.mark.anyio("asyncio")
async def test_healthcheck(client):
    response = await client.get("/health")
    assert response.status_code == 200
    payload = response.json()
    assert payload["status"] in {"ok", "degraded"}
    assert isinstance(payload["scheduler_config_enabled"], bool)
    assert isinstance(payload["scheduler_running"], bool)
    assert payload.get("db_status") in {"ok", "error"}
    assert payload.get("migrations_status") in {"up_to_date", "out_of_date", "unknown"}
    assert isinstance(payload.get("db_ok"), bool)
    assert isinstance(payload.get("migrations_ok"), bool)
    assert "scheduler_lock" in payload
    assert payload["audit_enabled"] is True
    assert set(payload["audit"]["sink_health"]) == {"database", "blob"}


@pytest.mark.anyio("asyncio")
async def test_health_degrades_on_db_failure(monkeypatch, client):
    class BrokenEngine:
        def connect(self):  # pragma: no cover - simple stub
            raise RuntimeError("DB down")

    monkeypatch.setattr("auditlog.routers.health.get_engine", lambda: BrokenEngine())

    response = await client.get("/health")
    assert response.status_code == 200
    payload = response.json()
    assert payload["status"] == "degraded"
    assert payload["db_status"] == "error"
    assert payload["migrations_status"] == "unknown"
    assert payload["db_ok"] is False
    assert payload["migrations_ok"] is False


@pytest.mark.anyio("asyncio")
async def test_audit_health_is_public(client):
    response = await client.get("/audit/health")
    assert response.status_code == 200
    payload = response.json()
    assert payload["overall_status"] == "Healthy"
    assert payload["sink_health"]["database"]["status"] == "Healthy"


@pytest.mark.anyio("asyncio")
async def test_audit_health_unavailable_when_a_sink_is_down(client, database_sink):
    service = AuditService([database_sink, UnreachableArchive()])
    app.dependency_overrides[get_audit_service] = lambda: service

    response = await client.get("/audit/health")
    assert response.status_code == 503
    payload = response.json()
    assert payload["overall_status"] == "Unhealthy"
    assert payload["sink_health"]["blob"]["error_message"] == "container did not answer"

    health = (await client.get("/health")).json()
    assert health["status"] == "degraded"
