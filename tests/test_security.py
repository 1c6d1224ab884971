"""API key authentication and role checks."""
from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import select

import auditlog.security as security_mod
from auditlog.models.api_key import ApiKey, ApiRole


@pytest.mark.anyio("asyncio")
async def test_missing_key_is_rejected(client):
    response = await client.get("/audit/events")
    assert response.status_code == 401
    assert response.json()["error"]["code"] == "NO_API_KEY"


@pytest.mark.anyio("asyncio")
async def test_unknown_key_is_rejected(client):
    response = await client.get("/audit/events", headers={"Authorization": "Bearer nope"})
    assert response.status_code == 401
    assert response.json()["error"]["code"] == "UNAUTHORIZED"


@pytest.mark.anyio("asyncio")
async def test_x_api_key_header_is_accepted(client, make_api_key):
    make_api_key(name="header-key", key="header-token", role=ApiRole.auditor)
    response = await client.get("/audit/events", headers={"X-API-Key": "header-token"})
    assert response.status_code == 200


@pytest.mark.anyio("asyncio")
async def test_expired_and_revoked_keys_are_rejected(client, make_api_key):
    make_api_key(name="old", key="old-token", expires_at=datetime.now(UTC) - timedelta(days=1))
    make_api_key(name="off", key="off-token", is_active=False)

    for token in ("old-token", "off-token"):
        response = await client.get("/audit/events", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 401


@pytest.mark.anyio("asyncio")
async def test_last_used_at_is_stamped(client, make_api_key, db_session):
    key = make_api_key(name="stamp", key="stamp-token")
    await client.get("/audit/events", headers={"Authorization": "Bearer stamp-token"})

    db_session.expire_all()
    stored = db_session.execute(select(ApiKey).where(ApiKey.id == key.id)).scalar_one()
    assert stored.last_used_at is not None


@pytest.mark.anyio("asyncio")
async def test_auditor_cannot_record_security_events(client, auditor_headers):
    response = await client.post(
        "/audit/security-event",
        json={"user_id": "u1", "action_type": "BruteForce"},
        headers=auditor_headers,
    )
    assert response.status_code == 403
    assert response.json()["error"]["code"] == "INSUFFICIENT_ROLE"


@pytest.mark.anyio("asyncio")
async def test_compliance_officer_cannot_archive(client, compliance_headers):
    response = await client.post(
        "/audit/archive",
        json={"cutoff_date": "2025-01-01T00:00:00Z"},
        headers=compliance_headers,
    )
    assert response.status_code == 403


@pytest.mark.anyio("asyncio")
async def test_legacy_key_accepted_in_dev(client, auth_headers):
    response = await client.get("/audit/events", headers=auth_headers)
    assert response.status_code == 200


@pytest.mark.anyio("asyncio")
async def test_legacy_rejected_outside_dev(monkeypatch, client):
    legacy_value = "legacy-test-key"
    monkeypatch.setitem(security_mod.require_api_key.__globals__, "DEV_API_KEY", legacy_value)
    monkeypatch.setitem(security_mod.require_api_key.__globals__, "DEV_API_KEY_ALLOWED", False)

    response = await client.get("/audit/events", headers={"Authorization": f"Bearer {legacy_value}"})
    assert response.status_code == 401
    assert response.json()["error"]["code"] == "LEGACY_KEY_FORBIDDEN"


@pytest.mark.anyio("asyncio")
async def test_admin_manages_api_keys(client, admin_headers, auditor_headers):
    created = await client.post("/apikeys", json={"name": "reporting", "role": "auditor"}, headers=admin_headers)
    assert created.status_code == 201
    body = created.json()
    assert body["key"].startswith("audit_")
    assert body["role"] == "auditor"

    new_key_headers = {"Authorization": f"Bearer {body['key']}"}
    assert (await client.get("/audit/events", headers=new_key_headers)).status_code == 200

    fetched = await client.get(f"/apikeys/{body['id']}", headers=admin_headers)
    assert fetched.status_code == 200
    assert "key" not in fetched.json()

    assert (await client.post("/apikeys", json={"name": "x"}, headers=auditor_headers)).status_code == 403

    revoked = await client.delete(f"/apikeys/{body['id']}", headers=admin_headers)
    assert revoked.status_code == 204
    assert (await client.get("/audit/events", headers=new_key_headers)).status_code == 401
