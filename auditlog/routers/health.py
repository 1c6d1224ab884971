"""Health check endpoint."""
from __future__ import annotations

import logging

from alembic.config import Config
from alembic.script import ScriptDirectory
from fastapi import APIRouter, Depends
from sqlalchemy import text
from starlette.concurrency import run_in_threadpool

from auditlog.config import get_settings
from auditlog.core.runtime_state import is_scheduler_active
from auditlog.db import get_engine
from auditlog.dependencies import get_audit_service
from auditlog.schemas.audit import HealthStatus
from auditlog.services.audit import AuditService
from auditlog.services.scheduler_lock import describe_scheduler_lock

router = APIRouter(prefix="/health", tags=["health"])
logger = logging.getLogger(__name__)


def _db_status() -> str:
    """Return 'ok' if the DB is reachable, 'error' otherwise."""

    try:
        engine = get_engine()
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return "ok"
    except Exception:  # noqa: BLE001
        logger.exception("DB health check failed")
        return "error"


def _expected_migration_head() -> str | None:
    try:
        script = ScriptDirectory.from_config(Config("alembic.ini"))
        return script.get_current_head()
    except Exception:  # noqa: BLE001
        logger.exception("Failed to load Alembic head revision")
        return None


def _migrations_status() -> tuple[bool, str]:
    expected_head = _expected_migration_head()
    try:
        with get_engine().connect() as conn:
            current = conn.execute(text("SELECT version_num FROM alembic_version")).scalar()
        if expected_head is None:
            return False, "unknown"
        if current == expected_head:
            return True, "up_to_date"
        return False, "out_of_date"
    except Exception:  # noqa: BLE001
        logger.exception("Migration check failed")
        return False, "unknown"


def _scheduler_lock_state() -> dict[str, object]:
    try:
        return describe_scheduler_lock()
    except Exception:  # noqa: BLE001
        logger.exception("Scheduler lock inspection failed")
        return {"status": "unknown", "owner": None}


@router.get("", summary="Health check")
async def healthcheck(service: AuditService = Depends(get_audit_service)) -> dict[str, object]:
    """Return database, migration, scheduler and audit sink health."""

    settings = get_settings()
    db_status = await run_in_threadpool(_db_status)
    db_ok = db_status == "ok"
    if db_ok:
        migration_ok, migration_status = await run_in_threadpool(_migrations_status)
        lock_state = await run_in_threadpool(_scheduler_lock_state)
    else:
        migration_ok, migration_status = False, "unknown"
        lock_state = {"status": "unknown", "owner": None}
    audit_health = await service.health()
    degraded = not (db_ok and migration_ok) or audit_health.overall_status != HealthStatus.HEALTHY
    return {
        "status": "degraded" if degraded else "ok",
        "db_ok": db_ok,
        "db_status": db_status,
        "migrations_ok": migration_ok,
        "migrations_status": migration_status,
        "scheduler_config_enabled": bool(settings.SCHEDULER_ENABLED),
        "scheduler_running": is_scheduler_active(),
        "scheduler_lock": lock_state,
        "audit_enabled": service.enabled,
        "audit": audit_health.model_dump(mode="json"),
    }
