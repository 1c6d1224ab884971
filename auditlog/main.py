from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from auditlog import db
from auditlog.config import DEFAULT_PSEUDONYMIZATION_SALT, AppInfo, Settings, get_settings
from auditlog.core.logging import get_logger, setup_logging
from auditlog.core.runtime_state import set_scheduler_active
from auditlog.dependencies import shutdown_services
import auditlog.models  # noqa: F401  registers the tables
from auditlog.exceptions import (
    AuditError,
    ExportLimitExceededError,
    ExportNotReadyError,
    ImmutableFieldError,
    NotFoundError,
)
from auditlog.routers import get_api_router
from auditlog.services.cron import run_scheduled_archival, run_scheduled_export_cleanup
from auditlog.services.scheduler_lock import (
    refresh_scheduler_lock,
    release_scheduler_lock,
    try_acquire_scheduler_lock,
)
from auditlog.utils.errors import error_response
from auditlog.utils.time import utcnow

logger = get_logger(__name__)
scheduler: AsyncIOScheduler | None = None
ALLOWED_CREATE_ENV = {"dev", "local", "test"}
RELAXED_SECRET_ENV = {"dev", "local", "dev_local", "test"}


def _current_settings() -> Settings:
    return get_settings()


def _configure_middlewares(fastapi_app: FastAPI) -> None:
    """Configure middleware using a fresh snapshot of the settings."""

    runtime_settings = _current_settings()
    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=runtime_settings.CORS_ALLOW_ORIGINS,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "X-API-Key", "X-Correlation-Id", "X-Session-Id"],
    )

    if runtime_settings.PROMETHEUS_ENABLED:
        from starlette_exporter import PrometheusMiddleware, handle_metrics

        fastapi_app.add_middleware(PrometheusMiddleware, app_name="auditlog")
        fastapi_app.add_route("/metrics", handle_metrics)

    if runtime_settings.SENTRY_DSN:
        import sentry_sdk

        sentry_sdk.init(dsn=runtime_settings.SENTRY_DSN, traces_sample_rate=0.2)


def _assert_protection_secrets(settings: Settings) -> None:
    """Fail fast when data-protection secrets are unusable outside dev."""

    env_lower = settings.app_env.lower()
    relaxed = env_lower in RELAXED_SECRET_ENV
    if settings.BLOB_SINK_ENABLED and settings.BLOB_ENCRYPT_FILES and not settings.BLOB_ENCRYPTION_KEY:
        logger.error("BLOB_ENCRYPT_FILES is set without BLOB_ENCRYPTION_KEY.", extra={"env": settings.app_env})
        raise RuntimeError("Missing blob encryption key.")
    if settings.PSEUDONYMIZATION_SALT == DEFAULT_PSEUDONYMIZATION_SALT:
        if not relaxed:
            logger.error(
                "PSEUDONYMIZATION_SALT still has its default value; configure it before startup.",
                extra={"env": settings.app_env},
            )
            raise RuntimeError("Default pseudonymization salt in non-dev environment.")
        logger.warning("Using the default pseudonymization salt; allowed in dev only.", extra={"env": settings.app_env})


def _start_scheduler(settings: Settings) -> AsyncIOScheduler:
    archival_scheduler = AsyncIOScheduler(timezone="UTC")
    archival_scheduler.start()
    archival_scheduler.add_job(
        run_scheduled_archival,
        CronTrigger.from_crontab(settings.ARCHIVE_CRON, timezone="UTC"),
        id="audit-archival",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    archival_scheduler.add_job(
        run_scheduled_export_cleanup,
        CronTrigger.from_crontab(settings.ARCHIVE_CRON, timezone="UTC"),
        id="export-cleanup",
        replace_existing=True,
    )
    archival_scheduler.add_job(
        refresh_scheduler_lock,
        "interval",
        seconds=60,
        id="scheduler-lock-heartbeat",
        replace_existing=True,
    )
    if settings.ARCHIVE_RUN_ON_STARTUP:
        archival_scheduler.add_job(run_scheduled_archival, "date", run_date=utcnow(), id="audit-archival-startup")
    return archival_scheduler


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = _current_settings()
    setup_logging(settings.LOG_LEVEL)
    logger.info("Application startup", extra={"env": settings.app_env})
    _assert_protection_secrets(settings)

    db.init_engine()  # sync, idempotent
    env_lower = settings.app_env.lower()
    if settings.ALLOW_DB_CREATE_ALL and env_lower in ALLOWED_CREATE_ENV:
        logger.warning(
            "Running Base.metadata.create_all() because APP_ENV=%s and ALLOW_DB_CREATE_ALL=True",
            settings.app_env,
        )
        db.create_all()
    else:
        logger.info(
            "Skipping create_all(); use Alembic migrations. APP_ENV=%s, ALLOW_DB_CREATE_ALL=%s",
            settings.app_env,
            settings.ALLOW_DB_CREATE_ALL,
        )
    # Multi-replica deployments: the DB lock keeps the archival sweep on a single runner.
    global scheduler
    set_scheduler_active(False)
    lock_acquired = False
    if settings.SCHEDULER_ENABLED:
        lock_acquired = try_acquire_scheduler_lock()
        if lock_acquired:
            scheduler = _start_scheduler(settings)
            set_scheduler_active(True)
            logger.info("Archival scheduler started", extra={"cron": settings.ARCHIVE_CRON})
        else:
            logger.warning(
                "Scheduler disabled because lock is already held by another instance.",
                extra={"env": settings.app_env},
            )
    try:
        yield
    finally:
        if scheduler:
            scheduler.shutdown(wait=False)
            scheduler = None
        if lock_acquired:
            release_scheduler_lock()
        set_scheduler_active(False)
        await shutdown_services()
        db.close_engine()
        logger.info("Application shutdown", extra={"env": settings.app_env})


app_info = AppInfo()

app = FastAPI(title=app_info.name, version=app_info.version, lifespan=lifespan)

_configure_middlewares(app)
app.include_router(get_api_router())


def _status_for(exc: AuditError) -> int:
    if isinstance(exc, NotFoundError):
        return 404
    if isinstance(exc, ExportNotReadyError):
        return 400
    if isinstance(exc, ExportLimitExceededError):
        return 413
    if isinstance(exc, ImmutableFieldError):
        return 409
    return 500


@app.exception_handler(AuditError)
async def audit_exception_handler(request: Request, exc: AuditError) -> JSONResponse:
    status_code = _status_for(exc)
    if status_code >= 500:
        logger.error("Audit pipeline error", extra={"code": exc.code, "details": exc.details})
    return JSONResponse(status_code=status_code, content=error_response(exc.code, exc.message, exc.details))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled exception", exc_info=exc)
    payload = error_response("INTERNAL_SERVER_ERROR", "An unexpected error occurred.")
    return JSONResponse(status_code=500, content=payload)


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    detail = exc.detail
    if isinstance(detail, dict) and "error" in detail:
        content: dict[str, Any] = detail
    else:
        content = error_response("HTTP_ERROR", str(detail))
    return JSONResponse(status_code=exc.status_code, content=content, headers=getattr(exc, "headers", None))


__all__ = ["app"]
