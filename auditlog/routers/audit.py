"""API routes for recording and querying audit events."""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Annotated

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import JSONResponse

from auditlog.dependencies import get_audit_service, get_data_protection_service
from auditlog.models.api_key import ApiRole
from auditlog.schemas.audit import (
    ArchiveRequest,
    ArchiveResult,
    AuditEvent,
    AuditEventBatchCreate,
    AuditEventFilter,
    AuditEventStatistics,
    AuditServiceHealth,
    CountResult,
    FanOutResult,
    HealthStatus,
    PseudonymResolution,
    SecurityEventCreate,
    SystemEventCreate,
    UserActionCreate,
)
from auditlog.security import ALL_ROLES, SENSITIVE_ROLES, require_role
from auditlog.services.audit import AuditService, RequestContext
from auditlog.services.data_protection import DataProtectionService
from auditlog.utils.time import ensure_utc, utcnow

router = APIRouter(prefix="/audit", tags=["audit"])


def request_context(request: Request) -> RequestContext:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        ip_address = forwarded.split(",")[0].strip()
    else:
        ip_address = request.client.host if request.client else ""
    return RequestContext(
        ip_address=ip_address,
        session_id=request.headers.get("X-Session-Id", ""),
        correlation_id=request.headers.get("X-Correlation-Id"),
        user_agent=request.headers.get("User-Agent"),
        location=request.headers.get("X-Client-Location"),
    )


@router.post(
    "/user-action",
    response_model=FanOutResult,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_role(ALL_ROLES))],
)
async def record_user_action(
    payload: UserActionCreate,
    context: RequestContext = Depends(request_context),
    service: AuditService = Depends(get_audit_service),
) -> FanOutResult:
    """Record an action performed by an end user."""

    return await service.record_user_action(
        payload.user_id,
        payload.action_type,
        payload.target_resource,
        status=payload.status,
        metadata=payload.metadata,
        context=context,
    )


@router.post(
    "/system-event",
    response_model=FanOutResult,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_role({ApiRole.admin}))],
)
async def record_system_event(
    payload: SystemEventCreate,
    context: RequestContext = Depends(request_context),
    service: AuditService = Depends(get_audit_service),
) -> FanOutResult:
    return await service.record_system_event(
        payload.action_type,
        payload.target_resource,
        status=payload.status,
        metadata=payload.metadata,
        correlation_id=context.correlation_id,
    )


@router.post(
    "/security-event",
    response_model=FanOutResult,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_role(SENSITIVE_ROLES))],
)
async def record_security_event(
    payload: SecurityEventCreate,
    context: RequestContext = Depends(request_context),
    service: AuditService = Depends(get_audit_service),
) -> FanOutResult:
    return await service.record_security_event(
        payload.user_id,
        payload.action_type,
        payload.target_resource,
        payload.risk_level,
        status=payload.status,
        metadata=payload.metadata,
        context=context,
    )


@router.post(
    "/events/batch",
    response_model=FanOutResult,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_role(SENSITIVE_ROLES))],
)
async def record_batch(
    payload: AuditEventBatchCreate,
    service: AuditService = Depends(get_audit_service),
) -> FanOutResult:
    """Record pre-built events from a trusted producer in one fan-out."""

    return await service.record_batch(payload.events)


@router.get(
    "/events",
    response_model=list[AuditEvent],
    dependencies=[Depends(require_role(ALL_ROLES))],
)
async def query_events(
    filters: Annotated[AuditEventFilter, Query()],
    service: AuditService = Depends(get_audit_service),
) -> list[AuditEvent]:
    return await service.query(filters)


@router.get(
    "/events/count",
    response_model=CountResult,
    dependencies=[Depends(require_role(ALL_ROLES))],
)
async def count_events(
    filters: Annotated[AuditEventFilter, Query()],
    service: AuditService = Depends(get_audit_service),
) -> CountResult:
    return CountResult(count=await service.count(filters))


@router.get(
    "/statistics",
    response_model=AuditEventStatistics,
    dependencies=[Depends(require_role(ALL_ROLES))],
)
async def statistics(
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    service: AuditService = Depends(get_audit_service),
) -> AuditEventStatistics:
    """Aggregate counts for a window; defaults to the last 30 days."""

    end = ensure_utc(end_date) if end_date else utcnow()
    start = ensure_utc(start_date) if start_date else end - timedelta(days=30)
    return await service.statistics(start, end)


@router.get("/health", response_model=AuditServiceHealth, summary="Audit sink health")
async def audit_health(service: AuditService = Depends(get_audit_service)) -> JSONResponse:
    report = await service.health()
    code = status.HTTP_503_SERVICE_UNAVAILABLE if report.overall_status == HealthStatus.UNHEALTHY else status.HTTP_200_OK
    return JSONResponse(status_code=code, content=report.model_dump(mode="json"))


@router.post(
    "/archive",
    response_model=ArchiveResult,
    dependencies=[Depends(require_role({ApiRole.admin}))],
)
async def archive_events(
    payload: ArchiveRequest,
    service: AuditService = Depends(get_audit_service),
) -> ArchiveResult:
    """Move operational events older than the cutoff into the archive."""

    archived = await service.archive(payload.cutoff_date)
    return ArchiveResult(archived_count=archived, cutoff_date=payload.cutoff_date)


@router.get(
    "/pseudonyms/{pseudonymized_value}",
    response_model=PseudonymResolution,
    dependencies=[Depends(require_role(SENSITIVE_ROLES))],
)
def resolve_pseudonym(
    pseudonymized_value: str,
    protection: DataProtectionService = Depends(get_data_protection_service),
) -> PseudonymResolution:
    """Reverse a pseudonym while its mapping is reversible and unexpired."""

    mapping = protection.resolve(pseudonymized_value)
    return PseudonymResolution.model_validate(mapping)
