"""API routes for asynchronous audit exports."""
from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import FileResponse

from auditlog.dependencies import get_export_service
from auditlog.models.api_key import ApiKey
from auditlog.schemas.export import ExportFormat, ExportFormatOptions, ExportRequest, ExportResult, ExportStatus
from auditlog.security import ALL_ROLES, SENSITIVE_ROLES, require_role
from auditlog.services.export import ExportService
from auditlog.utils.errors import error_response

router = APIRouter(prefix="/export", tags=["export"])


async def _submit(
    payload: ExportRequest,
    export_format: ExportFormat,
    key: ApiKey,
    service: ExportService,
) -> ExportResult:
    if payload.include_sensitive_data and key.role not in SENSITIVE_ROLES:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=error_response(
                "SENSITIVE_EXPORT_FORBIDDEN",
                "Exporting unprotected sensitive data requires the admin or compliance_officer role.",
            ),
        )
    request = payload.model_copy(update={"format": export_format})
    return await service.submit(request)


@router.post("/csv", response_model=ExportResult, status_code=status.HTTP_202_ACCEPTED)
async def export_csv(
    payload: ExportRequest,
    key: ApiKey = Depends(require_role(ALL_ROLES)),
    service: ExportService = Depends(get_export_service),
) -> ExportResult:
    return await _submit(payload, ExportFormat.CSV, key, service)


@router.post("/json", response_model=ExportResult, status_code=status.HTTP_202_ACCEPTED)
async def export_json(
    payload: ExportRequest,
    key: ApiKey = Depends(require_role(ALL_ROLES)),
    service: ExportService = Depends(get_export_service),
) -> ExportResult:
    return await _submit(payload, ExportFormat.JSON, key, service)


@router.post("/excel", response_model=ExportResult, status_code=status.HTTP_202_ACCEPTED)
async def export_excel(
    payload: ExportRequest,
    key: ApiKey = Depends(require_role(ALL_ROLES)),
    service: ExportService = Depends(get_export_service),
) -> ExportResult:
    return await _submit(payload, ExportFormat.EXCEL, key, service)


@router.post("/pdf", response_model=ExportResult, status_code=status.HTTP_202_ACCEPTED)
async def export_pdf(
    payload: ExportRequest,
    key: ApiKey = Depends(require_role(ALL_ROLES)),
    service: ExportService = Depends(get_export_service),
) -> ExportResult:
    return await _submit(payload, ExportFormat.PDF, key, service)


@router.post("", response_model=ExportResult, status_code=status.HTTP_202_ACCEPTED)
async def export_custom(
    payload: ExportRequest,
    key: ApiKey = Depends(require_role(ALL_ROLES)),
    service: ExportService = Depends(get_export_service),
) -> ExportResult:
    """Submit an export using the format named in the request body."""

    return await _submit(payload, payload.format, key, service)


@router.get(
    "/status/{export_id}",
    response_model=ExportStatus,
    dependencies=[Depends(require_role(ALL_ROLES))],
)
async def export_status(export_id: UUID, service: ExportService = Depends(get_export_service)) -> ExportStatus:
    return service.get_status(export_id)


@router.get("/download/{export_id}", dependencies=[Depends(require_role(ALL_ROLES))])
def download_export(export_id: UUID, service: ExportService = Depends(get_export_service)) -> FileResponse:
    """Stream a completed export; pending or failed jobs are rejected."""

    download = service.open_download(export_id)
    return FileResponse(download.path, media_type=download.media_type, filename=download.filename)


@router.post(
    "/cancel/{export_id}",
    response_model=ExportStatus,
    dependencies=[Depends(require_role(ALL_ROLES))],
)
async def cancel_export(export_id: UUID, service: ExportService = Depends(get_export_service)) -> ExportStatus:
    return service.cancel(export_id)


@router.get(
    "/formats",
    response_model=list[ExportFormatOptions],
    dependencies=[Depends(require_role(ALL_ROLES))],
)
def list_formats(service: ExportService = Depends(get_export_service)) -> list[ExportFormatOptions]:
    return service.supported_formats()


@router.get(
    "/formats/{export_format}/options",
    response_model=ExportFormatOptions,
    dependencies=[Depends(require_role(ALL_ROLES))],
)
def format_options(
    export_format: ExportFormat, service: ExportService = Depends(get_export_service)
) -> ExportFormatOptions:
    return service.format_options(export_format)
