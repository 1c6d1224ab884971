"""Admin routes for issuing and revoking API keys."""
from __future__ import annotations

from datetime import datetime, timedelta

from fastapi import APIRouter, Depends, HTTPException, Response, status
from pydantic import BaseModel, ConfigDict, field_validator
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from auditlog.db import get_db
from auditlog.models.api_key import ApiKey, ApiRole
from auditlog.security import require_role
from auditlog.utils.apikey import gen_key
from auditlog.utils.errors import error_response
from auditlog.utils.time import utcnow

router = APIRouter(
    prefix="/apikeys",
    tags=["apikeys"],
    dependencies=[Depends(require_role({ApiRole.admin}))],
)


class CreateKeyIn(BaseModel):
    name: str
    role: ApiRole = ApiRole.auditor
    days_valid: int | None = 90

    @field_validator("name")
    @classmethod
    def name_not_blank(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("name cannot be blank")
        return value.strip()


class ApiKeyCreateOut(BaseModel):
    """The raw key is returned exactly once."""

    id: int
    name: str
    role: ApiRole
    key: str
    expires_at: datetime | None


class ApiKeyRead(BaseModel):
    id: int
    name: str
    role: ApiRole
    is_active: bool
    created_at: datetime
    expires_at: datetime | None
    last_used_at: datetime | None
    model_config = ConfigDict(from_attributes=True)


@router.post("", response_model=ApiKeyCreateOut, status_code=status.HTTP_201_CREATED)
def create_api_key(payload: CreateKeyIn, db: Session = Depends(get_db)) -> ApiKeyCreateOut:
    raw, prefix, key_hash = gen_key()
    now = utcnow()
    row = ApiKey(
        name=payload.name,
        prefix=prefix,
        key_hash=key_hash,
        role=payload.role,
        created_at=now,
        expires_at=now + timedelta(days=payload.days_valid) if payload.days_valid else None,
        is_active=True,
    )
    db.add(row)
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=error_response("APIKEY_EXISTS", "Key name already exists."),
        ) from exc
    db.refresh(row)
    return ApiKeyCreateOut(id=row.id, name=row.name, role=row.role, key=raw, expires_at=row.expires_at)


@router.get("/{api_key_id}", response_model=ApiKeyRead)
def get_apikey(api_key_id: int, db: Session = Depends(get_db)) -> ApiKey:
    row = db.get(ApiKey, api_key_id)
    if not row:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=error_response("APIKEY_NOT_FOUND", "API key not found."),
        )
    return row


@router.delete("/{api_key_id}", status_code=status.HTTP_204_NO_CONTENT, response_class=Response)
def revoke_apikey(api_key_id: int, db: Session = Depends(get_db)) -> Response:
    row = db.get(ApiKey, api_key_id)
    if not row:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=error_response("APIKEY_NOT_FOUND", "API key not found."),
        )
    if row.is_active:
        row.is_active = False
        db.commit()
    return Response(status_code=status.HTTP_204_NO_CONTENT)
