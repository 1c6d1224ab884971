"""Security dependencies for API key validation and role enforcement."""
from __future__ import annotations

import logging
import secrets
from typing import Callable, Set

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.orm import Session

from auditlog.config import DEV_API_KEY, DEV_API_KEY_ALLOWED, ENV
from auditlog.db import get_db
from auditlog.models.api_key import ApiKey, ApiRole
from auditlog.utils.apikey import find_valid_key
from auditlog.utils.errors import error_response
from auditlog.utils.time import utcnow

logger = logging.getLogger(__name__)

ALL_ROLES = {ApiRole.admin, ApiRole.compliance_officer, ApiRole.auditor}
SENSITIVE_ROLES = {ApiRole.admin, ApiRole.compliance_officer}


def _extract_key(
    authorization: str | None = Header(default=None),
    x_api_key: str | None = Header(default=None, alias="X-API-Key"),
) -> str | None:
    """Read the key from ``Authorization: Bearer ...`` or ``X-API-Key``."""
    if x_api_key:
        return x_api_key.strip()
    if authorization and authorization.startswith("Bearer "):
        return authorization.split(" ", 1)[1].strip()
    return None


def _legacy_key() -> ApiKey:
    now = utcnow()
    return ApiKey(
        id=0,
        name="__legacy__",
        prefix="legacy",
        key_hash="legacy",
        role=ApiRole.admin,
        is_active=True,
        created_at=now,
        expires_at=None,
        last_used_at=now,
    )


def require_api_key(
    db: Session = Depends(get_db),
    token: str | None = Depends(_extract_key),
) -> ApiKey:
    """Validate API key tokens and return the corresponding row."""
    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=error_response("NO_API_KEY", "API key required."),
        )

    if DEV_API_KEY and secrets.compare_digest(token, DEV_API_KEY):
        if not DEV_API_KEY_ALLOWED:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail=error_response("LEGACY_KEY_FORBIDDEN", "Legacy dev key disabled."),
            )
        logger.warning("Legacy API key used", extra={"env": ENV})
        return _legacy_key()

    key = find_valid_key(db, token)
    if key is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=error_response("UNAUTHORIZED", "Invalid or expired API key"),
        )

    key.last_used_at = utcnow()
    db.commit()
    return key


def require_role(allowed: Set[ApiRole]) -> Callable:
    """Enforce that the key carries one of the allowed roles (admin always passes)."""

    if not allowed:
        raise RuntimeError("require_role needs a non-empty set of ApiRole")

    def _dep(key: ApiKey = Depends(require_api_key)) -> ApiKey:
        if key.role == ApiRole.admin or key.role in allowed:
            return key
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=error_response(
                "INSUFFICIENT_ROLE",
                f"Requires one of: {sorted(role.value for role in allowed)}",
            ),
        )

    return _dep


__all__ = ["ALL_ROLES", "SENSITIVE_ROLES", "require_api_key", "require_role"]
