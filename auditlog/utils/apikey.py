"""API key generation and validation helpers."""
from __future__ import annotations

import hashlib
import hmac
import secrets
from datetime import UTC, datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from auditlog.config import get_settings
from auditlog.models.api_key import ApiKey
from auditlog.utils.time import ensure_utc


def hash_key(raw: str) -> str:
    """Return an HMAC-SHA256 hash for the provided API key."""

    return hmac.new(get_settings().SECRET_KEY.encode(), raw.encode(), hashlib.sha256).hexdigest()


def gen_key(prefix_len: int = 6) -> tuple[str, str, str]:
    """Generate a user-facing API key, its prefix, and the stored hash."""

    prefix = "audit_" + secrets.token_hex(prefix_len)[:prefix_len]
    suffix = secrets.token_urlsafe(32)
    raw = f"{prefix}.{suffix}"
    return raw, prefix, hash_key(raw)


def find_valid_key(db: Session, raw: str) -> Optional[ApiKey]:
    """Return a matching active, unexpired API key."""

    key = db.execute(
        select(ApiKey).where(ApiKey.key_hash == hash_key(raw), ApiKey.is_active.is_(True))
    ).scalar_one_or_none()
    if key and (not key.expires_at or ensure_utc(key.expires_at) > datetime.now(UTC)):
        return key
    return None


__all__ = ["hash_key", "gen_key", "find_valid_key"]
