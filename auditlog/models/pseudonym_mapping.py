"""Reversible pseudonym mappings."""
from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from auditlog.models.base import Base


class PseudonymizationMapping(Base):
    """Links an original sensitive value to its deterministic pseudonym."""

    __tablename__ = "pseudonymization_mappings"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    pseudonymized_value: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    original_value: Mapped[str] = mapped_column(Text, nullable=False)
    field_name: Mapped[str] = mapped_column(String(128), nullable=False)
    method: Mapped[str] = mapped_column(String(64), nullable=False, default="DeterministicHash")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, index=True)
    can_be_reversed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    context: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)


__all__ = ["PseudonymizationMapping"]
