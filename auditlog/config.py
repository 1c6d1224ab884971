"""Application configuration settings."""
from __future__ import annotations

import os
from functools import lru_cache

from pydantic import AliasChoices, BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# --- Runtime toggles -----------------------------------------------------
# Execution environment: "dev" | "test" | "staging" | "prod"
ENV = os.getenv("AUDIT_ENV", "dev").lower()

# Legacy key (tolerated in DEV only)
DEV_API_KEY = os.getenv("DEV_API_KEY") or os.getenv("API_KEY") or "dev-secret-key"
DEV_API_KEY_ALLOWED = ENV in {"dev", "local", "dev_local", "test"}

# Recognised roles
API_ROLES = {"admin", "compliance_officer", "auditor"}

DEFAULT_PSEUDONYMIZATION_SALT = "change-me-salt"


class Settings(BaseSettings):
    """Environment configuration for the audit logging service."""

    app_env: str = ENV
    database_url: str = "sqlite:///auditlog.db"
    SECRET_KEY: str = "change-me"
    DEV_API_KEY: str | None = Field(
        default=DEV_API_KEY,
        validation_alias=AliasChoices("DEV_API_KEY", "API_KEY"),
    )
    CORS_ALLOW_ORIGINS: list[str] = ["http://localhost:3000"]
    SENTRY_DSN: str | None = None
    PROMETHEUS_ENABLED: bool = True
    ALLOW_DB_CREATE_ALL: bool = False
    LOG_LEVEL: str = "INFO"

    # --- Scheduler -------------------------------------------------------
    SCHEDULER_ENABLED: bool = False
    ARCHIVE_CRON: str = "0 2 * * *"
    ARCHIVE_RUN_ON_STARTUP: bool = False
    ARCHIVE_BATCH_SIZE: int = 1000
    PURGE_ARCHIVED_FROM_OPERATIONAL: bool = True

    # --- Audit pipeline --------------------------------------------------
    AUDIT_ENABLED: bool = True
    APPLICATION_NAME: str = "auditlog"
    OPERATIONAL_RETENTION_DAYS: int = 30
    ARCHIVAL_RETENTION_DAYS: int = 2555
    QUERY_CACHE_TTL_SECONDS: int = 900
    QUERY_MAX_RESULTS_CAP: int = 10_000
    HEALTH_RESPONSE_BUDGET_MS: int = 5000

    # --- Sinks -----------------------------------------------------------
    DATABASE_SINK_ENABLED: bool = True
    DATABASE_SINK_USE_TRANSACTIONS: bool = True
    BLOB_SINK_ENABLED: bool = True
    BLOB_STORAGE_ROOT: str = "var/blobs"
    BLOB_CONTAINER_NAME: str = "audit-logs"
    BLOB_COMPRESS_FILES: bool = True
    BLOB_COMPRESSION_LEVEL: int = Field(default=6, ge=0, le=9)
    BLOB_ENCRYPT_FILES: bool = False
    BLOB_ENCRYPTION_KEY: str | None = None
    BLOB_IMMUTABLE_STORAGE: bool = True
    BLOB_IMMUTABLE_POLICY_DAYS: int = 2555
    BLOB_VERIFY_INTEGRITY: bool = True

    # --- Data protection -------------------------------------------------
    PSEUDONYMIZATION_ENABLED: bool = True
    HASHING_ENABLED: bool = True
    HASH_ALGORITHM: str = "sha256"
    PSEUDONYMIZATION_SALT: str = DEFAULT_PSEUDONYMIZATION_SALT
    DEFAULT_ENCRYPTION_KEY: str | None = None
    ALWAYS_PSEUDONYMIZE_FIELDS: list[str] = [
        "email",
        "phone_number",
        "social_security_number",
        "credit_card_number",
        "bank_account_number",
    ]
    NEVER_PSEUDONYMIZE_FIELDS: list[str] = ["id", "timestamp", "action_type", "status"]

    # --- Export ----------------------------------------------------------
    EXPORT_STORAGE_PATH: str = "var/exports"
    EXPORT_MAX_RECORDS: int = 1_000_000
    EXPORT_EXCEL_MAX_ROWS: int = 500_000
    EXPORT_PDF_MAX_RECORDS: int = 100_000
    EXPORT_FILE_RETENTION_DAYS: int = 30

    model_config = SettingsConfigDict(
        env_file=".env", env_prefix="", env_file_encoding="utf-8", extra="ignore"
    )

    @field_validator("BLOB_ENCRYPTION_KEY", "DEFAULT_ENCRYPTION_KEY", "SENTRY_DSN")
    @classmethod
    def _strip_empty_secret(cls, value: str | None) -> str | None:
        """Normalise empty secrets to ``None`` for easier validation."""

        if value is None:
            return None
        cleaned = value.strip()
        return cleaned or None

    @field_validator("HASH_ALGORITHM")
    @classmethod
    def _normalise_algorithm(cls, value: str) -> str:
        return value.strip().lower()


class AppInfo(BaseModel):
    name: str = "auditlog-service"
    version: str = "0.1.0"


settings = Settings()


@lru_cache
def get_settings() -> Settings:
    """Return cached application settings."""

    return settings


__all__ = [
    "ENV",
    "DEV_API_KEY",
    "DEV_API_KEY_ALLOWED",
    "API_ROLES",
    "DEFAULT_PSEUDONYMIZATION_SALT",
    "Settings",
    "AppInfo",
    "settings",
    "get_settings",
]
