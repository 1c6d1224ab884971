"""ORM models package."""
from .api_key import ApiKey, ApiRole
from .audit_event import AuditEventRecord, RetentionCategory
from .base import Base
from .pseudonym_mapping import PseudonymizationMapping
from .scheduler_lock import SchedulerLock

__all__ = [
    "ApiKey",
    "ApiRole",
    "AuditEventRecord",
    "Base",
    "PseudonymizationMapping",
    "RetentionCategory",
    "SchedulerLock",
]
