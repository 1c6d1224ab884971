"""Sensitive-data detection, pseudonymization, hashing and encryption."""
from __future__ import annotations

import base64
import hashlib
import hmac
import logging
import re
import threading
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Protocol

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from auditlog.config import Settings
from auditlog.exceptions import ConfigurationError, PseudonymCollisionError, PseudonymNotFoundError
from auditlog.models.pseudonym_mapping import PseudonymizationMapping
from auditlog.schemas.audit import AuditEvent
from auditlog.utils.crypto import PayloadCipher
from auditlog.utils.time import ensure_utc, utcnow

logger = logging.getLogger(__name__)

PSEUDONYM_LENGTH = 16
PSEUDONYMIZATION_METHOD = "DeterministicHash"
SUPPORTED_HASH_ALGORITHMS = ("md5", "sha1", "sha256", "sha512")

EMAIL_RE = re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b")
SSN_RE = re.compile(r"\b\d{3}-\d{2}-\d{4}\b")
CREDIT_CARD_RE = re.compile(r"\b\d{4}[\s-]?\d{4}[\s-]?\d{4}[\s-]?\d{4}\b")
PHONE_RE = re.compile(r"\b\d{10,12}\b")

FIELD_PATTERNS = (EMAIL_RE, SSN_RE, CREDIT_CARD_RE, PHONE_RE)
METADATA_VALUE_PATTERNS = (EMAIL_RE, SSN_RE, CREDIT_CARD_RE)
SENSITIVE_KEYWORDS = ("email", "phone", "ssn", "creditcard", "bankaccount", "password", "secret")

# Free-text event attributes that may carry personal data.
PSEUDONYMIZABLE_FIELDS = (
    "user_id",
    "target_resource",
    "ip_address",
    "session_id",
    "correlation_id",
    "user_agent",
    "location",
    "action_type",
    "status",
)
METADATA_PREFIX = "metadata."


def _normalise(name: str) -> str:
    return name.lower().replace("_", "").replace("-", "")


@dataclass(frozen=True)
class PseudonymMapping:
    pseudonymized_value: str
    original_value: str
    field_name: str
    created_at: datetime
    expires_at: datetime | None
    method: str = PSEUDONYMIZATION_METHOD
    can_be_reversed: bool = True
    context: dict[str, Any] = field(default_factory=dict)

    def is_resolvable(self, now: datetime) -> bool:
        if not self.can_be_reversed:
            return False
        return self.expires_at is None or ensure_utc(self.expires_at) > now


class PseudonymMappingStore(Protocol):
    def get(self, pseudonymized_value: str) -> PseudonymMapping | None: ...

    def add(self, mapping: PseudonymMapping) -> PseudonymMapping:
        """Persist ``mapping`` unless its pseudonym exists; return the stored row."""

    def purge_expired(self, now: datetime) -> int: ...


class InMemoryPseudonymMappingStore:
    def __init__(self) -> None:
        self._mappings: dict[str, PseudonymMapping] = {}
        self._lock = threading.Lock()

    def get(self, pseudonymized_value: str) -> PseudonymMapping | None:
        with self._lock:
            return self._mappings.get(pseudonymized_value)

    def add(self, mapping: PseudonymMapping) -> PseudonymMapping:
        with self._lock:
            return self._mappings.setdefault(mapping.pseudonymized_value, mapping)

    def purge_expired(self, now: datetime) -> int:
        with self._lock:
            expired = [
                key
                for key, mapping in self._mappings.items()
                if mapping.expires_at is not None and ensure_utc(mapping.expires_at) <= now
            ]
            for key in expired:
                del self._mappings[key]
            return len(expired)


class SqlPseudonymMappingStore:
    """Mapping store on ``pseudonymization_mappings``; uniqueness is enforced by the DB."""

    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self._session_factory = session_factory

    @staticmethod
    def _to_mapping(row: PseudonymizationMapping) -> PseudonymMapping:
        return PseudonymMapping(
            pseudonymized_value=row.pseudonymized_value,
            original_value=row.original_value,
            field_name=row.field_name,
            method=row.method,
            created_at=ensure_utc(row.created_at),
            expires_at=ensure_utc(row.expires_at) if row.expires_at else None,
            can_be_reversed=row.can_be_reversed,
            context=dict(row.context or {}),
        )

    def get(self, pseudonymized_value: str) -> PseudonymMapping | None:
        with self._session_factory() as session:
            row = session.execute(
                select(PseudonymizationMapping).where(
                    PseudonymizationMapping.pseudonymized_value == pseudonymized_value
                )
            ).scalar_one_or_none()
            return self._to_mapping(row) if row else None

    def add(self, mapping: PseudonymMapping) -> PseudonymMapping:
        with self._session_factory() as session:
            session.add(
                PseudonymizationMapping(
                    pseudonymized_value=mapping.pseudonymized_value,
                    original_value=mapping.original_value,
                    field_name=mapping.field_name,
                    method=mapping.method,
                    created_at=mapping.created_at,
                    expires_at=mapping.expires_at,
                    can_be_reversed=mapping.can_be_reversed,
                    context=mapping.context,
                )
            )
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                stored = self.get(mapping.pseudonymized_value)
                if stored is None:
                    raise
                return stored
        return mapping

    def purge_expired(self, now: datetime) -> int:
        with self._session_factory() as session:
            result = session.execute(
                delete(PseudonymizationMapping)
                .where(PseudonymizationMapping.expires_at <= now)
                .execution_options(synchronize_session=False)
            )
            session.commit()
            return result.rowcount or 0


class DataProtectionService:
    """Protection policy applied to events before they reach any sink."""

    def __init__(
        self,
        store: PseudonymMappingStore,
        *,
        salt: str,
        application_name: str,
        environment: str = "dev",
        always_pseudonymize: Iterable[str] = (),
        never_pseudonymize: Iterable[str] = (),
        hash_algorithm: str = "sha256",
        mapping_retention: timedelta = timedelta(days=2555),
        pseudonymization_enabled: bool = True,
        hashing_enabled: bool = True,
        default_encryption_key: str | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if hash_algorithm not in SUPPORTED_HASH_ALGORITHMS:
            raise ConfigurationError(
                f"Unsupported hash algorithm: {hash_algorithm}",
                details={"supported": list(SUPPORTED_HASH_ALGORITHMS)},
            )
        self._store = store
        self._salt = salt
        self.application_name = application_name
        self.environment = environment
        self._always = {_normalise(name) for name in always_pseudonymize}
        self._never = {_normalise(name) for name in never_pseudonymize}
        self.hash_algorithm = hash_algorithm
        self.mapping_retention = mapping_retention
        self.pseudonymization_enabled = pseudonymization_enabled
        self.hashing_enabled = hashing_enabled
        self._default_key = default_encryption_key
        self._clock = clock

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        store: PseudonymMappingStore,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> "DataProtectionService":
        return cls(
            store,
            salt=settings.PSEUDONYMIZATION_SALT,
            application_name=settings.APPLICATION_NAME,
            environment=settings.app_env,
            always_pseudonymize=settings.ALWAYS_PSEUDONYMIZE_FIELDS,
            never_pseudonymize=settings.NEVER_PSEUDONYMIZE_FIELDS,
            hash_algorithm=settings.HASH_ALGORITHM,
            mapping_retention=timedelta(days=settings.ARCHIVAL_RETENTION_DAYS),
            pseudonymization_enabled=settings.PSEUDONYMIZATION_ENABLED,
            hashing_enabled=settings.HASHING_ENABLED,
            default_encryption_key=settings.DEFAULT_ENCRYPTION_KEY,
            clock=clock,
        )

    # ------ detection ------

    def _name_matches(self, names: set[str], field_name: str) -> bool:
        if _normalise(field_name) in names:
            return True
        if field_name.startswith(METADATA_PREFIX):
            return _normalise(field_name[len(METADATA_PREFIX) :]) in names
        return False

    def is_exempt(self, field_name: str) -> bool:
        return self._name_matches(self._never, field_name)

    def identify_sensitive_fields(self, event: AuditEvent) -> list[str]:
        """Return field identifiers (``user_id``, ``metadata.<key>``) holding personal data."""

        found: list[str] = []
        for name in PSEUDONYMIZABLE_FIELDS:
            value = getattr(event, name)
            if not value or self.is_exempt(name):
                continue
            if self._name_matches(self._always, name) or any(p.search(value) for p in FIELD_PATTERNS):
                found.append(name)
        for key, value in event.metadata.items():
            field_name = f"{METADATA_PREFIX}{key}"
            if value is None or value == "" or self.is_exempt(field_name):
                continue
            normalised_key = _normalise(key)
            if (
                self._name_matches(self._always, field_name)
                or any(keyword in normalised_key for keyword in SENSITIVE_KEYWORDS)
                or (isinstance(value, str) and any(p.search(value) for p in METADATA_VALUE_PATTERNS))
            ):
                found.append(field_name)
        return list(dict.fromkeys(found))

    def contains_sensitive_data(self, event: AuditEvent) -> bool:
        return bool(self.identify_sensitive_fields(event))

    # ------ pseudonymization ------

    def pseudonymize_value(self, field_name: str, value: str) -> str:
        digest = hashlib.sha256(
            f"{self._salt}:{field_name}:{self.application_name}:{value}".encode("utf-8")
        ).digest()
        return base64.urlsafe_b64encode(digest).decode("ascii")[:PSEUDONYM_LENGTH]

    def _is_known_pseudonym(self, value: str) -> bool:
        return len(value) == PSEUDONYM_LENGTH and self._store.get(value) is not None

    def _remember(self, pseudonym: str, original: str, field_name: str) -> None:
        now = self._clock()
        stored = self._store.add(
            PseudonymMapping(
                pseudonymized_value=pseudonym,
                original_value=original,
                field_name=field_name,
                created_at=now,
                expires_at=now + self.mapping_retention,
                context={"application_name": self.application_name, "environment": self.environment},
            )
        )
        if stored.original_value != original:
            logger.error(
                "Pseudonym collision detected",
                extra={"field_name": field_name, "existing_field_name": stored.field_name},
            )
            raise PseudonymCollisionError(
                "Pseudonym already maps to a different value.",
                details={"field_name": field_name},
            )

    def pseudonymize(self, event: AuditEvent) -> AuditEvent:
        """Return a protected copy with every sensitive field replaced."""

        fields = self.identify_sensitive_fields(event)
        protected = event.model_copy(deep=True)
        for field_name in fields:
            if field_name.startswith(METADATA_PREFIX):
                key = field_name[len(METADATA_PREFIX) :]
                original = str(protected.metadata[key])
            else:
                original = getattr(protected, field_name)
            if self._is_known_pseudonym(original):
                continue
            pseudonym = self.pseudonymize_value(field_name, original)
            self._remember(pseudonym, original, field_name)
            if field_name.startswith(METADATA_PREFIX):
                protected.metadata[key] = pseudonym
            else:
                setattr(protected, field_name, pseudonym)
        protected.contains_sensitive_data = event.contains_sensitive_data or bool(fields)
        if self.hashing_enabled:
            protected.data_hash = self.hash_event(protected)
        return protected

    def pseudonymize_batch(self, events: Sequence[AuditEvent]) -> list[AuditEvent]:
        return [self.pseudonymize(event) for event in events]

    def annotate(self, event: AuditEvent) -> AuditEvent:
        """Flag and hash without replacing values."""

        annotated = event.model_copy(deep=True)
        annotated.contains_sensitive_data = event.contains_sensitive_data or self.contains_sensitive_data(event)
        if self.hashing_enabled:
            annotated.data_hash = self.hash_event(annotated)
        return annotated

    def protect(self, event: AuditEvent) -> AuditEvent:
        if self.pseudonymization_enabled:
            return self.pseudonymize(event)
        return self.annotate(event)

    # ------ reversal ------

    def get_mapping(self, pseudonym: str) -> PseudonymMapping | None:
        return self._store.get(pseudonym)

    def resolve(self, pseudonym: str) -> PseudonymMapping:
        mapping = self._store.get(pseudonym)
        if mapping is None or not mapping.is_resolvable(self._clock()):
            raise PseudonymNotFoundError(
                "No reversible mapping for this pseudonym.",
                details={"pseudonymized_value": pseudonym},
            )
        return mapping

    def reverse(self, pseudonym: str) -> str:
        return self.resolve(pseudonym).original_value

    def _try_reverse(self, value: Any) -> Any:
        if not isinstance(value, str) or len(value) != PSEUDONYM_LENGTH:
            return value
        try:
            return self.reverse(value)
        except PseudonymNotFoundError:
            return value

    def reveal(self, event: AuditEvent) -> AuditEvent:
        """Copy with every resolvable pseudonym replaced by its original."""

        revealed = event.model_copy(deep=True)
        for name in PSEUDONYMIZABLE_FIELDS:
            setattr(revealed, name, self._try_reverse(getattr(revealed, name)))
        revealed.metadata = {key: self._try_reverse(value) for key, value in revealed.metadata.items()}
        return revealed

    def purge_expired_mappings(self) -> int:
        return self._store.purge_expired(self._clock())

    # ------ hashing ------

    def generate_hash(self, data: str | bytes, algorithm: str | None = None) -> str:
        algorithm = (algorithm or self.hash_algorithm).lower()
        if algorithm not in SUPPORTED_HASH_ALGORITHMS:
            raise ConfigurationError(f"Unsupported hash algorithm: {algorithm}")
        if isinstance(data, str):
            data = data.encode("utf-8")
        return base64.b64encode(hashlib.new(algorithm, data).digest()).decode("ascii")

    def verify_hash(self, data: str | bytes, expected: str, algorithm: str | None = None) -> bool:
        return hmac.compare_digest(self.generate_hash(data, algorithm), expected)

    def hash_event(self, event: AuditEvent) -> str:
        return self.generate_hash(event.canonical_payload())

    def verify_event(self, event: AuditEvent) -> bool:
        if not event.data_hash:
            return False
        return self.verify_hash(event.canonical_payload(), event.data_hash)

    # ------ encryption ------

    def _cipher(self, key: str | None) -> PayloadCipher:
        material = key or self._default_key
        if not material:
            raise ConfigurationError("No encryption key configured.")
        return PayloadCipher(material)

    def encrypt(self, plaintext: str, key: str | None = None) -> str:
        return self._cipher(key).encrypt_text(plaintext)

    def decrypt(self, token: str, key: str | None = None) -> str:
        return self._cipher(key).decrypt_text(token)

    def describe(self) -> dict[str, object]:
        return {
            "pseudonymization_enabled": self.pseudonymization_enabled,
            "hashing_enabled": self.hashing_enabled,
            "hash_algorithm": self.hash_algorithm,
            "pseudonym_length": PSEUDONYM_LENGTH,
            "mapping_retention_days": self.mapping_retention.days,
            "encryption_configured": bool(self._default_key),
        }


__all__ = [
    "PSEUDONYM_LENGTH",
    "PseudonymMapping",
    "PseudonymMappingStore",
    "InMemoryPseudonymMappingStore",
    "SqlPseudonymMappingStore",
    "DataProtectionService",
]
