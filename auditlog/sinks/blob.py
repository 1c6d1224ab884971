"""Archival audit sink writing one immutable blob per event."""
from __future__ import annotations

import gzip
import json
import logging
import re
from collections.abc import Callable, Iterator, Sequence
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Protocol

from auditlog.exceptions import (
    ArchiveIntegrityError,
    BlobExistsError,
    BlobImmutableError,
    ConfigurationError,
    NotFoundError,
)
from auditlog.schemas.audit import AuditEvent, AuditEventFilter
from auditlog.sinks.base import ArchivalSink, order_and_page
from auditlog.utils.crypto import PayloadCipher
from auditlog.utils.time import ensure_utc, utcnow

logger = logging.getLogger(__name__)

META_DIR = ".meta"
BLOB_NAME_RE = re.compile(
    r"^(?P<y>\d{4})/(?P<m>\d{2})/(?P<d>\d{2})/(?P<stamp>\d{8}-\d{6})-(?P<event>[0-9a-f]{32})\.json(?:\.gz)?$"
)


class BlobContainer(Protocol):
    """Minimal object-store surface needed by the archival sink."""

    name: str

    def upload(self, name: str, data: bytes, metadata: dict[str, str], *, overwrite: bool = False) -> None: ...

    def download(self, name: str) -> bytes: ...

    def exists(self, name: str) -> bool: ...

    def delete(self, name: str) -> None: ...

    def list_names(self, prefix: str = "") -> Iterator[str]: ...

    def get_metadata(self, name: str) -> dict[str, str]: ...

    def set_immutability(self, name: str, until: datetime) -> None: ...

    def ping(self) -> None: ...


class LocalBlobContainer:
    """Filesystem container: blobs are files, metadata lives in sidecar JSON."""

    def __init__(self, root: str | Path, name: str = "audit-logs", *, clock: Callable[[], datetime] = utcnow) -> None:
        self.name = name
        self._dir = Path(root) / name
        self._meta_dir = self._dir / META_DIR
        self._clock = clock
        self._dir.mkdir(parents=True, exist_ok=True)
        self._meta_dir.mkdir(parents=True, exist_ok=True)

    def _path(self, name: str) -> Path:
        if name.startswith(META_DIR) or ".." in Path(name).parts:
            raise ValueError(f"Invalid blob name: {name}")
        return self._dir / name

    def _meta_path(self, name: str) -> Path:
        return self._meta_dir / f"{name}.json"

    def _locked_until(self, name: str) -> datetime | None:
        meta_path = self._meta_path(name)
        if not meta_path.exists():
            return None
        raw = json.loads(meta_path.read_text("utf-8")).get("immutable_until")
        return datetime.fromisoformat(raw) if raw else None

    def _ensure_unlocked(self, name: str) -> None:
        until = self._locked_until(name)
        if until is not None and until > self._clock():
            raise BlobImmutableError(
                f"Blob {name} is locked until {until.isoformat()}",
                details={"blob": name, "container": self.name},
            )

    def upload(self, name: str, data: bytes, metadata: dict[str, str], *, overwrite: bool = False) -> None:
        path = self._path(name)
        path.parent.mkdir(parents=True, exist_ok=True)
        if overwrite:
            self._ensure_unlocked(name)
            path.write_bytes(data)
        else:
            try:
                with path.open("xb") as handle:
                    handle.write(data)
            except FileExistsError as exc:
                raise BlobExistsError(f"Blob {name} already exists", details={"blob": name}) from exc
        meta_path = self._meta_path(name)
        meta_path.parent.mkdir(parents=True, exist_ok=True)
        meta_path.write_text(json.dumps({"metadata": metadata}), "utf-8")

    def download(self, name: str) -> bytes:
        path = self._path(name)
        if not path.exists():
            raise NotFoundError(f"Blob {name} not found", details={"blob": name})
        return path.read_bytes()

    def exists(self, name: str) -> bool:
        return self._path(name).exists()

    def delete(self, name: str) -> None:
        self._ensure_unlocked(name)
        self._path(name).unlink(missing_ok=True)
        self._meta_path(name).unlink(missing_ok=True)

    def list_names(self, prefix: str = "") -> Iterator[str]:
        base = self._dir / prefix.rsplit("/", 1)[0] if "/" in prefix else self._dir
        if not base.is_dir():
            return
        for path in sorted(base.rglob("*")):
            if not path.is_file():
                continue
            name = path.relative_to(self._dir).as_posix()
            if name.startswith(f"{META_DIR}/") or not name.startswith(prefix):
                continue
            yield name

    def get_metadata(self, name: str) -> dict[str, str]:
        meta_path = self._meta_path(name)
        if not meta_path.exists():
            return {}
        return dict(json.loads(meta_path.read_text("utf-8")).get("metadata", {}))

    def set_immutability(self, name: str, until: datetime) -> None:
        meta_path = self._meta_path(name)
        payload = json.loads(meta_path.read_text("utf-8")) if meta_path.exists() else {"metadata": {}}
        payload["immutable_until"] = ensure_utc(until).isoformat()
        meta_path.write_text(json.dumps(payload), "utf-8")

    def ping(self) -> None:
        if not self._dir.is_dir():
            raise FileNotFoundError(f"Container directory {self._dir} is missing")


def blob_name_for(event: AuditEvent, *, compressed: bool = True) -> str:
    ts = event.timestamp
    suffix = ".json.gz" if compressed else ".json"
    return f"{ts:%Y}/{ts:%m}/{ts:%d}/{ts:%Y%m%d}-{ts:%H%M%S}-{event.id.hex}{suffix}"


def blob_timestamp(name: str) -> datetime | None:
    """Second-precision event timestamp embedded in a blob name."""

    match = BLOB_NAME_RE.match(name)
    if match is None:
        return None
    return datetime.strptime(match.group("stamp"), "%Y%m%d-%H%M%S").replace(tzinfo=timezone.utc)


def _day_prefixes(start: datetime, end: datetime) -> Iterator[str]:
    day = start.date()
    while day <= end.date():
        yield f"{day:%Y}/{day:%m}/{day:%d}/"
        day += timedelta(days=1)


def _constrains_only_dates(filter: AuditEventFilter) -> bool:
    predicates = filter.model_dump(
        exclude={"start_date", "end_date", "max_results", "skip", "sort_by", "sort_direction"}
    )
    return all(value is None for value in predicates.values())


class BlobStorageSink(ArchivalSink):
    """Date-partitioned, compressed and optionally encrypted event archive.

    Writes are put-if-absent so re-archiving an event is a no-op. Reads scan
    the day prefixes covered by the filter, decode each blob and filter in
    memory; archival reads are rare and latency-insensitive.
    """

    sink_type = "blob"

    def __init__(
        self,
        container: BlobContainer,
        *,
        compress: bool = True,
        compression_level: int = 6,
        cipher: PayloadCipher | None = None,
        immutable: bool = True,
        immutable_period: timedelta = timedelta(days=2555),
        max_retention: timedelta = timedelta(days=2555),
        verifier: Callable[[AuditEvent], bool] | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        super().__init__(max_retention=max_retention, immutable=immutable)
        self._container = container
        self._compress = compress
        self._compression_level = compression_level
        self._cipher = cipher
        self._immutable = immutable
        self._immutable_period = immutable_period
        self._verifier = verifier
        self._clock = clock

    # ------ encoding ------

    def _encode(self, event: AuditEvent) -> bytes:
        data = event.model_dump_json().encode("utf-8")
        if self._compress:
            data = gzip.compress(data, compresslevel=self._compression_level)
        if self._cipher is not None:
            data = self._cipher.encrypt(data)
        return data

    def _decode(self, name: str) -> AuditEvent:
        data = self._container.download(name)
        metadata = self._container.get_metadata(name)
        if metadata.get("encrypted") == "true":
            if self._cipher is None:
                raise ConfigurationError(
                    "Archived blob is encrypted but no encryption key is configured.",
                    details={"blob": name},
                )
            data = self._cipher.decrypt(data)
        if metadata.get("compressed", "true" if name.endswith(".gz") else "false") == "true":
            data = gzip.decompress(data)
        event = AuditEvent.model_validate_json(data)
        if self._verifier is not None and event.data_hash and not self._verifier(event):
            logger.error(
                "Archived audit event failed integrity verification",
                extra={"event_id": str(event.id), "blob": name, "sink_type": self.sink_type},
            )
            raise ArchiveIntegrityError(
                "Archived audit event does not match its integrity hash.",
                details={"event_id": str(event.id), "blob": name},
            )
        return event

    def _metadata_for(self, event: AuditEvent) -> dict[str, str]:
        return {
            "original_id": str(event.id),
            "user_id": event.user_id,
            "action_type": event.action_type,
            "timestamp": event.timestamp.isoformat(),
            "retention_category": event.retention_category.value,
            "contains_sensitive_data": str(event.contains_sensitive_data).lower(),
            "data_hash": event.data_hash or "",
            "compressed": str(self._compress).lower(),
            "encrypted": str(self._cipher is not None).lower(),
            "upload_time": self._clock().isoformat(),
        }

    # ------ writes ------

    def write(self, event: AuditEvent) -> None:
        archived = event.create_archival_copy()
        name = blob_name_for(archived, compressed=self._compress)
        if self._container.exists(name):
            logger.info(
                "Archival blob already present; skipping",
                extra={"event_id": str(event.id), "blob": name, "sink_type": self.sink_type},
            )
            return
        try:
            self._container.upload(name, self._encode(archived), self._metadata_for(archived))
        except BlobExistsError:
            return
        except Exception:
            logger.exception(
                "Archival blob upload failed",
                extra={"event_id": str(event.id), "blob": name, "sink_type": self.sink_type},
            )
            raise
        if self._immutable:
            self._container.set_immutability(name, self._clock() + self._immutable_period)

    def write_batch(self, events: Sequence[AuditEvent]) -> None:
        for event in events:
            self.write(event)

    # ------ reads ------

    def _candidate_names(self, filter: AuditEventFilter) -> Iterator[str]:
        if filter.start_date is None and filter.end_date is None:
            names: Iterator[str] = self._container.list_names()
        else:
            start = filter.start_date or self._clock() - self.capabilities.max_retention
            end = filter.end_date or self._clock()
            names = (name for prefix in _day_prefixes(start, end) for name in self._container.list_names(prefix))
        lower = filter.start_date.replace(microsecond=0) if filter.start_date else None
        for name in names:
            stamp = blob_timestamp(name)
            if stamp is None:
                continue
            if lower is not None and stamp < lower:
                continue
            if filter.end_date is not None and stamp > filter.end_date:
                continue
            yield name

    def _scan(self, filter: AuditEventFilter) -> Iterator[AuditEvent]:
        for name in self._candidate_names(filter):
            event = self._decode(name)
            if filter.matches(event):
                yield event

    def read(self, filter: AuditEventFilter) -> list[AuditEvent]:
        return order_and_page(self._scan(filter), filter)

    def count(self, filter: AuditEventFilter) -> int:
        if not _constrains_only_dates(filter):
            return sum(1 for _ in self._scan(filter))
        # Names carry whole seconds; only blobs in a boundary second need decoding.
        edges = {value.replace(microsecond=0) for value in (filter.start_date, filter.end_date) if value is not None}
        total = 0
        for name in self._candidate_names(filter):
            if blob_timestamp(name) in edges:
                total += filter.matches(self._decode(name))
            else:
                total += 1
        return total

    def delete_before(self, cutoff: datetime) -> int:
        """Delete blobs older than ``cutoff`` whose immutability lock has lapsed."""

        deleted = 0
        for name in list(self._container.list_names()):
            stamp = blob_timestamp(name)
            if stamp is None or stamp >= cutoff:
                continue
            try:
                self._container.delete(name)
            except BlobImmutableError:
                continue
            deleted += 1
        logger.info(
            "Purged expired archival blobs",
            extra={"deleted": deleted, "cutoff": cutoff.isoformat(), "sink_type": self.sink_type},
        )
        return deleted

    def probe(self) -> None:
        self._container.ping()
        next(iter(self._container.list_names()), None)


__all__ = [
    "BlobContainer",
    "LocalBlobContainer",
    "BlobStorageSink",
    "blob_name_for",
    "blob_timestamp",
]
