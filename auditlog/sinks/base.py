"""Sink contracts for audit event storage backends."""
from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta
from uuid import UUID

from auditlog.schemas.audit import AuditEvent, AuditEventFilter, SortDirection


@dataclass(frozen=True)
class SinkCapabilities:
    fast_query: bool
    immutable_storage: bool
    max_retention: timedelta


class AuditSink(ABC):
    """Write/read target for audit events.

    Implementations are synchronous; the orchestration layer moves calls off
    the event loop. Errors are logged with the event id and sink type and
    re-raised unchanged.
    """

    sink_type: str = "sink"

    @property
    @abstractmethod
    def capabilities(self) -> SinkCapabilities: ...

    @abstractmethod
    def write(self, event: AuditEvent) -> None: ...

    @abstractmethod
    def write_batch(self, events: Sequence[AuditEvent]) -> None: ...

    @abstractmethod
    def read(self, filter: AuditEventFilter) -> list[AuditEvent]: ...

    @abstractmethod
    def count(self, filter: AuditEventFilter) -> int: ...

    @abstractmethod
    def delete_before(self, cutoff: datetime) -> int:
        """Remove events older than ``cutoff`` that this sink may release."""

    @abstractmethod
    def probe(self) -> None:
        """Cheapest round trip to the backing store; raises when unavailable."""

    def describe(self) -> dict[str, object]:
        caps = self.capabilities
        return {
            "sink_type": self.sink_type,
            "fast_query": caps.fast_query,
            "immutable_storage": caps.immutable_storage,
            "max_retention_days": caps.max_retention.days,
        }


class QueryableSink(AuditSink):
    """Indexed, mutable store serving queries and feeding archival."""

    def __init__(self, *, max_retention: timedelta) -> None:
        self._capabilities = SinkCapabilities(fast_query=True, immutable_storage=False, max_retention=max_retention)

    @property
    def capabilities(self) -> SinkCapabilities:
        return self._capabilities

    @abstractmethod
    def find_archivable(self, cutoff: datetime, limit: int) -> list[AuditEvent]:
        """Operational events older than ``cutoff``, oldest first."""

    @abstractmethod
    def mark_archived(self, event_ids: Iterable[UUID]) -> int:
        """Flip still-operational events to archival; returns rows changed."""


class ArchivalSink(AuditSink):
    """Append-mostly store with immutability guarantees."""

    def __init__(self, *, max_retention: timedelta, immutable: bool = True) -> None:
        self._capabilities = SinkCapabilities(fast_query=False, immutable_storage=immutable, max_retention=max_retention)

    @property
    def capabilities(self) -> SinkCapabilities:
        return self._capabilities


def order_and_page(events: Iterable[AuditEvent], filter: AuditEventFilter) -> list[AuditEvent]:
    """Apply the filter's sort and pagination to an in-memory result set."""

    field = filter.sort_by

    def _key(event: AuditEvent):
        value = getattr(event, field)
        if value is None:
            return (0, "")
        return (1, value)

    ordered = sorted(events, key=_key, reverse=filter.sort_direction == SortDirection.DESC)
    return ordered[filter.skip : filter.skip + filter.max_results]


__all__ = ["SinkCapabilities", "AuditSink", "QueryableSink", "ArchivalSink", "order_and_page"]
