"""Audit orchestration: protection, sink fan-out, cached queries, archival."""
from __future__ import annotations

import asyncio
import logging
import time
from collections import Counter
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from auditlog.exceptions import ConfigurationError, FanOutError
from auditlog.schemas.audit import (
    SYSTEM_ACTOR,
    SYSTEM_IP_ADDRESS,
    AuditEvent,
    AuditEventFilter,
    AuditEventStatistics,
    AuditServiceHealth,
    FanOutResult,
    HealthStatus,
    RiskLevel,
    SinkHealth,
    SinkWriteOutcome,
)
from auditlog.services.cache import InMemoryTTLCache, ResultCache
from auditlog.services.data_protection import DataProtectionService
from auditlog.sinks.base import ArchivalSink, AuditSink, QueryableSink
from auditlog.utils.time import utcnow

logger = logging.getLogger(__name__)

HIGH_RISK_ACTIONS = ("delete", "remove")
MEDIUM_RISK_ACTIONS = ("update", "modify")
HIGH_RISK_STATUSES = ("failed", "error")


@dataclass
class RequestContext:
    """Where an action came from; filled from the HTTP request when available."""

    ip_address: str = ""
    session_id: str = ""
    correlation_id: str | None = None
    user_agent: str | None = None
    location: str | None = None


def _floor_minute(value: datetime) -> datetime:
    return value.replace(second=0, microsecond=0)


def _ceil_minute(value: datetime) -> datetime:
    floored = _floor_minute(value)
    return floored if floored == value else floored + timedelta(minutes=1)


def assess_risk_level(action_type: str, target_resource: str = "", status: str = "") -> RiskLevel:
    action = action_type.lower()
    if any(marker in action for marker in HIGH_RISK_ACTIONS):
        return RiskLevel.HIGH
    if any(marker in action for marker in MEDIUM_RISK_ACTIONS):
        return RiskLevel.MEDIUM
    if any(marker in status.lower() for marker in HIGH_RISK_STATUSES):
        return RiskLevel.HIGH
    return RiskLevel.LOW


class AuditService:
    """Fans writes out to every sink and routes reads to the queryable one.

    Query, count and statistics results are cached by filter content and
    expire by TTL only; a write is not visible to an identical cached query
    until that entry lapses.
    """

    def __init__(
        self,
        sinks: Sequence[AuditSink],
        *,
        protection: DataProtectionService | None = None,
        cache: ResultCache | None = None,
        enabled: bool = True,
        query_cap: int = 10_000,
        cache_ttl: timedelta = timedelta(minutes=15),
        health_budget_ms: float = 5000,
        archive_batch_size: int = 1000,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if not sinks:
            raise ConfigurationError("At least one audit sink must be configured.")
        self._sinks = list(sinks)
        self._queryable = next((s for s in self._sinks if isinstance(s, QueryableSink)), None)
        self._archival = next(
            (s for s in self._sinks if isinstance(s, ArchivalSink) and s.capabilities.immutable_storage),
            None,
        )
        self._protection = protection
        self._cache = cache if cache is not None else InMemoryTTLCache(cache_ttl, clock=clock)
        self.enabled = enabled
        self.query_cap = query_cap
        self._cache_ttl = cache_ttl
        self._health_budget_ms = health_budget_ms
        self._archive_batch_size = archive_batch_size
        self._clock = clock

    @property
    def sinks(self) -> list[AuditSink]:
        return list(self._sinks)

    @property
    def protection(self) -> DataProtectionService | None:
        return self._protection

    def _require_queryable(self) -> QueryableSink:
        if self._queryable is None:
            raise ConfigurationError("No fast-query capable sink is configured.")
        return self._queryable

    def _require_archival(self) -> ArchivalSink:
        if self._archival is None:
            raise ConfigurationError("No immutable-storage sink is configured.")
        return self._archival

    # ------ writes ------

    async def _dispatch(self, sink: AuditSink, events: list[AuditEvent]) -> SinkWriteOutcome:
        started = time.perf_counter()
        try:
            if len(events) == 1:
                await asyncio.to_thread(sink.write, events[0])
            else:
                await asyncio.to_thread(sink.write_batch, events)
        except Exception as exc:  # noqa: BLE001  reported through FanOutError
            elapsed = (time.perf_counter() - started) * 1000
            logger.error(
                "Audit sink write failed",
                extra={
                    "sink_type": sink.sink_type,
                    "event_ids": [str(event.id) for event in events[:20]],
                    "error": str(exc),
                },
            )
            return SinkWriteOutcome(
                sink_type=sink.sink_type,
                succeeded=False,
                error=str(exc),
                error_type=type(exc).__name__,
                elapsed_ms=elapsed,
            )
        return SinkWriteOutcome(
            sink_type=sink.sink_type,
            succeeded=True,
            elapsed_ms=(time.perf_counter() - started) * 1000,
        )

    async def _protect(self, events: list[AuditEvent]) -> list[AuditEvent]:
        if self._protection is None:
            return events
        protection = self._protection
        return await asyncio.to_thread(lambda: [protection.protect(event) for event in events])

    async def record_batch(self, events: Sequence[AuditEvent]) -> FanOutResult:
        """Protect once, then write the same content to every sink in parallel."""

        events = list(events)
        if not self.enabled:
            return FanOutResult(event_ids=[event.id for event in events], skipped=True)
        if not events:
            return FanOutResult()
        protected = await self._protect(events)
        outcomes = await asyncio.gather(*(self._dispatch(sink, protected) for sink in self._sinks))
        result = FanOutResult(event_ids=[event.id for event in protected], outcomes=list(outcomes))
        if not result.succeeded:
            raise FanOutError(result)
        logger.debug(
            "Audit events recorded",
            extra={"event_count": len(protected), "sinks": [s.sink_type for s in self._sinks]},
        )
        return result

    async def record(self, event: AuditEvent) -> FanOutResult:
        return await self.record_batch([event])

    async def record_user_action(
        self,
        user_id: str,
        action_type: str,
        target_resource: str,
        *,
        status: str = "Success",
        metadata: dict[str, Any] | None = None,
        context: RequestContext | None = None,
    ) -> FanOutResult:
        context = context or RequestContext()
        event = AuditEvent(
            user_id=user_id,
            action_type=action_type,
            target_resource=target_resource,
            status=status,
            metadata=metadata or {},
            ip_address=context.ip_address,
            session_id=context.session_id,
            correlation_id=context.correlation_id,
            user_agent=context.user_agent,
            location=context.location,
            risk_level=assess_risk_level(action_type, target_resource, status).value,
        )
        return await self.record(event)

    async def record_system_event(
        self,
        action_type: str,
        target_resource: str,
        *,
        status: str = "Success",
        metadata: dict[str, Any] | None = None,
        correlation_id: str | None = None,
    ) -> FanOutResult:
        event = AuditEvent(
            user_id=SYSTEM_ACTOR,
            action_type=action_type,
            target_resource=target_resource,
            status=status,
            metadata=metadata or {},
            ip_address=SYSTEM_IP_ADDRESS,
            session_id=SYSTEM_ACTOR,
            correlation_id=correlation_id,
            risk_level=RiskLevel.LOW.value,
        )
        return await self.record(event)

    async def record_security_event(
        self,
        user_id: str,
        action_type: str,
        target_resource: str,
        risk_level: RiskLevel,
        *,
        status: str = "Success",
        metadata: dict[str, Any] | None = None,
        context: RequestContext | None = None,
    ) -> FanOutResult:
        context = context or RequestContext()
        event = AuditEvent(
            user_id=user_id,
            action_type=action_type,
            target_resource=target_resource,
            status=status,
            metadata=metadata or {},
            ip_address=context.ip_address,
            session_id=context.session_id,
            correlation_id=context.correlation_id,
            user_agent=context.user_agent,
            location=context.location,
            risk_level=risk_level.value,
        )
        return await self.record(event)

    # ------ reads ------

    def _clamp(self, filter: AuditEventFilter) -> AuditEventFilter:
        if filter.max_results <= self.query_cap:
            return filter
        return filter.model_copy(update={"max_results": self.query_cap})

    async def query(self, filter: AuditEventFilter) -> list[AuditEvent]:
        sink = self._require_queryable()
        effective = self._clamp(filter)
        key = effective.cache_key("query")
        cached = self._cache.get(key)
        if cached is not None:
            return [event.model_copy(deep=True) for event in cached]
        events = await asyncio.to_thread(sink.read, effective)
        self._cache.set(key, tuple(event.model_copy(deep=True) for event in events), self._cache_ttl)
        return events

    async def count(self, filter: AuditEventFilter) -> int:
        sink = self._require_queryable()
        key = filter.cache_key("count")
        cached = self._cache.get(key)
        if cached is not None:
            return cached
        total = await asyncio.to_thread(sink.count, filter)
        self._cache.set(key, total, self._cache_ttl)
        return total

    async def count_uncached(self, filter: AuditEventFilter) -> int:
        return await asyncio.to_thread(self._require_queryable().count, filter)

    async def read_for_export(self, filter: AuditEventFilter, limit: int) -> list[AuditEvent]:
        """Uncached read that bypasses the interactive query cap."""

        sink = self._require_queryable()
        return await asyncio.to_thread(sink.read, filter.model_copy(update={"max_results": max(limit, 1)}))

    async def statistics(self, start_date: datetime, end_date: datetime) -> AuditEventStatistics:
        """Aggregate a window widened to whole minutes so repeated calls share a cache entry."""

        start_date = _floor_minute(start_date)
        end_date = _ceil_minute(end_date)
        key = f"stats:{start_date:%Y%m%d%H%M}:{end_date:%Y%m%d%H%M}"
        cached = self._cache.get(key)
        if cached is not None:
            return cached.model_copy(deep=True)
        events = await self.query(
            AuditEventFilter(start_date=start_date, end_date=end_date, max_results=self.query_cap)
        )
        days = max(1.0, (end_date - start_date).total_seconds() / 86400)
        stats = AuditEventStatistics(
            start_date=start_date,
            end_date=end_date,
            total_events=len(events),
            events_by_action_type=dict(Counter(event.action_type for event in events)),
            events_by_status=dict(Counter(event.status for event in events)),
            events_by_risk_level=dict(Counter(event.risk_level or "Unknown" for event in events)),
            events_by_user=dict(Counter(event.user_id for event in events)),
            events_with_sensitive_data=sum(1 for event in events if event.contains_sensitive_data),
            average_events_per_day=round(len(events) / days, 2),
            truncated=len(events) >= self.query_cap,
        )
        self._cache.set(key, stats, self._cache_ttl)
        return stats

    # ------ archival ------

    async def archive(self, cutoff: datetime) -> int:
        """Copy operational events older than ``cutoff`` to the archive and mark them.

        Already-archival rows are never selected, so re-running with the same
        cutoff archives nothing further.
        """

        queryable = self._require_queryable()
        archival = self._require_archival()
        total = 0
        while True:
            batch = await asyncio.to_thread(queryable.find_archivable, cutoff, self._archive_batch_size)
            if not batch:
                break
            copies = [event.create_archival_copy() for event in batch]
            try:
                await asyncio.to_thread(archival.write_batch, copies)
            except Exception:
                logger.exception(
                    "Archival write failed; events stay operational",
                    extra={"sink_type": archival.sink_type, "batch_size": len(batch)},
                )
                raise
            moved = await asyncio.to_thread(queryable.mark_archived, [event.id for event in batch])
            total += moved
            if moved == 0:
                break
        logger.info("Audit archival completed", extra={"archived": total, "cutoff": cutoff.isoformat()})
        return total

    async def purge(self, operational_cutoff: datetime, archival_cutoff: datetime | None = None) -> dict[str, int]:
        """Drop archived rows from the operational store and lapsed archive blobs."""

        result = {"operational": 0, "archival": 0}
        result["operational"] = await asyncio.to_thread(self._require_queryable().delete_before, operational_cutoff)
        if archival_cutoff is not None and self._archival is not None:
            result["archival"] = await asyncio.to_thread(self._archival.delete_before, archival_cutoff)
        return result

    # ------ health ------

    async def _probe(self, sink_id: str, sink: AuditSink) -> SinkHealth:
        started = time.perf_counter()
        try:
            await asyncio.to_thread(sink.probe)
        except Exception as exc:  # noqa: BLE001  classified as Unhealthy
            logger.warning("Audit sink probe failed", extra={"sink_type": sink.sink_type, "error": str(exc)})
            return SinkHealth(
                sink_id=sink_id,
                status=HealthStatus.UNHEALTHY,
                response_time_ms=(time.perf_counter() - started) * 1000,
                error_message=str(exc),
            )
        elapsed = (time.perf_counter() - started) * 1000
        status = HealthStatus.DEGRADED if elapsed > self._health_budget_ms else HealthStatus.HEALTHY
        return SinkHealth(
            sink_id=sink_id,
            status=status,
            response_time_ms=elapsed,
            last_successful_operation=self._clock(),
        )

    async def health(self) -> AuditServiceHealth:
        seen: Counter[str] = Counter()
        sink_health: dict[str, SinkHealth] = {}
        messages: list[str] = []
        for sink in self._sinks:
            seen[sink.sink_type] += 1
            sink_id = sink.sink_type if seen[sink.sink_type] == 1 else f"{sink.sink_type}-{seen[sink.sink_type]}"
            health = await self._probe(sink_id, sink)
            sink_health[sink_id] = health
            if health.status == HealthStatus.DEGRADED:
                messages.append(f"{sink_id} responded in {health.response_time_ms:.0f} ms")
            elif health.status == HealthStatus.UNHEALTHY:
                messages.append(f"{sink_id} is unavailable: {health.error_message}")
        if not self.enabled:
            messages.append("Audit recording is disabled")
        overall = max((h.status for h in sink_health.values()), key=lambda status: status.severity)
        return AuditServiceHealth(
            overall_status=overall,
            sink_health=sink_health,
            last_health_check=self._clock(),
            messages=messages,
        )

    def describe(self) -> dict[str, object]:
        return {
            "enabled": self.enabled,
            "sinks": [sink.describe() for sink in self._sinks],
            "query_cap": self.query_cap,
            "cache_ttl_seconds": int(self._cache_ttl.total_seconds()),
        }


__all__ = ["AuditService", "RequestContext", "assess_risk_level"]
