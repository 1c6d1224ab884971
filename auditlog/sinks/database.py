"""Operational audit sink backed by the relational database."""
from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Sequence
from datetime import datetime, timedelta
from uuid import UUID

from sqlalchemy import String, Select, cast, delete, func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from auditlog.models.audit_event import AuditEventRecord, RetentionCategory
from auditlog.schemas.audit import (
    EQUALITY_FIELDS,
    SEARCHABLE_FIELDS,
    AuditEvent,
    AuditEventFilter,
    SortDirection,
)
from auditlog.sinks.base import QueryableSink
from auditlog.utils.time import ensure_utc

logger = logging.getLogger(__name__)


def event_to_record(event: AuditEvent) -> AuditEventRecord:
    return AuditEventRecord(
        id=str(event.id),
        timestamp=event.timestamp,
        user_id=event.user_id,
        action_type=event.action_type,
        target_resource=event.target_resource,
        ip_address=event.ip_address,
        session_id=event.session_id,
        status=event.status,
        metadata_json=dict(event.metadata),
        correlation_id=event.correlation_id,
        user_agent=event.user_agent,
        location=event.location,
        risk_level=event.risk_level,
        contains_sensitive_data=event.contains_sensitive_data,
        data_hash=event.data_hash,
        retention_category=RetentionCategory.OPERATIONAL,
    )


def record_to_event(record: AuditEventRecord) -> AuditEvent:
    return AuditEvent(
        id=UUID(record.id),
        timestamp=ensure_utc(record.timestamp),
        user_id=record.user_id,
        action_type=record.action_type,
        target_resource=record.target_resource,
        ip_address=record.ip_address,
        session_id=record.session_id,
        status=record.status,
        metadata=dict(record.metadata_json or {}),
        correlation_id=record.correlation_id,
        user_agent=record.user_agent,
        location=record.location,
        risk_level=record.risk_level,
        contains_sensitive_data=record.contains_sensitive_data,
        data_hash=record.data_hash,
        retention_category=record.retention_category,
    )


class DatabaseSink(QueryableSink):
    """Indexed operational store; new rows always land as ``Operational``."""

    sink_type = "database"

    def __init__(
        self,
        session_factory: Callable[[], Session],
        *,
        max_retention: timedelta = timedelta(days=30),
        use_transactions: bool = True,
    ) -> None:
        super().__init__(max_retention=max_retention)
        self._session_factory = session_factory
        self._use_transactions = use_transactions

    # ------ writes ------

    def write(self, event: AuditEvent) -> None:
        with self._session_factory() as session:
            try:
                session.add(event_to_record(event))
                session.commit()
            except SQLAlchemyError:
                session.rollback()
                logger.exception(
                    "Audit event write failed",
                    extra={"event_id": str(event.id), "sink_type": self.sink_type},
                )
                raise

    def write_batch(self, events: Sequence[AuditEvent]) -> None:
        if not events:
            return
        with self._session_factory() as session:
            try:
                if self._use_transactions:
                    with session.begin():
                        session.add_all([event_to_record(event) for event in events])
                else:
                    for event in events:
                        session.add(event_to_record(event))
                        session.commit()
            except SQLAlchemyError:
                session.rollback()
                logger.exception(
                    "Audit batch write failed",
                    extra={"batch_size": len(events), "sink_type": self.sink_type},
                )
                raise
        logger.debug("Audit batch written", extra={"batch_size": len(events), "sink_type": self.sink_type})

    # ------ reads ------

    def _apply_filter(self, stmt: Select, filter: AuditEventFilter) -> Select:
        conditions = []
        if filter.start_date is not None:
            conditions.append(AuditEventRecord.timestamp >= filter.start_date)
        if filter.end_date is not None:
            conditions.append(AuditEventRecord.timestamp <= filter.end_date)
        for name in EQUALITY_FIELDS:
            value = getattr(filter, name)
            if value is not None:
                conditions.append(getattr(AuditEventRecord, name) == value)
        if filter.contains_sensitive_data is not None:
            conditions.append(AuditEventRecord.contains_sensitive_data.is_(filter.contains_sensitive_data))
        if filter.retention_category is not None:
            conditions.append(AuditEventRecord.retention_category == filter.retention_category)
        if filter.search_term:
            pattern = f"%{filter.search_term}%"
            conditions.append(or_(*(getattr(AuditEventRecord, name).ilike(pattern) for name in SEARCHABLE_FIELDS)))
        if filter.metadata_key:
            element = AuditEventRecord.metadata_json[filter.metadata_key].as_string()
            if filter.metadata_value is None:
                conditions.append(element.is_not(None))
            else:
                conditions.append(cast(element, String) == filter.metadata_value)
        if conditions:
            stmt = stmt.where(*conditions)
        return stmt

    def read(self, filter: AuditEventFilter) -> list[AuditEvent]:
        column = getattr(AuditEventRecord, filter.sort_by)
        order = column.desc() if filter.sort_direction == SortDirection.DESC else column.asc()
        stmt = (
            self._apply_filter(select(AuditEventRecord), filter)
            .order_by(order, AuditEventRecord.id)
            .offset(filter.skip)
            .limit(filter.max_results)
        )
        with self._session_factory() as session:
            try:
                records = session.execute(stmt).scalars().all()
            except SQLAlchemyError:
                logger.exception("Audit query failed", extra={"sink_type": self.sink_type})
                raise
            return [record_to_event(record) for record in records]

    def count(self, filter: AuditEventFilter) -> int:
        stmt = self._apply_filter(select(func.count()).select_from(AuditEventRecord), filter)
        with self._session_factory() as session:
            try:
                return int(session.execute(stmt).scalar_one())
            except SQLAlchemyError:
                logger.exception("Audit count failed", extra={"sink_type": self.sink_type})
                raise

    # ------ archival support ------

    def find_archivable(self, cutoff: datetime, limit: int) -> list[AuditEvent]:
        stmt = (
            select(AuditEventRecord)
            .where(
                AuditEventRecord.retention_category == RetentionCategory.OPERATIONAL,
                AuditEventRecord.timestamp < cutoff,
            )
            .order_by(AuditEventRecord.timestamp.asc(), AuditEventRecord.id)
            .limit(limit)
        )
        with self._session_factory() as session:
            return [record_to_event(record) for record in session.execute(stmt).scalars().all()]

    def mark_archived(self, event_ids: Iterable[UUID]) -> int:
        ids = [str(event_id) for event_id in event_ids]
        if not ids:
            return 0
        stmt = (
            update(AuditEventRecord)
            .where(
                AuditEventRecord.id.in_(ids),
                AuditEventRecord.retention_category == RetentionCategory.OPERATIONAL,
            )
            .values(retention_category=RetentionCategory.ARCHIVAL)
            .execution_options(synchronize_session=False)
        )
        with self._session_factory() as session:
            try:
                result = session.execute(stmt)
                session.commit()
            except SQLAlchemyError:
                session.rollback()
                logger.exception(
                    "Marking audit events archived failed",
                    extra={"event_count": len(ids), "sink_type": self.sink_type},
                )
                raise
            return result.rowcount or 0

    def delete_before(self, cutoff: datetime) -> int:
        """Purge archived rows only; operational rows are never dropped unarchived."""

        stmt = (
            delete(AuditEventRecord)
            .where(
                AuditEventRecord.retention_category == RetentionCategory.ARCHIVAL,
                AuditEventRecord.timestamp < cutoff,
            )
            .execution_options(synchronize_session=False)
        )
        with self._session_factory() as session:
            try:
                result = session.execute(stmt)
                session.commit()
            except SQLAlchemyError:
                session.rollback()
                logger.exception("Operational purge failed", extra={"sink_type": self.sink_type})
                raise
            deleted = result.rowcount or 0
        logger.info(
            "Purged archived events from operational store",
            extra={"deleted": deleted, "cutoff": cutoff.isoformat(), "sink_type": self.sink_type},
        )
        return deleted

    def probe(self) -> None:
        self.count(AuditEventFilter(max_results=1))


__all__ = ["DatabaseSink", "event_to_record", "record_to_event"]
