"""Serializers turning audit events into export artifacts."""
from __future__ import annotations

import csv
import enum
import io
import json
from collections.abc import Iterable, Sequence
from datetime import datetime
from typing import Any
from uuid import UUID

from fpdf import FPDF
from fpdf.enums import XPos, YPos
from openpyxl import Workbook

from auditlog.schemas.audit import AuditEvent, AuditEventFilter

DEFAULT_EXPORT_FIELDS = (
    "id",
    "timestamp",
    "user_id",
    "action_type",
    "target_resource",
    "ip_address",
    "session_id",
    "status",
    "correlation_id",
    "user_agent",
    "location",
    "risk_level",
    "contains_sensitive_data",
    "data_hash",
)
EXPORTABLE_FIELDS = DEFAULT_EXPORT_FIELDS + ("metadata", "retention_category")


def select_fields(include: Sequence[str] = (), exclude: Sequence[str] = ()) -> list[str]:
    """Columns to export, in canonical order; unknown names are ignored."""

    wanted = set(include) if include else set(DEFAULT_EXPORT_FIELDS)
    dropped = set(exclude)
    return [name for name in EXPORTABLE_FIELDS if name in wanted and name not in dropped]


def _plain(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, enum.Enum):
        return value.value
    return value


def event_row(event: AuditEvent, fields: Sequence[str]) -> dict[str, Any]:
    return {name: _plain(getattr(event, name)) for name in fields}


def _flat(value: Any) -> Any:
    if isinstance(value, dict):
        return json.dumps(value, sort_keys=True, default=str)
    if value is None:
        return ""
    return value


def render_csv(events: Iterable[AuditEvent], fields: Sequence[str]) -> bytes:
    output = io.StringIO()
    writer = csv.writer(output)
    writer.writerow(fields)
    for event in events:
        row = event_row(event, fields)
        writer.writerow([_flat(row[name]) for name in fields])
    return output.getvalue().encode("utf-8")


def render_json(
    events: Sequence[AuditEvent],
    fields: Sequence[str],
    *,
    generated_at: datetime,
    filter: AuditEventFilter,
) -> bytes:
    payload = {
        "export_info": {
            "generated_at": generated_at.isoformat(),
            "format": "json",
            "record_count": len(events),
            "filter": filter.model_dump(mode="json", exclude_none=True),
        },
        "audit_events": [event_row(event, fields) for event in events],
    }
    return json.dumps(payload, indent=2, ensure_ascii=False, default=str).encode("utf-8")


def render_excel(events: Iterable[AuditEvent], fields: Sequence[str]) -> bytes:
    workbook = Workbook(write_only=True)
    sheet = workbook.create_sheet("Audit Events")
    sheet.append(list(fields))
    for event in events:
        row = event_row(event, fields)
        sheet.append([_flat(row[name]) for name in fields])
    buffer = io.BytesIO()
    workbook.save(buffer)
    return buffer.getvalue()


def _latin1(text: str) -> str:
    # Core PDF fonts only cover latin-1.
    return text.encode("latin-1", "replace").decode("latin-1")


def render_pdf(
    events: Sequence[AuditEvent],
    fields: Sequence[str],
    *,
    generated_at: datetime,
    title: str = "Audit Log Export",
) -> bytes:
    pdf = FPDF(orientation="L", unit="mm", format="A4")
    pdf.set_auto_page_break(auto=True, margin=12)
    pdf.add_page()
    pdf.set_font("Helvetica", "B", 16)
    pdf.cell(0, 10, _latin1(title), new_x=XPos.LMARGIN, new_y=YPos.NEXT)
    pdf.set_font("Helvetica", "", 9)
    pdf.cell(
        0,
        6,
        f"Generated {generated_at:%Y-%m-%d %H:%M:%S} UTC - {len(events)} event(s)",
        new_x=XPos.LMARGIN,
        new_y=YPos.NEXT,
    )
    pdf.ln(2)
    if not events:
        pdf.set_font("Helvetica", "I", 10)
        pdf.multi_cell(0, 6, "No audit events matched the export filter.", new_x=XPos.LMARGIN, new_y=YPos.NEXT)
        return bytes(pdf.output())

    for event in events:
        row = event_row(event, fields)
        pdf.set_font("Helvetica", "B", 9)
        heading = f"{row.get('timestamp', '')}  {row.get('action_type', '')}  {row.get('status', '')}".strip()
        pdf.multi_cell(0, 5, _latin1(heading or str(event.id)), new_x=XPos.LMARGIN, new_y=YPos.NEXT)
        pdf.set_font("Courier", "", 7)
        details = "  ".join(
            f"{name}={_flat(row[name])}" for name in fields if name not in {"timestamp", "action_type", "status"}
        )
        pdf.multi_cell(0, 4, _latin1(details), new_x=XPos.LMARGIN, new_y=YPos.NEXT)
        pdf.ln(1)
    return bytes(pdf.output())


__all__ = [
    "DEFAULT_EXPORT_FIELDS",
    "EXPORTABLE_FIELDS",
    "select_fields",
    "event_row",
    "render_csv",
    "render_json",
    "render_excel",
    "render_pdf",
]
