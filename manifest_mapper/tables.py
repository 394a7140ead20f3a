"""
ORM tables of the persistence store.

The engine only depends on the read/write contracts of these entities;
column choices are kept deliberately plain so the store can live in SQLite
for tests and a server database in production.
"""

from __future__ import annotations

import re
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from manifest_mapper.database import Base, utcnow


class ImportBatch(Base):
    """Checkpoint of one import batch's progress through the pipeline."""

    __tablename__ = "import_batches"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    state: Mapped[str] = mapped_column(String(32), nullable=False)
    stage_status: Mapped[str] = mapped_column(String(16), nullable=False)
    headers: Mapped[List[str]] = mapped_column(JSON, default=list)
    row_count: Mapped[int] = mapped_column(Integer, default=0)
    proposal: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    stopped: Mapped[bool] = mapped_column(Boolean, default=False)
    review_acknowledged: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)


class RawRowRecord(Base):
    """A captured source row.  Rows are inserted, never updated."""

    __tablename__ = "raw_rows"
    __table_args__ = (UniqueConstraint("batch_id", "row_index", name="uq_raw_row_position"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    batch_id: Mapped[str] = mapped_column(String(64), index=True)
    row_index: Mapped[int] = mapped_column(Integer, nullable=False)
    original_headers: Mapped[List[str]] = mapped_column(JSON, nullable=False)
    data: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False)
    captured_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class DictionaryEntryRow(Base):
    """Learned header synonym.  ``version`` backs compare-and-swap updates."""

    __tablename__ = "dictionary_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    source_header: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    canonical_field: Mapped[str] = mapped_column(String(64), nullable=False)
    confidence: Mapped[float] = mapped_column(Float, nullable=False)
    times_used: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    last_used_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)


class ContainerRecordRow(Base):
    """Canonical container record with lineage back to its raw row."""

    __tablename__ = "container_records"

    container_number: Mapped[str] = mapped_column(String(64), primary_key=True)

    last_free_day: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    eta: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    ata: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    etd: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    atd: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    booking_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    gate_out_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    delivery_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    empty_return_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    current_status: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    carrier: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    forwarder: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    vessel_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    voyage_number: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    origin_port: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    destination_port: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    destination_city: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    shipper: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    consignee: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    business_unit: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    house_bill: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    master_bill: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    container_type: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    transport_mode: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    shipping_type: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    seal_number: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    weight: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    volume: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    pieces: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    freight_cost: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Lineage
    raw_row_id: Mapped[int] = mapped_column(ForeignKey("raw_rows.id"), nullable=False)
    batch_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    unmapped_fields: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)
    mapping_confidence: Mapped[float] = mapped_column(Float, default=0.0)

    last_audit: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)
    derived: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)


class ContainerEventRow(Base):
    """Lifecycle milestone derived from a status code or stage date."""

    __tablename__ = "container_events"
    __table_args__ = (
        UniqueConstraint(
            "container_number", "stage_code", "source_field", name="uq_container_event"
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    container_number: Mapped[str] = mapped_column(
        ForeignKey("container_records.container_number"), index=True
    )
    stage_code: Mapped[str] = mapped_column(String(16), nullable=False)
    source_field: Mapped[str] = mapped_column(String(64), nullable=False)
    event_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    description: Mapped[str] = mapped_column(String(255), default="")
    batch_id: Mapped[str] = mapped_column(String(64), nullable=False)
    recorded_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)


class StageRunRow(Base):
    """One stage attempt (including reruns and failures)."""

    __tablename__ = "stage_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    batch_id: Mapped[str] = mapped_column(ForeignKey("import_batches.id"), index=True)
    stage: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    rerun: Mapped[bool] = mapped_column(Boolean, default=False)
    started_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    finished_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    input_summary: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)
    output_summary: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


class AuditResultRow(Base):
    """Snapshot of one audit run; a re-audit supersedes the previous row."""

    __tablename__ = "audit_results"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    batch_id: Mapped[str] = mapped_column(String(64), index=True)
    phase: Mapped[str] = mapped_column(String(16), nullable=False)
    container_number: Mapped[str] = mapped_column(String(64), nullable=False)
    raw_row_id: Mapped[int] = mapped_column(Integer, nullable=False)
    capture_rate: Mapped[float] = mapped_column(Float, nullable=False)
    recommendation: Mapped[str] = mapped_column(String(16), nullable=False)
    blocking: Mapped[bool] = mapped_column(Boolean, default=False)
    result: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False)
    superseded: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class ImprovementRecordRow(Base):
    __tablename__ = "improvement_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    batch_id: Mapped[str] = mapped_column(String(64), index=True)
    unmapped_header: Mapped[str] = mapped_column(String(255), nullable=False)
    candidate_canonical_field: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    confidence: Mapped[float] = mapped_column(Float, default=0.0)
    sample_values: Mapped[List[str]] = mapped_column(JSON, default=list)
    frequency: Mapped[int] = mapped_column(Integer, default=0)
    action: Mapped[str] = mapped_column(String(32), nullable=False)
    reason: Mapped[str] = mapped_column(Text, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class RowFailureRow(Base):
    __tablename__ = "row_failures"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    batch_id: Mapped[str] = mapped_column(String(64), index=True)
    raw_row_id: Mapped[int] = mapped_column(Integer, nullable=False)
    row_index: Mapped[int] = mapped_column(Integer, nullable=False)
    error: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


# ---------------------------------------------------------------------------
# Canonical field <-> column
# ---------------------------------------------------------------------------

_CAMEL_RE = re.compile(r"(?<!^)(?=[A-Z])")


def column_for(canonical_field: str) -> str:
    """``"lastFreeDay"`` -> ``"last_free_day"``."""
    return _CAMEL_RE.sub("_", canonical_field).lower()
