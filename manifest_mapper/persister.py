"""
Persister.

Applies an approved ``MappingProposal`` to captured raw rows and upserts
canonical container records keyed by container number.

Zero loss
---------
Every non-empty raw cell ends up in exactly one of two places: the typed
column of the canonical field it maps to, or the record's
``unmapped_fields`` bag (verbatim, as a ``RawValue``).  Cells whose header
has no accepted mapping go to the bag, and so do mapped cells whose value
could not be coerced to the field's type.

Failure isolation
-----------------
Each row is written in its own transaction.  A row that cannot be stored
(no container number, constraint violation) is recorded as a
``RowFailure`` and the batch carries on.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from manifest_mapper.database import session_scope, utcnow
from manifest_mapper.exceptions import NotFoundError, PersistenceError
from manifest_mapper.logging_setup import get_logger
from manifest_mapper.models import (
    AuditFinding,
    AuditResult,
    CanonicalRecord,
    EnrichmentResult,
    LifecycleEvent,
    Lineage,
    MappingProposal,
    PersistReport,
    RawRow,
    RawValue,
    RowFailure,
)
from manifest_mapper.normalizer import ValueCoercer
from manifest_mapper.schema import (
    FIELD_CATALOG,
    NATURAL_KEY,
    STATUS_CODES,
    date_stage_fields,
    field_type_of,
)
from manifest_mapper.tables import (
    ContainerEventRow,
    ContainerRecordRow,
    RowFailureRow,
    column_for,
)

logger = get_logger("persister")


@dataclass
class RowTransform:
    """In-memory result of mapping one raw row."""

    values: Dict[str, Any] = field(default_factory=dict)
    unmapped_fields: Dict[str, RawValue] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)

    @property
    def natural_key(self) -> Optional[str]:
        return self.values.get(NATURAL_KEY)


class Persister:
    """Write canonical container records with lineage.

    Parameters
    ----------
    session_factory:
        Session factory bound to the persistence store.
    coercer:
        Value coercion rules; the auditor must be given the same instance
        (or an identically configured one).
    """

    def __init__(self, session_factory: sessionmaker, coercer: Optional[ValueCoercer] = None) -> None:
        self._sessions = session_factory
        self._coercer = coercer or ValueCoercer()
        self._stage_fields = date_stage_fields()

    # ------------------------------------------------------------------ #
    # Pure transformation
    # ------------------------------------------------------------------ #

    def transform(self, raw_row: RawRow, proposal: MappingProposal) -> RowTransform:
        """Map *raw_row* through *proposal* without touching the store."""
        by_header = proposal.field_by_header()
        result = RowTransform()

        for header in raw_row.original_headers:
            raw = raw_row.value(header)
            if raw.is_empty:
                continue
            canonical = by_header.get(header)
            if canonical is None:
                result.unmapped_fields[header] = raw
                continue
            coerced = self._coercer.coerce(raw, field_type_of(canonical))
            if not coerced.ok:
                # Preserved verbatim rather than dropped
                result.unmapped_fields[header] = raw
                result.warnings.extend(coerced.warnings)
                continue
            if coerced.value is not None:
                result.values[canonical] = coerced.value
            result.warnings.extend(coerced.warnings)

        return result

    def build_record(self, raw_row: RawRow, proposal: MappingProposal) -> CanonicalRecord:
        """The record ``persist_row`` would write for a fresh key, kept in memory."""
        transformed = self.transform(raw_row, proposal)
        key = transformed.natural_key
        if not key:
            raise PersistenceError(f"Row {raw_row.row_index} has no {NATURAL_KEY}")
        return CanonicalRecord(
            container_number=key,
            values=dict(transformed.values),
            lineage=Lineage(raw_row.id, dict(transformed.unmapped_fields), proposal.overall_confidence),
            batch_id=raw_row.batch_id,
        )

    def derive_events(self, container_number: str, values: Dict[str, Any]) -> List[LifecycleEvent]:
        """Lifecycle events implied by stage dates and a recognised status code."""
        events: List[LifecycleEvent] = []
        for canonical, stage in self._stage_fields.items():
            if values.get(canonical) is not None:
                events.append(LifecycleEvent(
                    container_number, stage, canonical, values[canonical], STATUS_CODES.get(stage, "")
                ))
        status = values.get("currentStatus")
        if status in STATUS_CODES:
            events.append(LifecycleEvent(
                container_number, status, "currentStatus", None, STATUS_CODES[status]
            ))
        return events

    # ------------------------------------------------------------------ #
    # Writes
    # ------------------------------------------------------------------ #

    def persist_batch(
        self, batch_id: str, raw_rows: Sequence[RawRow], proposal: MappingProposal
    ) -> PersistReport:
        """Persist every row of a batch, isolating per-row failures.

        Failures from a previous run of the same batch are replaced.
        """
        if not proposal.approved:
            raise PersistenceError(f"Batch {batch_id!r}: mapping proposal is not approved")

        report = PersistReport(batch_id=batch_id)
        with session_scope(self._sessions) as session:
            session.execute(delete(RowFailureRow).where(RowFailureRow.batch_id == batch_id))

        for raw_row in raw_rows:
            try:
                key, events = self.persist_row(raw_row, proposal)
            except (PersistenceError, SQLAlchemyError) as exc:
                failure = RowFailure(raw_row.id, raw_row.row_index, str(exc))
                report.failures.append(failure)
                self._record_failure(batch_id, failure)
                logger.warning("Row %d of %r not persisted: %s", raw_row.row_index, batch_id, exc)
                continue
            if key not in report.persisted:
                report.persisted.append(key)
            report.events_written += events

        logger.info(
            "Persisted batch %r — records=%d, failed rows=%d, events=%d",
            batch_id, len(report.persisted), len(report.failures), report.events_written,
        )
        return report

    def persist_row(self, raw_row: RawRow, proposal: MappingProposal) -> tuple:
        """Upsert the record for one raw row.  Returns ``(container_number, events)``.

        Only non-null values are written, so fields this row leaves empty keep
        whatever an earlier writer stored.  The same holds per header for
        ``unmapped_fields``.  Lineage always points at this row.
        """
        transformed = self.transform(raw_row, proposal)
        key = transformed.natural_key
        if not key:
            raise PersistenceError(f"Row {raw_row.row_index} has no {NATURAL_KEY}")

        with session_scope(self._sessions) as session:
            record = session.get(ContainerRecordRow, key, with_for_update=True)
            if record is None:
                record = ContainerRecordRow(container_number=key)
                session.add(record)

            for canonical, value in transformed.values.items():
                if canonical != NATURAL_KEY:
                    setattr(record, column_for(canonical), value)

            record.raw_row_id = raw_row.id
            record.batch_id = raw_row.batch_id
            # Merge per header so values preserved by earlier writers survive
            preserved = dict(record.unmapped_fields or {})
            preserved.update({h: v.to_dict() for h, v in transformed.unmapped_fields.items()})
            record.unmapped_fields = preserved
            record.mapping_confidence = proposal.overall_confidence
            record.updated_at = utcnow()
            session.flush()

            events = self._upsert_events(session, key, _values_of(record), raw_row.batch_id)
        return key, events

    def apply_corrections(self, container_number: str, findings: Sequence[AuditFinding]) -> int:
        """Write safe ``proposed_correction`` values.  Re-applying is a no-op."""
        applied = 0
        with session_scope(self._sessions) as session:
            record = session.get(ContainerRecordRow, container_number, with_for_update=True)
            if record is None:
                raise NotFoundError(f"Container record {container_number!r} not found")
            for finding in findings:
                if (
                    finding.canonical_field is None
                    or finding.canonical_field == NATURAL_KEY
                    or finding.proposed_correction is None
                    or not finding.correction_safe
                ):
                    continue
                setattr(record, column_for(finding.canonical_field), finding.proposed_correction)
                applied += 1
            if applied:
                record.updated_at = utcnow()
                session.flush()
                self._upsert_events(session, container_number, _values_of(record), record.batch_id)

        if applied:
            logger.info("Applied %d corrections to %r", applied, container_number)
        return applied

    def record_audit(self, container_number: str, result: AuditResult) -> None:
        """Stamp the record with a summary of its most recent audit."""
        with session_scope(self._sessions) as session:
            record = session.get(ContainerRecordRow, container_number)
            if record is None:
                raise NotFoundError(f"Container record {container_number!r} not found")
            record.last_audit = dict(result.summary(), audited_at=utcnow().isoformat())

    def record_enrichment(self, container_number: str, result: EnrichmentResult) -> None:
        """Store derived values beside the record.  Canonical columns are untouched."""
        with session_scope(self._sessions) as session:
            record = session.get(ContainerRecordRow, container_number)
            if record is None:
                raise NotFoundError(f"Container record {container_number!r} not found")
            record.derived = dict(result.to_dict(), enriched_at=utcnow().isoformat())

    # ------------------------------------------------------------------ #
    # Reads
    # ------------------------------------------------------------------ #

    def load_record(self, container_number: str) -> CanonicalRecord:
        with session_scope(self._sessions) as session:
            record = session.get(ContainerRecordRow, container_number)
            if record is None:
                raise NotFoundError(f"Container record {container_number!r} not found")
            return _to_record(record)

    def events_for(self, container_number: str) -> List[LifecycleEvent]:
        with session_scope(self._sessions) as session:
            rows = session.scalars(
                select(ContainerEventRow)
                .where(ContainerEventRow.container_number == container_number)
                .order_by(ContainerEventRow.id)
            ).all()
            return [
                LifecycleEvent(r.container_number, r.stage_code, r.source_field, r.event_date, r.description)
                for r in rows
            ]

    def failures_for(self, batch_id: str) -> List[RowFailure]:
        with session_scope(self._sessions) as session:
            rows = session.scalars(
                select(RowFailureRow).where(RowFailureRow.batch_id == batch_id).order_by(RowFailureRow.row_index)
            ).all()
            return [RowFailure(r.raw_row_id, r.row_index, r.error) for r in rows]

    # ------------------------------------------------------------------ #
    # Internals
    # ------------------------------------------------------------------ #

    def _upsert_events(
        self, session: Session, container_number: str, values: Dict[str, Any], batch_id: str
    ) -> int:
        events = self.derive_events(container_number, values)
        for event in events:
            row = session.scalar(
                select(ContainerEventRow).where(
                    ContainerEventRow.container_number == event.container_number,
                    ContainerEventRow.stage_code == event.stage_code,
                    ContainerEventRow.source_field == event.source_field,
                )
            )
            if row is None:
                row = ContainerEventRow(
                    container_number=event.container_number,
                    stage_code=event.stage_code,
                    source_field=event.source_field,
                )
                session.add(row)
            row.event_date = event.event_date
            row.description = event.description
            row.batch_id = batch_id
        return len(events)

    def _record_failure(self, batch_id: str, failure: RowFailure) -> None:
        with session_scope(self._sessions) as session:
            session.add(RowFailureRow(
                batch_id=batch_id,
                raw_row_id=failure.raw_row_id,
                row_index=failure.row_index,
                error=failure.error,
            ))


def _values_of(record: ContainerRecordRow) -> Dict[str, Any]:
    values: Dict[str, Any] = {}
    for definition in FIELD_CATALOG:
        value = getattr(record, column_for(definition.name))
        if value is not None:
            values[definition.name] = value
    return values


def _to_record(record: ContainerRecordRow) -> CanonicalRecord:
    return CanonicalRecord(
        container_number=record.container_number,
        values=_values_of(record),
        lineage=Lineage(
            raw_row_id=record.raw_row_id,
            unmapped_fields={h: RawValue.from_dict(v) for h, v in (record.unmapped_fields or {}).items()},
            mapping_confidence=record.mapping_confidence,
        ),
        batch_id=record.batch_id,
        last_audit=record.last_audit,
        derived=record.derived,
    )
