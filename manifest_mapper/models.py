"""
Typed data structures carried through the import pipeline.

Raw cell values are resolved once, at capture time, into a small tagged
union (``RawValue``) so that every later stage works against a closed set
of kinds instead of whatever the spreadsheet reader happened to return.
Everything else here is a plain dataclass with ``to_dict`` for the API and
for snapshotting into JSON columns.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Optional


def jsonable(value: Any) -> Any:
    """Render dates as ISO strings; leave everything else untouched."""
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    return value


# ---------------------------------------------------------------------------
# Raw values
# ---------------------------------------------------------------------------

class RawKind(str, Enum):
    TEXT = "text"
    NUMBER = "number"
    DATE = "date"
    NULL = "null"


@dataclass(frozen=True)
class RawValue:
    """A spreadsheet cell as it was ingested.

    ``value`` is a ``str`` for TEXT, ``int``/``float`` for NUMBER, a
    ``date``/``datetime`` for DATE and ``None`` for NULL.  Text is kept
    verbatim, including surrounding whitespace.
    """

    kind: RawKind
    value: Any = None

    @classmethod
    def null(cls) -> "RawValue":
        return cls(RawKind.NULL, None)

    @classmethod
    def from_cell(cls, cell: Any) -> "RawValue":
        """Classify an arbitrary cell value."""
        if isinstance(cell, RawValue):
            return cell
        if cell is None:
            return cls.null()
        if isinstance(cell, bool):
            return cls(RawKind.TEXT, str(cell))
        if isinstance(cell, (int, float)):
            if isinstance(cell, float) and math.isnan(cell):
                return cls.null()
            return cls(RawKind.NUMBER, cell)
        if isinstance(cell, (datetime, date)):
            return cls(RawKind.DATE, cell)
        return cls(RawKind.TEXT, str(cell))

    @property
    def is_empty(self) -> bool:
        if self.kind is RawKind.NULL:
            return True
        return self.kind is RawKind.TEXT and not self.value.strip()

    def as_text(self) -> str:
        """Human-readable rendering used for samples and logs."""
        if self.kind is RawKind.NULL:
            return ""
        if self.kind is RawKind.DATE:
            return self.value.isoformat()
        if self.kind is RawKind.NUMBER and float(self.value).is_integer():
            return str(int(self.value))
        return str(self.value)

    def to_dict(self) -> Dict[str, Any]:
        if self.kind is RawKind.DATE:
            return {
                "kind": self.kind.value,
                "value": self.value.isoformat(),
                "datetime": isinstance(self.value, datetime),
            }
        return {"kind": self.kind.value, "value": self.value}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RawValue":
        kind = RawKind(data["kind"])
        value = data.get("value")
        if kind is RawKind.DATE:
            if data.get("datetime"):
                value = datetime.fromisoformat(value)
            else:
                value = date.fromisoformat(value)
        return cls(kind, value)


@dataclass
class RawRow:
    """One captured source row.  Never mutated once stored."""

    id: int
    batch_id: str
    row_index: int
    original_headers: List[str]
    data: Dict[str, RawValue]

    def value(self, header: str) -> RawValue:
        return self.data.get(header, RawValue.null())

    def non_empty_headers(self) -> List[str]:
        return [h for h in self.original_headers if not self.value(h).is_empty]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "batch_id": self.batch_id,
            "row_index": self.row_index,
            "original_headers": list(self.original_headers),
            "data": {h: v.to_dict() for h, v in self.data.items()},
        }


# ---------------------------------------------------------------------------
# Dictionary
# ---------------------------------------------------------------------------

@dataclass
class DictionaryEntry:
    source_header: str
    canonical_field: str
    confidence: float
    times_used: int = 0
    created_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None
    version: int = 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source_header": self.source_header,
            "canonical_field": self.canonical_field,
            "confidence": round(self.confidence, 4),
            "times_used": self.times_used,
            "created_at": jsonable(self.created_at),
            "last_used_at": jsonable(self.last_used_at),
        }


class UpsertAction(str, Enum):
    INSERTED = "inserted"
    REFRESHED = "refreshed"
    REPLACED = "replaced"
    REJECTED = "rejected"


@dataclass
class UpsertOutcome:
    """Result of ``HeaderDictionary.upsert``."""

    action: UpsertAction
    entry: Optional[DictionaryEntry]
    reason: str = ""

    @property
    def accepted(self) -> bool:
        return self.action is not UpsertAction.REJECTED


# ---------------------------------------------------------------------------
# Mapping proposal
# ---------------------------------------------------------------------------

class MappingMethod(str, Enum):
    DICTIONARY = "dictionary"
    INFERENCE = "inference"
    MANUAL = "manual"


@dataclass
class FieldMapping:
    source_header: str
    confidence: float
    method: MappingMethod
    reasoning: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source_header": self.source_header,
            "confidence": round(self.confidence, 4),
            "method": self.method.value,
            "reasoning": self.reasoning,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FieldMapping":
        return cls(
            source_header=data["source_header"],
            confidence=float(data["confidence"]),
            method=MappingMethod(data.get("method", MappingMethod.MANUAL.value)),
            reasoning=data.get("reasoning", ""),
        )


@dataclass
class UnmappedSource:
    """A header left out of the mapping, with the best (rejected) guess."""

    header: str
    confidence: Optional[float] = None
    candidate: Optional[str] = None
    reason: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "header": self.header,
            "confidence": None if self.confidence is None else round(self.confidence, 4),
            "candidate": self.candidate,
            "reason": self.reason,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UnmappedSource":
        return cls(
            header=data["header"],
            confidence=data.get("confidence"),
            candidate=data.get("candidate"),
            reason=data.get("reason", ""),
        )


@dataclass
class MappingProposal:
    """Per-batch mapping of canonical fields to source headers."""

    headers: List[str]
    forwarder_guess: str = "Unknown"
    field_mappings: Dict[str, FieldMapping] = field(default_factory=dict)
    unmapped_source_fields: Dict[str, UnmappedSource] = field(default_factory=dict)
    missing_schema_fields: List[str] = field(default_factory=list)
    overall_confidence: float = 0.0
    degraded: bool = False
    approved: bool = False

    def header_for(self, canonical_field: str) -> Optional[str]:
        mapping = self.field_mappings.get(canonical_field)
        return mapping.source_header if mapping else None

    def field_by_header(self) -> Dict[str, str]:
        """``{source header: canonical field}`` for accepted mappings."""
        return {m.source_header: f for f, m in self.field_mappings.items()}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "headers": list(self.headers),
            "forwarder_guess": self.forwarder_guess,
            "field_mappings": {f: m.to_dict() for f, m in self.field_mappings.items()},
            "unmapped_source_fields": {
                h: u.to_dict() for h, u in self.unmapped_source_fields.items()
            },
            "missing_schema_fields": list(self.missing_schema_fields),
            "overall_confidence": round(self.overall_confidence, 4),
            "degraded": self.degraded,
            "approved": self.approved,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MappingProposal":
        return cls(
            headers=list(data.get("headers", [])),
            forwarder_guess=data.get("forwarder_guess", "Unknown"),
            field_mappings={
                f: FieldMapping.from_dict(m)
                for f, m in data.get("field_mappings", {}).items()
            },
            unmapped_source_fields={
                h: UnmappedSource.from_dict(u)
                for h, u in data.get("unmapped_source_fields", {}).items()
            },
            missing_schema_fields=list(data.get("missing_schema_fields", [])),
            overall_confidence=float(data.get("overall_confidence", 0.0)),
            degraded=bool(data.get("degraded", False)),
            approved=bool(data.get("approved", False)),
        )


# ---------------------------------------------------------------------------
# Canonical records
# ---------------------------------------------------------------------------

@dataclass
class Lineage:
    """Link from a canonical record back to the raw row that last wrote it."""

    raw_row_id: int
    unmapped_fields: Dict[str, RawValue] = field(default_factory=dict)
    mapping_confidence: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "raw_row_id": self.raw_row_id,
            "unmapped_fields": {h: v.to_dict() for h, v in self.unmapped_fields.items()},
            "mapping_confidence": round(self.mapping_confidence, 4),
        }


@dataclass
class CanonicalRecord:
    container_number: str
    values: Dict[str, Any]
    lineage: Lineage
    batch_id: Optional[str] = None
    last_audit: Optional[Dict[str, Any]] = None
    derived: Optional[Dict[str, Any]] = None

    def get(self, canonical_field: str) -> Any:
        return self.values.get(canonical_field)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "container_number": self.container_number,
            "values": {k: jsonable(v) for k, v in self.values.items()},
            "lineage": self.lineage.to_dict(),
            "batch_id": self.batch_id,
            "last_audit": self.last_audit,
            "derived": self.derived,
        }


@dataclass
class LifecycleEvent:
    container_number: str
    stage_code: str
    source_field: str
    event_date: Optional[date] = None
    description: str = ""

    def key(self) -> tuple:
        return (self.container_number, self.stage_code, self.source_field)


@dataclass
class RowFailure:
    raw_row_id: int
    row_index: int
    error: str

    def to_dict(self) -> Dict[str, Any]:
        return {"raw_row_id": self.raw_row_id, "row_index": self.row_index, "error": self.error}


@dataclass
class PersistReport:
    batch_id: str
    persisted: List[str] = field(default_factory=list)
    failures: List[RowFailure] = field(default_factory=list)
    events_written: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "batch_id": self.batch_id,
            "persisted": len(self.persisted),
            "failed": len(self.failures),
            "events_written": self.events_written,
        }


# ---------------------------------------------------------------------------
# Audit
# ---------------------------------------------------------------------------

class FindingClass(str, Enum):
    VERIFIED = "VERIFIED"
    WRONG = "WRONG"
    LOST = "LOST"
    UNMAPPED = "UNMAPPED"


class Recommendation(str, Enum):
    PASS = "PASS"
    AUTO_CORRECT = "AUTO_CORRECT"
    MANUAL_REVIEW = "MANUAL_REVIEW"


@dataclass
class AuditFinding:
    """Outcome of comparing one raw cell with what storage holds for it.

    ``canonical_field`` is ``None`` for headers that had no accepted mapping.
    ``correction_safe`` is True only when ``proposed_correction`` was derived
    from an unambiguous coercion.
    """

    classification: FindingClass
    source_header: str
    raw_value: RawValue
    canonical_field: Optional[str] = None
    persisted_value: Any = None
    proposed_correction: Any = None
    correction_safe: bool = False
    note: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "classification": self.classification.value,
            "source_header": self.source_header,
            "canonical_field": self.canonical_field,
            "raw_value": self.raw_value.to_dict(),
            "persisted_value": jsonable(self.persisted_value),
            "proposed_correction": jsonable(self.proposed_correction),
            "correction_safe": self.correction_safe,
            "note": self.note,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AuditFinding":
        """Rebuild a stored finding.  Stored values come back in their JSON form."""
        return cls(
            classification=FindingClass(data["classification"]),
            source_header=data["source_header"],
            raw_value=RawValue.from_dict(data["raw_value"]),
            canonical_field=data.get("canonical_field"),
            persisted_value=data.get("persisted_value"),
            proposed_correction=data.get("proposed_correction"),
            correction_safe=bool(data.get("correction_safe", False)),
            note=data.get("note", ""),
        )


@dataclass
class AuditResult:
    container_number: str
    raw_row_id: int
    verified: List[AuditFinding] = field(default_factory=list)
    discrepancies: List[AuditFinding] = field(default_factory=list)
    unmapped: List[AuditFinding] = field(default_factory=list)
    capture_rate: float = 1.0
    recommendation: Recommendation = Recommendation.PASS

    @property
    def lost(self) -> List[AuditFinding]:
        return [f for f in self.discrepancies if f.classification is FindingClass.LOST]

    @property
    def wrong(self) -> List[AuditFinding]:
        return [f for f in self.discrepancies if f.classification is FindingClass.WRONG]

    @property
    def blocking(self) -> bool:
        """A LOST value with nothing to restore it from needs a human."""
        return any(f.proposed_correction is None for f in self.lost)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "container_number": self.container_number,
            "raw_row_id": self.raw_row_id,
            "verified": [f.to_dict() for f in self.verified],
            "discrepancies": [f.to_dict() for f in self.discrepancies],
            "unmapped": [f.to_dict() for f in self.unmapped],
            "capture_rate": round(self.capture_rate, 4),
            "recommendation": self.recommendation.value,
            "blocking": self.blocking,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AuditResult":
        return cls(
            container_number=data["container_number"],
            raw_row_id=data["raw_row_id"],
            verified=[AuditFinding.from_dict(f) for f in data.get("verified", [])],
            discrepancies=[AuditFinding.from_dict(f) for f in data.get("discrepancies", [])],
            unmapped=[AuditFinding.from_dict(f) for f in data.get("unmapped", [])],
            capture_rate=float(data.get("capture_rate", 1.0)),
            recommendation=Recommendation(data.get("recommendation", "PASS")),
        )

    def summary(self) -> Dict[str, Any]:
        return {
            "capture_rate": round(self.capture_rate, 4),
            "recommendation": self.recommendation.value,
            "verified": len(self.verified),
            "wrong": len(self.wrong),
            "lost": len(self.lost),
            "unmapped": len(self.unmapped),
        }


# ---------------------------------------------------------------------------
# Enrichment
# ---------------------------------------------------------------------------

class DerivedConfidence(str, Enum):
    HIGH = "HIGH"
    MED = "MED"
    LOW = "LOW"


@dataclass
class DerivedField:
    """A value inferred after import.  Never written to a canonical column."""

    value: Any
    confidence: DerivedConfidence
    source: str
    method: str
    rationale: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "value": jsonable(self.value),
            "confidence": self.confidence.value,
            "source": self.source,
            "method": self.method,
            "rationale": self.rationale,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DerivedField":
        return cls(
            value=data.get("value"),
            confidence=DerivedConfidence(data.get("confidence", "LOW")),
            source=data.get("source", ""),
            method=data.get("method", ""),
            rationale=data.get("rationale", ""),
        )


@dataclass
class EnrichmentResult:
    container_number: str
    fields: Dict[str, DerivedField] = field(default_factory=dict)

    @property
    def status_inference(self) -> Optional[str]:
        derived = self.fields.get("statusInference")
        return derived.value if derived else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "fields": {name: f.to_dict() for name, f in self.fields.items()},
            "status_inference": self.status_inference,
        }


# ---------------------------------------------------------------------------
# Learning
# ---------------------------------------------------------------------------

class ImprovementAction(str, Enum):
    DICTIONARY_ADD = "DICTIONARY_ADD"
    DICTIONARY_SKIP = "DICTIONARY_SKIP"


@dataclass
class ImprovementRecord:
    unmapped_header: str
    candidate_canonical_field: Optional[str]
    confidence: float
    sample_values: List[str]
    frequency: int
    action: ImprovementAction
    reason: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "unmapped_header": self.unmapped_header,
            "candidate_canonical_field": self.candidate_canonical_field,
            "confidence": round(self.confidence, 4),
            "sample_values": list(self.sample_values),
            "frequency": self.frequency,
            "action": self.action.value,
            "reason": self.reason,
        }


@dataclass
class LearnerReport:
    batch_id: str
    records: List[ImprovementRecord] = field(default_factory=list)

    @property
    def added(self) -> int:
        return sum(1 for r in self.records if r.action is ImprovementAction.DICTIONARY_ADD)

    @property
    def skipped(self) -> int:
        return sum(1 for r in self.records if r.action is ImprovementAction.DICTIONARY_SKIP)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "batch_id": self.batch_id,
            "added": self.added,
            "skipped": self.skipped,
            "records": [r.to_dict() for r in self.records],
        }


# ---------------------------------------------------------------------------
# Orchestration
# ---------------------------------------------------------------------------

class PipelineState(str, Enum):
    ARCHIVIST = "ARCHIVIST"
    TRANSLATOR = "TRANSLATOR"
    TRANSLATOR_REVIEW = "TRANSLATOR_REVIEW"
    AUDITOR = "AUDITOR"
    IMPORT = "IMPORT"
    IMPROVEMENT = "IMPROVEMENT"
    COMPLETE = "COMPLETE"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (PipelineState.COMPLETE, PipelineState.FAILED)


class StageStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class StageRun:
    """One attempt at running a stage, kept for operator inspection."""

    batch_id: str
    stage: str
    status: StageStatus
    started_at: datetime
    finished_at: Optional[datetime] = None
    input_summary: Dict[str, Any] = field(default_factory=dict)
    output_summary: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    rerun: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "batch_id": self.batch_id,
            "stage": self.stage,
            "status": self.status.value,
            "timestamp": jsonable(self.started_at),
            "finished_at": jsonable(self.finished_at),
            "input_summary": self.input_summary,
            "output_summary": self.output_summary,
            "error": self.error,
            "rerun": self.rerun,
        }


@dataclass
class BatchStatus:
    batch_id: str
    state: PipelineState
    stage_status: StageStatus
    last_error: Optional[str] = None
    requires_confirmation: bool = False
    stopped: bool = False
    review_required: bool = False
    proposal: Optional[MappingProposal] = None
    row_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "batch_id": self.batch_id,
            "state": self.state.value,
            "stage_status": self.stage_status.value,
            "last_error": self.last_error,
            "requires_confirmation": self.requires_confirmation,
            "stopped": self.stopped,
            "review_required": self.review_required,
            "row_count": self.row_count,
            "proposal": self.proposal.to_dict() if self.proposal else None,
        }
