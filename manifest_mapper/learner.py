"""
Improvement Learner.

Closes the feedback loop: headers the auditor reported as UNMAPPED are
aggregated across the batch (frequency plus a handful of sample values),
sent to the inference capability in one batched call, and the confident
candidates are proposed to the dictionary under its normal upsert policy.

Learning is deliberately *not* retroactive.  The batch that produced the
findings keeps its mapping; new entries only affect later batches.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from sqlalchemy import delete, select
from sqlalchemy.orm import sessionmaker

from manifest_mapper.config import LearningConfig
from manifest_mapper.database import session_scope
from manifest_mapper.dictionary import HeaderDictionary
from manifest_mapper.exceptions import InferenceUnavailableError
from manifest_mapper.inference import InferenceCapability
from manifest_mapper.logging_setup import get_logger
from manifest_mapper.models import (
    AuditResult,
    ImprovementAction,
    ImprovementRecord,
    LearnerReport,
    RawValue,
)
from manifest_mapper.schema import CANONICAL_FIELDS
from manifest_mapper.tables import ImprovementRecordRow

logger = get_logger("learner")


@dataclass
class HeaderStats:
    """UNMAPPED occurrences of one header across a batch."""

    header: str
    frequency: int = 0
    samples: List[RawValue] = field(default_factory=list)

    def sample_texts(self) -> List[str]:
        return [s.as_text() for s in self.samples]


class ImprovementLearner:
    """Turn unmapped headers into dictionary entries for future batches."""

    def __init__(
        self,
        session_factory: sessionmaker,
        dictionary: HeaderDictionary,
        inference: Optional[InferenceCapability],
        config: Optional[LearningConfig] = None,
        catalog: Optional[Iterable[str]] = None,
    ) -> None:
        self._sessions = session_factory
        self._dictionary = dictionary
        self._inference = inference
        self._config = config or LearningConfig()
        self._catalog = frozenset(catalog) if catalog is not None else CANONICAL_FIELDS

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #

    def aggregate(self, results: Iterable[AuditResult]) -> Dict[str, HeaderStats]:
        """Group UNMAPPED findings without a canonical field by header."""
        stats: Dict[str, HeaderStats] = {}
        for result in results:
            for finding in result.unmapped:
                if finding.canonical_field is not None:
                    continue
                entry = stats.setdefault(finding.source_header, HeaderStats(finding.source_header))
                entry.frequency += 1
                texts = entry.sample_texts()
                if (
                    len(entry.samples) < self._config.max_sample_values
                    and finding.raw_value.as_text() not in texts
                ):
                    entry.samples.append(finding.raw_value)
        return stats

    def learn(self, batch_id: str, results: Iterable[AuditResult]) -> LearnerReport:
        """Propose dictionary entries from *results* and record the outcome."""
        stats = self.aggregate(results)
        report = LearnerReport(batch_id=batch_id)

        eligible = [s for s in stats.values() if s.frequency >= self._config.min_frequency]
        for s in stats.values():
            if s.frequency < self._config.min_frequency:
                report.records.append(self._skip(s, None, 0.0, "below minimum frequency"))

        candidates = {}
        available = True
        if eligible:
            try:
                candidates = self._infer(eligible)
            except Exception as exc:
                logger.warning(
                    "Learner: inference unavailable (%s: %s); nothing learned", type(exc).__name__, exc
                )
                available = False

        for s in eligible:
            if not available:
                report.records.append(self._skip(s, None, 0.0, "inference unavailable"))
                continue
            candidate = candidates.get(s.header)
            if candidate is None or candidate.canonical_field not in self._catalog:
                report.records.append(self._skip(s, None, 0.0, "no candidate"))
                continue
            confidence = float(candidate.confidence)
            if confidence < self._config.min_confidence:
                report.records.append(self._skip(
                    s, candidate.canonical_field, confidence,
                    f"confidence below {self._config.min_confidence:.2f}",
                ))
                continue

            outcome = self._dictionary.upsert(s.header, candidate.canonical_field, confidence)
            if outcome.accepted:
                report.records.append(ImprovementRecord(
                    s.header, candidate.canonical_field, confidence, s.sample_texts(),
                    s.frequency, ImprovementAction.DICTIONARY_ADD, outcome.action.value,
                ))
            else:
                report.records.append(self._skip(
                    s, candidate.canonical_field, confidence, outcome.reason
                ))

        self._store(batch_id, report)
        logger.info(
            "Learner %r — synonyms added=%d, skipped=%d", batch_id, report.added, report.skipped
        )
        return report

    def records_for(self, batch_id: str) -> List[ImprovementRecord]:
        with session_scope(self._sessions) as session:
            rows = session.scalars(
                select(ImprovementRecordRow)
                .where(ImprovementRecordRow.batch_id == batch_id)
                .order_by(ImprovementRecordRow.id)
            ).all()
            return [
                ImprovementRecord(
                    r.unmapped_header, r.candidate_canonical_field, r.confidence,
                    list(r.sample_values), r.frequency, ImprovementAction(r.action), r.reason,
                )
                for r in rows
            ]

    # ------------------------------------------------------------------ #
    # Internals
    # ------------------------------------------------------------------ #

    def _infer(self, eligible: List[HeaderStats]):
        if self._inference is None:
            raise InferenceUnavailableError("no inference capability configured")
        headers = [s.header for s in eligible]
        depth = max(len(s.samples) for s in eligible)
        sample_rows = [
            {s.header: s.samples[i] for s in eligible if i < len(s.samples)}
            for i in range(depth)
        ]
        return dict(self._inference.infer(headers, sample_rows, self._catalog) or {})

    @staticmethod
    def _skip(stats: HeaderStats, candidate: Optional[str], confidence: float, reason: str) -> ImprovementRecord:
        logger.info("Learner skip %r: %s", stats.header, reason)
        return ImprovementRecord(
            stats.header, candidate, confidence, stats.sample_texts(),
            stats.frequency, ImprovementAction.DICTIONARY_SKIP, reason,
        )

    def _store(self, batch_id: str, report: LearnerReport) -> None:
        """Replace the batch's improvement records with this run's."""
        with session_scope(self._sessions) as session:
            session.execute(
                delete(ImprovementRecordRow).where(ImprovementRecordRow.batch_id == batch_id)
            )
            for record in report.records:
                session.add(ImprovementRecordRow(
                    batch_id=batch_id,
                    unmapped_header=record.unmapped_header,
                    candidate_canonical_field=record.candidate_canonical_field,
                    confidence=record.confidence,
                    sample_values=list(record.sample_values),
                    frequency=record.frequency,
                    action=record.action.value,
                    reason=record.reason,
                ))
