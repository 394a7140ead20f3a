"""
Auditor.

Re-derives, field by field, what a canonical record *should* hold from its
originating raw row, using the same coercion rules the persister applied,
and classifies every non-empty raw cell:

VERIFIED  the stored value equals the expected coerced value
WRONG     a different value is stored; the expected value is proposed as
          a correction (safe only if the coercion was unambiguous)
LOST      the mapping existed, the raw cell had content, nothing is stored
UNMAPPED  no accepted mapping (or an uncoercible value) and the raw value
          sits verbatim in ``unmapped_fields``

An unmapped cell that is *not* in ``unmapped_fields`` is also LOST: it was
dropped, which the zero-loss rule forbids.
"""

from __future__ import annotations

from typing import Optional

from manifest_mapper.config import AuditConfig
from manifest_mapper.logging_setup import get_logger
from manifest_mapper.models import (
    AuditFinding,
    AuditResult,
    CanonicalRecord,
    FindingClass,
    MappingProposal,
    RawRow,
    Recommendation,
)
from manifest_mapper.normalizer import ValueCoercer, values_equal
from manifest_mapper.schema import field_type_of

logger = get_logger("auditor")


class Auditor:
    """Compare persisted records with their raw rows.

    Parameters
    ----------
    config:
        Capture-rate threshold for PASS.
    coercer:
        Must apply the same rules as the persister's coercer.
    """

    def __init__(
        self,
        config: Optional[AuditConfig] = None,
        coercer: Optional[ValueCoercer] = None,
    ) -> None:
        self._config = config or AuditConfig()
        self._coercer = coercer or ValueCoercer()

    def audit(
        self, record: CanonicalRecord, raw_row: RawRow, proposal: MappingProposal
    ) -> AuditResult:
        """Audit *record* against *raw_row* under the mapping actually used."""
        by_header = proposal.field_by_header()
        preserved = record.lineage.unmapped_fields
        result = AuditResult(container_number=record.container_number, raw_row_id=raw_row.id)

        for header in raw_row.original_headers:
            raw = raw_row.value(header)
            if raw.is_empty:
                continue

            canonical = by_header.get(header)
            if canonical is None:
                self._classify_unmapped(result, header, raw, preserved, "no accepted mapping")
                continue

            coerced = self._coercer.coerce(raw, field_type_of(canonical))
            if not coerced.ok:
                self._classify_unmapped(
                    result, header, raw, preserved, "value could not be coerced", canonical
                )
                continue

            expected = coerced.value
            persisted = record.get(canonical)
            if persisted is None:
                result.discrepancies.append(AuditFinding(
                    FindingClass.LOST, header, raw, canonical,
                    note="mapped value never reached storage",
                ))
            elif values_equal(persisted, expected):
                result.verified.append(AuditFinding(
                    FindingClass.VERIFIED, header, raw, canonical, persisted_value=persisted,
                ))
            else:
                result.discrepancies.append(AuditFinding(
                    FindingClass.WRONG, header, raw, canonical,
                    persisted_value=persisted,
                    proposed_correction=expected,
                    correction_safe=not coerced.ambiguous,
                    note="; ".join(coerced.warnings),
                ))

        checked = len(result.verified) + len(result.discrepancies)
        result.capture_rate = len(result.verified) / checked if checked else 1.0
        result.recommendation = self._recommend(result)

        logger.info(
            "Audit %r — verified=%d, wrong=%d, lost=%d, unmapped=%d, capture=%.3f, %s",
            record.container_number,
            len(result.verified), len(result.wrong), len(result.lost), len(result.unmapped),
            result.capture_rate, result.recommendation.value,
        )
        return result

    # ------------------------------------------------------------------ #
    # Internals
    # ------------------------------------------------------------------ #

    @staticmethod
    def _classify_unmapped(result, header, raw, preserved, reason, canonical=None) -> None:
        if header in preserved:
            result.unmapped.append(AuditFinding(
                FindingClass.UNMAPPED, header, raw, canonical,
                persisted_value=preserved[header].as_text(), note=reason,
            ))
        else:
            result.discrepancies.append(AuditFinding(
                FindingClass.LOST, header, raw, canonical,
                note=f"{reason}; value missing from unmapped_fields",
            ))

    def _recommend(self, result: AuditResult) -> Recommendation:
        if result.capture_rate >= self._config.pass_capture_rate and not result.lost:
            return Recommendation.PASS
        if result.discrepancies and all(
            f.classification is FindingClass.WRONG
            and f.proposed_correction is not None
            and f.correction_safe
            for f in result.discrepancies
        ):
            return Recommendation.AUTO_CORRECT
        return Recommendation.MANUAL_REVIEW
