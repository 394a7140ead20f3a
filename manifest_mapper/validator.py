"""
Mapping Validation Layer.

Checks an operator-edited mapping (the payload of ``confirm``) before the
pipeline accepts it in place of the translator's proposal.

Checks performed
----------------
1. **Known fields**: every target must be a canonical field.
2. **Known headers**: every source header must exist in the batch.
3. **One column, one field**: a header may feed only one canonical field.
4. **Natural key**: the record key must be mapped, or nothing can be stored.
5. **Confidence range**: confidences lie within ``[0, 1]``; values below the
   acceptance threshold only produce a warning because a human chose them.
"""

from __future__ import annotations

from typing import Dict, Iterable, List, Optional

from manifest_mapper.config import MappingConfig
from manifest_mapper.logging_setup import get_logger
from manifest_mapper.models import FieldMapping
from manifest_mapper.schema import CANONICAL_FIELDS, NATURAL_KEY

logger = get_logger("validator")


class ValidationReport:
    """Accumulates errors and warnings during a validation pass."""

    def __init__(self) -> None:
        self.errors: list[str] = []
        self.warnings: list[str] = []

    @property
    def is_valid(self) -> bool:
        return len(self.errors) == 0

    def add_error(self, msg: str) -> None:
        self.errors.append(msg)
        logger.error("Validation ERROR: %s", msg)

    def add_warning(self, msg: str) -> None:
        self.warnings.append(msg)
        logger.warning("Validation WARNING: %s", msg)


class MappingValidator:
    """Validates ``{canonical field: FieldMapping}`` against a batch."""

    def __init__(
        self,
        config: Optional[MappingConfig] = None,
        catalog: Optional[Iterable[str]] = None,
    ) -> None:
        self._config = config or MappingConfig()
        self._catalog = frozenset(catalog) if catalog is not None else CANONICAL_FIELDS

    def validate(
        self, field_mappings: Dict[str, FieldMapping], headers: List[str]
    ) -> ValidationReport:
        report = ValidationReport()
        self._check_fields(field_mappings, report)
        self._check_headers(field_mappings, headers, report)
        self._check_natural_key(field_mappings, report)
        self._check_confidence(field_mappings, report)
        return report

    # ------------------------------------------------------------------ #
    # Individual checks
    # ------------------------------------------------------------------ #

    def _check_fields(self, field_mappings: Dict[str, FieldMapping], report: ValidationReport) -> None:
        for canonical in field_mappings:
            if canonical not in self._catalog:
                report.add_error(f"Unknown canonical field '{canonical}'")

    def _check_headers(
        self,
        field_mappings: Dict[str, FieldMapping],
        headers: List[str],
        report: ValidationReport,
    ) -> None:
        known = set(headers)
        seen: dict[str, str] = {}  # header -> first canonical field
        for canonical, mapping in field_mappings.items():
            header = mapping.source_header
            if header not in known:
                report.add_error(f"'{canonical}' maps from '{header}', which is not in the batch")
            if header in seen:
                report.add_error(
                    f"Header '{header}' mapped to both '{seen[header]}' and '{canonical}'"
                )
            else:
                seen[header] = canonical

    def _check_natural_key(
        self, field_mappings: Dict[str, FieldMapping], report: ValidationReport
    ) -> None:
        if NATURAL_KEY in self._catalog and NATURAL_KEY not in field_mappings:
            report.add_error(f"Natural key '{NATURAL_KEY}' is not mapped")

    def _check_confidence(
        self, field_mappings: Dict[str, FieldMapping], report: ValidationReport
    ) -> None:
        for canonical, mapping in field_mappings.items():
            if not 0.0 <= mapping.confidence <= 1.0:
                report.add_error(
                    f"Confidence {mapping.confidence} for '{canonical}' is outside [0, 1]"
                )
            elif mapping.confidence < self._config.min_acceptance_threshold:
                report.add_warning(
                    f"'{canonical}' confirmed at low confidence {mapping.confidence:.2f}"
                )
