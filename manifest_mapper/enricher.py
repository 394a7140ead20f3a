"""
Enricher.

Runs after import and derives a few extra facts about each container from
its canonical values and from the raw cells preserved in
``unmapped_fields``:

* shipping type (FCL / LCL) when the record has none
* the lifecycle status implied by the milestone dates, when it differs
  from the stored status
* a cleaned-up destination city when the record has none

Derived values live in the record's ``derived`` bag.  Canonical columns are
never overwritten.
"""

from __future__ import annotations

import re
from typing import Any, Dict, List, Optional, Tuple

from manifest_mapper.logging_setup import get_logger
from manifest_mapper.models import (
    CanonicalRecord,
    DerivedConfidence,
    DerivedField,
    EnrichmentResult,
    RawValue,
)

logger = get_logger("enricher")

# Raw headers that may carry FCL / LCL hints, compared letters-only
_SERVICE_HEADERS: Tuple[str, ...] = (
    "shippingtype", "containertype", "service", "svctype", "loadtype", "shiptype", "status",
)

_DESTINATION_HEADERS: Tuple[str, ...] = (
    "ship to city", "delv place", "final dest", "destination",
)

_SIZE_RE = re.compile(r"(20|40|45)\s*'?\s*(HC|HQ|ST|GP|DV)")

# First matching date wins
_STATUS_CHAIN: List[Tuple[str, str, DerivedConfidence]] = [
    ("deliveryDate", "DEL", DerivedConfidence.HIGH),
    ("gateOutDate", "CGO", DerivedConfidence.HIGH),
    ("emptyReturnDate", "RET", DerivedConfidence.HIGH),
    ("ata", "ARR", DerivedConfidence.HIGH),
    ("atd", "DEP", DerivedConfidence.HIGH),
    ("etd", "BOOK", DerivedConfidence.MED),
]

# A stored status that already says as much as the derived one
_EQUIVALENT = {"ARR": {"ARR", "DIS"}}


def _letters(text: str) -> str:
    return re.sub(r"[^a-z]", "", text.lower())


def _service_type(text: str) -> Optional[str]:
    upper = text.upper()
    if "LCL" in upper or "LESS" in upper:
        return "LCL"
    if "FCL" in upper or "FULL" in upper or "CY/CY" in upper or _SIZE_RE.search(upper):
        return "FCL"
    return None


class Enricher:
    """Derive non-canonical facts for persisted container records."""

    def enrich(self, record: CanonicalRecord) -> EnrichmentResult:
        raw = record.lineage.unmapped_fields
        result = EnrichmentResult(container_number=record.container_number)

        if record.get("shippingType") is None:
            derived = self._infer_shipping_type(record, raw)
            if derived:
                result.fields["shippingType"] = derived

        derived = self._infer_status(record)
        if derived:
            result.fields["statusInference"] = derived

        if record.get("destinationCity") is None:
            derived = self._clean_destination(raw)
            if derived:
                result.fields["destinationCity"] = derived

        logger.debug(
            "Enriched %r: %s", record.container_number, ", ".join(result.fields) or "nothing"
        )
        return result

    # ------------------------------------------------------------------ #
    # Rules
    # ------------------------------------------------------------------ #

    @staticmethod
    def _infer_shipping_type(record: CanonicalRecord, raw: Dict[str, RawValue]) -> Optional[DerivedField]:
        for canonical in ("currentStatus", "containerType"):
            value = record.get(canonical)
            found = _service_type(str(value)) if value is not None else None
            if found:
                return DerivedField(
                    found, DerivedConfidence.HIGH, canonical, "Regex_ServiceType",
                    f"{found} pattern in {canonical}",
                )

        for header, cell in raw.items():
            key = _letters(header)
            if cell.is_empty or not any(c in key for c in _SERVICE_HEADERS):
                continue
            found = _service_type(cell.as_text())
            if found:
                return DerivedField(
                    found, DerivedConfidence.HIGH, header, "Regex_ServiceType",
                    f"{found} pattern in {header!r}",
                )
            # Only the first candidate column is consulted
            return None
        return None

    @staticmethod
    def _infer_status(record: CanonicalRecord) -> Optional[DerivedField]:
        current = record.get("currentStatus")
        for canonical, code, confidence in _STATUS_CHAIN:
            if record.get(canonical) is None:
                continue
            if code == "BOOK" and current:
                return None
            if current in _EQUIVALENT.get(code, {code}):
                return None
            return DerivedField(
                code, confidence, canonical, "Date_Inference", f"{canonical} is present",
            )
        return None

    @staticmethod
    def _clean_destination(raw: Dict[str, RawValue]) -> Optional[DerivedField]:
        for header, cell in raw.items():
            if cell.is_empty or not any(c in header.lower() for c in _DESTINATION_HEADERS):
                continue
            text = cell.as_text()
            cleaned = " ".join(part.capitalize() for part in text.split())
            if cleaned == text:
                return None
            return DerivedField(
                cleaned, DerivedConfidence.MED, header, "Text_Cleanup", "Standardised capitalisation",
            )
        return None


def derived_values(record: CanonicalRecord) -> Dict[str, Any]:
    """``{name: value}`` of a stored record's derived bag."""
    stored = (record.derived or {}).get("fields", {})
    return {name: DerivedField.from_dict(data).value for name, data in stored.items()}
