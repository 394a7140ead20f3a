"""
Unit tests for the MappingValidator.
"""

from __future__ import annotations

import pytest

from manifest_mapper.models import FieldMapping, MappingMethod
from manifest_mapper.validator import MappingValidator

HEADERS = ["Cntr#", "ETA (UTC)", "Carrier"]


def _manual(header: str, confidence: float = 1.0) -> FieldMapping:
    return FieldMapping(header, confidence, MappingMethod.MANUAL)


@pytest.fixture
def validator() -> MappingValidator:
    return MappingValidator()


# ======================================================================
# Structural checks
# ======================================================================

class TestStructure:
    def test_valid_mapping(self, validator: MappingValidator) -> None:
        report = validator.validate(
            {"containerNumber": _manual("Cntr#"), "eta": _manual("ETA (UTC)")}, HEADERS
        )
        assert report.is_valid
        assert report.warnings == []

    def test_unknown_field(self, validator: MappingValidator) -> None:
        report = validator.validate(
            {"containerNumber": _manual("Cntr#"), "arrivalish": _manual("ETA (UTC)")}, HEADERS
        )
        assert not report.is_valid
        assert any("arrivalish" in e for e in report.errors)

    def test_header_not_in_batch(self, validator: MappingValidator) -> None:
        report = validator.validate({"containerNumber": _manual("Box")}, HEADERS)
        assert not report.is_valid

    def test_header_used_twice(self, validator: MappingValidator) -> None:
        report = validator.validate(
            {"containerNumber": _manual("Cntr#"), "sealNumber": _manual("Cntr#")}, HEADERS
        )
        assert not report.is_valid
        assert any("both" in e for e in report.errors)

    def test_natural_key_required(self, validator: MappingValidator) -> None:
        report = validator.validate({"eta": _manual("ETA (UTC)")}, HEADERS)
        assert not report.is_valid
        assert any("containerNumber" in e for e in report.errors)


# ======================================================================
# Confidence checks
# ======================================================================

class TestConfidence:
    def test_out_of_range(self, validator: MappingValidator) -> None:
        report = validator.validate({"containerNumber": _manual("Cntr#", 1.2)}, HEADERS)
        assert not report.is_valid

    def test_low_confidence_is_warning(self, validator: MappingValidator) -> None:
        report = validator.validate(
            {"containerNumber": _manual("Cntr#"), "carrier": _manual("Carrier", 0.5)}, HEADERS
        )
        assert report.is_valid
        assert len(report.warnings) == 1

    def test_custom_catalog(self) -> None:
        validator = MappingValidator(catalog={"containerNumber", "freightForwarder"})
        report = validator.validate(
            {"containerNumber": _manual("Cntr#"), "freightForwarder": _manual("Carrier")}, HEADERS
        )
        assert report.is_valid
