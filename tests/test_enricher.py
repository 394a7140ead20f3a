"""
Unit tests for the Enricher.
"""

from __future__ import annotations

from datetime import date

import pytest

from manifest_mapper.enricher import Enricher, derived_values
from manifest_mapper.models import CanonicalRecord, DerivedConfidence, Lineage, RawValue


def make_record(values=None, raw=None) -> CanonicalRecord:
    values = dict(values or {})
    values.setdefault("containerNumber", "MSCU1234567")
    return CanonicalRecord(
        container_number=values["containerNumber"],
        values=values,
        lineage=Lineage(1, {h: RawValue.from_cell(v) for h, v in (raw or {}).items()}),
    )


@pytest.fixture
def enricher() -> Enricher:
    return Enricher()


# ======================================================================
# Shipping type
# ======================================================================

class TestShippingType:
    def test_from_raw_column(self, enricher: Enricher) -> None:
        result = enricher.enrich(make_record(raw={"Svc Type": "LCL consol"}))
        derived = result.fields["shippingType"]
        assert derived.value == "LCL"
        assert derived.source == "Svc Type"
        assert derived.confidence is DerivedConfidence.HIGH

    def test_from_container_size(self, enricher: Enricher) -> None:
        result = enricher.enrich(make_record({"containerType": "40' HC"}))
        assert result.fields["shippingType"].value == "FCL"
        assert result.fields["shippingType"].source == "containerType"

    def test_canonical_value_wins(self, enricher: Enricher) -> None:
        result = enricher.enrich(make_record({"shippingType": "FCL"}, raw={"Load Type": "LCL"}))
        assert "shippingType" not in result.fields

    def test_no_hint(self, enricher: Enricher) -> None:
        result = enricher.enrich(make_record(raw={"Load Type": "breakbulk", "Service": "FCL"}))
        assert "shippingType" not in result.fields


# ======================================================================
# Status inference
# ======================================================================

class TestStatusInference:
    def test_latest_milestone_wins(self, enricher: Enricher) -> None:
        record = make_record({"atd": date(2024, 1, 1), "ata": date(2024, 1, 9), "currentStatus": "DEP"})
        result = enricher.enrich(record)
        assert result.status_inference == "ARR"
        assert result.fields["statusInference"].source == "ata"

    def test_agreeing_status_not_repeated(self, enricher: Enricher) -> None:
        assert enricher.enrich(make_record({"ata": date(2024, 1, 9), "currentStatus": "DIS"})).status_inference is None
        assert enricher.enrich(make_record({"deliveryDate": date(2024, 2, 1), "currentStatus": "DEL"})).status_inference is None

    def test_booked_only_without_status(self, enricher: Enricher) -> None:
        derived = enricher.enrich(make_record({"etd": date(2024, 1, 1)})).fields["statusInference"]
        assert derived.value == "BOOK"
        assert derived.confidence is DerivedConfidence.MED
        assert enricher.enrich(make_record({"etd": date(2024, 1, 1), "currentStatus": "CUS"})).status_inference is None

    def test_no_dates(self, enricher: Enricher) -> None:
        assert enricher.enrich(make_record()).fields == {}


# ======================================================================
# Destination
# ======================================================================

class TestDestination:
    def test_capitalisation_cleaned(self, enricher: Enricher) -> None:
        result = enricher.enrich(make_record(raw={"Final Dest": "  SAN   DIEGO "}))
        assert result.fields["destinationCity"].value == "San Diego"

    def test_already_clean(self, enricher: Enricher) -> None:
        result = enricher.enrich(make_record(raw={"Destination": "San Diego"}))
        assert "destinationCity" not in result.fields

    def test_canonical_value_wins(self, enricher: Enricher) -> None:
        result = enricher.enrich(make_record({"destinationCity": "Reno"}, raw={"Delv Place": "reno"}))
        assert "destinationCity" not in result.fields


# ======================================================================
# Stored form
# ======================================================================

def test_derived_values_from_stored_record(enricher: Enricher) -> None:
    record = make_record({"atd": date(2024, 1, 1)}, raw={"Ship To City": "oakland"})
    record.derived = enricher.enrich(record).to_dict()
    assert derived_values(record) == {"statusInference": "DEP", "destinationCity": "Oakland"}
    assert derived_values(make_record()) == {}
