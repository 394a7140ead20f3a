"""
Unit tests for the Translator.
"""

from __future__ import annotations

import pytest

from manifest_mapper.capture import RawCaptureStore
from manifest_mapper.dictionary import HeaderDictionary
from manifest_mapper.inference import InferenceCandidate
from manifest_mapper.models import FieldMapping, MappingMethod, RawKind, RawRow, RawValue
from manifest_mapper.translator import Translator, overall_confidence


def _rows(headers, *records):
    return [
        RawRow(
            id=i + 1,
            batch_id="b1",
            row_index=i,
            original_headers=list(headers),
            data={h: RawValue.from_cell(v) for h, v in zip(headers, record)},
        )
        for i, record in enumerate(records)
    ]


@pytest.fixture
def dictionary(session_factory) -> HeaderDictionary:
    return HeaderDictionary(session_factory)


@pytest.fixture
def translator(dictionary, stub) -> Translator:
    return Translator(dictionary, stub)


# ======================================================================
# Dictionary then inference
# ======================================================================

class TestPropose:
    def test_dictionary_and_inference(self, dictionary, stub, translator) -> None:
        dictionary.upsert("Cntr#", "containerNumber", 0.95)
        stub.answers["ETA (UTC)"] = InferenceCandidate("eta", 0.88, "looks like an arrival date")
        headers = ["Cntr#", "ETA (UTC)"]
        rows = _rows(headers, ["MSCU1234567", "2024-01-10"], ["TGHU7654321", "2024-01-12"])

        proposal = translator.propose(headers, rows)

        cntr = proposal.field_mappings["containerNumber"]
        assert cntr.source_header == "Cntr#"
        assert cntr.method is MappingMethod.DICTIONARY
        assert cntr.confidence == pytest.approx(0.95)
        eta = proposal.field_mappings["eta"]
        assert eta.source_header == "ETA (UTC)"
        assert eta.method is MappingMethod.INFERENCE
        assert proposal.unmapped_source_fields == {}
        assert proposal.missing_schema_fields == []
        assert proposal.overall_confidence == pytest.approx(0.915)
        assert not translator.needs_confirmation(proposal)

    def test_confident_dictionary_hits_skip_inference(self, dictionary, stub, translator) -> None:
        dictionary.upsert("Cntr#", "containerNumber", 0.95)
        headers = ["Cntr#", "ETA (UTC)"]
        translator.propose(headers, _rows(headers, ["MSCU1234567", "2024-01-10"]))
        assert stub.calls == [["ETA (UTC)"]]

    def test_one_batched_call(self, stub, translator) -> None:
        headers = ["A", "B", "C"]
        translator.propose(headers, _rows(headers, ["1", "2", "3"]))
        assert stub.calls == [headers]

    def test_below_threshold_is_unmapped(self, stub, translator) -> None:
        stub.answers["Ref"] = InferenceCandidate("houseBill", 0.6, "weak")
        headers = ["Ref"]
        proposal = translator.propose(headers, _rows(headers, ["HB1"]))
        assert "houseBill" not in proposal.field_mappings
        unmapped = proposal.unmapped_source_fields["Ref"]
        assert unmapped.confidence == pytest.approx(0.6)
        assert unmapped.candidate == "houseBill"

    def test_no_candidate_is_unmapped(self, translator) -> None:
        headers = ["Mystery"]
        proposal = translator.propose(headers, _rows(headers, ["?"]))
        assert proposal.unmapped_source_fields["Mystery"].confidence is None
        assert proposal.overall_confidence == 0.0

    def test_missing_natural_key(self, translator) -> None:
        headers = ["Mystery"]
        proposal = translator.propose(headers, _rows(headers, ["?"]))
        assert proposal.missing_schema_fields == ["containerNumber"]

    def test_candidate_outside_catalog_ignored(self, stub, translator) -> None:
        stub.answers["X"] = InferenceCandidate("notAField", 0.99)
        proposal = translator.propose(["X"], _rows(["X"], ["1"]))
        assert proposal.field_mappings == {}

    def test_translator_writes_nothing(self, dictionary, translator) -> None:
        dictionary.upsert("Cntr#", "containerNumber", 0.95)
        translator.propose(["Cntr#"], _rows(["Cntr#"], ["MSCU1234567"]))
        assert dictionary.lookup("Cntr#").times_used == 0


# ======================================================================
# Degraded mode
# ======================================================================

class TestDegraded:
    def test_inference_unavailable(self, dictionary, stub, translator) -> None:
        dictionary.upsert("Cntr#", "containerNumber", 0.95)
        stub.unavailable = True
        headers = ["Cntr#", "ETA (UTC)"]
        proposal = translator.propose(headers, _rows(headers, ["MSCU1234567", "2024-01-10"]))

        assert proposal.degraded
        assert "ETA (UTC)" in proposal.unmapped_source_fields
        assert proposal.overall_confidence == pytest.approx(0.95 * 0.8)
        assert translator.needs_confirmation(proposal)

    def test_no_capability(self, dictionary) -> None:
        translator = Translator(dictionary, None)
        proposal = translator.propose(["ETA"], _rows(["ETA"], ["2024-01-10"]))
        assert proposal.degraded

    def test_low_dictionary_entry_used_as_fallback(self, dictionary, stub, translator) -> None:
        dictionary.upsert("Cntr No#", "containerNumber", 0.85)
        stub.unavailable = True
        headers = ["Cntr No#"]
        proposal = translator.propose(headers, _rows(headers, ["MSCU1234567"]))
        mapping = proposal.field_mappings["containerNumber"]
        assert mapping.method is MappingMethod.DICTIONARY
        assert mapping.confidence == pytest.approx(0.85)

    def test_inference_beats_weaker_fallback(self, dictionary, stub, translator) -> None:
        dictionary.upsert("Box", "containerNumber", 0.82)
        stub.answers["Box"] = InferenceCandidate("containerNumber", 0.89)
        proposal = translator.propose(["Box"], _rows(["Box"], ["MSCU1234567"]))
        assert proposal.field_mappings["containerNumber"].method is MappingMethod.INFERENCE


# ======================================================================
# Duplicates, forwarder and weighting
# ======================================================================

class TestProposalDetails:
    def test_duplicate_target_keeps_higher(self, stub, translator) -> None:
        stub.answers["Box A"] = InferenceCandidate("containerNumber", 0.85)
        stub.answers["Box B"] = InferenceCandidate("containerNumber", 0.92)
        headers = ["Box A", "Box B"]
        proposal = translator.propose(headers, _rows(headers, ["X1", "X2"]))
        assert proposal.header_for("containerNumber") == "Box B"
        assert "already mapped" in proposal.unmapped_source_fields["Box A"].reason

    def test_forwarder_from_column(self, dictionary, stub, translator) -> None:
        dictionary.seed_builtin()
        headers = ["Container", "Forwarder"]
        rows = _rows(headers, ["A1", "Kuehne"], ["A2", "Kuehne"], ["A3", "DHL"])
        assert translator.propose(headers, rows).forwarder_guess == "Kuehne"

    def test_forwarder_from_known_format(self, translator) -> None:
        headers = [
            "Business Unit", "ContainerNumber", "Shipper's Full Name",
            "Ship To City", "Actual Departure (ATD)",
        ]
        proposal = translator.propose(headers, _rows(headers, ["BU", "X1", "S", "C", "2024-01-01"]))
        assert proposal.forwarder_guess == "Standard Container Export"

    def test_forwarder_unknown(self, translator) -> None:
        assert translator.propose(["A"], _rows(["A"], ["1"])).forwarder_guess == "Unknown"

    def test_overall_weighted_by_populated_rows(self) -> None:
        mappings = {
            "containerNumber": FieldMapping("C", 1.0, MappingMethod.DICTIONARY),
            "eta": FieldMapping("E", 0.8, MappingMethod.INFERENCE),
        }
        rows = _rows(["C", "E"], ["X1", "2024-01-10"], ["X2", None], ["X3", None])
        # weights 3 and 1
        assert overall_confidence(mappings, rows) == pytest.approx((3 * 1.0 + 0.8) / 4)

    def test_overall_without_samples(self) -> None:
        mappings = {
            "containerNumber": FieldMapping("C", 1.0, MappingMethod.DICTIONARY),
            "eta": FieldMapping("E", 0.8, MappingMethod.INFERENCE),
        }
        assert overall_confidence(mappings, []) == pytest.approx(0.9)

    def test_samples_passed_as_raw_values(self, session_factory, dictionary, stub) -> None:
        capture = RawCaptureStore(session_factory)
        capture.append("b1", [{"headers": ["Weight"], "data": {"Weight": 12.5}}])
        translator = Translator(dictionary, stub)
        seen = {}

        def infer(headers, sample_rows, catalog):
            seen["rows"] = sample_rows
            return {}

        stub.infer = infer
        translator.propose(["Weight"], capture.list_batch("b1"))
        assert seen["rows"] == [{"Weight": RawValue(RawKind.NUMBER, 12.5)}]
