"""
Unit tests for the ImprovementLearner.
"""

from __future__ import annotations

import pytest

from manifest_mapper.config import LearningConfig
from manifest_mapper.dictionary import HeaderDictionary
from manifest_mapper.inference import InferenceCandidate
from manifest_mapper.learner import ImprovementLearner
from manifest_mapper.models import (
    AuditFinding,
    AuditResult,
    FindingClass,
    ImprovementAction,
    RawValue,
)
from manifest_mapper.schema import CANONICAL_FIELDS

CATALOG = CANONICAL_FIELDS | {"freightForwarder"}


def _result(container: str, unmapped: dict, canonical: str = None) -> AuditResult:
    return AuditResult(
        container_number=container,
        raw_row_id=1,
        unmapped=[
            AuditFinding(FindingClass.UNMAPPED, h, RawValue.from_cell(v), canonical)
            for h, v in unmapped.items()
        ],
    )


@pytest.fixture
def dictionary(session_factory) -> HeaderDictionary:
    return HeaderDictionary(session_factory, catalog=CATALOG)


@pytest.fixture
def learner(session_factory, dictionary, stub) -> ImprovementLearner:
    return ImprovementLearner(session_factory, dictionary, stub, catalog=CATALOG)


# ======================================================================
# Aggregation
# ======================================================================

class TestAggregate:
    def test_frequency_and_samples(self, learner: ImprovementLearner) -> None:
        results = [
            _result("A", {"Ship Nm": "MSC ANNA", "Ref": "1"}),
            _result("B", {"Ship Nm": "MSC ANNA"}),
            _result("C", {"Ship Nm": "EVER GIVEN"}),
        ]
        stats = learner.aggregate(results)
        assert stats["Ship Nm"].frequency == 3
        assert stats["Ship Nm"].sample_texts() == ["MSC ANNA", "EVER GIVEN"]
        assert stats["Ref"].frequency == 1

    def test_sample_cap(self, learner: ImprovementLearner) -> None:
        results = [_result(str(i), {"Ship Nm": f"V{i}"}) for i in range(8)]
        assert len(learner.aggregate(results)["Ship Nm"].samples) == 5

    def test_uncoercible_mapped_values_ignored(self, learner: ImprovementLearner) -> None:
        results = [_result("A", {"LFD": "TBD"}, canonical="lastFreeDay")]
        assert learner.aggregate(results) == {}


# ======================================================================
# Learning
# ======================================================================

class TestLearn:
    def test_confident_candidate_added(self, learner, dictionary, stub) -> None:
        stub.answers["Ship Nm"] = InferenceCandidate("vesselName", 0.9)
        report = learner.learn("b1", [_result("A", {"Ship Nm": "MSC ANNA"})])

        (record,) = report.records
        assert record.action is ImprovementAction.DICTIONARY_ADD
        assert record.sample_values == ["MSC ANNA"]
        assert report.added == 1
        entry = dictionary.lookup("Ship Nm")
        assert entry.canonical_field == "vesselName"
        assert entry.confidence == pytest.approx(0.9)

    def test_single_batched_call(self, learner, stub) -> None:
        learner.learn("b1", [_result("A", {"Ship Nm": "x", "Ref": "1", "Misc": "y"})])
        assert len(stub.calls) == 1
        assert sorted(stub.calls[0]) == ["Misc", "Ref", "Ship Nm"]

    def test_low_confidence_skipped(self, learner, dictionary, stub) -> None:
        stub.answers["Ship Nm"] = InferenceCandidate("vesselName", 0.7)
        (record,) = learner.learn("b1", [_result("A", {"Ship Nm": "x"})]).records
        assert record.action is ImprovementAction.DICTIONARY_SKIP
        assert record.candidate_canonical_field == "vesselName"
        assert dictionary.lookup("Ship Nm") is None

    def test_no_candidate_skipped(self, learner) -> None:
        (record,) = learner.learn("b1", [_result("A", {"Ref": "1"})]).records
        assert record.action is ImprovementAction.DICTIONARY_SKIP
        assert record.reason == "no candidate"

    def test_dictionary_conflict_skipped(self, learner, dictionary, stub) -> None:
        dictionary.upsert("fwd col", "forwarder", 0.9)
        stub.answers["fwd col"] = InferenceCandidate("freightForwarder", 0.85)
        (record,) = learner.learn("b1", [_result("A", {"fwd col": "DHL"})]).records

        assert record.action is ImprovementAction.DICTIONARY_SKIP
        assert "lower confidence" in record.reason
        assert dictionary.lookup("fwd col").canonical_field == "forwarder"

    def test_inference_unavailable(self, learner, stub) -> None:
        stub.unavailable = True
        report = learner.learn("b1", [_result("A", {"Ship Nm": "x", "Ref": "1"})])
        assert report.skipped == 2
        assert all(r.reason == "inference unavailable" for r in report.records)

    def test_minimum_frequency(self, session_factory, dictionary, stub) -> None:
        learner = ImprovementLearner(
            session_factory, dictionary, stub, LearningConfig(min_frequency=2), CATALOG
        )
        stub.answers["Ship Nm"] = InferenceCandidate("vesselName", 0.9)
        stub.answers["Ref"] = InferenceCandidate("houseBill", 0.9)
        report = learner.learn("b1", [
            _result("A", {"Ship Nm": "x", "Ref": "1"}),
            _result("B", {"Ship Nm": "y"}),
        ])

        by_header = {r.unmapped_header: r for r in report.records}
        assert by_header["Ship Nm"].action is ImprovementAction.DICTIONARY_ADD
        assert by_header["Ref"].reason == "below minimum frequency"
        assert stub.calls == [["Ship Nm"]]

    def test_nothing_to_learn(self, learner, stub) -> None:
        report = learner.learn("b1", [])
        assert report.records == []
        assert stub.calls == []


# ======================================================================
# Stored records
# ======================================================================

class TestRecords:
    def test_records_stored(self, learner, stub) -> None:
        stub.answers["Ship Nm"] = InferenceCandidate("vesselName", 0.9)
        learner.learn("b1", [_result("A", {"Ship Nm": "x", "Ref": "1"})])
        records = learner.records_for("b1")
        assert {r.unmapped_header for r in records} == {"Ship Nm", "Ref"}
        assert learner.records_for("b2") == []

    def test_rerun_replaces_records(self, learner) -> None:
        results = [_result("A", {"Ref": "1"})]
        learner.learn("b1", results)
        learner.learn("b1", results)
        assert len(learner.records_for("b1")) == 1
