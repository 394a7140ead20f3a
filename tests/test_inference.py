"""
Unit tests for the built-in inference capabilities.
"""

from __future__ import annotations

import pytest

from manifest_mapper.exceptions import InferenceUnavailableError
from manifest_mapper.inference import (
    FunctionInference,
    FuzzyInference,
    InferenceCandidate,
    UnavailableInference,
    sample_values,
)
from manifest_mapper.schema import CANONICAL_FIELDS


@pytest.fixture
def fuzzy() -> FuzzyInference:
    return FuzzyInference()


# ======================================================================
# Fuzzy inference
# ======================================================================

class TestFuzzyInference:
    def test_exact_label(self, fuzzy: FuzzyInference) -> None:
        result = fuzzy.infer(["Container Number"], [], CANONICAL_FIELDS)
        candidate = result["Container Number"]
        assert candidate.canonical_field == "containerNumber"
        assert candidate.confidence == pytest.approx(1.0)

    def test_abbreviated_header(self, fuzzy: FuzzyInference) -> None:
        candidate = fuzzy.infer(["Vessel Nm"], [], CANONICAL_FIELDS)["Vessel Nm"]
        assert candidate.canonical_field == "vesselName"
        assert candidate.confidence >= 0.8
        assert candidate.reasoning

    def test_nonsense_header(self, fuzzy: FuzzyInference) -> None:
        assert fuzzy.infer(["zzqx"], [], CANONICAL_FIELDS)["zzqx"] is None

    def test_samples_that_fit_the_type(self, fuzzy: FuzzyInference) -> None:
        rows = [{"ETA": "2024-01-10"}, {"ETA": 45301}]
        candidate = fuzzy.infer(["ETA"], rows, CANONICAL_FIELDS)["ETA"]
        assert candidate.canonical_field == "eta"
        assert candidate.confidence == pytest.approx(1.0)

    def test_samples_that_do_not_fit_the_type(self, fuzzy: FuzzyInference) -> None:
        rows = [{"ETA": "TBD"}, {"ETA": "unknown"}]
        candidate = fuzzy.infer(["ETA"], rows, CANONICAL_FIELDS)["ETA"]
        assert candidate.canonical_field == "eta"
        assert candidate.confidence == pytest.approx(0.5)

    def test_catalog_restricts_targets(self, fuzzy: FuzzyInference) -> None:
        result = fuzzy.infer(["Container Number"], [], {"vesselName"})
        assert result["Container Number"] is None

    def test_every_header_answered(self, fuzzy: FuzzyInference) -> None:
        headers = ["Container Number", "zzqx", "ETA"]
        assert set(fuzzy.infer(headers, [], CANONICAL_FIELDS)) == set(headers)


# ======================================================================
# Adapters
# ======================================================================

class TestAdapters:
    def test_function_inference(self) -> None:
        def infer(headers, sample_rows, catalog):
            return {h: InferenceCandidate("eta", 0.88, "stub") for h in headers}

        result = FunctionInference(infer).infer(["ETA (UTC)"], [], CANONICAL_FIELDS)
        assert result["ETA (UTC)"].confidence == 0.88

    def test_unavailable(self) -> None:
        with pytest.raises(InferenceUnavailableError):
            UnavailableInference().infer(["ETA"], [], CANONICAL_FIELDS)

    def test_sample_values_skip_empty(self) -> None:
        rows = [{"ETA": "2024-01-10"}, {"ETA": "  "}, {"ETA": None}, {}]
        assert [v.as_text() for v in sample_values("ETA", rows)] == ["2024-01-10"]
