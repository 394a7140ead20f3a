"""
Unit tests for the HeaderDictionary.
"""

from __future__ import annotations

import json
import threading

import pytest

from manifest_mapper.config import DictionaryConfig
from manifest_mapper.dictionary import HeaderDictionary
from manifest_mapper.models import UpsertAction
from manifest_mapper.schema import CANONICAL_FIELDS

# The forwarder conflict scenario needs a second forwarder-like target
CATALOG = CANONICAL_FIELDS | {"freightForwarder"}


@pytest.fixture
def dictionary(session_factory) -> HeaderDictionary:
    return HeaderDictionary(session_factory, catalog=CATALOG)


# ======================================================================
# Lookup and seeding
# ======================================================================

class TestLookup:
    def test_missing(self, dictionary: HeaderDictionary) -> None:
        assert dictionary.lookup("Cntr#") is None

    def test_lookup_is_normalised(self, dictionary: HeaderDictionary) -> None:
        dictionary.upsert("Cntr#", "containerNumber", 0.95)
        entry = dictionary.lookup("  CNTR#  ")
        assert entry is not None
        assert entry.canonical_field == "containerNumber"
        assert entry.source_header == "cntr#"

    def test_seed_builtin(self, dictionary: HeaderDictionary) -> None:
        added = dictionary.seed_builtin()
        assert added == dictionary.size
        entry = dictionary.lookup("LFD")
        assert entry.canonical_field == "lastFreeDay"
        assert entry.confidence == 1.0

    def test_seed_never_overwrites(self, dictionary: HeaderDictionary) -> None:
        dictionary.upsert("lfd", "eta", 0.9)
        dictionary.seed({"lfd": "lastFreeDay"})
        assert dictionary.lookup("lfd").canonical_field == "eta"

    def test_seed_is_repeatable(self, dictionary: HeaderDictionary) -> None:
        dictionary.seed_builtin()
        assert dictionary.seed_builtin() == 0


# ======================================================================
# Upsert policy
# ======================================================================

class TestUpsert:
    def test_insert(self, dictionary: HeaderDictionary) -> None:
        outcome = dictionary.upsert("Cntr#", "containerNumber", 0.95)
        assert outcome.action is UpsertAction.INSERTED
        assert outcome.accepted
        assert outcome.entry.times_used == 0

    def test_refresh_same_field(self, dictionary: HeaderDictionary) -> None:
        dictionary.upsert("Cntr#", "containerNumber", 0.90)
        outcome = dictionary.upsert("Cntr#", "containerNumber", 0.95)
        assert outcome.action is UpsertAction.REFRESHED
        entry = dictionary.lookup("Cntr#")
        assert entry.confidence == pytest.approx(0.95)
        assert entry.times_used == 1
        assert entry.last_used_at is not None

    def test_confidence_never_regresses(self, dictionary: HeaderDictionary) -> None:
        dictionary.upsert("Cntr#", "containerNumber", 0.95)
        outcome = dictionary.upsert("Cntr#", "containerNumber", 0.85)
        assert outcome.action is UpsertAction.REJECTED
        assert dictionary.lookup("Cntr#").confidence == pytest.approx(0.95)

    def test_higher_confidence_replaces_other_field(self, dictionary: HeaderDictionary) -> None:
        dictionary.upsert("fwd col", "freightForwarder", 0.75)
        outcome = dictionary.upsert("fwd col", "forwarder", 0.80)
        assert outcome.action is UpsertAction.REPLACED
        entry = dictionary.lookup("fwd col")
        assert entry.canonical_field == "forwarder"
        assert entry.times_used == 0

    def test_lower_confidence_other_field_rejected(self, dictionary: HeaderDictionary) -> None:
        dictionary.upsert("fwd col", "forwarder", 0.80)
        outcome = dictionary.upsert("fwd col", "freightForwarder", 0.75)
        assert outcome.action is UpsertAction.REJECTED
        assert outcome.reason
        assert dictionary.lookup("fwd col").canonical_field == "forwarder"

    def test_equal_confidence_other_field_is_conflict(self, dictionary: HeaderDictionary) -> None:
        dictionary.upsert("fwd col", "forwarder", 0.80)
        outcome = dictionary.upsert("fwd col", "freightForwarder", 0.80)
        assert outcome.action is UpsertAction.REJECTED
        assert "conflicts" in outcome.reason

    def test_conflict_margin(self, session_factory) -> None:
        strict = HeaderDictionary(
            session_factory, DictionaryConfig(conflict_margin=0.1), catalog=CATALOG
        )
        strict.upsert("fwd col", "forwarder", 0.80)
        assert strict.upsert("fwd col", "freightForwarder", 0.85).action is UpsertAction.REJECTED
        assert strict.upsert("fwd col", "freightForwarder", 0.95).action is UpsertAction.REPLACED

    def test_unknown_field(self, dictionary: HeaderDictionary) -> None:
        with pytest.raises(ValueError):
            dictionary.upsert("x", "notAField", 0.9)

    def test_confidence_out_of_range(self, dictionary: HeaderDictionary) -> None:
        with pytest.raises(ValueError):
            dictionary.upsert("x", "eta", 1.5)


# ======================================================================
# Usage tracking and custom synonyms
# ======================================================================

class TestUsage:
    def test_record_usage(self, dictionary: HeaderDictionary) -> None:
        dictionary.upsert("Cntr#", "containerNumber", 0.95)
        entry = dictionary.record_usage("Cntr#")
        assert entry.times_used == 1
        assert entry.last_used_at is not None
        assert dictionary.record_usage(entry).times_used == 2

    def test_record_usage_unknown_header(self, dictionary: HeaderDictionary) -> None:
        assert dictionary.record_usage("nope") is None

    def test_load_custom_synonyms(self, dictionary: HeaderDictionary, tmp_path) -> None:
        path = tmp_path / "synonyms.json"
        path.write_text(json.dumps({"Box Ref": "containerNumber", "Free Until": "lastFreeDay"}))
        assert dictionary.load_custom_synonyms(path) == 2
        assert dictionary.lookup("box ref").confidence == 1.0


# ======================================================================
# Concurrency
# ======================================================================

class TestConcurrentWriters:
    def test_conflicting_writers_converge(self, file_session_factory) -> None:
        dictionary = HeaderDictionary(file_session_factory, catalog=CATALOG)
        barrier = threading.Barrier(2)
        outcomes = {}

        def write(field_name: str, confidence: float) -> None:
            barrier.wait()
            outcomes[field_name] = dictionary.upsert("fwd col", field_name, confidence)

        threads = [
            threading.Thread(target=write, args=("forwarder", 0.80)),
            threading.Thread(target=write, args=("freightForwarder", 0.75)),
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        entry = dictionary.lookup("fwd col")
        assert entry.canonical_field == "forwarder"
        assert entry.confidence == pytest.approx(0.80)
        assert outcomes["forwarder"].accepted

        # Either the weaker write lost outright, or it landed first and was replaced
        loser, winner = outcomes["freightForwarder"], outcomes["forwarder"]
        if loser.action is UpsertAction.REJECTED:
            assert winner.action is UpsertAction.INSERTED
        else:
            assert loser.action is UpsertAction.INSERTED
            assert winner.action is UpsertAction.REPLACED

    def test_weaker_writer_after_stronger_is_rejected(self, file_session_factory) -> None:
        dictionary = HeaderDictionary(file_session_factory, catalog=CATALOG)
        assert dictionary.upsert("fwd col", "forwarder", 0.80).action is UpsertAction.INSERTED
        loser = dictionary.upsert("fwd col", "freightForwarder", 0.75)
        assert loser.action is UpsertAction.REJECTED
        assert not loser.accepted

    def test_usage_counts_not_lost(self, file_session_factory) -> None:
        dictionary = HeaderDictionary(file_session_factory, catalog=CATALOG)
        dictionary.upsert("Cntr#", "containerNumber", 0.95)

        def use() -> None:
            for _ in range(5):
                dictionary.record_usage("Cntr#")

        threads = [threading.Thread(target=use) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert dictionary.lookup("Cntr#").times_used == 20
