"""
Shared fixtures: an isolated in-memory store per test and a scripted
inference capability.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

import pytest

from manifest_mapper.capture import RawCaptureStore
from manifest_mapper.config import DictionaryConfig, PipelineConfig
from manifest_mapper.database import create_store_engine, get_session_factory, init_store
from manifest_mapper.exceptions import InferenceUnavailableError
from manifest_mapper.inference import InferenceCandidate
from manifest_mapper.pipeline import ImportPipeline


class StubInference:
    """Answers from a ``{header: InferenceCandidate}`` script and records each call."""

    def __init__(
        self,
        answers: Optional[Dict[str, InferenceCandidate]] = None,
        unavailable: bool = False,
        error: Optional[Exception] = None,
    ) -> None:
        self.answers: Dict[str, InferenceCandidate] = dict(answers or {})
        self.unavailable = unavailable
        self.error = error
        self.calls: List[List[str]] = []

    def infer(self, headers, sample_rows, catalog):
        self.calls.append(list(headers))
        if self.unavailable:
            raise InferenceUnavailableError("stub inference is offline")
        if self.error is not None:
            raise self.error
        return {h: self.answers.get(h) for h in headers}


def make_rows(headers: List[str], *records: List[Any]) -> List[Dict[str, Any]]:
    """Build ingestion rows that all share *headers*."""
    return [{"headers": list(headers), "data": dict(zip(headers, record))} for record in records]


@pytest.fixture
def engine():
    engine = create_store_engine("sqlite+pysqlite:///:memory:")
    init_store(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return get_session_factory(engine)


@pytest.fixture
def file_session_factory(tmp_path):
    """A file-backed store, for tests that use several threads."""
    engine = create_store_engine(f"sqlite+pysqlite:///{tmp_path / 'store.db'}")
    init_store(engine)
    yield get_session_factory(engine)
    engine.dispose()


@pytest.fixture
def capture(session_factory) -> RawCaptureStore:
    return RawCaptureStore(session_factory)


@pytest.fixture
def stub() -> StubInference:
    return StubInference()


@pytest.fixture
def stub_factory():
    return StubInference


@pytest.fixture
def rows_factory():
    return make_rows


@pytest.fixture
def pipeline(session_factory, stub) -> ImportPipeline:
    return ImportPipeline(inference=stub, session_factory=session_factory)


@pytest.fixture
def bare_pipeline(session_factory, stub) -> ImportPipeline:
    """Pipeline whose dictionary starts empty."""
    config = PipelineConfig(dictionary=DictionaryConfig(seed_builtin_synonyms=False))
    return ImportPipeline(config=config, inference=stub, session_factory=session_factory)
