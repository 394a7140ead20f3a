"""
Configuration module for Manifest Mapper.

All tuneable parameters (thresholds, margins, store location, feature
flags) live here.  Nothing is hard-coded in business logic modules.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional


@dataclass(frozen=True)
class MappingConfig:
    """Controls how the translator scores and accepts header mappings."""

    # Dictionary hits at or above this confidence skip inference entirely.
    dictionary_accept_threshold: float = 0.90

    # Mappings below this confidence are never applied; the header is kept
    # in ``unmapped_source_fields`` with its score.
    min_acceptance_threshold: float = 0.80

    # A proposal whose overall confidence is below this needs a human
    # ``confirm`` before it may be imported.
    batch_approval_threshold: float = 0.85

    # Multiplier applied to the overall confidence when the inference
    # capability could not be reached.
    degraded_confidence_factor: float = 0.80

    # Number of raw rows handed to the translator / inference as samples.
    sample_size: int = 5

    # Fuzzy inference: minimum rapidfuzz score (0-100) to report a candidate.
    fuzzy_threshold: float = 70.0

    # Fuzzy inference: runner-up within this delta marks the result ambiguous.
    fuzzy_ambiguity_delta: float = 5.0

    # Confidence deducted from an ambiguous fuzzy candidate.
    ambiguity_penalty: float = 0.10


@dataclass(frozen=True)
class DictionaryConfig:
    """Controls the shared header dictionary."""

    # A different canonical field replaces an active entry only when
    # ``new - existing > conflict_margin``.
    conflict_margin: float = 0.0

    # Compare-and-swap attempts before an upsert gives up.
    max_cas_retries: int = 8

    # Seed catalog aliases as confidence-1.0 entries on start-up.
    seed_builtin_synonyms: bool = True

    # Optional JSON file ``{"header": "canonicalField"}`` merged on start-up.
    custom_synonym_path: Optional[Path] = None


@dataclass(frozen=True)
class AuditConfig:
    """Controls the auditor's recommendation policy."""

    # Minimum capture rate for a PASS recommendation.
    pass_capture_rate: float = 0.95

    # When False, AUTO_CORRECT recommendations are recorded but not applied.
    auto_correct: bool = True

    # Rows transformed in memory by the pre-import audit preview.
    preview_sample_size: int = 5


@dataclass(frozen=True)
class LearningConfig:
    """Controls the improvement learner."""

    # Headers seen in fewer rows than this are not proposed.
    min_frequency: int = 1

    # Candidates below this confidence are skipped.
    min_confidence: float = 0.80

    # Sample values retained per unmapped header.
    max_sample_values: int = 5


@dataclass(frozen=True)
class PipelineConfig:
    """Top-level configuration aggregating all sub-configs."""

    mapping: MappingConfig = field(default_factory=MappingConfig)
    dictionary: DictionaryConfig = field(default_factory=DictionaryConfig)
    audit: AuditConfig = field(default_factory=AuditConfig)
    learning: LearningConfig = field(default_factory=LearningConfig)

    # SQLAlchemy URL of the persistence store.
    database_url: str = "sqlite+pysqlite:///:memory:"

    # Echo emitted SQL through SQLAlchemy's own logger.
    echo_sql: bool = False

    # Derive shipping type, implied status and destination after import.
    enrich_after_import: bool = True

    # Logging level for the import audit trail
    log_level: int = logging.INFO
