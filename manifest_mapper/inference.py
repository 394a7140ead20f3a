"""
Inference Layer.

Headers the dictionary cannot resolve confidently are sent, in one batched
call, to an *inference capability*: anything with an ``infer`` method that
returns ``{header: InferenceCandidate | None}``.  The capability may be a
remote model; the engine only relies on the protocol below and on
``InferenceUnavailableError`` being raised when it cannot answer.

``FuzzyInference`` is the built-in, offline capability.  It scores each
header with ``rapidfuzz`` against every canonical field's name, label and
aliases, and then checks the sample values against the field's type so that
a header that *reads* like a date but holds free text is down-weighted.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Protocol, Sequence

from rapidfuzz import fuzz, process

from manifest_mapper.config import MappingConfig
from manifest_mapper.exceptions import InferenceUnavailableError
from manifest_mapper.logging_setup import get_logger
from manifest_mapper.models import RawValue
from manifest_mapper.normalizer import LabelNormalizer, ValueCoercer
from manifest_mapper.schema import FIELD_CATALOG, FieldType, field_type_of

logger = get_logger("inference")

SampleRows = Sequence[Mapping[str, Any]]


@dataclass
class InferenceCandidate:
    """Best canonical field for one header."""

    canonical_field: str
    confidence: float  # 0.0–1.0
    reasoning: str = ""


class InferenceCapability(Protocol):
    def infer(
        self,
        headers: Sequence[str],
        sample_rows: SampleRows,
        catalog: Iterable[str],
    ) -> Dict[str, Optional[InferenceCandidate]]:
        ...


class FunctionInference:
    """Adapt a plain ``infer(headers, sample_rows, catalog)`` function."""

    def __init__(self, fn: Callable[..., Dict[str, Optional[InferenceCandidate]]]) -> None:
        self._fn = fn

    def infer(self, headers, sample_rows, catalog):
        return self._fn(headers, sample_rows, catalog)


def sample_values(header: str, sample_rows: SampleRows) -> List[RawValue]:
    """Non-empty sample values for *header*, as ``RawValue``."""
    values = []
    for row in sample_rows:
        raw = RawValue.from_cell(row.get(header))
        if not raw.is_empty:
            values.append(raw)
    return values


class FuzzyInference:
    """Offline inference by fuzzy header similarity plus a type-shape check.

    Parameters
    ----------
    config:
        Fuzzy threshold, ambiguity delta and penalty.
    normalizer:
        Provides the punctuation-free comparison key.
    coercer:
        Used to test whether sample values fit the candidate field's type.
    """

    _TYPED = (FieldType.DATE, FieldType.NUMBER, FieldType.INTEGER)

    def __init__(
        self,
        config: Optional[MappingConfig] = None,
        normalizer: Optional[LabelNormalizer] = None,
        coercer: Optional[ValueCoercer] = None,
    ) -> None:
        self._config = config or MappingConfig()
        self._normalizer = normalizer or LabelNormalizer()
        self._coercer = coercer or ValueCoercer()

        # Target pool: comparison key -> canonical field
        self._targets: Dict[str, str] = {}
        for definition in FIELD_CATALOG:
            for text in (definition.name, definition.label, *definition.aliases):
                key = self._normalizer.match_key(text)
                if key:
                    self._targets.setdefault(key, definition.name)

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #

    def infer(
        self,
        headers: Sequence[str],
        sample_rows: SampleRows,
        catalog: Iterable[str],
    ) -> Dict[str, Optional[InferenceCandidate]]:
        allowed = set(catalog)
        choices = [k for k, f in self._targets.items() if f in allowed]
        return {h: self._infer_one(h, sample_rows, choices) for h in headers}

    # ------------------------------------------------------------------ #
    # Internals
    # ------------------------------------------------------------------ #

    def _infer_one(
        self, header: str, sample_rows: SampleRows, choices: List[str]
    ) -> Optional[InferenceCandidate]:
        query = self._normalizer.match_key(header)
        if not query or not choices:
            return None

        # token_sort_ratio is robust to word order ("date eta" vs "eta date")
        results = process.extract(query, choices, scorer=fuzz.token_sort_ratio, limit=10)

        # Best score per canonical field
        ranked: List[tuple] = []
        seen = set()
        for key, score, _ in results:
            canonical = self._targets[key]
            if canonical not in seen:
                seen.add(canonical)
                ranked.append((canonical, score, key))

        if not ranked:
            return None

        best_field, best_score, best_key = ranked[0]
        if best_score < self._config.fuzzy_threshold:
            logger.debug(
                "No inference for %r: best %r scored %.1f", header, best_field, best_score
            )
            return None

        confidence = best_score / 100.0
        reasons = [f"header resembles {best_key!r} ({best_score:.0f})"]

        if len(ranked) > 1:
            runner_field, runner_score, _ = ranked[1]
            if best_score - runner_score <= self._config.fuzzy_ambiguity_delta:
                confidence -= self._config.ambiguity_penalty
                reasons.append(f"ambiguous with {runner_field!r} ({runner_score:.0f})")
                logger.warning(
                    "Ambiguous inference for %r: %r (%.1f) vs %r (%.1f)",
                    header, best_field, best_score, runner_field, runner_score,
                )

        fit = self._type_fit(best_field, sample_values(header, sample_rows))
        if fit is not None:
            if fit < 0.5:
                confidence *= 0.5
                reasons.append(f"only {fit:.0%} of samples fit the field type")
            else:
                reasons.append(f"{fit:.0%} of samples fit the field type")

        confidence = max(0.0, min(1.0, confidence))
        logger.info("Inferred %r -> %r (%.2f)", header, best_field, confidence)
        return InferenceCandidate(best_field, round(confidence, 4), "; ".join(reasons))

    def _type_fit(self, canonical_field: str, samples: List[RawValue]) -> Optional[float]:
        field_type = field_type_of(canonical_field)
        if field_type not in self._TYPED or not samples:
            return None
        fitting = sum(1 for raw in samples if self._coercer.coerce(raw, field_type).ok)
        return fitting / len(samples)


class UnavailableInference:
    """Capability that is never reachable.  Used to run dictionary-only."""

    def infer(self, headers, sample_rows, catalog):
        raise InferenceUnavailableError("inference capability is disabled")
