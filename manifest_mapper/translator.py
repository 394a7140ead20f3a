"""
Translator (mapping proposal layer).

Resolves a batch's headers to canonical fields:

    headers  →  Dictionary (≥ 0.90 accepted as-is)
             →  one batched inference call for everything else
             →  acceptance gate (≥ 0.80)  →  MappingProposal

The translator never writes anything.  Dictionary usage is recorded by the
pipeline when an approved proposal is actually imported.
"""

from __future__ import annotations

from collections import Counter
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from manifest_mapper.config import MappingConfig
from manifest_mapper.dictionary import HeaderDictionary
from manifest_mapper.inference import InferenceCandidate, InferenceCapability
from manifest_mapper.logging_setup import get_logger
from manifest_mapper.models import (
    DictionaryEntry,
    FieldMapping,
    MappingMethod,
    MappingProposal,
    RawRow,
    UnmappedSource,
)
from manifest_mapper.normalizer import LabelNormalizer
from manifest_mapper.schema import CANONICAL_FIELDS, KNOWN_FORMATS, required_fields

logger = get_logger("translator")


class Translator:
    """Produce a scored ``MappingProposal`` for a batch.

    Parameters
    ----------
    dictionary:
        The shared header dictionary (read-only here).
    inference:
        Batched inference capability; may be unavailable at call time.
    config:
        Thresholds and the degraded-confidence factor.
    """

    def __init__(
        self,
        dictionary: HeaderDictionary,
        inference: Optional[InferenceCapability],
        config: Optional[MappingConfig] = None,
        normalizer: Optional[LabelNormalizer] = None,
    ) -> None:
        self._dictionary = dictionary
        self._inference = inference
        self._config = config or MappingConfig()
        self._normalizer = normalizer or LabelNormalizer()

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #

    def propose(
        self,
        headers: Sequence[str],
        sample_rows: Sequence[RawRow],
        catalog: Optional[Iterable[str]] = None,
    ) -> MappingProposal:
        """Map *headers* onto *catalog* using the dictionary, then inference."""
        catalog = frozenset(catalog) if catalog is not None else CANONICAL_FIELDS
        cfg = self._config

        accepted: Dict[str, FieldMapping] = {}   # header -> mapping
        rejected: Dict[str, UnmappedSource] = {}
        fallbacks: Dict[str, DictionaryEntry] = {}
        pending: List[str] = []
        targets: Dict[str, str] = {}

        # 1. Dictionary, zero-latency path
        for header in headers:
            entry = self._dictionary.lookup(header)
            if entry is not None and entry.canonical_field in catalog:
                if entry.confidence >= cfg.dictionary_accept_threshold:
                    targets[header] = entry.canonical_field
                    accepted[header] = FieldMapping(
                        header, entry.confidence, MappingMethod.DICTIONARY,
                        f"dictionary entry {entry.source_header!r}",
                    )
                    logger.info(
                        "Dictionary hit: %r -> %r (%.2f)",
                        header, entry.canonical_field, entry.confidence,
                    )
                    continue
                fallbacks[header] = entry
            pending.append(header)

        # 2. One batched inference call for the rest
        candidates: Dict[str, Optional[InferenceCandidate]] = {}
        degraded = False
        if pending:
            candidates, degraded = self._infer(pending, sample_rows, catalog)

        # 3. Acceptance gate
        for header in pending:
            mapping, target = self._best_option(
                header, candidates.get(header), fallbacks.get(header), catalog
            )
            if mapping is None:
                rejected[header] = UnmappedSource(header, reason="no candidate")
                continue
            if mapping.confidence < cfg.min_acceptance_threshold:
                rejected[header] = UnmappedSource(
                    header, mapping.confidence, target,
                    reason=f"below acceptance threshold {cfg.min_acceptance_threshold:.2f}",
                )
                logger.info(
                    "Rejected %r -> %r (%.2f): below threshold", header, target, mapping.confidence
                )
                continue
            accepted[header] = mapping
            targets[header] = target

        field_mappings = self._resolve_duplicates(headers, accepted, targets, rejected)

        proposal = MappingProposal(
            headers=list(headers),
            forwarder_guess=self._guess_forwarder(headers, field_mappings, sample_rows),
            field_mappings=field_mappings,
            unmapped_source_fields={h: rejected[h] for h in headers if h in rejected},
            missing_schema_fields=[
                f for f in required_fields() if f in catalog and f not in field_mappings
            ],
            overall_confidence=overall_confidence(field_mappings, sample_rows),
            degraded=degraded,
        )
        if degraded:
            proposal.overall_confidence *= cfg.degraded_confidence_factor

        logger.info(
            "Proposal — mapped=%d, unmapped=%d, missing=%s, overall=%.3f, degraded=%s",
            len(proposal.field_mappings),
            len(proposal.unmapped_source_fields),
            proposal.missing_schema_fields,
            proposal.overall_confidence,
            degraded,
        )
        return proposal

    def needs_confirmation(self, proposal: MappingProposal) -> bool:
        return proposal.overall_confidence < self._config.batch_approval_threshold

    # ------------------------------------------------------------------ #
    # Internals
    # ------------------------------------------------------------------ #

    def _infer(
        self, headers: List[str], sample_rows: Sequence[RawRow], catalog: frozenset
    ) -> Tuple[Dict[str, Optional[InferenceCandidate]], bool]:
        if self._inference is None:
            logger.warning("No inference capability configured; dictionary-only mapping")
            return {}, True
        samples = [
            {h: row.value(h) for h in headers}
            for row in sample_rows[: self._config.sample_size]
        ]
        try:
            return dict(self._inference.infer(headers, samples, catalog) or {}), False
        except Exception as exc:
            # Any capability error degrades the proposal instead of failing the stage
            logger.warning("Inference unavailable (%s: %s); dictionary-only mapping", type(exc).__name__, exc)
            return {}, True

    @staticmethod
    def _best_option(
        header: str,
        candidate: Optional[InferenceCandidate],
        fallback: Optional[DictionaryEntry],
        catalog: frozenset,
    ) -> Tuple[Optional[FieldMapping], Optional[str]]:
        options: List[Tuple[FieldMapping, str]] = []
        if candidate is not None and candidate.canonical_field in catalog:
            options.append((
                FieldMapping(header, float(candidate.confidence), MappingMethod.INFERENCE,
                             candidate.reasoning),
                candidate.canonical_field,
            ))
        if fallback is not None:
            options.append((
                FieldMapping(header, fallback.confidence, MappingMethod.DICTIONARY,
                             f"dictionary entry {fallback.source_header!r} below threshold"),
                fallback.canonical_field,
            ))
        if not options:
            return None, None
        return max(options, key=lambda o: o[0].confidence)

    @staticmethod
    def _resolve_duplicates(
        headers: Sequence[str],
        accepted: Dict[str, FieldMapping],
        targets: Dict[str, str],
        rejected: Dict[str, UnmappedSource],
    ) -> Dict[str, FieldMapping]:
        """One header per canonical field; the higher confidence wins, ties go to the earlier column."""
        field_mappings: Dict[str, FieldMapping] = {}
        for header in headers:
            if header not in accepted:
                continue
            mapping, target = accepted[header], targets[header]
            current = field_mappings.get(target)
            if current is None:
                field_mappings[target] = mapping
                continue
            winner, loser = (mapping, current) if mapping.confidence > current.confidence else (current, mapping)
            field_mappings[target] = winner
            rejected[loser.source_header] = UnmappedSource(
                loser.source_header, loser.confidence, target,
                reason=f"{target!r} already mapped from {winner.source_header!r}",
            )
            logger.warning(
                "Duplicate target %r: keeping %r (%.2f), dropping %r (%.2f)",
                target, winner.source_header, winner.confidence,
                loser.source_header, loser.confidence,
            )
        return field_mappings

    def _guess_forwarder(
        self,
        headers: Sequence[str],
        field_mappings: Dict[str, FieldMapping],
        sample_rows: Sequence[RawRow],
    ) -> str:
        mapping = field_mappings.get("forwarder")
        if mapping is not None:
            counts = Counter(
                row.value(mapping.source_header).as_text().strip()
                for row in sample_rows
                if not row.value(mapping.source_header).is_empty
            )
            if counts:
                return counts.most_common(1)[0][0]

        keys = [self._normalizer.normalize_label(h) for h in headers]
        for known in KNOWN_FORMATS:
            if all(any(sig in key for key in keys) for sig in known.signature):
                return known.name
        return "Unknown"


def overall_confidence(
    field_mappings: Dict[str, FieldMapping], sample_rows: Sequence[RawRow]
) -> float:
    """Mean accepted confidence, weighted by how many rows populate each header."""
    if not field_mappings:
        return 0.0
    weights = {
        f: sum(1 for row in sample_rows if not row.value(m.source_header).is_empty)
        for f, m in field_mappings.items()
    }
    if not any(weights.values()):
        weights = {f: 1 for f in field_mappings}
    total = sum(weights.values())
    return sum(field_mappings[f].confidence * w for f, w in weights.items()) / total
