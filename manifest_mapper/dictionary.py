"""
Header Dictionary.

A persistent, shared mapping from normalised source header text to a
canonical field.  It is the first (and most trusted) matching layer: the
translator consults it before any inference is attempted, and the
improvement learner feeds it after every import.

Design decisions
----------------
* Keys are stored normalised (see ``LabelNormalizer.normalize_label``) so
  one normalisation pass on the incoming header is enough for lookup.
* Catalog aliases are seeded at confidence 1.0 on first start.
* Several pipelines may learn into the dictionary at once.  ``upsert`` is a
  compare-and-swap on the row's ``version`` column, retried on contention,
  so a concurrent write is never silently overwritten.
* Conflicts are not errors.  A rejected write comes back as an
  ``UpsertOutcome`` with ``action=REJECTED`` and is logged.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Union

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import sessionmaker

from manifest_mapper.config import DictionaryConfig
from manifest_mapper.database import session_scope, utcnow
from manifest_mapper.logging_setup import get_logger
from manifest_mapper.models import DictionaryEntry, UpsertAction, UpsertOutcome
from manifest_mapper.normalizer import LabelNormalizer
from manifest_mapper.schema import CANONICAL_FIELDS, builtin_synonyms
from manifest_mapper.tables import DictionaryEntryRow

logger = get_logger("dictionary")


class HeaderDictionary:
    """Transactional header -> canonical field store.

    Parameters
    ----------
    session_factory:
        Session factory bound to the persistence store.
    config:
        Conflict margin, retry budget and seeding options.
    normalizer:
        Shared label normaliser.
    catalog:
        Canonical fields an entry may target.  ``None`` disables the check.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        config: Optional[DictionaryConfig] = None,
        normalizer: Optional[LabelNormalizer] = None,
        catalog: Optional[Iterable[str]] = CANONICAL_FIELDS,
    ) -> None:
        self._sessions = session_factory
        self._config = config or DictionaryConfig()
        self._normalizer = normalizer or LabelNormalizer()
        self._catalog = frozenset(catalog) if catalog is not None else None

    # ------------------------------------------------------------------ #
    # Reads
    # ------------------------------------------------------------------ #

    def lookup(self, header: str) -> Optional[DictionaryEntry]:
        """Return the active entry for *header*, or ``None``."""
        key = self._normalizer.normalize_label(header)
        if not key:
            return None
        with session_scope(self._sessions) as session:
            row = session.scalar(
                select(DictionaryEntryRow).where(DictionaryEntryRow.source_header == key)
            )
            return _to_entry(row) if row else None

    def all_entries(self) -> List[DictionaryEntry]:
        with session_scope(self._sessions) as session:
            rows = session.scalars(
                select(DictionaryEntryRow).order_by(DictionaryEntryRow.source_header)
            ).all()
            return [_to_entry(r) for r in rows]

    @property
    def size(self) -> int:
        with session_scope(self._sessions) as session:
            return session.scalar(select(func.count(DictionaryEntryRow.id))) or 0

    # ------------------------------------------------------------------ #
    # Writes
    # ------------------------------------------------------------------ #

    def record_usage(self, entry: Union[DictionaryEntry, str]) -> Optional[DictionaryEntry]:
        """Increment ``times_used`` and stamp ``last_used_at`` for *entry*.

        The increment happens in SQL so concurrent users never lose counts.
        Returns the refreshed entry, or ``None`` if it no longer exists.
        """
        header = entry.source_header if isinstance(entry, DictionaryEntry) else entry
        key = self._normalizer.normalize_label(header)
        with session_scope(self._sessions) as session:
            session.execute(
                update(DictionaryEntryRow)
                .where(DictionaryEntryRow.source_header == key)
                .values(
                    times_used=DictionaryEntryRow.times_used + 1,
                    last_used_at=utcnow(),
                    version=DictionaryEntryRow.version + 1,
                )
            )
            row = session.scalar(
                select(DictionaryEntryRow)
                .where(DictionaryEntryRow.source_header == key)
                .execution_options(populate_existing=True)
            )
            return _to_entry(row) if row else None

    def upsert(self, header: str, canonical_field: str, confidence: float) -> UpsertOutcome:
        """Propose ``header -> canonical_field`` at *confidence*.

        Policy against an existing entry for the same header:

        * lower confidence than the existing entry: rejected;
        * same canonical field: refreshed (confidence never regresses,
          usage stats updated);
        * different field: replaces the entry only if
          ``confidence - existing > conflict_margin``, else rejected as a
          conflict.

        Raises
        ------
        ValueError
            If *canonical_field* is not in the catalog or *confidence* is
            outside ``[0, 1]``.
        """
        key = self._normalizer.normalize_label(header)
        if not key:
            raise ValueError("Header is empty after normalisation")
        self._check_target(canonical_field, confidence)

        for attempt in range(1, self._config.max_cas_retries + 1):
            try:
                outcome = self._try_upsert(key, canonical_field, confidence)
            except (IntegrityError, OperationalError) as exc:
                logger.debug("upsert %r attempt %d lost a race: %s", key, attempt, exc)
                continue
            if outcome is not None:
                return outcome
            logger.debug("upsert %r attempt %d: version moved, retrying", key, attempt)

        logger.warning(
            "Dictionary upsert %r -> %r abandoned after %d attempts",
            key, canonical_field, self._config.max_cas_retries,
        )
        return UpsertOutcome(
            UpsertAction.REJECTED, self.lookup(key), reason="contention: retries exhausted"
        )

    def seed(self, synonyms: Dict[str, str], confidence: float = 1.0) -> int:
        """Insert *synonyms* whose header has no entry yet.  Returns count added."""
        added = 0
        for header, canonical_field in synonyms.items():
            key = self._normalizer.normalize_label(header)
            self._check_target(canonical_field, confidence)
            try:
                with session_scope(self._sessions) as session:
                    exists = session.scalar(
                        select(DictionaryEntryRow.id).where(DictionaryEntryRow.source_header == key)
                    )
                    if exists is not None:
                        continue
                    session.add(
                        DictionaryEntryRow(
                            source_header=key,
                            canonical_field=canonical_field,
                            confidence=confidence,
                            times_used=0,
                            created_at=utcnow(),
                        )
                    )
                added += 1
            except IntegrityError:
                # Another process seeded the same header first
                continue
        if added:
            logger.info("Seeded %d dictionary entries", added)
        return added

    def seed_builtin(self) -> int:
        return self.seed(builtin_synonyms())

    def load_custom_synonyms(self, path: Union[str, Path]) -> int:
        """Merge a JSON file of ``{"header": "canonicalField"}`` at confidence 1.0.

        Returns the number of entries accepted by the upsert policy.
        """
        path = Path(path)
        with open(path, encoding="utf-8") as fh:
            data: Dict[str, str] = json.load(fh)
        if not isinstance(data, dict):
            raise ValueError(f"{path}: expected a JSON object of header -> field")

        accepted = 0
        for header, canonical_field in data.items():
            if self.upsert(header, canonical_field, 1.0).accepted:
                accepted += 1
        logger.info("Loaded %d/%d custom synonyms from %s", accepted, len(data), path)
        return accepted

    # ------------------------------------------------------------------ #
    # Internals
    # ------------------------------------------------------------------ #

    def _check_target(self, canonical_field: str, confidence: float) -> None:
        if self._catalog is not None and canonical_field not in self._catalog:
            raise ValueError(f"Unknown canonical field: {canonical_field!r}")
        if not 0.0 <= confidence <= 1.0:
            raise ValueError(f"Confidence must be within [0, 1], got {confidence}")

    def _try_upsert(
        self, key: str, canonical_field: str, confidence: float
    ) -> Optional[UpsertOutcome]:
        """One compare-and-swap attempt.  ``None`` means the row moved underneath us."""
        now = utcnow()
        with session_scope(self._sessions) as session:
            row = session.scalar(
                select(DictionaryEntryRow)
                .where(DictionaryEntryRow.source_header == key)
                .execution_options(populate_existing=True)
            )

            if row is None:
                session.add(
                    DictionaryEntryRow(
                        source_header=key,
                        canonical_field=canonical_field,
                        confidence=confidence,
                        times_used=0,
                        created_at=now,
                        version=1,
                    )
                )
                session.flush()
                logger.info("Dictionary add: %r -> %r (%.2f)", key, canonical_field, confidence)
                return UpsertOutcome(
                    UpsertAction.INSERTED,
                    DictionaryEntry(key, canonical_field, confidence, 0, now, None, 1),
                )

            existing = _to_entry(row)

            if confidence < existing.confidence:
                reason = (
                    f"lower confidence {confidence:.2f} than existing "
                    f"{existing.canonical_field!r} at {existing.confidence:.2f}"
                )
                logger.warning("Dictionary conflict on %r: %s", key, reason)
                return UpsertOutcome(UpsertAction.REJECTED, existing, reason)

            if canonical_field == existing.canonical_field:
                values = dict(
                    confidence=max(existing.confidence, confidence),
                    times_used=existing.times_used + 1,
                    last_used_at=now,
                )
                action = UpsertAction.REFRESHED
            elif confidence - existing.confidence > self._config.conflict_margin:
                values = dict(
                    canonical_field=canonical_field,
                    confidence=confidence,
                    times_used=0,
                    created_at=now,
                    last_used_at=None,
                )
                action = UpsertAction.REPLACED
            else:
                reason = (
                    f"conflicts with {existing.canonical_field!r} at "
                    f"{existing.confidence:.2f} (margin {self._config.conflict_margin:.2f})"
                )
                logger.warning("Dictionary conflict on %r: %s", key, reason)
                return UpsertOutcome(UpsertAction.REJECTED, existing, reason)

            result = session.execute(
                update(DictionaryEntryRow)
                .where(
                    DictionaryEntryRow.id == row.id,
                    DictionaryEntryRow.version == existing.version,
                )
                .values(version=existing.version + 1, **values)
            )
            if result.rowcount != 1:
                return None

        updated = DictionaryEntry(
            source_header=key,
            canonical_field=values.get("canonical_field", existing.canonical_field),
            confidence=values["confidence"],
            times_used=values["times_used"],
            created_at=values.get("created_at", existing.created_at),
            last_used_at=values["last_used_at"],
            version=existing.version + 1,
        )
        if action is UpsertAction.REPLACED:
            logger.info(
                "Dictionary replace: %r %r (%.2f) -> %r (%.2f)",
                key, existing.canonical_field, existing.confidence,
                canonical_field, confidence,
            )
        else:
            logger.info("Dictionary refresh: %r -> %r (%.2f)", key, canonical_field, updated.confidence)
        return UpsertOutcome(action, updated)


def _to_entry(row: DictionaryEntryRow) -> DictionaryEntry:
    return DictionaryEntry(
        source_header=row.source_header,
        canonical_field=row.canonical_field,
        confidence=row.confidence,
        times_used=row.times_used,
        created_at=row.created_at,
        last_used_at=row.last_used_at,
        version=row.version,
    )
