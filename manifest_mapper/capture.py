"""
Raw Capture Store.

Append-only storage of every ingested row together with the header list it
arrived with.  Captured rows are the permanent ground truth that the
auditor compares persisted records against, so a batch is captured
entirely or not at all.
"""

from __future__ import annotations

from typing import Any, Dict, List, Mapping, Sequence

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from manifest_mapper.database import session_scope
from manifest_mapper.exceptions import IngestionError, NotFoundError
from manifest_mapper.logging_setup import get_logger
from manifest_mapper.models import RawRow, RawValue
from manifest_mapper.tables import RawRowRecord

logger = get_logger("capture")


class RawCaptureStore:
    """Write-once store of raw rows, keyed by import batch.

    Parameters
    ----------
    session_factory:
        Session factory bound to the persistence store.
    """

    def __init__(self, session_factory: sessionmaker) -> None:
        self._sessions = session_factory

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #

    def append(self, batch_id: str, rows: Sequence[Mapping[str, Any]]) -> List[int]:
        """Capture *rows* for *batch_id* and return their raw row ids.

        Each row is a mapping with ``headers`` (ordered header list) and
        ``data`` (header -> cell value).  Cell values are resolved to
        ``RawValue`` here, once.

        Raises
        ------
        IngestionError
            If any row is malformed or the write fails.  Nothing is stored
            in that case.
        """
        if not batch_id:
            raise IngestionError("Batch id is required")
        if not rows:
            raise IngestionError(f"Batch {batch_id!r} has no rows to capture")

        prepared = [self._prepare(batch_id, position, row) for position, row in enumerate(rows)]

        try:
            with session_scope(self._sessions) as session:
                offset = session.scalar(
                    select(func.coalesce(func.max(RawRowRecord.row_index) + 1, 0))
                    .where(RawRowRecord.batch_id == batch_id)
                )
                records = []
                for position, (headers, data) in enumerate(prepared):
                    record = RawRowRecord(
                        batch_id=batch_id,
                        row_index=offset + position,
                        original_headers=headers,
                        data={h: v.to_dict() for h, v in data.items()},
                    )
                    session.add(record)
                    records.append(record)
                session.flush()
                ids = [r.id for r in records]
        except SQLAlchemyError as exc:
            logger.error("Capture of batch %r failed: %s", batch_id, exc)
            raise IngestionError(f"Capture of batch {batch_id!r} failed: {exc}") from exc

        logger.info("Captured %d raw rows for batch %r", len(ids), batch_id)
        return ids

    def get(self, raw_row_id: int) -> RawRow:
        """Return the raw row *raw_row_id*.

        Raises
        ------
        NotFoundError
            If no such row was ever captured.
        """
        with session_scope(self._sessions) as session:
            record = session.get(RawRowRecord, raw_row_id)
            if record is None:
                raise NotFoundError(f"Raw row {raw_row_id} not found")
            return _to_raw_row(record)

    def list_batch(self, batch_id: str) -> List[RawRow]:
        """All raw rows of *batch_id* in ingestion order."""
        with session_scope(self._sessions) as session:
            records = session.scalars(
                select(RawRowRecord)
                .where(RawRowRecord.batch_id == batch_id)
                .order_by(RawRowRecord.row_index)
            ).all()
            return [_to_raw_row(r) for r in records]

    def count(self, batch_id: str) -> int:
        with session_scope(self._sessions) as session:
            return session.scalar(
                select(func.count(RawRowRecord.id)).where(RawRowRecord.batch_id == batch_id)
            ) or 0

    # ------------------------------------------------------------------ #
    # Internals
    # ------------------------------------------------------------------ #

    @staticmethod
    def _prepare(batch_id: str, position: int, row: Mapping[str, Any]):
        if not isinstance(row, Mapping):
            raise IngestionError(f"Batch {batch_id!r} row {position}: expected a mapping")

        headers = row.get("headers")
        data = row.get("data")
        if not headers:
            raise IngestionError(f"Batch {batch_id!r} row {position}: no headers")
        if not isinstance(data, Mapping):
            raise IngestionError(f"Batch {batch_id!r} row {position}: data must be a mapping")

        headers = [str(h) if h is not None else "" for h in headers]
        if any(not h.strip() for h in headers):
            raise IngestionError(f"Batch {batch_id!r} row {position}: blank header")

        seen = set()
        for header in headers:
            if header in seen:
                raise IngestionError(
                    f"Batch {batch_id!r} row {position}: duplicate header {header!r}"
                )
            seen.add(header)

        stray = [k for k in data if str(k) not in seen]
        if stray:
            raise IngestionError(
                f"Batch {batch_id!r} row {position}: values for unknown headers {stray!r}"
            )

        values: Dict[str, RawValue] = {
            h: RawValue.from_cell(data.get(h)) for h in headers
        }
        return headers, values


def _to_raw_row(record: RawRowRecord) -> RawRow:
    return RawRow(
        id=record.id,
        batch_id=record.batch_id,
        row_index=record.row_index,
        original_headers=list(record.original_headers),
        data={h: RawValue.from_dict(v) for h, v in record.data.items()},
    )
