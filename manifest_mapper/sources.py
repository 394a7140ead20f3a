"""
Manifest Source Readers.

Turns uploaded spreadsheets into the capture-ready shape the pipeline
ingests: a list of ``{"headers": [...], "data": {header: cell}}`` rows.

Supported inputs
----------------
* Excel workbooks (``.xlsx``) via ``openpyxl``; cell types are kept as read
  (dates stay dates, serial numbers stay numbers).
* CSV files or CSV text; every cell is a string.
* Plain Python records (``list`` of ``dict``).

The first non-empty row of a sheet is the header row.  Blank header cells
become ``"Column N"`` and repeated headers get a ``" (2)"`` style suffix so
that no column is silently merged into another.
"""

from __future__ import annotations

import csv
from io import StringIO
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Union

import openpyxl

from manifest_mapper.exceptions import IngestionError
from manifest_mapper.logging_setup import get_logger

logger = get_logger("sources")

CaptureRow = Dict[str, Any]


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _header_names(cells: Sequence[Any], width: int) -> List[str]:
    headers: List[str] = []
    seen: Dict[str, int] = {}
    for index in range(width):
        cell = cells[index] if index < len(cells) else None
        name = f"Column {index + 1}" if _is_blank(cell) else str(cell).strip()
        if name in seen:
            base = name
            while name in seen:
                seen[base] += 1
                name = f"{base} ({seen[base]})"
        seen[name] = 1
        headers.append(name)
    return headers


def rows_from_grid(grid: Sequence[Sequence[Any]]) -> List[CaptureRow]:
    """Convert a cell grid (header row first) into capture rows."""
    grid = [list(r) for r in grid]
    start = next((i for i, r in enumerate(grid) if any(not _is_blank(c) for c in r)), None)
    if start is None:
        raise IngestionError("Source has no header row")

    body = [r for r in grid[start + 1:] if any(not _is_blank(c) for c in r)]
    width = max(len(r) for r in [grid[start], *body])
    headers = _header_names(grid[start], width)

    rows: List[CaptureRow] = []
    for cells in body:
        data = {h: (cells[i] if i < len(cells) else None) for i, h in enumerate(headers)}
        rows.append({"headers": list(headers), "data": data})
    return rows


class ManifestReader:
    """Stateless readers for uploaded manifests."""

    @staticmethod
    def read_workbook(path: Union[str, Path], sheet: Optional[str] = None) -> List[CaptureRow]:
        """Read one worksheet (the active one by default) of an ``.xlsx`` file."""
        path = Path(path)
        try:
            wb = openpyxl.load_workbook(path, data_only=True, read_only=True)
        except Exception as exc:  # bad zip, bad xml or not a workbook
            raise IngestionError(f"Cannot open workbook {path.name}: {exc}") from exc

        try:
            if sheet is not None and sheet not in wb.sheetnames:
                raise IngestionError(f"Workbook {path.name} has no sheet {sheet!r}")
            ws = wb[sheet] if sheet is not None else wb.active
            grid = [list(r) for r in ws.iter_rows(values_only=True)]
            logger.info("Read sheet %r of %s: %d rows", ws.title, path.name, len(grid))
        finally:
            wb.close()

        return rows_from_grid(grid)

    @staticmethod
    def read_csv(source: Union[str, Path]) -> List[CaptureRow]:
        """Read from a CSV file path or raw CSV text."""
        if isinstance(source, Path) or (
            isinstance(source, str) and "\n" not in source and Path(source).exists()
        ):
            with open(Path(source), encoding="utf-8-sig", newline="") as fh:
                grid = list(csv.reader(fh))
        else:
            grid = list(csv.reader(StringIO(source)))
        logger.info("Read CSV: %d rows", len(grid))
        return rows_from_grid(grid)

    @staticmethod
    def read_records(records: Iterable[Mapping[str, Any]]) -> List[CaptureRow]:
        """Wrap plain dict records; headers are the ordered union of their keys."""
        records = list(records)
        headers: List[str] = []
        for record in records:
            for key in record:
                if str(key) not in headers:
                    headers.append(str(key))
        return [
            {"headers": list(headers), "data": {str(k): v for k, v in record.items()}}
            for record in records
        ]

    @classmethod
    def read_path(cls, path: Union[str, Path]) -> List[CaptureRow]:
        """Dispatch on file extension."""
        path = Path(path)
        suffix = path.suffix.lower()
        if suffix in (".xlsx", ".xlsm"):
            return cls.read_workbook(path)
        if suffix == ".csv":
            return cls.read_csv(path)
        raise IngestionError(f"Unsupported manifest type: {suffix or path.name}")
