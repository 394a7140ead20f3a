"""
Unit tests for the manifest source readers.
"""

from __future__ import annotations

from datetime import datetime

import openpyxl
import pytest

from manifest_mapper.exceptions import IngestionError
from manifest_mapper.sources import ManifestReader, rows_from_grid


@pytest.fixture
def workbook_path(tmp_path):
    wb = openpyxl.Workbook()
    ws = wb.active
    ws.title = "Manifest"
    ws.append([None, None, None])
    ws.append(["Container", "LFD", None, "Carrier"])
    ws.append(["MSCU1234567", datetime(2024, 1, 10), "note", "MSC"])
    ws.append([None, None, None, None])
    ws.append(["TGHU7654321", 45302, None, "ONE"])
    other = wb.create_sheet("Other")
    other.append(["Box"])
    other.append(["X1"])
    path = tmp_path / "manifest.xlsx"
    wb.save(path)
    return path


# ======================================================================
# Grids
# ======================================================================

class TestRowsFromGrid:
    def test_header_row_and_body(self) -> None:
        rows = rows_from_grid([["Container", "ETA"], ["X1", "2024-01-10"]])
        assert rows == [{"headers": ["Container", "ETA"], "data": {"Container": "X1", "ETA": "2024-01-10"}}]

    def test_blank_and_repeated_headers(self) -> None:
        rows = rows_from_grid([["ETA", "", "ETA"], ["a", "b", "c"]])
        assert rows[0]["headers"] == ["ETA", "Column 2", "ETA (2)"]

    def test_generated_names_never_collide(self) -> None:
        rows = rows_from_grid([["A (2)", "A", "A", "Column 4", None], ["x", "y", "z", "w", "v"]])
        headers = rows[0]["headers"]
        assert headers == ["A (2)", "A", "A (3)", "Column 4", "Column 5"]
        assert rows[0]["data"]["A (2)"] == "x"
        assert rows[0]["data"]["A (3)"] == "z"

    def test_ragged_rows_padded(self) -> None:
        rows = rows_from_grid([["A"], ["1", "2"]])
        assert rows[0]["headers"] == ["A", "Column 2"]
        rows = rows_from_grid([["A", "B"], ["1"]])
        assert rows[0]["data"] == {"A": "1", "B": None}

    def test_empty_source(self) -> None:
        with pytest.raises(IngestionError):
            rows_from_grid([[None, ""], []])


# ======================================================================
# Files
# ======================================================================

class TestReaders:
    def test_workbook(self, workbook_path) -> None:
        rows = ManifestReader.read_workbook(workbook_path)
        assert len(rows) == 2
        assert rows[0]["headers"] == ["Container", "LFD", "Column 3", "Carrier"]
        assert rows[0]["data"]["LFD"] == datetime(2024, 1, 10)
        assert rows[1]["data"]["LFD"] == 45302

    def test_named_sheet(self, workbook_path) -> None:
        rows = ManifestReader.read_workbook(workbook_path, sheet="Other")
        assert rows == [{"headers": ["Box"], "data": {"Box": "X1"}}]

    def test_missing_sheet(self, workbook_path) -> None:
        with pytest.raises(IngestionError):
            ManifestReader.read_workbook(workbook_path, sheet="Nope")

    def test_not_a_workbook(self, tmp_path) -> None:
        path = tmp_path / "broken.xlsx"
        path.write_text("not a zip")
        with pytest.raises(IngestionError):
            ManifestReader.read_workbook(path)

    def test_csv_text(self) -> None:
        rows = ManifestReader.read_csv("Container,LFD\nMSCU1234567,45301\n")
        assert rows == [{"headers": ["Container", "LFD"], "data": {"Container": "MSCU1234567", "LFD": "45301"}}]

    def test_csv_file_with_bom(self, tmp_path) -> None:
        path = tmp_path / "manifest.csv"
        path.write_bytes("\ufeffContainer,LFD\nX1,45301\n".encode("utf-8"))
        assert ManifestReader.read_path(path)[0]["headers"] == ["Container", "LFD"]

    def test_unsupported_extension(self, tmp_path) -> None:
        with pytest.raises(IngestionError):
            ManifestReader.read_path(tmp_path / "manifest.pdf")

    def test_records(self) -> None:
        rows = ManifestReader.read_records([{"Container": "X1"}, {"Container": "X2", "ETA": "2024-01-10"}])
        assert rows[0]["headers"] == ["Container", "ETA"]
        assert rows[0]["data"] == {"Container": "X1"}
