from __future__ import annotations

from datetime import datetime
from pathlib import Path

import numpy as np
import pandas as pd
import pytest

from bulk_import.ingest.reader import (
    MalformedFile,
    RowIssue,
    UnsupportedFormat,
    coerce_cell,
    detect_format,
    is_header_row,
    iter_csv_chunks,
    iter_xlsx_rows,
    json_head,
    json_records,
    read_table,
)
from bulk_import.models.session import FileFormat


@pytest.mark.parametrize(
    "filename,mime,expected",
    [
        ("a.csv", "text/csv", FileFormat.CSV),
        ("a.csv", "application/csv", FileFormat.CSV),
        ("a.csv", None, FileFormat.CSV),
        ("a.JSON", None, FileFormat.JSON),
        ("book.xlsx", "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet", FileFormat.XLSX),
        ("book.xls", "application/vnd.ms-excel", FileFormat.XLS),
        ("upload", "application/json", FileFormat.JSON),
        ("a.csv", "text/csv; charset=utf-8", FileFormat.CSV),
    ],
)
def test_detect_format(filename, mime, expected):
    assert detect_format(filename, mime) is expected


def test_detect_format_rejects_unknown_extension():
    with pytest.raises(UnsupportedFormat):
        detect_format("notes.txt", None)


def test_detect_format_rejects_unknown_mime():
    with pytest.raises(UnsupportedFormat):
        detect_format("a.csv", "image/png")


def test_detect_format_rejects_mime_extension_mismatch():
    with pytest.raises(UnsupportedFormat) as e:
        detect_format("a.json", "text/csv")
    assert "does not match" in str(e.value)


def test_coerce_cell_rules():
    assert coerce_cell(" 42 ") == 42
    assert coerce_cell("-7") == -7
    assert coerce_cell("00123") == "00123"
    assert coerce_cell("3.50") == 3.5
    assert coerce_cell("2024-01-15") == datetime(2024, 1, 15)
    assert coerce_cell("2024-01-15T10:30:00") == datetime(2024, 1, 15, 10, 30)
    assert coerce_cell("   ") is None
    assert coerce_cell(float("nan")) is None
    assert coerce_cell(None) is None
    assert coerce_cell("  Widget ") == "Widget"
    value = coerce_cell(np.int64(5))
    assert value == 5 and type(value) is int
    assert coerce_cell(pd.Timestamp("2024-02-01")) == datetime(2024, 2, 1)


def test_is_header_row():
    assert is_header_row(["name", "price", "sku"]) is True
    assert is_header_row(["name", "10"]) is False
    assert is_header_row(["name", "name"]) is False
    assert is_header_row(["name", ""]) is False
    assert is_header_row([]) is False


def test_read_csv_with_header():
    table = read_table(b"name,price,sku\nWidget,19.99,SKU001\nGadget,5,SKU002\n", FileFormat.CSV)
    assert table.has_header is True
    assert table.fields == ["name", "price", "sku"]
    assert table.rows == [
        {"name": "Widget", "price": 19.99, "sku": "SKU001"},
        {"name": "Gadget", "price": 5, "sku": "SKU002"},
    ]
    assert table.issues == []


def test_read_csv_without_header_generates_names():
    table = read_table(b"1,2\n3,4\n", FileFormat.CSV)
    assert table.has_header is False
    assert table.fields == ["column_1", "column_2"]
    assert table.rows == [{"column_1": 1, "column_2": 2}, {"column_1": 3, "column_2": 4}]


def test_read_csv_flags_inconsistent_rows():
    data = b"a,b,c\n1,2\n3,4,5,6\n7,8,9\n10,11,12,13,14\n"
    table = read_table(data, FileFormat.CSV)
    assert [r["a"] for r in table.rows] == [1, 3, 7, 10]
    assert table.rows[0] == {"a": 1, "b": 2, "c": None}
    assert table.rows[1] == {"a": 3, "b": 4, "c": 5}
    assert table.issues == [
        RowIssue(0, 3, 2),
        RowIssue(1, 3, 4),
        RowIssue(3, 3, 5),
    ]


def test_read_csv_skips_empty_rows():
    table = read_table(b"name,price\nA,1\n,\n\nB,2\n", FileFormat.CSV)
    assert [r["name"] for r in table.rows] == ["A", "B"]


def test_read_csv_nrows_limits_rows():
    body = "name,qty\n" + "".join(f"item{i},{i}\n" for i in range(50))
    table = read_table(body.encode(), FileFormat.CSV, nrows=10)
    assert len(table.rows) == 10
    assert table.rows[-1] == {"name": "item9", "qty": 9}


def test_read_csv_empty_file():
    with pytest.raises(MalformedFile):
        read_table(b"\n", FileFormat.CSV)


def test_iter_csv_chunks_streams_all_rows(tmp_path: Path):
    path = tmp_path / "big.csv"
    path.write_text("sku,qty\n" + "".join(f"S{i},{i}\n" for i in range(25)), encoding="utf-8")
    normalizer, rows = iter_csv_chunks(path, chunk_rows=7)
    collected = list(rows)
    assert len(collected) == 25
    assert collected[24] == {"sku": "S24", "qty": 24}
    assert normalizer.fields == ["sku", "qty"]
    assert normalizer.count == 25


def test_json_records_and_normalisation():
    data = b'[{"name": " A ", "price": "1.5"}, {"name": "B"}]'
    table = read_table(data, FileFormat.JSON)
    assert table.fields == ["name", "price"]
    assert table.rows == [{"name": "A", "price": 1.5}, {"name": "B", "price": None}]
    assert table.issues == [RowIssue(1, 2, 1)]


@pytest.mark.parametrize("payload", [b'{"name": "A"}', b"[1, 2]", b"not json"])
def test_json_records_rejects_non_array_of_objects(payload):
    with pytest.raises(MalformedFile):
        json_records(payload)


def _write_xlsx(path: Path, frame: pd.DataFrame) -> Path:
    frame.to_excel(path, index=False, engine="openpyxl")
    return path


def test_read_xlsx(tmp_path: Path):
    path = _write_xlsx(tmp_path / "p.xlsx", pd.DataFrame({
        "name": ["Widget", "Gadget"],
        "price": [19.99, 5.5],
        "sku": ["SKU001", "SKU002"],
    }))
    table = read_table(path, FileFormat.XLSX)
    assert table.fields == ["name", "price", "sku"]
    assert table.rows[0] == {"name": "Widget", "price": 19.99, "sku": "SKU001"}
    assert len(table.rows) == 2


def test_iter_xlsx_rows_matches_read_table(tmp_path: Path):
    path = _write_xlsx(tmp_path / "p.xlsx", pd.DataFrame({
        "name": [f"item{i}" for i in range(12)],
        "qty": list(range(12)),
    }))
    normalizer, rows = iter_xlsx_rows(path)
    streamed = list(rows)
    assert normalizer.fields == ["name", "qty"]
    assert streamed == read_table(path, FileFormat.XLSX).rows


def test_read_xlsx_corrupt_file(tmp_path: Path):
    path = tmp_path / "broken.xlsx"
    path.write_bytes(b"this is not a zip archive")
    with pytest.raises(MalformedFile):
        read_table(path, FileFormat.XLSX)


def test_json_head():
    data = b'  [ {"a": 1} , {"a": 2} ]'
    assert json_head(data, 5) == ([{"a": 1}, {"a": 2}], 2)
    assert json_head(b"[]", 5) == ([], 0)
    records, estimated = json_head(b'[{"a": 1}, {"a": 2}, {"a": 3}, {"a": 4}]', 2)
    assert records == [{"a": 1}, {"a": 2}]
    assert estimated == 4


@pytest.mark.parametrize("payload", [b'{"a": 1}', b"[1]", b'[{"a": 1} {"a": 2}]', b"[{"])
def test_json_head_rejects_malformed(payload):
    with pytest.raises(MalformedFile):
        json_head(payload, 5)
