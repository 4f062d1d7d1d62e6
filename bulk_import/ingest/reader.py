from __future__ import annotations

import io
import json
import math
import re
import zipfile
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from datetime import date, datetime
from pathlib import Path
from typing import Any

import numpy as np
import pandas as pd
from openpyxl import load_workbook
from xlrd import XLRDError

from ..errors import ImportPipelineError
from ..models.session import FileFormat

"""Tabular file readers (CSV / JSON / XLSX / XLS) producing ordered row dicts.

Rows are dynamic: keys are the source column names discovered at runtime.

Normalisation rules shared by every format:
- header detection: first row is a header when all cells are non-empty text and unique,
  otherwise synthetic names column_1..column_n are used and the first row is data
- cells are trimmed, blanks become None
- integer / float lexemes become numbers (leading-zero codes such as 00123 stay text)
- ISO dates become datetime
- rows with a different cell count than the header are kept and flagged as RowIssue
- fully empty rows are skipped
"""

__all__ = [
    "IngestError",
    "UnsupportedFormat",
    "FileTooLarge",
    "MalformedFile",
    "RowIssue",
    "ParsedTable",
    "RowNormalizer",
    "MIME_TYPES",
    "detect_format",
    "coerce_cell",
    "parse_iso_datetime",
    "is_header_row",
    "read_table",
    "iter_csv_chunks",
    "iter_xlsx_rows",
    "json_records",
    "json_head",
    "normalize_json",
]


class IngestError(ImportPipelineError):
    """Fatal problem with an uploaded file. Never retried."""


class UnsupportedFormat(IngestError):
    pass


class FileTooLarge(IngestError):
    pass


class MalformedFile(IngestError):
    pass


MIME_TYPES: dict[str, FileFormat] = {
    "text/csv": FileFormat.CSV,
    "application/csv": FileFormat.CSV,
    "application/json": FileFormat.JSON,
    "application/vnd.ms-excel": FileFormat.XLS,
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet": FileFormat.XLSX,
}

_EXTENSIONS: dict[str, FileFormat] = {
    ".csv": FileFormat.CSV,
    ".json": FileFormat.JSON,
    ".xlsx": FileFormat.XLSX,
    ".xls": FileFormat.XLS,
}

_INT_RE = re.compile(r"^[+-]?\d+$")
_FLOAT_RE = re.compile(r"^[+-]?(\d+\.\d*|\.\d+|\d+(\.\d*)?[eE][+-]?\d+)$")
_ISO_DATE_RE = re.compile(
    r"^\d{4}-\d{2}-\d{2}([T ]\d{2}:\d{2}(:\d{2}(\.\d+)?)?(Z|[+-]\d{2}:?\d{2})?)?$"
)
# python engine の on_bad_lines で切り詰めた行の目印 (元のセル数を保持)
_OVERFLOW_MARK = "\x00overflow:"
_EXTRA_COLUMN = "__extra__"


@dataclass(frozen=True)
class RowIssue:
    """A data row whose cell count differs from the header width."""
    record_index: int  # 0-based, same numbering as the parsed records
    expected: int
    found: int


@dataclass
class ParsedTable:
    fields: list[str]
    rows: list[dict[str, Any]]
    issues: list[RowIssue] = field(default_factory=list)
    has_header: bool = True


def detect_format(filename: str, mime_type: str | None) -> FileFormat:
    """Resolve the file format from its MIME type, cross-checked with the extension.

    Raises:
        UnsupportedFormat: unknown MIME type / extension, or the two disagree
    """
    ext = Path(filename).suffix.lower()
    by_ext = _EXTENSIONS.get(ext)
    if mime_type:
        by_mime = MIME_TYPES.get(mime_type.split(";")[0].strip().lower())
        if by_mime is None:
            raise UnsupportedFormat(f"unsupported file type: {mime_type}")
        if by_ext is not None and by_ext is not by_mime:
            raise UnsupportedFormat(
                f"file extension {ext} does not match declared type {mime_type}"
            )
        return by_mime
    if by_ext is None:
        raise UnsupportedFormat(f"unsupported file extension: {ext or '(none)'}")
    return by_ext


def parse_iso_datetime(text: str) -> datetime | None:
    if not _ISO_DATE_RE.match(text):
        return None
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        return None


def _is_missing(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, float) and math.isnan(value):
        return True
    return value is pd.NaT or value is pd.NA


def coerce_cell(value: Any) -> Any:
    """Normalise one raw cell value."""
    if _is_missing(value):
        return None
    if isinstance(value, np.generic):
        value = value.item()
    if isinstance(value, pd.Timestamp):
        return value.to_pydatetime()
    if isinstance(value, (bool, int, float, datetime)):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    if not isinstance(value, str):
        return value

    text = value.strip()
    if text == "":
        return None
    if _INT_RE.match(text):
        digits = text.lstrip("+-")
        if len(digits) > 1 and digits.startswith("0"):
            return text  # 先頭ゼロのコードは文字列のまま
        return int(text)
    if _FLOAT_RE.match(text):
        return float(text)
    parsed = parse_iso_datetime(text)
    if parsed is not None:
        return parsed
    return text


def is_header_row(cells: list[Any]) -> bool:
    """True when every cell is non-empty text and no name repeats."""
    if not cells:
        return False
    names = []
    for cell in cells:
        value = coerce_cell(cell)
        if not isinstance(value, str):
            return False
        names.append(value)
    return len(set(names)) == len(names)


class RowNormalizer:
    """Turns raw cell lists into ordered row dicts, tracking header and row issues.

    Built from the first raw row; feed every subsequent raw row to `normalize`.
    """

    def __init__(self, first_row: list[Any]) -> None:
        self.has_header = is_header_row(first_row)
        if self.has_header:
            self.fields = [str(c).strip() for c in first_row]
        else:
            self.fields = [f"column_{i}" for i in range(1, len(first_row) + 1)]
        self.issues: list[RowIssue] = []
        self.count = 0

    def normalize(self, cells: list[Any], found: int | None = None) -> dict[str, Any] | None:
        """Returns the row dict, or None for a fully empty row."""
        width = len(self.fields)
        values = [coerce_cell(c) for c in cells[:width]]
        values += [None] * (width - len(values))
        if all(v is None for v in values):
            return None
        found = len(cells) if found is None else found
        if found != width:
            self.issues.append(RowIssue(self.count, width, found))
        self.count += 1
        return dict(zip(self.fields, values, strict=True))

    def feed(self, raw_rows: Iterable[tuple[list[Any], int | None]]) -> Iterator[dict[str, Any]]:
        for cells, found in raw_rows:
            row = self.normalize(cells, found)
            if row is not None:
                yield row


def _source(source: bytes | Path) -> Any:
    return io.BytesIO(source) if isinstance(source, bytes) else source


# ---- CSV -------------------------------------------------------------------

def _csv_kwargs() -> dict[str, Any]:
    return {
        "header": None,
        "dtype": str,
        "keep_default_na": False,
        "engine": "python",
        "encoding": "utf-8-sig",
        "skip_blank_lines": True,
    }


def _read_csv_first_row(source: bytes | Path) -> list[Any]:
    try:
        head = pd.read_csv(_source(source), nrows=1, **_csv_kwargs())
    except pd.errors.EmptyDataError as e:
        raise MalformedFile("csv file is empty") from e
    except (pd.errors.ParserError, UnicodeDecodeError) as e:
        raise MalformedFile(f"csv could not be parsed: {e}") from e
    if head.empty:
        raise MalformedFile("csv file is empty")
    return head.iloc[0].tolist()


def _overflow_handler(width: int):
    def handle(bad_line: list[str]) -> list[str]:
        # ヘッダ幅 + 目印列 に収める
        return bad_line[:width] + [f"{_OVERFLOW_MARK}{len(bad_line)}"]
    return handle


def _csv_frame_rows(frame: pd.DataFrame, width: int) -> Iterator[tuple[list[Any], int]]:
    for raw in frame.itertuples(index=False, name=None):
        cells = list(raw[:width])
        found = sum(1 for c in cells if not _is_missing(c))
        extra = raw[width]
        if not _is_missing(extra):
            extra = str(extra)
            found = int(extra[len(_OVERFLOW_MARK):]) if extra.startswith(_OVERFLOW_MARK) else width + 1
        yield cells, found


def _csv_reader(source: bytes | Path, width: int, **kwargs: Any) -> Any:
    names = list(range(width)) + [_EXTRA_COLUMN]
    try:
        return pd.read_csv(
            _source(source),
            names=names,
            on_bad_lines=_overflow_handler(width),
            **_csv_kwargs(),
            **kwargs,
        )
    except (pd.errors.ParserError, UnicodeDecodeError) as e:
        raise MalformedFile(f"csv could not be parsed: {e}") from e


def _read_csv(source: bytes | Path, nrows: int | None) -> ParsedTable:
    first = _read_csv_first_row(source)
    normalizer = RowNormalizer(first)
    width = len(first)
    skip = 1 if normalizer.has_header else 0
    frame = _csv_reader(source, width, skiprows=skip, nrows=nrows)
    rows = list(normalizer.feed(_csv_frame_rows(frame, width)))
    return ParsedTable(normalizer.fields, rows, normalizer.issues, normalizer.has_header)


def iter_csv_chunks(path: Path, chunk_rows: int) -> tuple[RowNormalizer, Iterator[dict[str, Any]]]:
    """Chunked CSV reader for the streaming path. Peak memory is one chunk.

    Returns the normalizer (fields / issues, populated while iterating) and the row iterator.
    """
    first = _read_csv_first_row(path)
    normalizer = RowNormalizer(first)
    width = len(first)
    skip = 1 if normalizer.has_header else 0

    def rows() -> Iterator[dict[str, Any]]:
        with _csv_reader(path, width, skiprows=skip, chunksize=chunk_rows) as reader:
            try:
                for chunk in reader:
                    yield from normalizer.feed(_csv_frame_rows(chunk, width))
            except pd.errors.ParserError as e:
                raise MalformedFile(f"csv could not be parsed: {e}") from e

    return normalizer, rows()


# ---- JSON ------------------------------------------------------------------

def json_records(source: bytes | Path) -> list[dict[str, Any]]:
    """Load a JSON array of objects."""
    try:
        raw = source if isinstance(source, bytes) else source.read_bytes()
        data = json.loads(raw.decode("utf-8-sig"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise MalformedFile(f"invalid json: {e}") from e
    if not isinstance(data, list):
        raise MalformedFile("json upload must be an array of objects")
    for i, item in enumerate(data):
        if not isinstance(item, dict):
            raise MalformedFile(f"json element {i} is not an object")
    return data


_JSON_WS = re.compile(r"[ \t\n\r]*")


def json_head(source: bytes | Path, limit: int) -> tuple[list[dict[str, Any]], int | None]:
    """First `limit` objects of a JSON array, decoded one element at a time.

    Decoding stops after `limit` objects; the rest of the array is never parsed.
    Also returns the element count: exact when the array closes within `limit`,
    otherwise extrapolated from the characters consumed so far.
    """
    try:
        raw = source if isinstance(source, bytes) else source.read_bytes()
        text = raw.decode("utf-8-sig")
    except UnicodeDecodeError as e:
        raise MalformedFile(f"invalid json: {e}") from e
    decoder = json.JSONDecoder()
    pos = _JSON_WS.match(text, 0).end()
    if not text.startswith("[", pos):
        raise MalformedFile("json upload must be an array of objects")
    pos = _JSON_WS.match(text, pos + 1).end()
    records: list[dict[str, Any]] = []
    if text.startswith("]", pos):
        return records, 0
    while len(records) < limit:
        try:
            item, pos = decoder.raw_decode(text, pos)
        except json.JSONDecodeError as e:
            raise MalformedFile(f"invalid json: {e}") from e
        if not isinstance(item, dict):
            raise MalformedFile(f"json element {len(records)} is not an object")
        records.append(item)
        pos = _JSON_WS.match(text, pos).end()
        if text.startswith("]", pos):
            return records, len(records)
        if not text.startswith(",", pos):
            raise MalformedFile(f"invalid json: expected ',' or ']' at char {pos}")
        pos = _JSON_WS.match(text, pos + 1).end()
    if not records:
        return records, None
    return records, max(round(len(text) * len(records) / pos), len(records))


def _json_fields(records: list[dict[str, Any]]) -> list[str]:
    seen: dict[str, None] = {}
    for record in records:
        for key in record:
            seen.setdefault(str(key), None)
    return list(seen)


def normalize_json(records: list[dict[str, Any]]) -> ParsedTable:
    fields = _json_fields(records)
    table = ParsedTable(fields, [], [], True)
    width = len(fields)
    for record in records:
        values = {name: coerce_cell(record.get(name)) for name in fields}
        if all(v is None for v in values.values()):
            continue
        if len(record) != width:
            table.issues.append(RowIssue(len(table.rows), width, len(record)))
        table.rows.append(values)
    return table


# ---- Excel -----------------------------------------------------------------

def _excel_engine(fmt: FileFormat) -> str:
    return "openpyxl" if fmt is FileFormat.XLSX else "xlrd"


def _read_excel(source: bytes | Path, fmt: FileFormat, nrows: int | None) -> ParsedTable:
    try:
        frame = pd.read_excel(
            _source(source), sheet_name=0, header=None, dtype=object,
            engine=_excel_engine(fmt), nrows=nrows,
        )
    except (ValueError, OSError, KeyError, zipfile.BadZipFile, XLRDError) as e:
        raise MalformedFile(f"workbook could not be read: {e}") from e
    records = [list(r) for r in frame.itertuples(index=False, name=None)]
    # 空行は先頭ヘッダ判定の対象外
    records = [r for r in records if not all(_is_missing(c) for c in r)]
    if not records:
        raise MalformedFile("workbook's first sheet is empty")
    normalizer = RowNormalizer(records[0])
    start = 1 if normalizer.has_header else 0
    width = len(normalizer.fields)
    rows = list(normalizer.feed((r, width) for r in records[start:]))
    return ParsedTable(normalizer.fields, rows, normalizer.issues, normalizer.has_header)


def iter_xlsx_rows(path: Path) -> tuple[RowNormalizer, Iterator[dict[str, Any]]]:
    """Row-at-a-time XLSX reader (openpyxl read-only mode) for the streaming path."""
    try:
        workbook = load_workbook(path, read_only=True, data_only=True)
    except (OSError, KeyError, ValueError, zipfile.BadZipFile) as e:
        raise MalformedFile(f"workbook could not be read: {e}") from e
    sheet = workbook.worksheets[0]
    raw_iter = sheet.iter_rows(values_only=True)
    first: list[Any] | None = None
    for raw in raw_iter:
        if not all(_is_missing(c) for c in raw):
            first = list(raw)
            break
    if first is None:
        workbook.close()
        raise MalformedFile("workbook's first sheet is empty")

    normalizer = RowNormalizer(first)
    width = len(normalizer.fields)

    def rows() -> Iterator[dict[str, Any]]:
        try:
            if not normalizer.has_header:
                yield from normalizer.feed([(first, width)])
            yield from normalizer.feed((list(r), width) for r in raw_iter)
        finally:
            workbook.close()

    return normalizer, rows()


def read_table(source: bytes | Path, fmt: FileFormat, nrows: int | None = None) -> ParsedTable:
    """Parse a whole file (or its first `nrows` data rows) into a ParsedTable."""
    if fmt is FileFormat.CSV:
        return _read_csv(source, nrows)
    if fmt is FileFormat.JSON:
        records = json_records(source)
        return normalize_json(records if nrows is None else records[:nrows])
    return _read_excel(source, fmt, None if nrows is None else nrows + 1)
