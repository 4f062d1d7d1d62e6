from __future__ import annotations

import json
import logging
import os
import tempfile
from collections.abc import Iterator
from dataclasses import dataclass, field
from datetime import datetime
from itertools import islice
from pathlib import Path
from typing import Any

from openpyxl import load_workbook

from ..config.loader import IngestConfig
from ..models.session import FileFormat, FileMetadata, ParseStrategy
from .reader import (
    FileTooLarge,
    MalformedFile,
    ParsedTable,
    RowIssue,
    detect_format,
    iter_csv_chunks,
    iter_xlsx_rows,
    json_head,
    json_records,
    normalize_json,
    parse_iso_datetime,
    read_table,
)

"""File ingestor: size / format gate, parse strategy selection and fast preview.

Strategy:
- size < streaming_threshold  -> IN_MEMORY: every row parsed and returned
- size >= streaming_threshold -> STREAMING: rows written chunk by chunk to a JSON Lines
  artifact in a temp directory; only field names, row count and a bounded sample are
  held in memory

The artifact is removed on every failure path; on success the caller owns it
(IngestResult.cleanup / context manager).
"""

__all__ = [
    "FileIngestor",
    "IngestResult",
    "FilePreview",
    "StreamArtifact",
]

logger = logging.getLogger(__name__)

_COUNT_BLOCK = 1024 * 1024


def _jsonable(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def _revive(row: dict[str, Any]) -> dict[str, Any]:
    for key, value in row.items():
        if isinstance(value, str):
            parsed = parse_iso_datetime(value)
            if parsed is not None:
                row[key] = parsed
    return row


@dataclass
class StreamArtifact:
    """JSON Lines file holding normalised rows of a streamed upload."""
    path: Path
    fields: list[str]
    row_count: int = 0

    def iter_rows(self) -> Iterator[dict[str, Any]]:
        if not self.path.exists():
            raise MalformedFile(f"stream artifact already removed: {self.path}")
        with self.path.open("r", encoding="utf-8") as fh:
            for line in fh:
                if line.strip():
                    yield _revive(json.loads(line))

    def head(self, n: int) -> list[dict[str, Any]]:
        return list(islice(self.iter_rows(), n))

    def cleanup(self) -> None:
        try:
            self.path.unlink()
            logger.debug("Removed stream artifact %s", self.path)
        except FileNotFoundError:
            pass

    def __enter__(self) -> StreamArtifact:
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.cleanup()


@dataclass
class IngestResult:
    """Parsed upload. `rows` is set for IN_MEMORY, `artifact` for STREAMING."""
    metadata: FileMetadata
    strategy: ParseStrategy
    fields: list[str]
    row_count: int
    sample: list[dict[str, Any]]
    rows: list[dict[str, Any]] | None = None
    artifact: StreamArtifact | None = None
    issues: list[RowIssue] = field(default_factory=list)
    has_header: bool = True

    def iter_rows(self) -> Iterator[dict[str, Any]]:
        if self.rows is not None:
            return iter(self.rows)
        assert self.artifact is not None
        return self.artifact.iter_rows()

    def load_rows(self) -> list[dict[str, Any]]:
        return list(self.iter_rows())

    def cleanup(self) -> None:
        if self.artifact is not None:
            self.artifact.cleanup()

    def __enter__(self) -> IngestResult:
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.cleanup()


@dataclass(frozen=True)
class FilePreview:
    metadata: FileMetadata
    fields: list[str]
    rows: list[dict[str, Any]]
    estimated_records: int | None
    has_header: bool = True


def _size_of(source: bytes | Path) -> int:
    if isinstance(source, bytes):
        return len(source)
    try:
        return source.stat().st_size
    except FileNotFoundError as e:
        raise MalformedFile(f"file not found: {source}") from e


def _count_lines(source: bytes | Path) -> int:
    if isinstance(source, bytes):
        lines = source.count(b"\n")
        return lines + (1 if source and not source.endswith(b"\n") else 0)
    lines = 0
    last = b""
    with source.open("rb") as fh:
        while block := fh.read(_COUNT_BLOCK):
            lines += block.count(b"\n")
            last = block
    return lines + (1 if last and not last.endswith(b"\n") else 0)


class FileIngestor:
    """Validates an upload and parses it with the strategy its size calls for."""

    def __init__(self, config: IngestConfig | None = None) -> None:
        self.config = config or IngestConfig()

    def inspect(self, source: bytes | Path, filename: str, mime_type: str | None) -> FileMetadata:
        """Size and format gate shared by ingest and preview."""
        size = _size_of(source)
        if size > self.config.max_file_size:
            raise FileTooLarge(
                f"{filename}: {size} bytes exceeds limit of {self.config.max_file_size} bytes"
            )
        if size == 0:
            raise MalformedFile(f"{filename}: file is empty")
        fmt = detect_format(filename, mime_type)
        return FileMetadata(name=filename, size=size, format=fmt, mime_type=mime_type or "")

    def choose_strategy(self, size: int) -> ParseStrategy:
        if size >= self.config.streaming_threshold:
            return ParseStrategy.STREAMING
        return ParseStrategy.IN_MEMORY

    def ingest(self, source: bytes | Path, filename: str | None = None,
               mime_type: str | None = None) -> IngestResult:
        """Parse an upload.

        Raises:
            UnsupportedFormat / FileTooLarge / MalformedFile
        """
        if filename is None:
            if isinstance(source, bytes):
                raise MalformedFile("filename is required for in-memory uploads")
            filename = source.name
        metadata = self.inspect(source, filename, mime_type)
        strategy = self.choose_strategy(metadata.size)
        logger.info(
            "Ingesting %s (%s, %d bytes, strategy=%s)",
            filename, metadata.format.value, metadata.size, strategy.value,
        )
        if strategy is ParseStrategy.IN_MEMORY:
            table = read_table(source, metadata.format)
            self._log_issues(filename, table.issues)
            return IngestResult(
                metadata=metadata,
                strategy=strategy,
                fields=table.fields,
                row_count=len(table.rows),
                sample=table.rows[: self.config.sample_rows],
                rows=table.rows,
                issues=table.issues,
                has_header=table.has_header,
            )
        return self._ingest_streaming(source, metadata)

    def _spool_upload(self, source: bytes) -> Path:
        fd, name = tempfile.mkstemp(prefix="upload-", dir=self.config.temp_dir)
        with os.fdopen(fd, "wb") as fh:
            fh.write(source)
        return Path(name)

    def _ingest_streaming(self, source: bytes | Path, metadata: FileMetadata) -> IngestResult:
        upload_path: Path | None = None
        artifact: StreamArtifact | None = None
        try:
            if isinstance(source, bytes):
                upload_path = self._spool_upload(source)
                path = upload_path
            else:
                path = source

            normalizer, rows = self._row_stream(path, metadata.format)
            fd, name = tempfile.mkstemp(prefix="ingest-", suffix=".jsonl", dir=self.config.temp_dir)
            artifact = StreamArtifact(path=Path(name), fields=[])
            sample: list[dict[str, Any]] = []
            with os.fdopen(fd, "w", encoding="utf-8") as out:
                for row in rows:
                    if len(sample) < self.config.sample_rows:
                        sample.append(row)
                    out.write(json.dumps(row, ensure_ascii=False, default=_jsonable))
                    out.write("\n")
                    artifact.row_count += 1
            artifact.fields = list(normalizer.fields)
        except BaseException:
            if artifact is not None:
                artifact.cleanup()
            raise
        finally:
            if upload_path is not None:
                upload_path.unlink(missing_ok=True)

        self._log_issues(metadata.name, normalizer.issues)
        logger.info("Streamed %d rows from %s to %s", artifact.row_count, metadata.name, artifact.path)
        return IngestResult(
            metadata=metadata,
            strategy=ParseStrategy.STREAMING,
            fields=artifact.fields,
            row_count=artifact.row_count,
            sample=sample,
            artifact=artifact,
            issues=normalizer.issues,
            has_header=normalizer.has_header,
        )

    def _row_stream(self, path: Path, fmt: FileFormat) -> tuple[Any, Iterator[dict[str, Any]]]:
        if fmt is FileFormat.CSV:
            return iter_csv_chunks(path, self.config.chunk_rows)
        if fmt is FileFormat.XLSX:
            return iter_xlsx_rows(path)
        # JSON 配列 / XLS は逐次読みできないため一括で読み、artifact へ書き出す
        table = self._read_whole(path, fmt)
        return _TableStream(table), iter(table.rows)

    def _read_whole(self, path: Path, fmt: FileFormat) -> ParsedTable:
        if fmt is FileFormat.JSON:
            return normalize_json(json_records(path))
        return read_table(path, fmt)

    def preview(self, source: bytes | Path, filename: str | None = None,
                mime_type: str | None = None, rows: int | None = None) -> FilePreview:
        """First K rows, without choosing or running a parse strategy."""
        if filename is None:
            if isinstance(source, bytes):
                raise MalformedFile("filename is required for in-memory uploads")
            filename = source.name
        metadata = self.inspect(source, filename, mime_type)
        limit = rows or self.config.preview_rows
        if metadata.format is FileFormat.JSON:
            records, estimated = json_head(source, limit)
            table = normalize_json(records)
        else:
            table = read_table(source, metadata.format, nrows=limit)
            estimated = self._estimate_records(source, metadata.format, table)
        return FilePreview(
            metadata=metadata,
            fields=table.fields,
            rows=table.rows[:limit],
            estimated_records=estimated,
            has_header=table.has_header,
        )

    def _estimate_records(self, source: bytes | Path, fmt: FileFormat, table: ParsedTable) -> int | None:
        if fmt is FileFormat.CSV:
            return max(_count_lines(source) - (1 if table.has_header else 0), 0)
        if fmt is FileFormat.XLSX and isinstance(source, Path):
            book = load_workbook(source, read_only=True)
            try:
                max_row = book.worksheets[0].max_row
            finally:
                book.close()
            if max_row is not None:
                return max(max_row - (1 if table.has_header else 0), 0)
        return None

    @staticmethod
    def _log_issues(filename: str, issues: list[RowIssue]) -> None:
        if issues:
            logger.warning(
                "%s: %d row(s) with inconsistent column count (first at record %d)",
                filename, len(issues), issues[0].record_index,
            )


class _TableStream:
    """Adapter giving an already-parsed table the normalizer surface used by streaming."""

    def __init__(self, table: ParsedTable) -> None:
        self.fields = table.fields
        self.issues = table.issues
        self.has_header = table.has_header
