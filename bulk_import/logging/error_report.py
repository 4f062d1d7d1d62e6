from __future__ import annotations

import io
from collections.abc import Iterable
from datetime import UTC, datetime
from pathlib import Path

import pandas as pd

from ..models.validation import ValidationError

"""Error report export.

Flattens the current ValidationError list into a downloadable report:
- CSV: fixed columns (record_index, field, value, severity, message, suggestion)
- JSON Lines: one ValidationError.to_json_line() per line

Rendering is a pure read; it never touches session state.
"""

__all__ = [
    "REPORT_COLUMNS",
    "render_csv",
    "render_jsonl",
    "ErrorReportWriter",
]

REPORT_COLUMNS = ["record_index", "field", "value", "severity", "message", "suggestion"]
TIMESTAMP_FMT = "%Y%m%d-%H%M%S"


def _rows(errors: Iterable[ValidationError]) -> list[dict[str, object]]:
    rows = []
    for e in errors:
        rows.append({
            "record_index": e.record_index,
            "field": e.field,
            "value": "" if e.value is None else str(e.value),
            "severity": e.severity.value,
            "message": e.message,
            "suggestion": e.suggestion or "",
        })
    return rows


def render_csv(errors: Iterable[ValidationError]) -> str:
    df = pd.DataFrame(_rows(errors), columns=REPORT_COLUMNS)
    buf = io.StringIO()
    df.to_csv(buf, index=False, lineterminator="\n")
    return buf.getvalue()


def render_jsonl(errors: Iterable[ValidationError]) -> str:
    return "".join(e.to_json_line() + "\n" for e in errors)


class ErrorReportWriter:
    """Writes error reports under a directory, one file per export.

    File name: `errors-<session>-YYYYMMDD-HHMMSS.<ext>` (UTC).
    """

    def __init__(self, directory: Path = Path("./logs")) -> None:
        self.directory = directory

    def path_for(self, session_id: str, fmt: str) -> Path:
        stamp = datetime.now(UTC).strftime(TIMESTAMP_FMT)
        ext = "csv" if fmt == "csv" else "jsonl"
        return self.directory / f"errors-{session_id}-{stamp}.{ext}"

    def write(self, session_id: str, errors: Iterable[ValidationError], fmt: str = "csv",
              path: Path | None = None) -> Path:
        if fmt not in ("csv", "jsonl"):
            raise ValueError(f"unsupported report format: {fmt}")
        target = path or self.path_for(session_id, fmt)
        target.parent.mkdir(parents=True, exist_ok=True)
        content = render_csv(errors) if fmt == "csv" else render_jsonl(errors)
        target.write_text(content, encoding="utf-8")
        return target
