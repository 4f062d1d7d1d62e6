from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from datetime import date, datetime
from enum import Enum
from typing import Any

"""ValidationError model for per-record / per-field validation results.

A ValidationError is produced fresh on each validation pass and never mutated;
a later pass supersedes it. Severity 'error' blocks the import, 'warning' is
advisory only. Some entries carry an AutoFix the recovery flow can apply verbatim.

JSON Lines serialisation keeps a fixed key set (used by the error report export).
"""

__all__ = [
    "Severity",
    "AutoFix",
    "ValidationError",
    "ValidationReport",
]


class Severity(Enum):
    ERROR = "error"
    WARNING = "warning"


@dataclass(frozen=True)
class AutoFix:
    """Machine-applicable correction."""
    action: str
    value: Any
    confidence: int = 100  # 0-100


def _jsonable(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


@dataclass(frozen=True)
class ValidationError:
    """One rule violation for (record_index, field).

    Attributes:
        record_index: 0-based index into the session's record set
        field: Target field name
        value: Offending value as found in the record
        severity: ERROR blocks import, WARNING never does
        rule: Rule identifier in UPPER_SNAKE_CASE (e.g. TYPE_MISMATCH)
        message: Human-readable description
        suggestion: Optional hint for the user
        auto_fix: Optional machine-applicable correction
    """
    record_index: int
    field: str
    value: Any
    severity: Severity
    rule: str
    message: str
    suggestion: str | None = None
    auto_fix: AutoFix | None = None

    @property
    def key(self) -> tuple[int, str]:
        return (self.record_index, self.field)

    @property
    def blocking(self) -> bool:
        return self.severity is Severity.ERROR

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["severity"] = self.severity.value
        data["value"] = _jsonable(self.value)
        if self.auto_fix is not None:
            data["auto_fix"] = {**asdict(self.auto_fix), "value": _jsonable(self.auto_fix.value)}
        return data

    def to_json_line(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False, default=str)


@dataclass(frozen=True)
class ValidationReport:
    """Result of validating a record set."""
    errors: tuple[ValidationError, ...]
    total_records: int

    @property
    def error_count(self) -> int:
        return sum(1 for e in self.errors if e.severity is Severity.ERROR)

    @property
    def warning_count(self) -> int:
        return sum(1 for e in self.errors if e.severity is Severity.WARNING)

    @property
    def can_proceed(self) -> bool:
        return self.error_count == 0

    @property
    def invalid_records(self) -> int:
        return len({e.record_index for e in self.errors if e.severity is Severity.ERROR})

    @property
    def valid_records(self) -> int:
        return self.total_records - self.invalid_records

    def for_record(self, record_index: int) -> list[ValidationError]:
        return [e for e in self.errors if e.record_index == record_index]
