from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from .validation import ValidationError

"""Error recovery models: fix requests, applied-fix history and the RecoverySession."""

__all__ = [
    "FixSource",
    "RecoveryStatus",
    "FixRequest",
    "AppliedFix",
    "FixResult",
    "RecoverySession",
    "RecoveryStatusReport",
]


class FixSource(Enum):
    MANUAL = "manual"
    BULK = "bulk"
    AUTO = "auto"


class RecoveryStatus(Enum):
    OPEN = "open"
    RESOLVED = "resolved"  # error severity 0 件
    CLOSED = "closed"


@dataclass(frozen=True)
class FixRequest:
    record_index: int
    field: str
    new_value: Any


@dataclass(frozen=True)
class AppliedFix:
    """Audit / undo entry."""
    record_index: int
    field: str
    old_value: Any
    new_value: Any
    source: FixSource
    applied_at: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass(frozen=True)
class FixResult:
    fixed_count: int
    remaining_errors: tuple[ValidationError, ...]
    can_proceed: bool
    record_errors: tuple[ValidationError, ...] = ()  # 再検証後の対象レコードのエラー


@dataclass
class RecoverySession:
    """Mutable per-upload recovery state. Guarded by the coordinator's session lock."""
    session_id: str
    records: list[dict[str, Any]]
    errors: list[ValidationError]
    history: list[AppliedFix] = field(default_factory=list)
    resolved: list[ValidationError] = field(default_factory=list)
    status: RecoveryStatus = RecoveryStatus.OPEN


@dataclass(frozen=True)
class RecoveryStatusReport:
    session_id: str
    total_errors: int
    resolved_errors: int
    remaining_errors: int
    blocking_errors: int
    status: RecoveryStatus

    @property
    def progress(self) -> float:
        if self.total_errors == 0:
            return 100.0
        return self.resolved_errors / self.total_errors * 100
