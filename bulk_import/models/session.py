from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum

from ..errors import InvalidSessionState

"""UploadSession domain model and lifecycle enums.

The UploadSession tracks one uploaded file through the pipeline:
initialized -> analyzed -> mapped -> validated -> executing -> (completed | cancelled | failed)

Re-analysis, re-mapping and re-validation step back within the editable states;
a completed import re-enters executing for a retry. Any other move is rejected.
"""

__all__ = [
    "FileFormat",
    "ParseStrategy",
    "SessionStatus",
    "FileMetadata",
    "UploadSession",
    "TRANSITIONS",
]


class FileFormat(Enum):
    CSV = "csv"
    JSON = "json"
    XLSX = "xlsx"
    XLS = "xls"


class ParseStrategy(Enum):
    """In-memory for small files, streaming (temp artifact) at/above the threshold."""
    IN_MEMORY = "in_memory"
    STREAMING = "streaming"


class SessionStatus(Enum):
    INITIALIZED = "initialized"
    ANALYZED = "analyzed"
    MAPPED = "mapped"
    VALIDATED = "validated"
    EXECUTING = "executing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (SessionStatus.COMPLETED, SessionStatus.CANCELLED, SessionStatus.FAILED)


_S = SessionStatus

TRANSITIONS: dict[SessionStatus, frozenset[SessionStatus]] = {
    _S.INITIALIZED: frozenset({_S.ANALYZED}),
    _S.ANALYZED: frozenset({_S.ANALYZED, _S.MAPPED}),
    _S.MAPPED: frozenset({_S.ANALYZED, _S.MAPPED, _S.VALIDATED}),
    # 実行前の cancel は validated から直接 cancelled へ
    _S.VALIDATED: frozenset({_S.ANALYZED, _S.MAPPED, _S.VALIDATED, _S.EXECUTING, _S.CANCELLED}),
    _S.EXECUTING: frozenset({_S.COMPLETED, _S.CANCELLED, _S.FAILED}),
    _S.COMPLETED: frozenset({_S.EXECUTING}),
    _S.CANCELLED: frozenset(),
    _S.FAILED: frozenset(),
}


@dataclass(frozen=True)
class FileMetadata:
    """Source file metadata captured at upload."""
    name: str
    size: int  # bytes
    format: FileFormat
    mime_type: str


@dataclass(frozen=True)
class UploadSession:
    """One upload's lifecycle record. Replaced (never mutated) on each transition."""
    id: str
    file: FileMetadata
    status: SessionStatus = SessionStatus.INITIALIZED
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    error: str | None = None

    def transition(self, status: SessionStatus, error: str | None = None) -> UploadSession:
        """New session in `status`.

        Raises:
            InvalidSessionState: the move is not in TRANSITIONS
        """
        if status not in TRANSITIONS[self.status]:
            raise InvalidSessionState(
                f"session {self.id}: cannot move from {self.status.value} to {status.value}"
            )
        return replace(self, status=status, updated_at=datetime.now(UTC), error=error)

