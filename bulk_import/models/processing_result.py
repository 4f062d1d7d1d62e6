from __future__ import annotations

import statistics
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from .validation import ValidationError

"""Import execution models: progress snapshots, record failures and the terminal result.

ImportProgress is a point-in-time snapshot published by the execution controller;
ImportResult is created once per run and never modified afterwards.
"""

__all__ = [
    "ExecutionState",
    "WriteAction",
    "RecordFailure",
    "ImportProgress",
    "ImportResult",
    "BatchMetrics",
    "BatchStatsAccumulator",
]


class ExecutionState(Enum):
    """ready -> running -> (completed | cancelled | failed)"""
    READY = "ready"
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


class WriteAction(Enum):
    CREATED = "created"
    UPDATED = "updated"


@dataclass(frozen=True)
class RecordFailure:
    """A record whose write failed, kept with its error context for retry."""
    record_index: int
    record: dict[str, Any]
    error: ValidationError
    retry_attempts: int = 0
    permanent: bool = False


@dataclass(frozen=True)
class ImportProgress:
    """Progress snapshot. successful + failed == processed <= total always holds."""
    session_id: str
    state: ExecutionState
    total_records: int
    processed_records: int = 0
    successful_records: int = 0
    failed_records: int = 0
    processing_rate: float = 0.0  # records / second
    estimated_time_remaining: float | None = None  # seconds
    errors: tuple[ValidationError, ...] = ()
    sequence: int = 0  # 単調増加 (再接続時の欠落検出用)

    @property
    def percent(self) -> float:
        if self.total_records == 0:
            return 100.0
        return self.processed_records / self.total_records * 100


@dataclass(frozen=True)
class ImportResult:
    """Terminal summary of one execution (or retry) run."""
    session_id: str
    state: ExecutionState
    total_records: int
    created: int
    updated: int
    failed: int
    permanently_failed: int
    start_time: datetime
    end_time: datetime
    elapsed_seconds: float
    throughput_rows_per_sec: float
    errors: tuple[ValidationError, ...] = ()
    product_ids: tuple[Any, ...] = ()
    total_batches: int = 0
    avg_batch_seconds: float = 0.0
    p95_batch_seconds: float = 0.0

    @property
    def successful(self) -> int:
        return self.created + self.updated

    @property
    def completed_with_errors(self) -> bool:
        return self.state is ExecutionState.COMPLETED and self.failed > 0


@dataclass(frozen=True)
class BatchMetrics:
    """Timing for a single batch write."""
    batch_number: int
    batch_size: int
    elapsed_seconds: float
    succeeded: int
    failed: int


@dataclass
class BatchStatsAccumulator:
    """Accumulates batch timing and computes count / mean / p95."""
    batch_times: list[float] = field(default_factory=list)

    def add_batch_time(self, elapsed_seconds: float) -> None:
        self.batch_times.append(elapsed_seconds)

    def get_stats(self) -> tuple[int, float, float]:
        """Returns (total_batches, avg_batch_seconds, p95_batch_seconds)."""
        if not self.batch_times:
            return (0, 0.0, 0.0)

        total_batches = len(self.batch_times)
        avg_batch_seconds = statistics.mean(self.batch_times)

        if total_batches == 1:
            p95_batch_seconds = self.batch_times[0]
        else:
            # 20 分位の 19 番目 = p95
            p95_batch_seconds = statistics.quantiles(
                self.batch_times, n=20, method='inclusive'
            )[18]

        return (total_batches, avg_batch_seconds, p95_batch_seconds)
