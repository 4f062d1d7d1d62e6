from __future__ import annotations

import logging
import threading
import time
from collections import deque
from collections.abc import Callable, Sequence
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from typing import Any

from ..config.loader import ExecutionConfig
from ..errors import ImportPipelineError
from ..models.catalogue import ProductRecord
from ..models.processing_result import (
    BatchMetrics,
    BatchStatsAccumulator,
    ExecutionState,
    ImportProgress,
    ImportResult,
    RecordFailure,
    WriteAction,
)
from ..models.validation import Severity, ValidationError
from .progress import ProgressChannel
from .stores import ProductStore

"""Import execution controller.

State machine: ready -> running -> (completed | cancelled | failed)

- records are cut into fixed-size batches, at most `max_workers` batches in flight
- a record carrying `id` is sent to store.update(id, ...), otherwise store.create(...)
- a failed write is a RecordFailure for that record only; the batch goes on
- a batch running longer than `batch_timeout` (measured from when a worker picks it up)
  counts all its records as failed; its worker stays occupied until the write returns,
  and records it did write are folded back in once it does (see settle())
- progress is published after every batch; successful + failed == processed <= total
- cancel() stops scheduling new batches; in-flight batches finish
- retry() resubmits failed records; after `max_retry_attempts` retries a record is
  permanently failed
"""

__all__ = [
    "ExecutionError",
    "ImportExecutionController",
]

logger = logging.getLogger(__name__)

RECORD_FIELD = "_record"
TIMEOUT_RULE = "BATCH_TIMEOUT"

_POLL_SECONDS = 0.05


class ExecutionError(ImportPipelineError):
    """Controller misuse (start twice, retry before completion) or an unexpected failure."""


@dataclass
class _Success:
    index: int
    action: WriteAction
    product_id: Any


@dataclass
class _BatchOutcome:
    batch_number: int
    successes: list[_Success] = field(default_factory=list)
    failures: list[tuple[int, str]] = field(default_factory=list)
    elapsed_seconds: float = 0.0


def _failure_error(index: int, message: str, rule: str = "WRITE_FAILED") -> ValidationError:
    return ValidationError(
        record_index=index,
        field=RECORD_FIELD,
        value=None,
        severity=Severity.ERROR,
        rule=rule,
        message=message,
        suggestion="Retry the import for this record",
    )


class ImportExecutionController:
    """Writes one session's validated records to the product store."""

    def __init__(
        self,
        session_id: str,
        records: Sequence[dict[str, Any]],
        store: ProductStore,
        config: ExecutionConfig | None = None,
        metrics_callback: Callable[[BatchMetrics], None] | None = None,
    ) -> None:
        self.session_id = session_id
        self.records = list(records)
        self.store = store
        self.config = config or ExecutionConfig()
        self.metrics_callback = metrics_callback

        self._lock = threading.Lock()
        self._cancel = threading.Event()
        self._state = ExecutionState.READY
        self._sequence = 0
        self._stats = BatchStatsAccumulator()

        self._created: dict[int, Any] = {}
        self._updated: dict[int, Any] = {}
        self._failures: dict[int, RecordFailure] = {}
        self._first_start: datetime | None = None
        self._elapsed_total = 0.0
        self._result: ImportResult | None = None
        # timed-out batches whose worker has not returned yet
        self._abandoned: dict[Future[_BatchOutcome], tuple[int, list[int], dict[str, int]]] = {}

        self.channel = ProgressChannel(
            ImportProgress(session_id, ExecutionState.READY, len(self.records))
        )

    # ---- public surface ----------------------------------------------------

    @property
    def state(self) -> ExecutionState:
        with self._lock:
            return self._state

    @property
    def result(self) -> ImportResult | None:
        return self._result

    @property
    def failures(self) -> list[RecordFailure]:
        with self._lock:
            return sorted(self._failures.values(), key=lambda f: f.record_index)

    def progress(self) -> ImportProgress:
        """Pull fallback for observers that missed pushed snapshots."""
        return self.channel.current()

    def cancel(self) -> None:
        """Cooperative: checked before each batch is scheduled, never mid-batch."""
        self._cancel.set()
        with self._lock:
            before_start = self._state is ExecutionState.READY
            if before_start:
                self._state = ExecutionState.CANCELLED
        logger.info("Cancellation requested for session %s", self.session_id)
        if before_start:
            # 開始前の cancel は空の結果で終端させる
            self._result = self._build_result(ExecutionState.CANCELLED)
            self.channel.publish(replace(self.channel.current(), state=ExecutionState.CANCELLED))

    def start(self) -> ImportResult:
        with self._lock:
            if self._state is not ExecutionState.READY:
                raise ExecutionError(f"cannot start from state {self._state.value}")
            self._state = ExecutionState.RUNNING
            self._first_start = datetime.now(UTC)
        logger.info(
            "Import started for session %s: %d record(s), batch_size=%d, workers=%d",
            self.session_id, len(self.records), self.config.batch_size, self.config.max_workers,
        )
        return self._execute(list(range(len(self.records))))

    def retry(self) -> ImportResult:
        """Resubmit every failed record that is not yet permanently failed.

        Records of a timed-out batch whose worker is still writing are left out until
        that worker finishes.
        """
        with self._lock:
            if self._state is not ExecutionState.COMPLETED:
                raise ExecutionError(f"cannot retry from state {self._state.value}")
        if self._settle_abandoned():
            self._result = self._build_result(ExecutionState.COMPLETED)
        with self._lock:
            pending = {i for _, batch, _ in self._abandoned.values() for i in batch}
            indices = sorted(
                i for i, f in self._failures.items() if not f.permanent and i not in pending
            )
            if indices:
                self._state = ExecutionState.RUNNING
                self._cancel.clear()
        if not indices:
            return self._result  # type: ignore[return-value]
        logger.info("Retrying %d failed record(s) for session %s", len(indices), self.session_id)
        return self._execute(indices)

    def settle(self, timeout: float | None = None) -> ImportResult | None:
        """Wait for timed-out batches still writing, then fold their writes into the result.

        A record such a batch did write is no longer a failure.
        """
        with self._lock:
            if self._state is ExecutionState.RUNNING:
                raise ExecutionError("cannot settle while the import is running")
            pending = list(self._abandoned)
        if pending:
            wait(pending, timeout=timeout)
        if self._settle_abandoned():
            state = self.state
            if state in (ExecutionState.COMPLETED, ExecutionState.CANCELLED):
                self._result = self._build_result(state)
        return self._result

    # ---- run loop ----------------------------------------------------------

    def _execute(self, indices: list[int]) -> ImportResult:
        size = self.config.batch_size
        timeout = self.config.batch_timeout
        batches = deque(
            (n, indices[i : i + size]) for n, i in enumerate(range(0, len(indices), size), start=1)
        )
        run = {"total": len(indices), "processed": 0, "ok": 0, "failed": 0}
        started = time.perf_counter()
        self._publish(ExecutionState.RUNNING, run, started)

        pool = ThreadPoolExecutor(max_workers=self.config.max_workers,
                                  thread_name_prefix=f"import-{self.session_id[:8]}")
        # batch number -> monotonic time its worker picked it up
        begun: dict[int, float] = {}
        in_flight: dict[Future[_BatchOutcome], tuple[int, list[int]]] = {}
        # timed-out batches of this run that still occupy a worker
        held: set[Future[_BatchOutcome]] = set()
        try:
            while batches or in_flight:
                self._settle_abandoned(run, started)
                held = {f for f in held if not f.done()}
                free = self.config.max_workers - len(in_flight) - len(held)
                while batches and free > 0 and not self._cancel.is_set():
                    number, batch = batches.popleft()
                    future = pool.submit(self._run_batch, number, batch, begun)
                    in_flight[future] = (number, batch)
                    free -= 1
                if not in_flight:
                    if batches and held and not self._cancel.is_set():
                        # 全ワーカーがタイムアウトしたバッチに占有されている
                        wait(list(held), timeout=_POLL_SECONDS, return_when=FIRST_COMPLETED)
                        continue
                    break

                now = time.monotonic()
                starts = [begun.get(number) for number, _ in in_flight.values()]
                running = [t for t in starts if t is not None]
                wait_for = timeout if len(running) == len(starts) else _POLL_SECONDS
                if running:
                    wait_for = min(wait_for, max(min(running) + timeout - now, 0))
                done, _ = wait(list(in_flight), timeout=wait_for, return_when=FIRST_COMPLETED)
                for future in done:
                    number, batch = in_flight.pop(future)
                    self._absorb(self._outcome(future, number, batch), run, started)

                now = time.monotonic()
                for future, (number, batch) in list(in_flight.items()):
                    begin = begun.get(number)
                    if begin is None or future.done() or now - begin < timeout:
                        continue
                    in_flight.pop(future)
                    held.add(future)
                    with self._lock:
                        self._abandoned[future] = (number, batch, run)
                    logger.warning("Batch %d timed out after %.1fs", number, timeout)
                    outcome = _BatchOutcome(
                        number,
                        failures=[(i, f"batch timed out after {timeout}s") for i in batch],
                        elapsed_seconds=now - begin,
                    )
                    self._absorb(outcome, run, started, rule=TIMEOUT_RULE)
            self._settle_abandoned(run, started)
        except Exception as e:
            with self._lock:
                self._state = ExecutionState.FAILED
            self._publish(ExecutionState.FAILED, run, started)
            logger.error("Import failed for session %s: %s", self.session_id, e)
            raise ExecutionError(f"import failed: {e}") from e
        finally:
            pool.shutdown(wait=False, cancel_futures=True)

        final = ExecutionState.CANCELLED if self._cancel.is_set() else ExecutionState.COMPLETED
        with self._lock:
            self._state = final
            self._elapsed_total += time.perf_counter() - started
        self._publish(final, run, started)
        self._result = self._build_result(final)
        logger.info(
            "Import %s for session %s: created=%d updated=%d failed=%d",
            final.value, self.session_id, self._result.created, self._result.updated,
            self._result.failed,
        )
        return self._result

    def _run_batch(self, number: int, indices: list[int], begun: dict[int, float]) -> _BatchOutcome:
        begun[number] = time.monotonic()
        return self._write_batch(number, indices)

    def _write_batch(self, number: int, indices: list[int]) -> _BatchOutcome:
        outcome = _BatchOutcome(number)
        start = time.perf_counter()
        for index in indices:
            values = self.records[index]
            try:
                record = ProductRecord.from_mapped(values)
                if record.id is not None:
                    self.store.update(record.id, record)
                    outcome.successes.append(_Success(index, WriteAction.UPDATED, record.id))
                else:
                    product_id = self.store.create(record)
                    outcome.successes.append(_Success(index, WriteAction.CREATED, product_id))
            except Exception as e:
                # 1 レコードの失敗でバッチは止めない
                outcome.failures.append((index, str(e) or type(e).__name__))
        outcome.elapsed_seconds = time.perf_counter() - start
        return outcome

    def _outcome(self, future: Future[_BatchOutcome], number: int, batch: list[int]) -> _BatchOutcome:
        try:
            return future.result()
        except Exception as e:
            logger.error("Batch %d crashed: %s", number, e)
            return _BatchOutcome(number, failures=[(i, f"batch crashed: {e}") for i in batch])

    def _absorb(self, outcome: _BatchOutcome, run: dict[str, int], started: float,
                rule: str = "WRITE_FAILED") -> None:
        limit = self.config.max_retry_attempts
        with self._lock:
            for s in outcome.successes:
                self._failures.pop(s.index, None)
                target = self._created if s.action is WriteAction.CREATED else self._updated
                target[s.index] = s.product_id
            for index, message in outcome.failures:
                previous = self._failures.get(index)
                attempts = previous.retry_attempts + 1 if previous is not None else 0
                self._failures[index] = RecordFailure(
                    record_index=index,
                    record=dict(self.records[index]),
                    error=_failure_error(index, message, rule),
                    retry_attempts=attempts,
                    permanent=attempts >= limit,
                )
            run["processed"] += len(outcome.successes) + len(outcome.failures)
            run["ok"] += len(outcome.successes)
            run["failed"] += len(outcome.failures)

        self._stats.add_batch_time(outcome.elapsed_seconds)
        metrics = BatchMetrics(
            batch_number=outcome.batch_number,
            batch_size=len(outcome.successes) + len(outcome.failures),
            elapsed_seconds=outcome.elapsed_seconds,
            succeeded=len(outcome.successes),
            failed=len(outcome.failures),
        )
        if self.metrics_callback is not None:
            self.metrics_callback(metrics)
        logger.debug("Batch %d: %d ok, %d failed in %.3fs", metrics.batch_number,
                     metrics.succeeded, metrics.failed, metrics.elapsed_seconds)
        self._publish(ExecutionState.RUNNING, run, started)

    def _settle_abandoned(self, run: dict[str, int] | None = None, started: float = 0.0) -> int:
        """Fold in the writes of timed-out batches whose worker has since returned."""
        with self._lock:
            finished = [(f, v) for f, v in self._abandoned.items() if f.done()]
            for future, _ in finished:
                del self._abandoned[future]
        settled = 0
        for future, (number, batch, owner) in finished:
            outcome = self._outcome(future, number, batch)
            written = 0
            with self._lock:
                for s in outcome.successes:
                    failure = self._failures.get(s.index)
                    if failure is None or failure.error.rule != TIMEOUT_RULE:
                        continue
                    del self._failures[s.index]
                    target = self._created if s.action is WriteAction.CREATED else self._updated
                    target[s.index] = s.product_id
                    written += 1
                if owner is run:
                    run["ok"] += written
                    run["failed"] -= written
            if written:
                logger.info("Batch %d returned after timing out: %d record(s) written",
                            number, written)
            settled += written
        if settled and run is not None:
            self._publish(ExecutionState.RUNNING, run, started)
        return settled

    def _publish(self, state: ExecutionState, run: dict[str, int], started: float) -> None:
        elapsed = time.perf_counter() - started
        processed = run["processed"]
        rate = processed / elapsed if elapsed > 0 else 0.0
        remaining = run["total"] - processed
        with self._lock:
            self._sequence += 1
            errors = tuple(f.error for f in sorted(self._failures.values(), key=lambda f: f.record_index))
            snapshot = ImportProgress(
                session_id=self.session_id,
                state=state,
                total_records=run["total"],
                processed_records=processed,
                successful_records=run["ok"],
                failed_records=run["failed"],
                processing_rate=rate,
                estimated_time_remaining=(remaining / rate) if rate > 0 else None,
                errors=errors,
                sequence=self._sequence,
            )
        self.channel.publish(snapshot)

    def _build_result(self, state: ExecutionState) -> ImportResult:
        with self._lock:
            failures = sorted(self._failures.values(), key=lambda f: f.record_index)
            created = len(self._created)
            updated = len(self._updated)
            elapsed = self._elapsed_total
            ids = tuple(
                pid for _, pid in sorted({**self._created, **self._updated}.items())
            )
        total_batches, avg_batch, p95_batch = self._stats.get_stats()
        end = datetime.now(UTC)
        successful = created + updated
        return ImportResult(
            session_id=self.session_id,
            state=state,
            total_records=len(self.records),
            created=created,
            updated=updated,
            failed=len(failures),
            permanently_failed=sum(1 for f in failures if f.permanent),
            start_time=self._first_start or end,
            end_time=end,
            elapsed_seconds=elapsed,
            throughput_rows_per_sec=successful / elapsed if elapsed > 0 else 0.0,
            errors=tuple(f.error for f in failures),
            product_ids=ids,
            total_batches=total_batches,
            avg_batch_seconds=avg_batch,
            p95_batch_seconds=p95_batch,
        )

    def mark_failed(self, reason: str) -> None:
        """Move a not-yet-terminal controller to FAILED (used when the caller aborts)."""
        with self._lock:
            if self._state in (ExecutionState.READY, ExecutionState.RUNNING):
                self._state = ExecutionState.FAILED
        logger.error("Import for session %s marked failed: %s", self.session_id, reason)
        self.channel.publish(replace(self.channel.current(), state=ExecutionState.FAILED))
