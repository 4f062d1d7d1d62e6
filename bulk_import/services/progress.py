from __future__ import annotations

import queue
import sys
import threading
from typing import Any

from tqdm import tqdm
from tqdm.std import tqdm as TqdmType

from ..models.processing_result import ExecutionState, ImportProgress

"""Progress event channel and tqdm display (TTY only).

ProgressChannel: the execution controller publishes ImportProgress snapshots;
each subscriber reads them from its own bounded queue. A slow subscriber loses the
oldest snapshots, never blocks the publisher, and can always pull `current()`.
Snapshots carry a monotonically increasing `sequence` so gaps are detectable.

ProgressTracker: a single tqdm bar fed from progress snapshots, disabled when
stdout is not a TTY (no control sequences in CI logs).
"""

__all__ = [
    "ProgressChannel",
    "ProgressSubscription",
    "ProgressTracker",
    "is_tty_enabled",
]

DEFAULT_QUEUE_SIZE = 256


def is_tty_enabled() -> bool:
    return sys.stdout.isatty()


class ProgressSubscription:
    """One subscriber's queue. Iterating stops after a terminal snapshot."""

    def __init__(self, channel: ProgressChannel, maxsize: int) -> None:
        self._channel = channel
        self._queue: queue.Queue[ImportProgress] = queue.Queue(maxsize=maxsize)

    def _offer(self, snapshot: ImportProgress) -> None:
        while True:
            try:
                self._queue.put_nowait(snapshot)
                return
            except queue.Full:
                try:
                    self._queue.get_nowait()  # 古いものを捨てる
                except queue.Empty:
                    pass

    def get(self, timeout: float | None = None) -> ImportProgress | None:
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def drain(self) -> list[ImportProgress]:
        items: list[ImportProgress] = []
        while True:
            try:
                items.append(self._queue.get_nowait())
            except queue.Empty:
                return items

    def __iter__(self):
        while True:
            snapshot = self._queue.get()
            yield snapshot
            if snapshot.state is not ExecutionState.RUNNING and snapshot.state is not ExecutionState.READY:
                return

    def close(self) -> None:
        self._channel.unsubscribe(self)


class ProgressChannel:
    """Session-scoped progress stream with a pull fallback."""

    def __init__(self, initial: ImportProgress, maxsize: int = DEFAULT_QUEUE_SIZE) -> None:
        self._lock = threading.Lock()
        self._current = initial
        self._subscribers: list[ProgressSubscription] = []
        self._maxsize = maxsize

    def publish(self, snapshot: ImportProgress) -> None:
        with self._lock:
            self._current = snapshot
            subscribers = list(self._subscribers)
        for sub in subscribers:
            sub._offer(snapshot)

    def subscribe(self) -> ProgressSubscription:
        """New subscriber; the current snapshot is delivered first."""
        sub = ProgressSubscription(self, self._maxsize)
        with self._lock:
            self._subscribers.append(sub)
            sub._offer(self._current)
        return sub

    def unsubscribe(self, sub: ProgressSubscription) -> None:
        with self._lock:
            if sub in self._subscribers:
                self._subscribers.remove(sub)

    def current(self) -> ImportProgress:
        with self._lock:
            return self._current


class ProgressTracker:
    """tqdm bar over records written. No-op outside a TTY."""

    def __init__(self, total_records: int, *, description: str = "Importing") -> None:
        self.total_records = total_records
        self.description = description
        self._shown = 0
        self.enabled = is_tty_enabled()
        self.pbar: TqdmType[Any] | None
        if self.enabled:
            self.pbar = tqdm(
                total=total_records,
                desc=description,
                unit="rec",
                leave=True,
                position=0,
                ncols=80,
                ascii=True,
            )
        else:
            self.pbar = None

    def update(self, snapshot: ImportProgress) -> None:
        if not self.enabled or self.pbar is None:
            return
        delta = snapshot.processed_records - self._shown
        if delta > 0:
            self.pbar.update(delta)
            self._shown = snapshot.processed_records
        self.pbar.set_postfix(ok=snapshot.successful_records, failed=snapshot.failed_records)

    def close(self) -> None:
        if self.enabled and self.pbar is not None:
            self.pbar.close()
            self.pbar = None

    def __enter__(self) -> ProgressTracker:
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()
