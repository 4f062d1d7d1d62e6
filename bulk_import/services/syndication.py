from __future__ import annotations

import logging
import time
from collections.abc import Sequence
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Any, Protocol

"""Channel syndication fan-out.

After an import, created/updated product ids are pushed to every configured sales
channel in parallel. Each channel succeeds or fails on its own: the join waits for
all sinks (or their timeout) and returns one ChannelResult per sink, in sink order.
"""

__all__ = [
    "ChannelSink",
    "ChannelResult",
    "SyndicationFanout",
]

logger = logging.getLogger(__name__)


class ChannelSink(Protocol):
    """Opaque external channel. `publish` raises on failure."""
    name: str

    def publish(self, product_ids: Sequence[Any]) -> Any:
        ...


@dataclass(frozen=True)
class ChannelResult:
    channel: str
    ok: bool
    published: int = 0
    error: str | None = None
    elapsed_seconds: float = 0.0
    response: Any = None


class SyndicationFanout:
    def __init__(self, timeout: float = 30.0, max_workers: int | None = None) -> None:
        self.timeout = timeout
        self.max_workers = max_workers

    def publish(self, product_ids: Sequence[Any], sinks: Sequence[ChannelSink]) -> list[ChannelResult]:
        if not sinks:
            return []
        ids = list(product_ids)
        pool = ThreadPoolExecutor(max_workers=self.max_workers or len(sinks),
                                  thread_name_prefix="syndication")
        started = time.perf_counter()
        try:
            futures = [pool.submit(sink.publish, ids) for sink in sinks]
            wait(futures, timeout=self.timeout)
            results: list[ChannelResult] = []
            for sink, future in zip(sinks, futures):
                elapsed = time.perf_counter() - started
                if not future.done():
                    future.cancel()
                    logger.warning("Channel %s timed out after %.1fs", sink.name, self.timeout)
                    results.append(ChannelResult(sink.name, False, error=f"timed out after {self.timeout}s",
                                                 elapsed_seconds=elapsed))
                    continue
                error = future.exception()
                if error is not None:
                    logger.warning("Channel %s failed: %s", sink.name, error)
                    results.append(ChannelResult(sink.name, False, error=str(error) or type(error).__name__,
                                                 elapsed_seconds=elapsed))
                else:
                    results.append(ChannelResult(sink.name, True, published=len(ids),
                                                 elapsed_seconds=elapsed, response=future.result()))
        finally:
            pool.shutdown(wait=False, cancel_futures=True)
        ok = sum(1 for r in results if r.ok)
        logger.info("Syndication: %d/%d channel(s) succeeded for %d product(s)", ok, len(results), len(ids))
        return results
