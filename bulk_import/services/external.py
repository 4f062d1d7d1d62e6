from __future__ import annotations

import logging
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import TypeVar

from ..errors import ExternalServiceError

"""Timeout wrapper for calls into external collaborators.

A call that exceeds its budget is reported as ExternalServiceError; the worker thread
is abandoned (not joined) so the caller regains control on time.
"""

__all__ = ["call_with_timeout"]

logger = logging.getLogger(__name__)

T = TypeVar("T")


def call_with_timeout(fn: Callable[[], T], timeout: float, *, name: str) -> T:
    """Run `fn` with a wall-clock budget.

    Raises:
        ExternalServiceError: on timeout, or wrapping any exception raised by `fn`
    """
    pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"ext-{name}")
    try:
        future = pool.submit(fn)
        try:
            return future.result(timeout=timeout)
        except FutureTimeout as e:
            future.cancel()
            raise ExternalServiceError(f"{name} timed out after {timeout}s") from e
        except ExternalServiceError:
            raise
        except Exception as e:
            raise ExternalServiceError(f"{name} failed: {e}") from e
    finally:
        pool.shutdown(wait=False)
