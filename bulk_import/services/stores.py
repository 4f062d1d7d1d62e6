from __future__ import annotations

import itertools
import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol

from ..errors import ImportPipelineError
from ..models.catalogue import ProductRecord

"""Product store collaborator: create(record) -> id, update(id, record).

Implementations raise StoreWriteError for a failed write; the execution controller
turns it into a per-record failure and never lets it abort a batch.
"""

__all__ = [
    "StoreWriteError",
    "ProductStore",
    "InMemoryProductStore",
]


class StoreWriteError(ImportPipelineError):
    pass


class ProductStore(Protocol):
    def create(self, record: ProductRecord) -> Any:
        ...

    def update(self, product_id: Any, record: ProductRecord) -> None:
        ...


@dataclass
class _Stored:
    id: Any
    payload: dict[str, Any]


class InMemoryProductStore:
    """Thread-safe dict store. `fail_when` injects failures (used by tests and dry runs)."""

    def __init__(self, fail_when: Callable[[ProductRecord], str | None] | None = None) -> None:
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self._products: dict[Any, _Stored] = {}
        self._fail_when = fail_when

    def _maybe_fail(self, record: ProductRecord) -> None:
        if self._fail_when is None:
            return
        reason = self._fail_when(record)
        if reason:
            raise StoreWriteError(reason)

    def create(self, record: ProductRecord) -> Any:
        self._maybe_fail(record)
        with self._lock:
            product_id = next(self._ids)
            self._products[product_id] = _Stored(product_id, record.to_payload())
            return product_id

    def update(self, product_id: Any, record: ProductRecord) -> None:
        self._maybe_fail(record)
        with self._lock:
            stored = self._products.get(product_id)
            if stored is None:
                raise StoreWriteError(f"product {product_id} not found")
            stored.payload.update(record.to_payload())

    def get(self, product_id: Any) -> dict[str, Any] | None:
        with self._lock:
            stored = self._products.get(product_id)
            return dict(stored.payload) if stored is not None else None

    def seed(self, product_id: Any, payload: dict[str, Any]) -> None:
        with self._lock:
            self._products[product_id] = _Stored(product_id, dict(payload))

    def __len__(self) -> int:
        with self._lock:
            return len(self._products)
