from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from pathlib import Path
from typing import Protocol

from ..models.mapping import FieldMapping, MappingCacheEntry, MappingStrategy

"""Mapping cache store: the pipeline's only durable learning state.

Keyed by (source_field, target_field). Writes are atomic per key:
- upsert: insert, or usage_count + 1 and confidence = max(old, new)
- touch:  usage_count + 1, last_used_at = now
Confidence for a key never decreases.
"""

__all__ = [
    "MappingCacheStore",
    "CacheStatistics",
    "InMemoryMappingCache",
]

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CacheStatistics:
    total_entries: int
    total_usage: int
    average_confidence: float
    by_strategy: dict[str, int] = field(default_factory=dict)


class MappingCacheStore(Protocol):
    def lookup(self, source_field: str) -> MappingCacheEntry | None:
        """Most used entry for a source name (ties: higher confidence)."""
        ...

    def entries_for(self, source_field: str) -> list[MappingCacheEntry]:
        ...

    def touch(self, source_field: str, target_field: str) -> MappingCacheEntry | None:
        ...

    def upsert(self, mapping: FieldMapping) -> MappingCacheEntry:
        ...

    def strategy_statistics(self) -> CacheStatistics:
        ...


def _best(entries: list[MappingCacheEntry]) -> MappingCacheEntry | None:
    if not entries:
        return None
    return max(entries, key=lambda e: (e.usage_count, e.confidence))


def summarize(entries: list[MappingCacheEntry]) -> CacheStatistics:
    by_strategy: dict[str, int] = {}
    for e in entries:
        by_strategy[e.strategy.value] = by_strategy.get(e.strategy.value, 0) + 1
    total = len(entries)
    return CacheStatistics(
        total_entries=total,
        total_usage=sum(e.usage_count for e in entries),
        average_confidence=(sum(e.confidence for e in entries) / total) if total else 0.0,
        by_strategy=by_strategy,
    )


class InMemoryMappingCache:
    """Lock-protected dict store, optionally persisted to a JSON file after each write."""

    def __init__(self, path: Path | None = None) -> None:
        self._lock = threading.Lock()
        self._entries: dict[tuple[str, str], MappingCacheEntry] = {}
        self._path = path
        if path is not None and path.exists():
            self._load(path)

    def _load(self, path: Path) -> None:
        raw = json.loads(path.read_text(encoding="utf-8"))
        for item in raw:
            entry = MappingCacheEntry(
                source_field=item["source_field"],
                target_field=item["target_field"],
                confidence=float(item["confidence"]),
                strategy=MappingStrategy(item["strategy"]),
                usage_count=int(item["usage_count"]),
                last_used_at=datetime.fromisoformat(item["last_used_at"]),
            )
            self._entries[(entry.source_field, entry.target_field)] = entry
        logger.debug("Loaded %d mapping cache entries from %s", len(self._entries), path)

    def _save(self) -> None:
        if self._path is None:
            return
        data = [
            {
                "source_field": e.source_field,
                "target_field": e.target_field,
                "confidence": e.confidence,
                "strategy": e.strategy.value,
                "usage_count": e.usage_count,
                "last_used_at": e.last_used_at.isoformat(),
            }
            for e in self._entries.values()
        ]
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._path.write_text(json.dumps(data, ensure_ascii=False, indent=2), encoding="utf-8")

    def lookup(self, source_field: str) -> MappingCacheEntry | None:
        with self._lock:
            return _best([e for (s, _), e in self._entries.items() if s == source_field])

    def entries_for(self, source_field: str) -> list[MappingCacheEntry]:
        with self._lock:
            return [e for (s, _), e in self._entries.items() if s == source_field]

    def touch(self, source_field: str, target_field: str) -> MappingCacheEntry | None:
        with self._lock:
            current = self._entries.get((source_field, target_field))
            if current is None:
                return None
            updated = replace(
                current, usage_count=current.usage_count + 1, last_used_at=datetime.now(UTC)
            )
            self._entries[(source_field, target_field)] = updated
            self._save()
            return updated

    def upsert(self, mapping: FieldMapping) -> MappingCacheEntry:
        key = (mapping.source_field, mapping.target_field)
        with self._lock:
            current = self._entries.get(key)
            if current is None:
                entry = MappingCacheEntry(
                    source_field=mapping.source_field,
                    target_field=mapping.target_field,
                    confidence=mapping.confidence,
                    strategy=mapping.strategy,
                )
            else:
                entry = replace(
                    current,
                    usage_count=current.usage_count + 1,
                    confidence=max(current.confidence, mapping.confidence),
                    strategy=mapping.strategy,
                    last_used_at=datetime.now(UTC),
                )
            self._entries[key] = entry
            self._save()
            return entry

    def strategy_statistics(self) -> CacheStatistics:
        with self._lock:
            return summarize(list(self._entries.values()))

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
