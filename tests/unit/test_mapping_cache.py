from __future__ import annotations

import json
import threading
from pathlib import Path

from bulk_import.models.mapping import FieldMapping, MappingStrategy
from bulk_import.services.mapping_cache import InMemoryMappingCache


def test_upsert_inserts_then_increments():
    cache = InMemoryMappingCache()
    first = cache.upsert(FieldMapping("cost", "price", 80, MappingStrategy.STATISTICAL))
    assert first.usage_count == 1
    assert first.confidence == 80

    second = cache.upsert(FieldMapping("cost", "price", 90, MappingStrategy.MANUAL))
    assert second.usage_count == 2
    assert second.confidence == 90
    assert second.strategy is MappingStrategy.MANUAL


def test_confidence_never_decreases():
    cache = InMemoryMappingCache()
    cache.upsert(FieldMapping("cost", "price", 95, MappingStrategy.EXACT))
    entry = cache.upsert(FieldMapping("cost", "price", 60, MappingStrategy.SEMANTIC))
    assert entry.confidence == 95
    assert entry.usage_count == 2


def test_lookup_prefers_usage_then_confidence():
    cache = InMemoryMappingCache()
    cache.upsert(FieldMapping("amount", "price", 70, MappingStrategy.STATISTICAL))
    cache.upsert(FieldMapping("amount", "stock", 90, MappingStrategy.SEMANTIC))
    # same usage: higher confidence wins
    assert cache.lookup("amount").target_field == "stock"

    cache.touch("amount", "price")
    assert cache.lookup("amount").target_field == "price"
    assert len(cache.entries_for("amount")) == 2
    assert cache.lookup("missing") is None


def test_touch_unknown_key_returns_none():
    cache = InMemoryMappingCache()
    assert cache.touch("x", "y") is None
    assert len(cache) == 0


def test_json_persistence_roundtrip(tmp_path: Path):
    path = tmp_path / "cache" / "mappings.json"
    cache = InMemoryMappingCache(path)
    cache.upsert(FieldMapping("artikel", "name", 88, MappingStrategy.MANUAL))
    cache.touch("artikel", "name")

    raw = json.loads(path.read_text(encoding="utf-8"))
    assert raw[0]["source_field"] == "artikel"
    assert raw[0]["usage_count"] == 2

    reloaded = InMemoryMappingCache(path)
    entry = reloaded.lookup("artikel")
    assert entry.target_field == "name"
    assert entry.confidence == 88
    assert entry.strategy is MappingStrategy.MANUAL
    assert entry.usage_count == 2


def test_strategy_statistics():
    cache = InMemoryMappingCache()
    stats = cache.strategy_statistics()
    assert stats.total_entries == 0
    assert stats.average_confidence == 0.0

    cache.upsert(FieldMapping("sku", "sku", 100, MappingStrategy.EXACT))
    cache.upsert(FieldMapping("cost", "price", 80, MappingStrategy.STATISTICAL))
    cache.upsert(FieldMapping("cost", "price", 80, MappingStrategy.STATISTICAL))
    stats = cache.strategy_statistics()
    assert stats.total_entries == 2
    assert stats.total_usage == 3
    assert stats.average_confidence == 90
    assert stats.by_strategy == {"exact": 1, "statistical": 1}


def test_concurrent_upserts_count_every_write():
    cache = InMemoryMappingCache()

    def worker():
        for _ in range(50):
            cache.upsert(FieldMapping("qty", "stock", 75, MappingStrategy.STATISTICAL))

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert cache.lookup("qty").usage_count == 200
