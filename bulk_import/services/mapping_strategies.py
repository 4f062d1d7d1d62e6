from __future__ import annotations

import re
from collections.abc import Callable, Iterable, Sequence
from typing import Any

from ..models.catalogue import PRODUCT_FIELDS, DataType, TargetField
from ..models.mapping import FieldMapping, MappingStrategy
from ..models.source_field import SourceField
from .mapping_cache import MappingCacheStore

"""Per-field matchers for the five mapping strategies, plus the stage runner.

A stage is a pure function  [SourceField] -> (candidates, unresolved):
each matcher proposes at most one FieldMapping per field, the stage keeps the ones
above its acceptance threshold. Conflicts between candidates for the same target
are resolved by the engine, not here.
"""

__all__ = [
    "levenshtein",
    "similarity",
    "exact_match",
    "fuzzy_match",
    "historical_match",
    "statistical_match",
    "run_stage",
    "Matcher",
]

Matcher = Callable[[SourceField], FieldMapping | None]

_FUZZY_STRIP = re.compile(r"[_\s\-]")
_BOOLEAN_LIKE = frozenset({"true", "false", "1", "0", "yes", "no", "y", "n"})


def levenshtein(a: str, b: str) -> int:
    if a == b:
        return 0
    if len(a) < len(b):
        a, b = b, a
    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, start=1):
        current = [i]
        for j, cb in enumerate(b, start=1):
            cost = 0 if ca == cb else 1
            current.append(min(current[j - 1] + 1, previous[j] + 1, previous[j - 1] + cost))
        previous = current
    return previous[-1]


def similarity(a: str, b: str) -> float:
    """(maxLen - distance) / maxLen * 100; symmetric, 100 for equal strings."""
    if a == b:
        return 100.0
    longest = max(len(a), len(b))
    if longest == 0:
        return 100.0
    return (longest - levenshtein(a, b)) / longest * 100


def _fuzzy_key(name: str) -> str:
    return _FUZZY_STRIP.sub("", name.lower())


def exact_match(field: SourceField, catalogue: dict[str, TargetField] = PRODUCT_FIELDS) -> FieldMapping | None:
    name = field.name.strip().lower()
    for target in catalogue.values():
        if target.name.lower() == name:
            return FieldMapping(field.name, target.name, 100, MappingStrategy.EXACT,
                                {"match": "direct"})
    for target in catalogue.values():
        if name in target.variations:
            return FieldMapping(field.name, target.name, 95, MappingStrategy.EXACT,
                                {"match": "variation", "variation": name})
    return None


def fuzzy_match(field: SourceField, catalogue: dict[str, TargetField] = PRODUCT_FIELDS,
                candidate_threshold: float = 60) -> FieldMapping | None:
    """Best similarity against every target name and variation (first best wins ties)."""
    source = _fuzzy_key(field.name)
    best_target, best_score, best_against = "", 0.0, ""
    for target in catalogue.values():
        score = similarity(source, _fuzzy_key(target.name))
        if score > best_score:
            best_target, best_score, best_against = target.name, score, target.name
    for target in catalogue.values():
        for variation in target.variations:
            score = similarity(source, _fuzzy_key(variation))
            if score > best_score:
                best_target, best_score, best_against = target.name, score, variation
    if best_score > candidate_threshold:
        return FieldMapping(field.name, best_target, round(best_score, 2), MappingStrategy.FUZZY,
                            {"matched": best_against, "similarity": best_score})
    return None


def historical_match(field: SourceField, cache: MappingCacheStore, touch: bool = True) -> FieldMapping | None:
    """Cached mapping for the exact source name; bumps its usage unless touch=False."""
    entry = cache.lookup(field.name)
    if entry is None:
        return None
    if touch:
        entry = cache.touch(entry.source_field, entry.target_field) or entry
    return FieldMapping(
        field.name, entry.target_field, entry.confidence, MappingStrategy.HISTORICAL,
        {"usage_count": entry.usage_count, "last_strategy": entry.strategy.value},
    )


def _contains(text: str, words: Iterable[str]) -> bool:
    return any(w in text for w in words)


def _boolean_like(values: Sequence[Any]) -> bool:
    if not values:
        return False
    return all(isinstance(v, bool) or str(v).lower() in _BOOLEAN_LIKE for v in values)


def _stat(field: SourceField, target: str, confidence: float, pattern: str) -> FieldMapping:
    return FieldMapping(field.name, target, confidence, MappingStrategy.STATISTICAL,
                        {"pattern": pattern, "data_type": field.data_type.value})


def statistical_match(field: SourceField) -> FieldMapping | None:
    """Keyword heuristics on the lowercased field name. Rules are checked in order."""
    name = field.name.lower()

    if _contains(name, ("price", "cost", "amount", "money", "dollar")):
        if _contains(name, ("compare", "original", "msrp", "rrp", "was", "crossed")):
            return _stat(field, "compareAtPrice", 85, "compare_price")
        return _stat(field, "price", 80, "price")

    if _contains(name, ("stock", "inventory", "quantity", "qty", "available", "count")):
        if _contains(name, ("low", "min", "threshold", "alert", "reorder")):
            return _stat(field, "lowStockThreshold", 80, "low_stock")
        return _stat(field, "stock", 75, "inventory")

    if _contains(name, ("description", "desc", "details", "info")):
        if _contains(name, ("short", "brief", "summary", "excerpt")):
            return _stat(field, "shortDescription", 80, "short_description")
        if _contains(name, ("long", "detailed", "full", "complete")):
            return _stat(field, "longDescription", 80, "long_description")
        return _stat(field, "shortDescription", 70, "description")

    if _contains(name, ("sku", "code", "id", "number", "identifier")):
        if _contains(name, ("product", "item", "part")):
            return _stat(field, "sku", 80, "identifier")

    if _contains(name, ("barcode", "gtin", "ean", "upc", "isbn")):
        return _stat(field, "gtin", 85, "barcode")

    if _contains(name, ("brand", "manufacturer", "vendor", "company")):
        return _stat(field, "brandId", 75, "brand")

    if _contains(name, ("status", "state", "active", "published", "enabled")):
        return _stat(field, "status", 75, "status")

    if _contains(name, ("variant", "child", "variation", "option")):
        if field.data_type is DataType.BOOLEAN or _boolean_like(field.sample_values):
            return _stat(field, "isVariant", 80, "variant_boolean")
        if _contains(name, ("parent", "master", "main")):
            return _stat(field, "parentId", 75, "parent_id")

    return None


def run_stage(fields: Sequence[SourceField], matcher: Matcher,
              accept: float) -> tuple[list[FieldMapping], list[SourceField]]:
    """Apply `matcher` to each field; candidates with confidence > accept are resolved."""
    resolved: list[FieldMapping] = []
    unresolved: list[SourceField] = []
    for field in fields:
        mapping = matcher(field)
        if mapping is not None and mapping.confidence > accept:
            resolved.append(mapping)
        else:
            unresolved.append(field)
    return resolved, unresolved
