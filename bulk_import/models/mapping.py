from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from .source_field import SourceField

"""Field mapping models: FieldMapping, MappingCacheEntry and mapping results."""

__all__ = [
    "MappingStrategy",
    "FieldMapping",
    "MappingCacheEntry",
    "MappingResult",
    "MappingValidationResult",
]


class MappingStrategy(Enum):
    """Strategy that produced a mapping, in cascade priority order (manual = user override)."""
    EXACT = "exact"
    FUZZY = "fuzzy"
    HISTORICAL = "historical"
    STATISTICAL = "statistical"
    SEMANTIC = "semantic"
    MANUAL = "manual"

    @property
    def priority(self) -> int:
        return _PRIORITY[self]


_PRIORITY = {
    MappingStrategy.MANUAL: 6,
    MappingStrategy.EXACT: 5,
    MappingStrategy.FUZZY: 4,
    MappingStrategy.HISTORICAL: 3,
    MappingStrategy.STATISTICAL: 2,
    MappingStrategy.SEMANTIC: 1,
}


@dataclass(frozen=True)
class FieldMapping:
    source_field: str
    target_field: str
    confidence: float  # 0-100
    strategy: MappingStrategy
    metadata: dict[str, Any] = field(default_factory=dict, compare=False)

    def outranks(self, other: FieldMapping) -> bool:
        """Higher confidence wins; ties go to the earlier cascade stage."""
        if self.confidence != other.confidence:
            return self.confidence > other.confidence
        return self.strategy.priority > other.strategy.priority


@dataclass(frozen=True)
class MappingCacheEntry:
    """Durable learning state for one (source, target) pair."""
    source_field: str
    target_field: str
    confidence: float
    strategy: MappingStrategy
    usage_count: int = 1
    last_used_at: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass(frozen=True)
class MappingValidationResult:
    errors: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()
    missing_required: tuple[str, ...] = ()

    @property
    def is_valid(self) -> bool:
        return not self.errors

    @property
    def blocks_execution(self) -> bool:
        # 必須フィールド未マッピングは警告扱いだが実行は不可
        return bool(self.errors) or bool(self.missing_required)


@dataclass(frozen=True)
class MappingResult:
    """Outcome of one mapping generation run."""
    mappings: tuple[FieldMapping, ...]
    unmapped: tuple[SourceField, ...]
    elapsed_seconds: float = 0.0
    strategy_counts: dict[str, int] = field(default_factory=dict)

    @property
    def unmapped_names(self) -> list[str]:
        return [f.name for f in self.unmapped]

    @property
    def average_confidence(self) -> float:
        if not self.mappings:
            return 0.0
        return sum(m.confidence for m in self.mappings) / len(self.mappings)

    def target_for(self, source_field: str) -> str | None:
        for m in self.mappings:
            if m.source_field == source_field:
                return m.target_field
        return None
