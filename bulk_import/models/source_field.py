from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from .catalogue import DataType

"""SourceField model: the analysed profile of one uploaded column."""

__all__ = [
    "FieldStatistics",
    "SourceField",
]


@dataclass(frozen=True)
class FieldStatistics:
    """Optional statistics (numeric range or string lengths, common values)."""
    minimum: float | None = None
    maximum: float | None = None
    mean: float | None = None
    min_length: int | None = None
    max_length: int | None = None
    avg_length: float | None = None
    common_values: tuple[tuple[str, int], ...] = ()


@dataclass(frozen=True)
class SourceField:
    """Profile of one source column. Immutable for a given analysis pass."""
    name: str
    data_type: DataType
    sample_values: tuple[Any, ...] = ()
    null_percentage: float = 0.0
    unique_percentage: float = 0.0
    is_required: bool = False
    patterns: tuple[str, ...] = ()
    normalized_name: str | None = None
    expanded_name: str | None = None
    statistics: FieldStatistics | None = None
    metadata: dict[str, Any] = field(default_factory=dict, compare=False)
