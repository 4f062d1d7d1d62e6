from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from datetime import date, datetime
from itertools import islice
from typing import Any

import numpy as np
import pandas as pd

from ..config.loader import AnalysisConfig
from ..models.catalogue import DataType
from ..models.source_field import FieldStatistics, SourceField

"""Schema analyzer: profiles every source column of an upload.

Per column:
- primitive type by majority vote over non-null values (number > boolean > date, each
  needs >= type_threshold of the values, otherwise string)
- null percentage (None or blank / total) and unique percentage (distinct / non-null)
- is_required when null percentage < required_null_pct
Optional enrichments (config flags): abbreviation expansion + normalized name,
value patterns, numeric / length statistics with the top-5 common values.
"""

__all__ = [
    "SchemaAnalyzer",
    "ABBREVIATIONS",
    "BOOLEAN_LEXEMES",
    "normalize_field_name",
    "expand_abbreviations",
    "is_numeric",
    "is_boolean",
    "is_date",
    "infer_type",
    "detect_patterns",
]

logger = logging.getLogger(__name__)

ABBREVIATIONS: dict[str, str] = {
    "qty": "quantity",
    "desc": "description",
    "amt": "amount",
    "num": "number",
    "id": "identifier",
    "img": "image",
    "url": "web_address",
    "addr": "address",
    "tel": "telephone",
    "fax": "facsimile",
    "prod": "product",
    "mfg": "manufacturer",
    "cat": "category",
    "std": "standard",
    "wt": "weight",
    "ht": "height",
    "wd": "width",
    "len": "length",
    "vol": "volume",
    "temp": "temperature",
    "min": "minimum",
    "max": "maximum",
    "avg": "average",
    "pct": "percentage",
    "req": "required",
    "opt": "optional",
    "def": "default",
}

BOOLEAN_LEXEMES = frozenset(
    {"true", "false", "yes", "no", "1", "0", "on", "off", "enabled", "disabled"}
)

_CURRENCY_CHARS = re.compile(r"[$,€£¥%]")
_SEPARATORS = re.compile(r"[_\-\s]+")

_PATTERNS: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("integer_only", re.compile(r"^\d+$")),
    ("decimal_two_places", re.compile(r"^\d+\.\d{2}$")),
    ("currency_usd", re.compile(r"^\$[\d,]+\.\d{2}$")),
    ("date_iso", re.compile(r"^\d{4}-\d{2}-\d{2}$")),
    ("code_alphanum", re.compile(r"^[A-Z0-9]{6,12}$")),
)

# 列名からの意味ヒント (型推論とは独立、metadata のみ)
_NAME_HINTS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("currency", ("price", "cost", "amount")),
    ("percentage", ("percent", "rate")),
    ("measurement", ("weight", "height", "width")),
    ("email", ("email", "mail")),
    ("phone", ("phone", "tel")),
    ("url", ("url", "link", "website")),
    ("image_url", ("image", "img", "photo")),
)


def normalize_field_name(name: str) -> str:
    text = _SEPARATORS.sub("_", name.lower())
    text = re.sub(r"[^a-z0-9_]", "", text)
    return text.strip("_")


def expand_abbreviations(name: str) -> str:
    """`qty_avail` -> `quantity_avail`; the original name when nothing expands."""
    lowered = name.lower()
    words = _SEPARATORS.split(lowered)
    expanded = "_".join(ABBREVIATIONS.get(w, w) for w in words)
    return expanded if expanded != lowered else name


def _text(value: Any) -> str:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def is_numeric(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, (int, float, np.number)):
        return bool(np.isfinite(value))
    if not isinstance(value, str):
        return False
    cleaned = _CURRENCY_CHARS.sub("", value).strip()
    if not cleaned:
        return False
    try:
        return bool(np.isfinite(float(cleaned)))
    except ValueError:
        return False


def is_boolean(value: Any) -> bool:
    if isinstance(value, bool):
        return True
    return _text(value).strip().lower() in BOOLEAN_LEXEMES


def is_date(value: Any) -> bool:
    if isinstance(value, (datetime, date)):
        return True
    if not isinstance(value, str) or len(value.strip()) < 8:
        return False
    return not pd.isna(pd.to_datetime(value, errors="coerce"))


def infer_type(values: list[Any], threshold: float = 0.8) -> DataType:
    if not values:
        return DataType.STRING
    counts = {DataType.NUMBER: 0, DataType.BOOLEAN: 0, DataType.DATE: 0}
    for value in values:
        if is_numeric(value):
            counts[DataType.NUMBER] += 1
        elif is_boolean(value):
            counts[DataType.BOOLEAN] += 1
        elif is_date(value):
            counts[DataType.DATE] += 1
    total = len(values)
    for data_type in (DataType.NUMBER, DataType.BOOLEAN, DataType.DATE):
        if counts[data_type] / total >= threshold:
            return data_type
    return DataType.STRING


def detect_patterns(values: list[Any]) -> tuple[str, ...]:
    if not values:
        return ()
    texts = [_text(v) for v in values]
    found = [name for name, rx in _PATTERNS if all(rx.match(t) for t in texts)]
    if all(len(t) == len(texts[0]) for t in texts):
        found.append("fixed_length")
    return tuple(found)


def _name_hint(name: str) -> str | None:
    lowered = name.lower()
    for hint, words in _NAME_HINTS:
        if any(w in lowered for w in words):
            return hint
    return None


def _statistics(values: list[Any], data_type: DataType) -> FieldStatistics:
    texts = pd.Series([_text(v) for v in values], dtype=object)
    common = tuple((str(k), int(c)) for k, c in texts.value_counts().head(5).items())
    if data_type is DataType.NUMBER:
        numbers = pd.to_numeric(
            pd.Series([_CURRENCY_CHARS.sub("", t) for t in texts], dtype=object), errors="coerce"
        ).dropna()
        if numbers.empty:
            return FieldStatistics(common_values=common)
        return FieldStatistics(
            minimum=float(numbers.min()),
            maximum=float(numbers.max()),
            mean=float(numbers.mean()),
            common_values=common,
        )
    if data_type is DataType.STRING:
        lengths = texts.str.len()
        return FieldStatistics(
            min_length=int(lengths.min()),
            max_length=int(lengths.max()),
            avg_length=float(lengths.mean()),
            common_values=common,
        )
    return FieldStatistics(common_values=common)


def _is_null(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip() == ""
    return isinstance(value, float) and np.isnan(value)


def _hashable(value: Any) -> Any:
    try:
        hash(value)
    except TypeError:
        return repr(value)
    return value


class SchemaAnalyzer:
    """Builds SourceField profiles from parsed rows."""

    def __init__(self, config: AnalysisConfig | None = None) -> None:
        self.config = config or AnalysisConfig()

    def analyze(self, rows: Iterable[dict[str, Any]], fields: list[str] | None = None) -> list[SourceField]:
        """Profile the first `max_sample_size` rows.

        `fields` fixes the column order; defaults to the keys of the first row.
        """
        sample = list(islice(rows, self.config.max_sample_size))
        if fields is None:
            fields = list(sample[0].keys()) if sample else []
        result = [self.analyze_field(name, [row.get(name) for row in sample]) for name in fields]
        logger.info(
            "Analyzed %d field(s) over %d sample row(s)", len(result), len(sample)
        )
        return result

    def analyze_field(self, name: str, values: list[Any]) -> SourceField:
        total = len(values)
        non_null = [v for v in values if not _is_null(v)]
        null_pct = (total - len(non_null)) / total * 100 if total else 0.0
        distinct = list(dict.fromkeys(_hashable(v) for v in non_null))
        unique_pct = len(distinct) / len(non_null) * 100 if non_null else 0.0
        data_type = infer_type(non_null, self.config.type_threshold)

        metadata: dict[str, Any] = {}
        hint = _name_hint(name)
        if hint is not None:
            metadata["semantic_hint"] = hint

        return SourceField(
            name=name,
            data_type=data_type,
            sample_values=tuple(distinct[:5]),
            null_percentage=null_pct,
            unique_percentage=unique_pct,
            is_required=null_pct < self.config.required_null_pct,
            patterns=detect_patterns(non_null) if self.config.analyze_patterns else (),
            normalized_name=normalize_field_name(name) if self.config.expand_abbreviations else None,
            expanded_name=expand_abbreviations(name) if self.config.expand_abbreviations else None,
            statistics=(
                _statistics(non_null, data_type)
                if self.config.include_statistics and non_null else None
            ),
            metadata=metadata,
        )
