from __future__ import annotations

import logging
import re
from collections.abc import Callable, Iterable, Sequence
from datetime import date, datetime
from typing import Any

from ..models.catalogue import PRODUCT_FIELDS, VALID_STATUSES, DataType, TargetField
from ..models.mapping import FieldMapping
from ..models.validation import AutoFix, Severity, ValidationError, ValidationReport

"""Validation engine: target-schema rules applied per record and per mapped field.

Rule ids (ValidationError.rule):
    REQUIRED_FIELD     error    required field empty
    TYPE_MISMATCH      error    value not coercible to the field type
    INVALID_NUMBER     error    numeric text with currency / separators (auto-fix: cleaned number)
    NEGATIVE_PRICE     error    price below zero (auto-fix: absolute value)
    NEGATIVE_STOCK     warning  stock below zero (auto-fix: 0)
    NOT_INTEGER        warning  fractional stock (auto-fix: rounded)
    INVALID_SKU        error    characters outside [A-Za-z0-9_-] (auto-fix: cleaned upper-case)
    SKU_NOT_TEXT       warning  numeric SKU (auto-fix: text)
    NOT_TEXT           warning  non-text value in a text field (auto-fix: text)
    INVALID_GTIN       warning  not 8-14 digits
    INVALID_STATUS     warning  status outside draft|review|live|archived (auto-fix)
    INVALID_BOOLEAN    error    not a boolean lexeme
    BOOLEAN_TEXT       warning  boolean given as text (auto-fix: bool)
    WHITESPACE         warning  leading / trailing whitespace (auto-fix: trimmed)
    MISSING_SLUG       warning  slug empty while name present (auto-fix: generated)
    INVALID_SLUG       warning  slug not lower-case-hyphenated (auto-fix: generated)
"""

__all__ = [
    "ValidationEngine",
    "apply_mappings",
    "coerce_for_field",
    "generate_slug",
    "clean_sku",
    "parse_number",
    "parse_boolean",
]

logger = logging.getLogger(__name__)

_CURRENCY = re.compile(r"[$€£¥,%\s]")
_SKU_OK = re.compile(r"^[A-Za-z0-9_-]+$")
_SKU_BAD = re.compile(r"[^A-Za-z0-9_-]")
_GTIN = re.compile(r"^\d{8,14}$")
_SLUG = re.compile(r"^[a-z0-9]+(?:-[a-z0-9]+)*$")
_TRUE = frozenset({"true", "yes", "1", "on", "enabled", "y"})
_FALSE = frozenset({"false", "no", "0", "off", "disabled", "n"})

# レコード内で ID として扱う列名 (マッピング対象外でも update 判定に使う)
ID_COLUMN = "id"


def generate_slug(text: str) -> str:
    slug = re.sub(r"[^a-z0-9\s-]", "", text.lower())
    slug = re.sub(r"\s+", "-", slug.strip())
    return re.sub(r"-+", "-", slug).strip("-")


def clean_sku(value: str) -> str:
    return _SKU_BAD.sub("", value).upper()


def parse_number(value: Any) -> float | None:
    """Number from a number or numeric text (currency symbols / separators removed)."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if not isinstance(value, str):
        return None
    cleaned = _CURRENCY.sub("", value)
    if not cleaned:
        return None
    try:
        return float(cleaned)
    except ValueError:
        return None


def parse_boolean(value: Any) -> bool | None:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE:
        return True
    if text in _FALSE:
        return False
    return None


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and value.strip() == "")


def _as_number(value: float, integer: bool) -> int | float:
    if integer or value.is_integer():
        return int(round(value))
    return value


def coerce_for_field(field: str, value: Any, catalogue: dict[str, TargetField] = PRODUCT_FIELDS) -> Any:
    """Best-effort conversion of a user-supplied value to the field's type.

    Values that cannot be converted are returned unchanged (re-validation reports them).
    """
    target = catalogue.get(field)
    if target is None or value is None:
        return value
    if isinstance(value, str):
        value = value.strip()
        if value == "":
            return None
    if target.data_type is DataType.NUMBER:
        number = parse_number(value)
        if number is None:
            return value
        if target.integer:
            return max(0, int(round(number)))
        return number
    if target.data_type is DataType.BOOLEAN:
        parsed = parse_boolean(value)
        return value if parsed is None else parsed
    if target.data_type is DataType.STRING and isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return value


def apply_mappings(rows: Iterable[dict[str, Any]], mappings: Sequence[FieldMapping]) -> list[dict[str, Any]]:
    """Re-key source rows to target fields. An unmapped `id` column is carried through."""
    mapped_sources = {m.source_field for m in mappings}
    records: list[dict[str, Any]] = []
    for row in rows:
        record = {m.target_field: row.get(m.source_field) for m in mappings}
        if ID_COLUMN not in mapped_sources:
            for key, value in row.items():
                if key.strip().lower() == ID_COLUMN and not _is_blank(value):
                    record[ID_COLUMN] = value
                    break
        records.append(record)
    return records


Rule = Callable[[int, str, Any, dict[str, Any]], list[ValidationError]]


def _err(index: int, field: str, value: Any, severity: Severity, rule: str, message: str,
         suggestion: str | None = None, fix: tuple[str, Any] | None = None,
         confidence: int = 100) -> ValidationError:
    auto_fix = AutoFix(fix[0], fix[1], confidence) if fix is not None else None
    return ValidationError(index, field, value, severity, rule, message, suggestion, auto_fix)


class ValidationEngine:
    """Applies per-field rules to target-keyed records."""

    def __init__(self, catalogue: dict[str, TargetField] | None = None) -> None:
        self.catalogue = catalogue or PRODUCT_FIELDS
        self._rules: dict[str, Rule] = {
            "price": self._check_price,
            "compareAtPrice": self._check_price,
            "stock": self._check_integer,
            "lowStockThreshold": self._check_integer,
            "sku": self._check_sku,
            "gtin": self._check_gtin,
            "status": self._check_status,
            "isVariant": self._check_boolean,
            "slug": self._check_slug,
        }

    def validate(self, records: Sequence[dict[str, Any]]) -> ValidationReport:
        errors: list[ValidationError] = []
        for index, record in enumerate(records):
            errors.extend(self.validate_record(index, record))
        report = ValidationReport(tuple(errors), len(records))
        logger.info(
            "Validated %d record(s): %d error(s), %d warning(s)",
            report.total_records, report.error_count, report.warning_count,
        )
        return report

    def validate_record(self, index: int, record: dict[str, Any]) -> list[ValidationError]:
        """Errors for one record. Only fields present in the record (mapped fields) are checked."""
        errors: list[ValidationError] = []
        for field, value in record.items():
            target = self.catalogue.get(field)
            if target is None:
                continue
            if _is_blank(value):
                if target.required:
                    errors.append(_err(
                        index, field, value, Severity.ERROR, "REQUIRED_FIELD",
                        f"{field} is required", f"Provide a value for {field}",
                    ))
                elif field == "slug":
                    errors.extend(self._check_slug(index, field, value, record))
                continue
            rule = self._rules.get(field)
            if rule is not None:
                errors.extend(rule(index, field, value, record))
            elif target.data_type is DataType.STRING:
                errors.extend(self._check_text(index, field, value, record))
        return errors

    # ---- rules -------------------------------------------------------------

    def _check_text(self, index: int, field: str, value: Any, record: dict[str, Any]) -> list[ValidationError]:
        if isinstance(value, str):
            if value != value.strip():
                return [_err(index, field, value, Severity.WARNING, "WHITESPACE",
                             f"{field} has leading or trailing whitespace",
                             "Trim the value", ("trim", value.strip()))]
            return []
        text = value.isoformat() if isinstance(value, (datetime, date)) else str(value)
        return [_err(index, field, value, Severity.WARNING, "NOT_TEXT",
                     f"{field} should be text", f"Use '{text}'", ("to_text", text))]

    def _check_price(self, index: int, field: str, value: Any, record: dict[str, Any]) -> list[ValidationError]:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            number = parse_number(value)
            if number is None:
                return [_err(index, field, value, Severity.ERROR, "TYPE_MISMATCH",
                             f"{field} must be a number", "Enter a numeric value such as 19.99")]
            fixed = abs(number)
            return [_err(index, field, value, Severity.ERROR, "INVALID_NUMBER",
                         f"{field} contains non-numeric characters", f"Use {fixed:g}",
                         ("parse_number", fixed), 90)]
        if value < 0:
            return [_err(index, field, value, Severity.ERROR, "NEGATIVE_PRICE",
                         f"{field} cannot be negative", f"Use {abs(value):g}",
                         ("absolute_value", abs(value)), 80)]
        return []

    def _check_integer(self, index: int, field: str, value: Any, record: dict[str, Any]) -> list[ValidationError]:
        number = parse_number(value)
        if number is None:
            return [_err(index, field, value, Severity.ERROR, "TYPE_MISMATCH",
                         f"{field} must be a whole number", "Enter a whole number such as 10")]
        if isinstance(value, str):
            fixed = max(0, int(round(number)))
            return [_err(index, field, value, Severity.ERROR, "INVALID_NUMBER",
                         f"{field} contains non-numeric characters", f"Use {fixed}",
                         ("parse_number", fixed), 90)]
        if number < 0:
            return [_err(index, field, value, Severity.WARNING, "NEGATIVE_STOCK",
                         f"{field} cannot be negative", "Use 0", ("set_zero", 0))]
        if not float(number).is_integer():
            return [_err(index, field, value, Severity.WARNING, "NOT_INTEGER",
                         f"{field} should be a whole number", f"Use {round(number)}",
                         ("round", int(round(number))), 90)]
        return []

    def _check_sku(self, index: int, field: str, value: Any, record: dict[str, Any]) -> list[ValidationError]:
        if not isinstance(value, str):
            text = str(value)
            return [_err(index, field, value, Severity.WARNING, "SKU_NOT_TEXT",
                         "sku should be text", f"Use '{text}'", ("to_text", text))]
        if _SKU_OK.match(value):
            return []
        cleaned = clean_sku(value)
        fix = ("clean_sku", cleaned) if cleaned else None
        return [_err(index, field, value, Severity.ERROR, "INVALID_SKU",
                     "sku may only contain letters, digits, '-' and '_'",
                     f"Use '{cleaned}'" if cleaned else None, fix, 85)]

    def _check_gtin(self, index: int, field: str, value: Any, record: dict[str, Any]) -> list[ValidationError]:
        text = str(value).strip()
        if _GTIN.match(text):
            return self._check_text(index, field, value, record) if isinstance(value, str) else [
                _err(index, field, value, Severity.WARNING, "NOT_TEXT", "gtin should be text",
                     f"Use '{text}'", ("to_text", text))
            ]
        return [_err(index, field, value, Severity.WARNING, "INVALID_GTIN",
                     "gtin should be 8-14 digits", "Check the barcode value")]

    def _check_status(self, index: int, field: str, value: Any, record: dict[str, Any]) -> list[ValidationError]:
        text = str(value).strip().lower()
        if value in VALID_STATUSES:
            return []
        fixed = text if text in VALID_STATUSES else "draft"
        return [_err(index, field, value, Severity.WARNING, "INVALID_STATUS",
                     f"status must be one of {', '.join(VALID_STATUSES)}", f"Use '{fixed}'",
                     ("set_status", fixed), 100 if fixed == text else 70)]

    def _check_boolean(self, index: int, field: str, value: Any, record: dict[str, Any]) -> list[ValidationError]:
        if isinstance(value, bool):
            return []
        parsed = parse_boolean(value)
        if parsed is None:
            return [_err(index, field, value, Severity.ERROR, "INVALID_BOOLEAN",
                         f"{field} must be true or false", "Use true/false, yes/no or 1/0")]
        return [_err(index, field, value, Severity.WARNING, "BOOLEAN_TEXT",
                     f"{field} given as text", f"Use {str(parsed).lower()}",
                     ("parse_boolean", parsed), 95)]

    def _check_slug(self, index: int, field: str, value: Any, record: dict[str, Any]) -> list[ValidationError]:
        name = record.get("name")
        if _is_blank(value):
            if _is_blank(name):
                return []
            generated = generate_slug(str(name))
            return [_err(index, field, value, Severity.WARNING, "MISSING_SLUG",
                         "slug is empty", f"Use '{generated}'", ("generate_slug", generated), 90)]
        if isinstance(value, str) and _SLUG.match(value):
            return []
        generated = generate_slug(str(value))
        fix = ("generate_slug", generated) if generated else None
        return [_err(index, field, value, Severity.WARNING, "INVALID_SLUG",
                     "slug should be lower-case words joined by '-'",
                     f"Use '{generated}'" if generated else None, fix, 85)]
