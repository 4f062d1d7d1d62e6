from __future__ import annotations

import io
import json

import pandas as pd
import pytest
from jsonschema import Draft7Validator

from bulk_import.logging.error_report import REPORT_COLUMNS, render_csv, render_jsonl
from bulk_import.models.validation import AutoFix, Severity, ValidationError

"""Error report contract: JSON Lines entries keep a fixed key set, CSV a fixed column order."""

ERROR_LINE_SCHEMA = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "type": "object",
    "additionalProperties": False,
    "required": ["record_index", "field", "value", "severity", "rule", "message",
                 "suggestion", "auto_fix"],
    "properties": {
        "record_index": {"type": "integer", "minimum": 0},
        "field": {"type": "string"},
        "value": {},
        "severity": {"enum": ["error", "warning"]},
        "rule": {"type": "string", "pattern": "^[A-Z][A-Z0-9_]*$"},
        "message": {"type": "string"},
        "suggestion": {"type": ["string", "null"]},
        "auto_fix": {
            "type": ["object", "null"],
            "additionalProperties": False,
            "required": ["action", "value", "confidence"],
            "properties": {
                "action": {"type": "string"},
                "value": {},
                "confidence": {"type": "integer", "minimum": 0, "maximum": 100},
            },
        },
    },
}


@pytest.fixture()
def errors() -> list[ValidationError]:
    return [
        ValidationError(0, "price", "$1,299.00", Severity.ERROR, "INVALID_NUMBER",
                        "price must be a number", "Use 1299", AutoFix("clean_number", 1299.0)),
        ValidationError(3, "sku", "a b", Severity.ERROR, "INVALID_SKU", "sku has invalid characters"),
        ValidationError(7, "stock", -2, Severity.WARNING, "NEGATIVE_STOCK", "stock cannot be negative",
                        "Use 0", AutoFix("set_zero", 0)),
    ]


def test_schema_itself_is_valid():
    Draft7Validator.check_schema(ERROR_LINE_SCHEMA)


def test_jsonl_lines_match_schema(errors):
    validator = Draft7Validator(ERROR_LINE_SCHEMA)
    lines = render_jsonl(errors).splitlines()
    assert len(lines) == 3
    for line in lines:
        assert list(validator.iter_errors(json.loads(line))) == []


def test_schema_rejects_extra_key(errors):
    entry = json.loads(render_jsonl(errors[:1]))
    entry["extra"] = "not allowed"
    assert list(Draft7Validator(ERROR_LINE_SCHEMA).iter_errors(entry))


def test_csv_column_order(errors):
    assert REPORT_COLUMNS == ["record_index", "field", "value", "severity", "message", "suggestion"]
    header = render_csv(errors).splitlines()[0]
    assert header == ",".join(REPORT_COLUMNS)
    frame = pd.read_csv(io.StringIO(render_csv(errors)))
    assert frame["record_index"].tolist() == [0, 3, 7]
