from __future__ import annotations

import json
from datetime import datetime

import pytest

from bulk_import.models.mapping import FieldMapping, MappingStrategy
from bulk_import.models.validation import AutoFix, Severity, ValidationError
from bulk_import.services.validation import (
    ValidationEngine,
    apply_mappings,
    clean_sku,
    coerce_for_field,
    generate_slug,
    parse_boolean,
    parse_number,
)


def _rules(record: dict) -> list[tuple[str, str, Severity]]:
    return [(e.field, e.rule, e.severity) for e in ValidationEngine().validate_record(0, record)]


def test_invalid_price_is_single_type_mismatch():
    errors = ValidationEngine().validate_record(
        0, {"name": "Widget", "price": "invalid_price", "sku": "SKU001"}
    )
    assert len(errors) == 1
    error = errors[0]
    assert (error.field, error.rule, error.severity) == ("price", "TYPE_MISMATCH", Severity.ERROR)
    assert error.value == "invalid_price"
    assert error.auto_fix is None


def test_valid_record_has_no_errors():
    record = {"name": "Widget", "slug": "widget", "price": 19.99, "stock": 5,
              "sku": "SKU-001", "status": "live", "isVariant": False, "gtin": "12345678"}
    assert ValidationEngine().validate_record(0, record) == []


@pytest.mark.parametrize(
    "value,rule,fix",
    [
        ("$1,299.00", "INVALID_NUMBER", AutoFix("parse_number", 1299.0, 90)),
        (-5, "NEGATIVE_PRICE", AutoFix("absolute_value", 5, 80)),
    ],
)
def test_price_rules(value, rule, fix):
    [error] = ValidationEngine().validate_record(0, {"price": value})
    assert error.rule == rule
    assert error.severity is Severity.ERROR
    assert error.auto_fix == fix


def test_stock_rules():
    assert _rules({"stock": -3}) == [("stock", "NEGATIVE_STOCK", Severity.WARNING)]
    [fractional] = ValidationEngine().validate_record(0, {"stock": 2.6})
    assert fractional.rule == "NOT_INTEGER"
    assert fractional.auto_fix.value == 3
    assert _rules({"stock": "12 pcs"}) == [("stock", "TYPE_MISMATCH", Severity.ERROR)]
    [text] = ValidationEngine().validate_record(0, {"lowStockThreshold": "1,000"})
    assert text.rule == "INVALID_NUMBER"
    assert text.auto_fix.value == 1000


def test_sku_rules():
    [bad] = ValidationEngine().validate_record(0, {"sku": "ab c!"})
    assert bad.rule == "INVALID_SKU"
    assert bad.auto_fix.value == "ABC"
    [unfixable] = ValidationEngine().validate_record(0, {"sku": "!!!"})
    assert unfixable.auto_fix is None
    assert _rules({"sku": 12345}) == [("sku", "SKU_NOT_TEXT", Severity.WARNING)]


def test_gtin_rules():
    assert _rules({"gtin": "1234567890123"}) == []
    assert _rules({"gtin": "123"}) == [("gtin", "INVALID_GTIN", Severity.WARNING)]
    assert _rules({"gtin": 12345678}) == [("gtin", "NOT_TEXT", Severity.WARNING)]


def test_status_rules():
    [case] = ValidationEngine().validate_record(0, {"status": "Live"})
    assert case.auto_fix == AutoFix("set_status", "live", 100)
    [unknown] = ValidationEngine().validate_record(0, {"status": "bogus"})
    assert unknown.auto_fix == AutoFix("set_status", "draft", 70)


def test_boolean_rules():
    [text] = ValidationEngine().validate_record(0, {"isVariant": "yes"})
    assert text.rule == "BOOLEAN_TEXT"
    assert text.auto_fix.value is True
    assert _rules({"isVariant": "maybe"}) == [("isVariant", "INVALID_BOOLEAN", Severity.ERROR)]


def test_slug_rules():
    [missing] = ValidationEngine().validate_record(0, {"name": "Blue Widget", "slug": None})
    assert missing.rule == "MISSING_SLUG"
    assert missing.auto_fix.value == "blue-widget"
    [invalid] = ValidationEngine().validate_record(0, {"name": "x", "slug": "Blue Widget"})
    assert invalid.rule == "INVALID_SLUG"
    assert invalid.auto_fix.value == "blue-widget"
    # neither slug nor name: nothing to suggest
    assert _rules({"slug": ""}) == []


def test_required_and_text_rules():
    assert _rules({"name": ""}) == [("name", "REQUIRED_FIELD", Severity.ERROR)]
    [ws] = ValidationEngine().validate_record(0, {"name": " Widget "})
    assert ws.rule == "WHITESPACE"
    assert ws.auto_fix.value == "Widget"
    assert _rules({"longDescription": 5}) == [("longDescription", "NOT_TEXT", Severity.WARNING)]
    # unknown keys (e.g. a carried-through id) are ignored
    assert _rules({"id": "abc", "name": "Widget"}) == []


def test_unmapped_fields_are_not_checked():
    # name is required but absent from the record (not mapped): mapping validation covers it
    assert _rules({"price": 1}) == []


def test_validation_report_counts():
    records = [
        {"name": "A", "price": 1},
        {"name": "", "price": "x"},
        {"name": "C", "stock": -1},
    ]
    report = ValidationEngine().validate(records)
    assert report.total_records == 3
    assert report.error_count == 2
    assert report.warning_count == 1
    assert report.invalid_records == 1
    assert report.valid_records == 2
    assert not report.can_proceed
    assert [e.rule for e in report.for_record(1)] == ["REQUIRED_FIELD", "TYPE_MISMATCH"]


def test_apply_mappings_rekeys_and_carries_id():
    mappings = [
        FieldMapping("product_name", "name", 95, MappingStrategy.EXACT),
        FieldMapping("cost", "price", 80, MappingStrategy.STATISTICAL),
    ]
    rows = [
        {"product_name": "Widget", "cost": 1.5, "ID": 7, "colour": "red"},
        {"product_name": "Gadget", "ID": ""},
    ]
    assert apply_mappings(rows, mappings) == [
        {"name": "Widget", "price": 1.5, "id": 7},
        {"name": "Gadget", "price": None},
    ]


def test_apply_mappings_mapped_id_column_is_not_duplicated():
    mappings = [FieldMapping("id", "sku", 100, MappingStrategy.MANUAL)]
    assert apply_mappings([{"id": "S1"}], mappings) == [{"sku": "S1"}]


@pytest.mark.parametrize(
    "field,value,expected",
    [
        ("price", "$19.99", 19.99),
        ("price", "abc", "abc"),
        ("stock", "-3", 0),
        ("stock", "2.6", 3),
        ("isVariant", "yes", True),
        ("isVariant", "maybe", "maybe"),
        ("sku", 123, "123"),
        ("name", "  ", None),
        ("name", " Widget ", "Widget"),
        ("unknown", " x ", " x "),
    ],
)
def test_coerce_for_field(field, value, expected):
    assert coerce_for_field(field, value) == expected


def test_helpers():
    assert generate_slug("Hello, World!  Again") == "hello-world-again"
    assert clean_sku("ab-c d_1!") == "AB-CD_1"
    assert parse_number("€1.5") == 1.5
    assert parse_number(True) is None
    assert parse_number("") is None
    assert parse_boolean("Off") is False
    assert parse_boolean("perhaps") is None


def test_validation_error_serialisation():
    error = ValidationError(
        3, "price", datetime(2024, 1, 1), Severity.ERROR, "TYPE_MISMATCH", "bad",
        auto_fix=AutoFix("parse_number", 1.0, 90),
    )
    data = json.loads(error.to_json_line())
    assert data["severity"] == "error"
    assert data["value"] == "2024-01-01T00:00:00"
    assert data["auto_fix"] == {"action": "parse_number", "value": 1.0, "confidence": 90}
    assert error.key == (3, "price")
    assert error.blocking
