from __future__ import annotations

import re
from datetime import UTC, datetime

import pytest

from bulk_import.models.processing_result import ExecutionState, ImportResult
from bulk_import.services.summary import format_number, render_summary_line

SUMMARY_RE = re.compile(
    r"^SUMMARY state=(\w+) records=(\d+) created=(\d+) updated=(\d+) failed=(\d+) "
    r"permanently_failed=(\d+) batches=(\d+) elapsed_sec=([\d.]+) throughput_rps=([\d.]+)$"
)


def _result(**overrides) -> ImportResult:
    t = datetime(2024, 1, 1, tzinfo=UTC)
    values = dict(
        session_id="s1", state=ExecutionState.COMPLETED, total_records=250, created=150,
        updated=0, failed=100, permanently_failed=0, start_time=t, end_time=t,
        elapsed_seconds=1.5, throughput_rows_per_sec=100.0, total_batches=3,
    )
    values.update(overrides)
    return ImportResult(**values)


@pytest.mark.parametrize(
    "value,expected",
    [(0, "0"), (0.0, "0"), (3.0, "3"), (1.23456, "1.235"), (0.001234, "0.001234"), (0.0000001, "0")],
)
def test_format_number(value, expected):
    assert format_number(value) == expected


def test_render_summary_line_matches_format():
    line = render_summary_line(_result())
    assert line == (
        "SUMMARY state=completed records=250 created=150 updated=0 failed=100 "
        "permanently_failed=0 batches=3 elapsed_sec=1.5 throughput_rps=100"
    )
    assert SUMMARY_RE.match(line)


def test_render_summary_line_cancelled_state():
    line = render_summary_line(_result(state=ExecutionState.CANCELLED, elapsed_seconds=0.0,
                                       throughput_rows_per_sec=0.0))
    m = SUMMARY_RE.match(line)
    assert m is not None
    assert m.group(1) == "cancelled"
    assert m.group(8) == "0"
