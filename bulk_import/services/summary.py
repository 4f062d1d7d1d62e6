from __future__ import annotations

from ..models.processing_result import ImportResult

"""SUMMARY line rendering for the import CLI.

Format:
SUMMARY state={state} records={total} created={c} updated={u} failed={f}
permanently_failed={p} batches={n} elapsed_sec={elapsed} throughput_rps={throughput}
"""

__all__ = ["render_summary_line", "format_number"]


def format_number(value: float) -> str:
    """Integral values without decimals, tiny values without scientific notation."""
    if value == 0:
        return "0"
    if value == int(value):
        return str(int(value))
    if value < 0.01:
        return f"{value:.6f}".rstrip('0').rstrip('.')
    return str(round(value, 3))


def render_summary_line(result: ImportResult) -> str:
    """Render the single-line SUMMARY for an ImportResult.

    Examples:
        >>> from datetime import datetime, timezone
        >>> from bulk_import.models.processing_result import ExecutionState
        >>> t = datetime(2024, 1, 1, tzinfo=timezone.utc)
        >>> r = ImportResult("s1", ExecutionState.COMPLETED, 250, 200, 0, 50, 0, t, t,
        ...                  2.0, 100.0, total_batches=3)
        >>> render_summary_line(r)
        'SUMMARY state=completed records=250 created=200 updated=0 failed=50 permanently_failed=0 batches=3 elapsed_sec=2 throughput_rps=100'
    """
    return (
        f"SUMMARY state={result.state.value} "
        f"records={result.total_records} "
        f"created={result.created} "
        f"updated={result.updated} "
        f"failed={result.failed} "
        f"permanently_failed={result.permanently_failed} "
        f"batches={result.total_batches} "
        f"elapsed_sec={format_number(result.elapsed_seconds)} "
        f"throughput_rps={format_number(result.throughput_rows_per_sec)}"
    )
