from __future__ import annotations

from ..models.import_result import ImportResult

"""SUMMARY line rendering for one import.

Format:
SUMMARY table={table} rows={rows} inserted={inserted} updated={updated}
errors={errors} batches={batches} retries={retries} status={status}
elapsed_sec={elapsed}
"""

__all__ = [
    "format_number",
    "render_summary_line",
]


def format_number(value: float) -> str:
    """Integers without a fraction, tiny values without scientific notation."""
    if value == 0:
        return "0"
    if value == int(value):
        return str(int(value))
    if value < 0.01:
        return f"{value:.6f}".rstrip("0").rstrip(".")
    return str(round(value, 3))


def render_summary_line(result: ImportResult) -> str:
    """Render the SUMMARY line for ``result``.

    >>> from datetime import datetime, timezone
    >>> from wms_importer.models import ImportStatus
    >>> t = datetime(2024, 1, 1, tzinfo=timezone.utc)
    >>> r = ImportResult(
    ...     table="inventory", status=ImportStatus.SUCCESS, total_rows=3,
    ...     inserted=2, updated=1, errors=[], start_time=t, end_time=t,
    ...     elapsed_seconds=2.0,
    ... )
    >>> render_summary_line(r)
    'SUMMARY table=inventory rows=3 inserted=2 updated=1 errors=0 batches=0 retries=0 status=success elapsed_sec=2'
    """
    return (
        f"SUMMARY table={result.table} "
        f"rows={result.total_rows} "
        f"inserted={result.inserted} "
        f"updated={result.updated} "
        f"errors={len(result.errors)} "
        f"batches={len(result.batches)} "
        f"retries={result.retries} "
        f"status={result.status.value} "
        f"elapsed_sec={format_number(result.elapsed_seconds)}"
    )
