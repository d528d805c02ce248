from __future__ import annotations

import logging
import re
from collections.abc import Callable, Mapping, Sequence
from typing import Any

from ..db.batch_upsert import WriteResult
from ..mapping.headers import camel_to_snake, snake_to_camel
from ..models.import_result import BatchOutcome, BatchState

"""Schema-drift retry: recover once from an "unknown column" write rejection.

The offending column is pulled out of the backend's error text, removed (with
its camelCase / snake_case variants) from every row of the batch, and the
batch is resubmitted exactly once. When no column can be extracted, or the
retry fails too, the original failure message is returned unchanged.

This is string matching against one backend's phrasing; a configured schema
contract (services.schema_contract) catches unknown fields before the write.
"""

__all__ = [
    "SchemaDriftError",
    "column_variants",
    "extract_missing_column",
    "strip_column",
    "write_with_drift_recovery",
]

logger = logging.getLogger(__name__)

_MISSING_COLUMN_PATTERNS = (
    # PostgreSQL: column "rack_id" of relation "spare_parts" does not exist
    re.compile(r'column\s+"?([^"\s]+)"?\s+of\s+relation', re.IGNORECASE),
    # REST gateway: Could not find the 'rack_id' column of 'spare_parts' in the schema cache
    re.compile(r"could\s+not\s+find\s+the\s+'([^']+)'\s+column", re.IGNORECASE),
)

Write = Callable[[str, Sequence[Mapping[str, Any]], Sequence[str]], WriteResult]


class SchemaDriftError(Exception):
    """Unknown-column rejection that survived the single retry."""

    def __init__(self, column: str, message: str) -> None:
        super().__init__(message)
        self.column = column


def extract_missing_column(message: str | None) -> str | None:
    if not message:
        return None
    for pattern in _MISSING_COLUMN_PATTERNS:
        match = pattern.search(message)
        if match:
            return match.group(1)
    return None


def column_variants(column: str) -> set[str]:
    return {column, camel_to_snake(column), snake_to_camel(column)}


def strip_column(rows: Sequence[Mapping[str, Any]], column: str) -> list[dict[str, Any]]:
    """Copies of ``rows`` without ``column`` and its case-convention variants."""
    variants = column_variants(column)
    return [{k: v for k, v in row.items() if k not in variants} for row in rows]


def write_with_drift_recovery(
    write: Write,
    table: str,
    rows: Sequence[Mapping[str, Any]],
    conflict_key: Sequence[str],
    outcome: BatchOutcome,
) -> WriteResult:
    """Submit one batch, retrying once on an unknown-column rejection.

    ``outcome`` is advanced through the batch state machine and ends in
    SUCCESS or FAILED. On success after a retry ``outcome.dropped_column``
    names the removed column.
    """
    outcome.advance(BatchState.SUBMITTED)
    first = write(table, rows, conflict_key)
    if first.ok:
        outcome.advance(BatchState.SUCCESS)
        return first

    column = extract_missing_column(first.error)
    if column is None:
        outcome.advance(BatchState.FAILED)
        outcome.error = first.error
        return first

    outcome.advance(BatchState.SCHEMA_ERROR)
    logger.warning(
        "table=%s batch=%d column '%s' rejected by database; removing it and retrying once",
        table,
        outcome.index,
        column,
    )
    cleaned = strip_column(rows, column)
    outcome.advance(BatchState.RETRIED)
    second = write(table, cleaned, conflict_key)
    if second.ok:
        outcome.advance(BatchState.SUCCESS)
        outcome.dropped_column = column
        return second

    logger.warning("table=%s batch=%d retry failed: %s", table, outcome.index, second.error)
    outcome.advance(BatchState.FAILED)
    outcome.error = first.error
    return WriteResult(error=first.error)
