from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import pandas as pd

"""Spreadsheet export: table rows -> .xlsx (or .csv by suffix)."""

__all__ = [
    "export_rows",
]


def _excel_safe(value: Any) -> Any:
    # Excel は tz 付き datetime を扱えないため naive UTC に揃える
    if isinstance(value, datetime) and value.tzinfo is not None:
        return value.astimezone(UTC).replace(tzinfo=None)
    return value


def export_rows(
    rows: Iterable[Mapping[str, Any]],
    path: Path,
    sheet_name: str = "Sheet1",
    columns: Sequence[str] | None = None,
) -> int:
    """Write rows to ``path`` and return the number of rows written.

    Column order follows ``columns`` when given, otherwise first appearance.
    """
    prepared = [{k: _excel_safe(v) for k, v in row.items()} for row in rows]
    df = pd.DataFrame(prepared, columns=list(columns) if columns else None)
    path.parent.mkdir(parents=True, exist_ok=True)
    if path.suffix.lower() == ".csv":
        df.to_csv(path, index=False)
    else:
        df.to_excel(path, sheet_name=sheet_name, index=False)
    return len(df)
